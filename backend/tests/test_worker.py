"""Tests for the background worker."""
import pytest
from unittest.mock import MagicMock, patch
from uuid import uuid4

from careloop.core.errors import ConfigurationError, NotFoundError, ProviderError, ValidationError
from careloop.domains.jobs.events import AlertKinds, Events
from careloop.domains.jobs.models import Job
from careloop.handlers import HANDLERS
from careloop.worker import process_job, run_once


class TestProcessJob:
    @pytest.fixture
    def mock_db(self):
        return MagicMock()

    @pytest.fixture
    def session_factory(self, mock_db):
        return MagicMock(return_value=mock_db)

    @pytest.fixture
    def job_queue(self):
        with patch("careloop.worker.JobQueue") as queue_cls:
            yield queue_cls.return_value

    def run(self, session_factory, handler, job_id=None):
        with patch.dict("careloop.worker.HANDLERS", {"test.event": handler}):
            return process_job(session_factory, job_id or uuid4(), "test.event", {"x": 1})

    def test_success_completes_job(self, session_factory, mock_db, job_queue):
        handler = MagicMock()
        job_id = uuid4()

        assert self.run(session_factory, handler, job_id) == "done"

        handler.assert_called_once_with(mock_db, {"x": 1})
        job_queue.complete.assert_called_once_with(job_id)
        mock_db.close.assert_called_once()

    def test_unhandled_event_completes(self, session_factory, job_queue):
        job_id = uuid4()
        assert process_job(session_factory, job_id, Events.TASK_RESOLVED, {}) == "done"
        job_queue.complete.assert_called_once_with(job_id)

    @pytest.mark.parametrize("error", [ValidationError("bad"), NotFoundError("gone")])
    def test_permanent_errors_are_not_retried(self, session_factory, mock_db, job_queue, error):
        job_id = uuid4()
        self.run(session_factory, MagicMock(side_effect=error), job_id)

        mock_db.rollback.assert_called_once()
        args, kwargs = job_queue.fail.call_args
        assert args[0] == job_id
        assert kwargs["retryable"] is False

    def test_configuration_error_raises_alert(self, session_factory, job_queue):
        with patch("careloop.worker.OperatorAlerts") as alerts_cls:
            self.run(session_factory, MagicMock(side_effect=ConfigurationError("no protocol")))

        assert job_queue.fail.call_args.kwargs["retryable"] is False
        args, _ = alerts_cls.return_value.raise_alert.call_args
        assert args[0] == AlertKinds.CONFIGURATION

    def test_provider_error_is_retried(self, session_factory, job_queue):
        self.run(session_factory, MagicMock(side_effect=ProviderError("gateway down")))
        assert job_queue.fail.call_args.kwargs["retryable"] is True

    def test_unexpected_error_is_retried(self, session_factory, mock_db, job_queue):
        self.run(session_factory, MagicMock(side_effect=RuntimeError("db went away")))

        mock_db.rollback.assert_called_once()
        assert job_queue.fail.call_args.kwargs["retryable"] is True


class TestRunOnce:
    def test_processes_each_claimed_job(self):
        job = MagicMock(spec=Job)
        job.id = uuid4()
        job.job_type = Events.TASK_CREATED
        job.payload = {"task_id": "t1"}
        session_factory = MagicMock()

        with patch("careloop.worker.JobQueue") as queue_cls, \
                patch("careloop.worker.process_job") as process:
            queue_cls.return_value.claim_due.return_value = [job]
            assert run_once(session_factory, batch_size=5) == 1

        queue_cls.return_value.claim_due.assert_called_once_with(5)
        process.assert_called_once_with(session_factory, job.id, Events.TASK_CREATED, {"task_id": "t1"})


def test_every_timer_has_a_handler():
    for name in (
        Events.OUTREACH_ATTEMPT_DUE,
        Events.OUTREACH_ATTEMPT_TIMEOUT,
        Events.TASK_ASSIGNMENT_RETRY,
        Events.TASK_SLA_WARNING_DUE,
        Events.TASK_SLA_BREACH_DUE,
        Events.NOTIFICATION_RETRY,
    ):
        assert name in HANDLERS
