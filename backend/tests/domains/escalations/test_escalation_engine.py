"""Tests for the escalation task engine."""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from uuid import uuid4

from careloop.core.errors import ConflictError, NotFoundError, ValidationError
from careloop.domains.escalations.models import (
    FOLLOW_UP_SLA_MINUTES,
    SEVERITY_PRIORITY,
    SLA_MINUTES,
    EscalationTask,
    Priority,
    Severity,
    TaskStatus,
)
from careloop.domains.escalations.service import EscalationTaskEngine
from careloop.domains.jobs.events import Events
from careloop.domains.users.models import User

NOW = datetime(2026, 10, 5, 14, 0, tzinfo=timezone.utc)


def published_names(bus: MagicMock) -> list[str]:
    return [c.args[0] for c in bus.publish.call_args_list]


class TestSlaTables:
    def test_sla_minutes_per_severity(self):
        assert SLA_MINUTES == {"CRITICAL": 30, "HIGH": 120, "MODERATE": 240, "LOW": 480}

    def test_follow_up_sla_is_seven_days(self):
        assert FOLLOW_UP_SLA_MINUTES == 10080

    def test_priority_mapping(self):
        assert SEVERITY_PRIORITY[Severity.CRITICAL] == Priority.URGENT
        assert SEVERITY_PRIORITY[Severity.HIGH] == Priority.HIGH
        assert SEVERITY_PRIORITY[Severity.MODERATE] == Priority.NORMAL
        assert SEVERITY_PRIORITY[Severity.LOW] == Priority.LOW


class TestEscalationTaskEngine:
    @pytest.fixture(autouse=True)
    def frozen_clock(self):
        with patch("careloop.core.clock.utcnow", return_value=NOW):
            yield

    @pytest.fixture
    def mock_db(self):
        return MagicMock()

    @pytest.fixture
    def engine(self, mock_db):
        engine = EscalationTaskEngine(mock_db)
        engine.bus = MagicMock()
        engine.users = MagicMock()
        return engine

    @pytest.fixture
    def open_task(self):
        task = MagicMock(spec=EscalationTask)
        task.id = uuid4()
        task.episode_id = uuid4()
        task.severity = Severity.HIGH
        task.reason_codes = ["SHORTNESS_OF_BREATH"]
        task.sla_minutes = 120
        task.created_at = NOW
        task.sla_due_at = NOW + timedelta(minutes=120)
        task.status = TaskStatus.OPEN
        task.assigned_to_user_id = None
        task.warning_sent_at = None
        task.breach_sent_at = None
        return task

    @pytest.fixture
    def nurse(self):
        nurse = MagicMock(spec=User)
        nurse.id = uuid4()
        nurse.last_assigned_at = None
        return nurse

    # --- Creation ---

    def test_create_task_derives_sla_and_priority(self, engine, mock_db):
        episode_id = uuid4()

        task = engine.create_task(episode_id, Severity.CRITICAL, ["CHEST_PAIN"])

        assert task.severity == Severity.CRITICAL
        assert task.priority == Priority.URGENT
        assert task.sla_minutes == 30
        assert task.sla_due_at == NOW + timedelta(minutes=30)
        assert task.status == TaskStatus.OPEN
        mock_db.add.assert_called_once_with(task)
        mock_db.commit.assert_called_once()
        assert published_names(engine.bus) == [Events.TASK_CREATED]

    def test_create_task_rejects_automatic_low(self, engine, mock_db):
        with pytest.raises(ValidationError):
            engine.create_task(uuid4(), Severity.LOW, ["FATIGUE"])
        mock_db.add.assert_not_called()

    def test_create_task_allows_manual_low(self, engine):
        task = engine.create_task(uuid4(), Severity.LOW, ["FATIGUE"], manual=True)

        assert task.sla_minutes == 480
        assert task.priority == Priority.LOW

    def test_create_task_requires_reason_codes(self, engine):
        with pytest.raises(ValidationError):
            engine.create_task(uuid4(), Severity.HIGH, [])

    def test_create_task_rejects_unknown_severity(self, engine):
        with pytest.raises(ValidationError):
            engine.create_task(uuid4(), "SEVERE", ["X"])

    def test_create_task_returns_existing_for_dedupe_key(self, engine, mock_db, open_task):
        with patch.object(engine, "get_task_by_dedupe_key", return_value=open_task):
            task = engine.create_task(uuid4(), Severity.HIGH, ["X"], dedupe_key="signal:1")

        assert task is open_task
        mock_db.add.assert_not_called()
        engine.bus.publish.assert_not_called()

    # --- Assignment ---

    def test_assign_round_robin_assigns_next_nurse(self, engine, mock_db, open_task, nurse):
        engine.users.next_nurse_for_assignment.return_value = nurse
        mock_db.execute.return_value.rowcount = 1

        with patch.object(engine, "get_task", return_value=open_task):
            assignee = engine.assign_round_robin(open_task.id)

        assert assignee == nurse.id
        assert open_task.assigned_to_user_id == nurse.id
        assert open_task.assigned_at == NOW
        assert nurse.last_assigned_at == NOW
        assert Events.TASK_ASSIGNED in published_names(engine.bus)
        assert Events.NOTIFICATION_SEND in published_names(engine.bus)
        mock_db.commit.assert_called_once()

    def test_assign_round_robin_schedules_retry_without_nurse(self, engine, mock_db, open_task):
        engine.users.next_nurse_for_assignment.return_value = None

        with patch.object(engine, "get_task", return_value=open_task):
            assignee = engine.assign_round_robin(open_task.id)

        assert assignee is None
        engine.bus.schedule.assert_called_once()
        args, kwargs = engine.bus.schedule.call_args
        assert args[0] == Events.TASK_ASSIGNMENT_RETRY
        assert kwargs["run_at"] == NOW + timedelta(minutes=5)
        mock_db.execute.assert_not_called()

    def test_assign_round_robin_lost_race_keeps_winner(self, engine, mock_db, open_task, nurse):
        winner_id = uuid4()
        engine.users.next_nurse_for_assignment.return_value = nurse
        mock_db.execute.return_value.rowcount = 0
        mock_db.refresh.side_effect = lambda task: setattr(task, "assigned_to_user_id", winner_id)

        with patch.object(engine, "get_task", return_value=open_task):
            assignee = engine.assign_round_robin(open_task.id)

        assert assignee == winner_id
        assert nurse.last_assigned_at is None
        mock_db.rollback.assert_called_once()
        engine.bus.publish.assert_not_called()

    def test_assign_round_robin_skips_closed_task(self, engine, open_task):
        open_task.status = TaskStatus.RESOLVED

        with patch.object(engine, "get_task", return_value=open_task):
            assert engine.assign_round_robin(open_task.id) is None

        engine.users.next_nurse_for_assignment.assert_not_called()

    def test_assign_round_robin_keeps_existing_assignee(self, engine, open_task):
        open_task.assigned_to_user_id = uuid4()

        with patch.object(engine, "get_task", return_value=open_task):
            assert engine.assign_round_robin(open_task.id) == open_task.assigned_to_user_id

        engine.users.next_nurse_for_assignment.assert_not_called()

    def test_assign_round_robin_unknown_task(self, engine):
        with patch.object(engine, "get_task", return_value=None):
            with pytest.raises(NotFoundError):
                engine.assign_round_robin(uuid4())

    def test_assign_to_rejects_inactive_user(self, engine, open_task, nurse):
        nurse.is_active = False
        engine.users.get_user.return_value = nurse

        with patch.object(engine, "get_task", return_value=open_task):
            with pytest.raises(ValidationError):
                engine.assign_to(open_task.id, nurse.id)

    def test_retry_unassigned_counts_assignments(self, engine, open_task):
        other = MagicMock(spec=EscalationTask)
        other.id = uuid4()
        with patch.object(engine, "list_unassigned_open_tasks", return_value=[open_task, other]), \
                patch.object(engine, "assign_round_robin", side_effect=[uuid4(), None]):
            assert engine.retry_unassigned() == 1

    # --- SLA monitoring ---

    @pytest.mark.parametrize("sla_minutes,warning_offset", [(30, 22), (120, 90), (240, 180), (480, 360)])
    def test_start_sla_monitor_warns_at_75_percent(self, engine, open_task, sla_minutes, warning_offset):
        open_task.sla_minutes = sla_minutes

        with patch.object(engine, "get_task", return_value=open_task):
            warning_at = engine.start_sla_monitor(open_task.id)

        assert warning_at == NOW + timedelta(minutes=warning_offset)
        args, kwargs = engine.bus.schedule.call_args
        assert args[0] == Events.TASK_SLA_WARNING_DUE
        assert kwargs["run_at"] == warning_at

    def test_start_sla_monitor_skips_zero_sla(self, engine, open_task):
        open_task.sla_minutes = 0

        with patch.object(engine, "get_task", return_value=open_task):
            assert engine.start_sla_monitor(open_task.id) is None

        engine.bus.schedule.assert_not_called()

    def test_sla_warning_notifies_and_schedules_breach(self, engine, mock_db, open_task):
        open_task.assigned_to_user_id = uuid4()

        with patch.object(engine, "_lock_task", return_value=open_task):
            assert engine.handle_sla_warning(open_task.id) is True

        assert open_task.warning_sent_at == NOW
        assert published_names(engine.bus) == [Events.NOTIFICATION_SEND, Events.TASK_SLA_WARNING]
        args, kwargs = engine.bus.schedule.call_args
        assert args[0] == Events.TASK_SLA_BREACH_DUE
        assert kwargs["run_at"] == open_task.sla_due_at
        mock_db.commit.assert_called_once()

    def test_sla_warning_suppressed_for_resolved_task(self, engine, mock_db, open_task):
        open_task.status = TaskStatus.RESOLVED

        with patch.object(engine, "_lock_task", return_value=open_task):
            assert engine.handle_sla_warning(open_task.id) is False

        engine.bus.publish.assert_not_called()
        engine.bus.schedule.assert_not_called()
        mock_db.commit.assert_not_called()

    def test_sla_warning_fires_once(self, engine, open_task):
        open_task.warning_sent_at = NOW - timedelta(minutes=1)

        with patch.object(engine, "_lock_task", return_value=open_task):
            assert engine.handle_sla_warning(open_task.id) is False

        engine.bus.schedule.assert_not_called()

    def test_sla_breach_suppressed_for_cancelled_task(self, engine, open_task):
        open_task.status = TaskStatus.CANCELLED

        with patch.object(engine, "_lock_task", return_value=open_task):
            assert engine.handle_sla_breach(open_task.id) is False

        engine.bus.publish.assert_not_called()

    def test_sla_breach_on_open_task(self, engine, open_task):
        open_task.assigned_to_user_id = uuid4()

        with patch.object(engine, "_lock_task", return_value=open_task):
            assert engine.handle_sla_breach(open_task.id) is True

        assert open_task.breach_sent_at == NOW
        assert Events.TASK_SLA_BREACH in published_names(engine.bus)

    # --- Nurse actions ---

    def test_pick_up_moves_to_in_progress(self, engine, open_task):
        user_id = uuid4()

        with patch.object(engine, "_lock_task", return_value=open_task):
            engine.pick_up(open_task.id, user_id)

        assert open_task.status == TaskStatus.IN_PROGRESS
        assert open_task.picked_up_at == NOW
        assert open_task.assigned_to_user_id == user_id

    def test_pick_up_rejects_non_open_task(self, engine, open_task):
        open_task.status = TaskStatus.IN_PROGRESS

        with patch.object(engine, "_lock_task", return_value=open_task):
            with pytest.raises(ConflictError):
                engine.pick_up(open_task.id, uuid4())

    def test_resolve_televisit_creates_follow_up(self, engine, mock_db, open_task):
        nurse_id = uuid4()

        with patch.object(engine, "_lock_task", return_value=open_task):
            task, follow_up = engine.resolve(open_task.id, "TELEVISIT_SCHEDULED", "Seen tomorrow", nurse_id)

        assert task.status == TaskStatus.RESOLVED
        assert task.resolved_by_user_id == nurse_id
        assert follow_up is not None
        assert follow_up.severity == Severity.LOW
        assert follow_up.priority == Priority.LOW
        assert follow_up.sla_minutes == FOLLOW_UP_SLA_MINUTES
        assert follow_up.sla_due_at == NOW + timedelta(days=7)
        assert follow_up.parent_task_id == open_task.id
        assert follow_up.episode_id == open_task.episode_id
        mock_db.add.assert_called_once_with(follow_up)
        mock_db.commit.assert_called_once()
        assert published_names(engine.bus) == [Events.TASK_CREATED, Events.TASK_RESOLVED]

    def test_resolve_without_follow_up(self, engine, mock_db, open_task):
        with patch.object(engine, "_lock_task", return_value=open_task):
            task, follow_up = engine.resolve(open_task.id, "EDUCATION_ONLY", None, uuid4())

        assert follow_up is None
        assert task.resolution_outcome_code == "EDUCATION_ONLY"
        mock_db.add.assert_not_called()

    def test_resolve_rejects_closed_task(self, engine, open_task):
        open_task.status = TaskStatus.RESOLVED

        with patch.object(engine, "_lock_task", return_value=open_task):
            with pytest.raises(ConflictError):
                engine.resolve(open_task.id, "EDUCATION_ONLY", None, uuid4())

    def test_resolve_rejects_unknown_outcome(self, engine):
        with pytest.raises(ValidationError):
            engine.resolve(uuid4(), "HUGGED", None, uuid4())

    def test_cancel_records_reason(self, engine, open_task):
        with patch.object(engine, "_lock_task", return_value=open_task):
            engine.cancel(open_task.id, "Patient readmitted")

        assert open_task.status == TaskStatus.CANCELLED
        assert open_task.resolution_notes == "Patient readmitted"
