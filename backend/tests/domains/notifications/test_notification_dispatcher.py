"""Tests for the notification dispatcher and providers."""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from uuid import uuid4

import httpx

from careloop.core.errors import ConfigurationError, NotFoundError, ProviderError, ValidationError
from careloop.domains.jobs.events import Events
from careloop.domains.notifications.models import Channel, NotificationLog, NotificationStatus, NotificationType
from careloop.domains.notifications.providers import (
    HttpNotificationProvider,
    LoggingNotificationProvider,
    ProviderReceipt,
    get_notification_provider,
)
from careloop.domains.notifications.service import NotificationDispatcher, resolve_address
from careloop.domains.outreach.models import AttemptStatus, OutreachAttempt
from careloop.domains.users.models import User

NOW = datetime(2026, 10, 5, 14, 0, tzinfo=timezone.utc)


class TestNotificationDispatcher:
    @pytest.fixture(autouse=True)
    def frozen_clock(self):
        with patch("careloop.core.clock.utcnow", return_value=NOW):
            yield

    @pytest.fixture
    def mock_sleep(self):
        with patch("careloop.domains.notifications.service.time.sleep") as sleep:
            yield sleep

    @pytest.fixture
    def mock_db(self):
        return MagicMock()

    @pytest.fixture
    def provider(self):
        provider = MagicMock()
        provider.send.return_value = ProviderReceipt(provider_message_id="msg-1")
        return provider

    @pytest.fixture
    def dispatcher(self, mock_db, provider):
        dispatcher = NotificationDispatcher(mock_db, provider=provider)
        dispatcher.bus = MagicMock()
        return dispatcher

    def test_send_logs_and_marks_sent(self, dispatcher, mock_db, provider):
        log = dispatcher.send(Channel.SMS, "+15555550100", "Hello", NotificationType.TASK_ASSIGNED)

        assert isinstance(log, NotificationLog)
        assert log.status == NotificationStatus.SENT
        assert log.provider_message_id == "msg-1"
        assert log.sent_at == NOW
        mock_db.add.assert_called_once_with(log)
        provider.send.assert_called_once_with(Channel.SMS, "+15555550100", "Hello", None)

    def test_critical_send_retries_then_raises(self, dispatcher, provider, mock_sleep):
        provider.send.side_effect = ProviderError("gateway down")

        with pytest.raises(ProviderError):
            dispatcher.send(Channel.SMS, "+15555550100", "Check in", NotificationType.CHECK_IN_SENT, critical=True)

        assert provider.send.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [2.0, 4.0]
        dispatcher.bus.schedule.assert_not_called()

    def test_critical_send_recovers_on_retry(self, dispatcher, provider, mock_sleep):
        provider.send.side_effect = [ProviderError("busy"), ProviderReceipt(provider_message_id="msg-2")]

        log = dispatcher.send(Channel.VOICE, "+15555550100", "Check in", NotificationType.CHECK_IN_SENT, critical=True)

        assert log.status == NotificationStatus.SENT
        assert log.provider_message_id == "msg-2"
        assert log.retry_count == 1
        mock_sleep.assert_called_once_with(2.0)

    def test_best_effort_failure_schedules_retry(self, dispatcher, provider, mock_sleep):
        provider.send.side_effect = ProviderError("gateway down")

        log = dispatcher.send(Channel.SMS, "+15555550100", "SLA warning", NotificationType.SLA_WARNING)

        assert log.status == NotificationStatus.FAILED
        assert log.retry_count == 1
        mock_sleep.assert_not_called()
        args, kwargs = dispatcher.bus.schedule.call_args
        assert args[0] == Events.NOTIFICATION_RETRY
        assert kwargs["run_at"] == NOW + timedelta(seconds=2)

    def test_best_effort_gives_up_after_budget(self, dispatcher, mock_db, provider):
        failed = MagicMock(spec=NotificationLog)
        failed.id = uuid4()
        failed.status = NotificationStatus.FAILED
        failed.retry_count = 2
        provider.send.side_effect = ProviderError("still down")

        with patch.object(dispatcher, "get_log", return_value=failed):
            dispatcher.retry(failed.id)

        assert failed.retry_count == 3
        dispatcher.bus.schedule.assert_not_called()

    def test_retry_skips_sent_notification(self, dispatcher, provider):
        sent = MagicMock(spec=NotificationLog)
        sent.id = uuid4()
        sent.status = NotificationStatus.SENT

        with patch.object(dispatcher, "get_log", return_value=sent):
            assert dispatcher.retry(sent.id) is sent

        provider.send.assert_not_called()

    def test_send_without_address_rejected(self, dispatcher, mock_db):
        with pytest.raises(ValidationError):
            dispatcher.send(Channel.EMAIL, None, "Hello", NotificationType.TASK_ASSIGNED)
        mock_db.add.assert_not_called()

    def test_send_unknown_channel_rejected(self, dispatcher):
        with pytest.raises(ValidationError):
            dispatcher.send("PIGEON", "roof", "Hello", NotificationType.TASK_ASSIGNED)

    def test_send_to_user_prefers_sms(self, dispatcher, mock_db, provider):
        user = MagicMock(spec=User)
        user.id = uuid4()
        user.phone = "+15555550111"
        user.email = "nurse@example.com"
        mock_db.query.return_value.filter.return_value.first.return_value = user

        log = dispatcher.send_to_user(user.id, "New task", NotificationType.TASK_ASSIGNED)

        assert log.channel == Channel.SMS
        assert log.recipient_address == "+15555550111"
        assert log.recipient_user_id == user.id

    def test_send_to_unknown_user(self, dispatcher, mock_db):
        mock_db.query.return_value.filter.return_value.first.return_value = None
        with pytest.raises(NotFoundError):
            dispatcher.send_to_user(uuid4(), "New task", NotificationType.TASK_ASSIGNED)

    def test_resolve_address(self):
        assert resolve_address(Channel.VOICE, "+1555", "a@b.c") == "+1555"
        assert resolve_address(Channel.EMAIL, "+1555", "a@b.c") == "a@b.c"
        assert resolve_address(Channel.EMAIL, "+1555", None) is None

    # --- Provider callbacks ---

    @pytest.fixture
    def sent_checkin(self):
        log = MagicMock(spec=NotificationLog)
        log.id = uuid4()
        log.status = NotificationStatus.SENT
        log.outreach_attempt_id = uuid4()
        return log

    def test_callback_delivered(self, dispatcher, mock_db, sent_checkin):
        mock_db.query.return_value.filter.return_value.with_for_update.return_value.first.return_value = sent_checkin

        dispatcher.handle_provider_callback("msg-1", NotificationStatus.DELIVERED)

        assert sent_checkin.status == NotificationStatus.DELIVERED
        assert sent_checkin.delivered_at == NOW
        dispatcher.bus.publish.assert_not_called()

    def test_callback_failure_reports_attempt_failed(self, dispatcher, mock_db, sent_checkin):
        attempt = MagicMock(spec=OutreachAttempt)
        attempt.id = sent_checkin.outreach_attempt_id
        attempt.status = AttemptStatus.IN_PROGRESS
        mock_db.query.return_value.filter.return_value.with_for_update.return_value.first.return_value = sent_checkin
        mock_db.query.return_value.filter.return_value.first.return_value = attempt

        dispatcher.handle_provider_callback("msg-1", NotificationStatus.FAILED, "Unreachable")

        assert sent_checkin.status == NotificationStatus.FAILED
        assert sent_checkin.failure_reason == "Unreachable"
        args, kwargs = dispatcher.bus.publish.call_args
        assert args[0] == Events.ATTEMPT_OUTCOME
        assert args[1]["outcome"] == AttemptStatus.FAILED
        assert args[1]["attempt_id"] == attempt.id

    def test_duplicate_callback_is_noop(self, dispatcher, mock_db, sent_checkin):
        sent_checkin.status = NotificationStatus.DELIVERED
        mock_db.query.return_value.filter.return_value.with_for_update.return_value.first.return_value = sent_checkin

        dispatcher.handle_provider_callback("msg-1", NotificationStatus.FAILED)

        assert sent_checkin.status == NotificationStatus.DELIVERED
        mock_db.commit.assert_not_called()
        dispatcher.bus.publish.assert_not_called()

    def test_callback_unknown_message(self, dispatcher, mock_db):
        mock_db.query.return_value.filter.return_value.with_for_update.return_value.first.return_value = None
        with pytest.raises(NotFoundError):
            dispatcher.handle_provider_callback("nope", NotificationStatus.DELIVERED)

    def test_callback_rejects_unsupported_status(self, dispatcher):
        with pytest.raises(ValidationError):
            dispatcher.handle_provider_callback("msg-1", NotificationStatus.SENT)


class TestNotificationProviders:
    def test_logging_provider_returns_message_id(self):
        receipt = LoggingNotificationProvider().send(Channel.SMS, "+1555", "hi")
        assert receipt.provider_message_id.startswith("log-")

    def test_get_provider_by_name(self):
        with patch("careloop.domains.notifications.providers.settings") as mock_settings:
            mock_settings.NOTIFICATION_PROVIDER = "log"
            assert isinstance(get_notification_provider(), LoggingNotificationProvider)

            mock_settings.NOTIFICATION_PROVIDER = "carrier-pigeon"
            with pytest.raises(ConfigurationError):
                get_notification_provider()

    def test_provider_is_shared_across_calls(self):
        with patch("careloop.domains.notifications.providers.settings") as mock_settings, \
                patch("careloop.domains.notifications.providers._default_provider", None), \
                patch("careloop.domains.notifications.providers._default_provider_name", None):
            mock_settings.NOTIFICATION_PROVIDER = "http"
            mock_settings.NOTIFICATION_PROVIDER_URL = "http://gateway.test"
            mock_settings.NOTIFICATION_PROVIDER_API_KEY = ""
            mock_settings.NOTIFICATION_PROVIDER_TIMEOUT = 5.0

            first = get_notification_provider()
            assert isinstance(first, HttpNotificationProvider)
            assert get_notification_provider() is first

            mock_settings.NOTIFICATION_PROVIDER = "log"
            assert isinstance(get_notification_provider(), LoggingNotificationProvider)

    def test_dispatchers_reuse_one_provider(self):
        with patch("careloop.domains.notifications.providers.settings") as mock_settings, \
                patch("careloop.domains.notifications.providers._default_provider", None), \
                patch("careloop.domains.notifications.providers._default_provider_name", None):
            mock_settings.NOTIFICATION_PROVIDER = "log"

            first = NotificationDispatcher(MagicMock()).provider
            second = NotificationDispatcher(MagicMock()).provider

        assert first is second

    def test_http_provider_posts_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/messages"
            return httpx.Response(202, json={"message_id": "gw-42"})

        provider = HttpNotificationProvider(base_url="http://gateway.test", api_key="k")
        provider._client = httpx.Client(base_url="http://gateway.test", transport=httpx.MockTransport(handler))

        with provider:
            receipt = provider.send(Channel.SMS, "+1555", "hi")

        assert receipt.provider_message_id == "gw-42"

    def test_http_provider_wraps_status_errors(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        provider = HttpNotificationProvider(base_url="http://gateway.test")
        provider._client = httpx.Client(base_url="http://gateway.test", transport=transport)

        with pytest.raises(ProviderError):
            provider.send(Channel.SMS, "+1555", "hi")

    def test_http_provider_wraps_connection_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = HttpNotificationProvider(base_url="http://gateway.test")
        provider._client = httpx.Client(base_url="http://gateway.test", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError):
            provider.send(Channel.SMS, "+1555", "hi")
