"""Notification Dispatcher: every outbound message goes through here and is logged."""
import logging
import time
from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from careloop.core import clock
from careloop.core.config import settings
from careloop.core.errors import NotFoundError, ProviderError, ValidationError
from careloop.domains.episodes.models import Patient
from careloop.domains.jobs.events import Events
from careloop.domains.jobs.service import EventBus
from careloop.domains.notifications.models import Channel, NotificationLog, NotificationStatus
from careloop.domains.notifications.providers import NotificationProvider, get_notification_provider
from careloop.domains.outreach.models import AttemptStatus, OutreachAttempt
from careloop.domains.users.models import User

logger = logging.getLogger(__name__)

CALLBACK_STATUSES = {NotificationStatus.DELIVERED, NotificationStatus.FAILED}


def resolve_address(channel: str, phone: str | None, email: str | None) -> str | None:
    if channel in (Channel.SMS, Channel.VOICE):
        return phone
    if channel == Channel.EMAIL:
        return email
    return None


class NotificationDispatcher:
    def __init__(self, db: Session, provider: NotificationProvider | None = None):
        self.db = db
        self.bus = EventBus(db)
        self._provider = provider

    @property
    def provider(self) -> NotificationProvider:
        if self._provider is None:
            self._provider = get_notification_provider()
        return self._provider

    def get_log(self, log_id: UUID) -> NotificationLog | None:
        return self.db.query(NotificationLog).filter(NotificationLog.id == log_id).first()

    def list_logs(
        self,
        task_id: UUID | None = None,
        episode_id: UUID | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[NotificationLog]:
        query = self.db.query(NotificationLog)
        if task_id:
            query = query.filter(NotificationLog.task_id == task_id)
        if episode_id:
            query = query.filter(NotificationLog.episode_id == episode_id)
        if status:
            query = query.filter(NotificationLog.status == status)
        return query.order_by(NotificationLog.created_at.desc()).limit(limit).all()

    def send(
        self,
        channel: str,
        address: str | None,
        content: str,
        notification_type: str,
        critical: bool = False,
        subject: str | None = None,
        recipient_user_id: UUID | None = None,
        recipient_patient_id: UUID | None = None,
        task_id: UUID | None = None,
        episode_id: UUID | None = None,
        outreach_attempt_id: UUID | None = None,
    ) -> NotificationLog:
        """
        Send one message and log it.

        Critical sends retry inline with exponential backoff and raise
        ProviderError once NOTIFICATION_MAX_RETRIES tries have failed.
        Best-effort sends never raise on provider failure; a retry is
        scheduled on the event bus while the retry budget lasts.
        """
        if channel not in Channel.ALL:
            raise ValidationError(f"Unknown channel {channel}")
        if not address:
            raise ValidationError(f"No {channel} address for {notification_type} notification")

        log = NotificationLog(
            id=uuid4(),
            notification_type=notification_type,
            channel=channel,
            status=NotificationStatus.PENDING,
            recipient_address=address,
            recipient_user_id=recipient_user_id,
            recipient_patient_id=recipient_patient_id,
            subject=subject,
            message_content=content,
            retry_count=0,
            task_id=task_id,
            episode_id=episode_id,
            outreach_attempt_id=outreach_attempt_id,
            metadata_json={"critical": critical},
        )
        self.db.add(log)
        self.db.commit()

        if critical:
            max_tries = max(settings.NOTIFICATION_MAX_RETRIES, 1)
            for attempt in range(max_tries):
                if self._deliver(log):
                    break
                if attempt < max_tries - 1:
                    time.sleep(settings.NOTIFICATION_RETRY_BACKOFF_SECONDS * (2 ** attempt))
            self.db.commit()
            if log.status == NotificationStatus.FAILED:
                raise ProviderError(f"Critical {notification_type} notification {log.id} failed: {log.failure_reason}")
        else:
            if not self._deliver(log):
                self._schedule_retry(log)
            self.db.commit()

        self.db.refresh(log)
        return log

    def retry(self, log_id: UUID) -> NotificationLog:
        """Re-send a failed best-effort notification."""
        log = self.get_log(log_id)
        if not log:
            raise NotFoundError(f"Notification {log_id} not found")
        if log.status != NotificationStatus.FAILED:
            logger.info(f"Notification {log.id} is {log.status}, retry skipped")
            return log

        if not self._deliver(log):
            self._schedule_retry(log)
        self.db.commit()
        self.db.refresh(log)
        return log

    def send_to_patient(self, patient_id: UUID, channel: str, content: str, notification_type: str, **kwargs) -> NotificationLog:
        patient = self.db.query(Patient).filter(Patient.id == patient_id).first()
        if not patient:
            raise NotFoundError(f"Patient {patient_id} not found")
        address = resolve_address(channel, patient.primary_phone, patient.email)
        return self.send(channel, address, content, notification_type, recipient_patient_id=patient.id, **kwargs)

    def send_to_user(self, user_id: UUID, content: str, notification_type: str, channel: str | None = None, **kwargs) -> NotificationLog:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        if channel is None:
            channel = Channel.SMS if user.phone else Channel.EMAIL
        address = resolve_address(channel, user.phone, user.email)
        return self.send(channel, address, content, notification_type, recipient_user_id=user.id, **kwargs)

    def handle_provider_callback(
        self,
        provider_message_id: str,
        status: str,
        failure_reason: str | None = None,
    ) -> NotificationLog:
        """
        Apply a delivery report from the provider.

        Idempotent: a repeated report is a no-op and DELIVERED is final. A
        failed delivery of an outreach check-in reports the attempt as FAILED
        so the plan moves on to its fallback channel.
        """
        if status not in CALLBACK_STATUSES:
            raise ValidationError(f"Unsupported delivery status {status}")

        log = (
            self.db.query(NotificationLog)
            .filter(NotificationLog.provider_message_id == provider_message_id)
            .with_for_update()
            .first()
        )
        if not log:
            raise NotFoundError(f"No notification with provider message id {provider_message_id}")

        if log.status == NotificationStatus.DELIVERED or log.status == status:
            logger.info(f"Duplicate delivery report for {provider_message_id} ({status}), ignored")
            return log

        now = clock.utcnow()
        log.status = status
        if status == NotificationStatus.DELIVERED:
            log.delivered_at = now
        else:
            log.failed_at = now
            log.failure_reason = failure_reason or "Delivery failed"
            self._report_failed_attempt(log)

        self.db.commit()
        self.db.refresh(log)
        return log

    def _report_failed_attempt(self, log: NotificationLog) -> None:
        if not log.outreach_attempt_id:
            return
        attempt = self.db.query(OutreachAttempt).filter(OutreachAttempt.id == log.outreach_attempt_id).first()
        if not attempt or attempt.status != AttemptStatus.IN_PROGRESS:
            return
        self.bus.publish(
            Events.ATTEMPT_OUTCOME,
            {"attempt_id": attempt.id, "outcome": AttemptStatus.FAILED, "reason_code": "DELIVERY_FAILED"},
            idempotency_key=f"delivery_failed:{log.id}",
        )
        logger.warning(f"Delivery of check-in for attempt {attempt.id} failed")

    def _deliver(self, log: NotificationLog) -> bool:
        try:
            receipt = self.provider.send(log.channel, log.recipient_address, log.message_content, log.subject)
        except ProviderError as e:
            log.status = NotificationStatus.FAILED
            log.failure_reason = e.message
            log.failed_at = clock.utcnow()
            log.retry_count = (log.retry_count or 0) + 1
            logger.warning(f"Notification {log.id} failed (try {log.retry_count}): {e.message}")
            return False

        log.status = NotificationStatus.SENT
        log.provider_message_id = receipt.provider_message_id
        log.failure_reason = None
        log.sent_at = clock.utcnow()
        return True

    def _schedule_retry(self, log: NotificationLog) -> None:
        if log.retry_count >= settings.NOTIFICATION_MAX_RETRIES:
            logger.error(f"Notification {log.id} gave up after {log.retry_count} tries")
            return
        delay = settings.NOTIFICATION_RETRY_BACKOFF_SECONDS * (2 ** (log.retry_count - 1))
        self.bus.schedule(
            Events.NOTIFICATION_RETRY,
            {"notification_id": log.id},
            run_at=clock.utcnow() + timedelta(seconds=delay),
            idempotency_key=f"notification_retry:{log.id}:{log.retry_count}",
        )
