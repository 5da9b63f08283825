"""Outreach Plan Manager: contact schedule per episode and its attempt sequence."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from careloop.core import clock
from careloop.core.config import settings
from careloop.core.errors import (
    AttemptsExhaustedError,
    ConcurrencyError,
    ConflictError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from careloop.domains.episodes.models import Episode, LanguageCode
from careloop.domains.jobs.events import Events
from careloop.domains.jobs.service import EventBus
from careloop.domains.notifications.models import Channel, NotificationType
from careloop.domains.notifications.service import NotificationDispatcher
from careloop.domains.outreach.models import (
    AttemptStatus,
    OutreachAttempt,
    OutreachPlan,
    OutreachPlanTemplate,
    PlanFailureReason,
    PlanStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateSettings:
    preferred_channel: str
    fallback_channel: str | None
    first_contact_delay_hours: int
    contact_window_hours: int
    max_attempts: int
    attempt_interval_hours: int
    timezone: str


DEFAULT_TEMPLATE = TemplateSettings(
    preferred_channel=Channel.SMS,
    fallback_channel=Channel.VOICE,
    first_contact_delay_hours=24,
    contact_window_hours=48,
    max_attempts=3,
    attempt_interval_hours=4,
    timezone="America/New_York",
)

CHECKIN_MESSAGES = {
    LanguageCode.EN: (
        "Hi {first_name}, this is your care team checking in after your recent hospital stay. "
        "Tell us how you are feeling: {link}"
    ),
    LanguageCode.ES: (
        "Hola {first_name}, somos su equipo de cuidado y queremos saber como se siente "
        "despues de su reciente estancia en el hospital: {link}"
    ),
}


class OutreachPlanManager:
    def __init__(self, db: Session, dispatcher: NotificationDispatcher | None = None):
        self.db = db
        self.bus = EventBus(db)
        self.dispatcher = dispatcher or NotificationDispatcher(db)

    # --- Queries ---

    def get_plan(self, plan_id: UUID) -> OutreachPlan | None:
        return self.db.query(OutreachPlan).filter(OutreachPlan.id == plan_id).first()

    def get_active_plan(self, episode_id: UUID, for_update: bool = False) -> OutreachPlan | None:
        query = self.db.query(OutreachPlan).filter(
            OutreachPlan.episode_id == episode_id,
            OutreachPlan.status.in_(PlanStatus.ACTIVE),
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_latest_plan(self, episode_id: UUID, for_update: bool = False) -> OutreachPlan | None:
        query = (
            self.db.query(OutreachPlan)
            .filter(OutreachPlan.episode_id == episode_id)
            .order_by(OutreachPlan.created_at.desc())
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_attempt(self, attempt_id: UUID) -> OutreachAttempt | None:
        return self.db.query(OutreachAttempt).filter(OutreachAttempt.id == attempt_id).first()

    def list_attempts(self, plan_id: UUID) -> list[OutreachAttempt]:
        return (
            self.db.query(OutreachAttempt)
            .filter(OutreachAttempt.outreach_plan_id == plan_id)
            .order_by(OutreachAttempt.attempt_number)
            .all()
        )

    def resolve_template(self, condition_code: str, risk_level: str) -> TemplateSettings:
        template = (
            self.db.query(OutreachPlanTemplate)
            .filter(
                OutreachPlanTemplate.condition_code == condition_code,
                OutreachPlanTemplate.risk_level == risk_level,
                OutreachPlanTemplate.active.is_(True),
            )
            .first()
        )
        if not template:
            logger.info(f"No outreach template for {condition_code}/{risk_level}, using defaults")
            return DEFAULT_TEMPLATE
        return TemplateSettings(
            preferred_channel=template.preferred_channel,
            fallback_channel=template.fallback_channel,
            first_contact_delay_hours=template.first_contact_delay_hours,
            contact_window_hours=template.contact_window_hours,
            max_attempts=template.max_attempts,
            attempt_interval_hours=template.attempt_interval_hours,
            timezone=template.timezone,
        )

    # --- Plan lifecycle ---

    def create_plan(
        self,
        episode_id: UUID,
        condition_code: str | None = None,
        risk_level: str | None = None,
        discharge_at: datetime | None = None,
        language_code: str | None = None,
    ) -> OutreachPlan:
        """
        Create the outreach plan for an episode and schedule attempt #1.

        Values not passed in are read from the episode and its patient.
        Idempotent: an existing active plan is returned unchanged. A
        concurrent creator that wins the partial unique index race is
        returned instead of failing.
        """
        existing = self.get_active_plan(episode_id)
        if existing:
            return existing

        episode = self.db.query(Episode).filter(Episode.id == episode_id).first()
        if not episode:
            raise NotFoundError(f"Episode {episode_id} not found")

        template = self.resolve_template(
            condition_code or episode.condition_code,
            risk_level or episode.risk_level,
        )
        window_start = (discharge_at or episode.discharge_at) + timedelta(hours=template.first_contact_delay_hours)
        window_end = window_start + timedelta(hours=template.contact_window_hours)
        if not language_code:
            language_code = episode.patient.language_code if episode.patient else LanguageCode.EN

        plan = OutreachPlan(
            id=uuid4(),
            episode_id=episode.id,
            preferred_channel=template.preferred_channel,
            fallback_channel=template.fallback_channel,
            window_start_at=window_start,
            window_end_at=window_end,
            max_attempts=template.max_attempts,
            attempt_interval_hours=template.attempt_interval_hours,
            timezone=template.timezone,
            language_code=language_code,
            status=PlanStatus.PENDING,
        )
        first_attempt = OutreachAttempt(
            id=uuid4(),
            outreach_plan_id=plan.id,
            attempt_number=1,
            channel=plan.preferred_channel,
            status=AttemptStatus.PENDING,
            scheduled_at=window_start,
        )
        try:
            self.db.add(plan)
            self.db.flush()
            self.db.add(first_attempt)
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            winner = self.get_active_plan(episode_id)
            if winner:
                logger.info(f"Outreach plan for episode {episode_id} created concurrently, returning {winner.id}")
                return winner
            raise ConcurrencyError(f"Could not create outreach plan for episode {episode_id}") from e

        self._schedule_attempt(first_attempt)
        self.db.commit()
        self.db.refresh(plan)
        logger.info(
            f"Created outreach plan {plan.id} for episode {episode_id}: "
            f"{plan.max_attempts} attempts, window {window_start} - {window_end}"
        )
        return plan

    def dispatch_attempt(self, attempt_id: UUID) -> OutreachAttempt | None:
        """
        Timer handler for outreach.attempt_due.

        Sends the check-in if the attempt is still pending and due. A failed
        critical send is recorded as a FAILED attempt so the fallback path
        runs. Returns None when there was nothing to do.
        """
        attempt = self.get_attempt(attempt_id)
        if not attempt:
            raise NotFoundError(f"Outreach attempt {attempt_id} not found")

        plan = self._lock_plan(attempt.outreach_plan_id)
        self.db.refresh(attempt, with_for_update=True)
        now = clock.utcnow()

        if attempt.status != AttemptStatus.PENDING:
            logger.info(f"Attempt {attempt.id} is {attempt.status}, dispatch skipped")
            self.db.rollback()
            return None
        if plan.status in PlanStatus.TERMINAL:
            logger.info(f"Plan {plan.id} is {plan.status}, attempt {attempt.id} not dispatched")
            self.db.rollback()
            return None
        if attempt.scheduled_at > now:
            # Superseded by a later timer for the same attempt
            self.db.rollback()
            return None

        if plan.status == PlanStatus.PENDING:
            plan.status = PlanStatus.IN_PROGRESS
        attempt.status = AttemptStatus.IN_PROGRESS
        attempt.started_at = now
        self.bus.schedule(
            Events.OUTREACH_ATTEMPT_TIMEOUT,
            {"attempt_id": attempt.id},
            run_at=now + timedelta(hours=settings.ATTEMPT_RESPONSE_TIMEOUT_HOURS),
            idempotency_key=f"attempt_timeout:{attempt.id}",
        )
        self.db.commit()

        episode = self.db.query(Episode).filter(Episode.id == plan.episode_id).first()
        try:
            self.dispatcher.send_to_patient(
                episode.patient_id,
                attempt.channel,
                self._checkin_message(episode, plan, attempt),
                NotificationType.CHECK_IN_SENT,
                critical=True,
                episode_id=episode.id,
                outreach_attempt_id=attempt.id,
            )
        except (ProviderError, ValidationError) as e:
            logger.warning(f"Check-in for attempt {attempt.id} could not be sent: {e}")
            return self.record_attempt_outcome(attempt.id, AttemptStatus.FAILED, reason_code="DELIVERY_FAILED")

        logger.info(f"Dispatched attempt #{attempt.attempt_number} of plan {plan.id} via {attempt.channel}")
        return attempt

    def record_attempt_outcome(
        self,
        attempt_id: UUID,
        outcome: str,
        reason_code: str | None = None,
    ) -> OutreachAttempt:
        """
        Record a terminal outcome and advance the plan.

        Re-delivery for an attempt that is already terminal is a no-op.
        """
        if outcome not in AttemptStatus.TERMINAL:
            raise ValidationError(f"Attempt outcome must be one of {AttemptStatus.TERMINAL}, got {outcome}")

        attempt = self.get_attempt(attempt_id)
        if not attempt:
            raise NotFoundError(f"Outreach attempt {attempt_id} not found")

        plan = self._lock_plan(attempt.outreach_plan_id)
        self.db.refresh(attempt, with_for_update=True)
        if attempt.status in AttemptStatus.TERMINAL:
            logger.info(f"Attempt {attempt.id} already {attempt.status}, outcome {outcome} ignored")
            self.db.rollback()
            return attempt

        now = clock.utcnow()
        attempt.status = outcome
        attempt.completed_at = now
        attempt.reason_code = reason_code

        if plan.status in PlanStatus.TERMINAL:
            pass
        elif outcome == AttemptStatus.COMPLETED:
            plan.status = PlanStatus.COMPLETED
            plan.completed_at = now
            logger.info(f"Outreach plan {plan.id} completed on attempt #{attempt.attempt_number}")
        elif attempt.attempt_number >= plan.max_attempts:
            self._fail_plan(plan, PlanFailureReason.MAX_ATTEMPTS, now)
        elif now >= plan.window_end_at:
            self._fail_plan(plan, PlanFailureReason.WINDOW_CLOSED, now)
        else:
            self._create_next_attempt(plan, attempt, self._next_attempt_time(plan, now))

        self.db.commit()
        self.db.refresh(attempt)
        return attempt

    def trigger_now(self, episode_id: UUID) -> OutreachAttempt:
        """
        Administrative override: contact the patient now, ignoring the window.

        A still-pending attempt is pulled forward instead of creating a new
        one, so attempt numbering stays gap-free. A plan that failed because
        its window closed is reopened while it still has attempts left.
        """
        plan = self.get_active_plan(episode_id, for_update=True) or self.get_latest_plan(
            episode_id, for_update=True
        )
        if not plan:
            raise NotFoundError(f"No outreach plan for episode {episode_id}")

        latest = self._latest_attempt(plan.id)
        now = clock.utcnow()

        if latest and latest.status == AttemptStatus.IN_PROGRESS:
            raise ConflictError(f"Attempt #{latest.attempt_number} is already in progress")

        if latest and latest.status == AttemptStatus.PENDING:
            latest.scheduled_at = now
            self._schedule_attempt(latest)
            self.db.commit()
            self.db.refresh(latest)
            logger.info(f"Attempt {latest.id} pulled forward to now for episode {episode_id}")
            return latest

        attempts_made = latest.attempt_number if latest else 0
        if attempts_made >= plan.max_attempts:
            raise AttemptsExhaustedError(
                f"All {plan.max_attempts} outreach attempts used for episode {episode_id}"
            )
        if plan.status == PlanStatus.COMPLETED:
            raise ConflictError(f"Outreach plan {plan.id} already completed")
        if plan.status == PlanStatus.FAILED:
            plan.status = PlanStatus.IN_PROGRESS
            plan.failure_reason = None
            plan.completed_at = None
            logger.info(f"Reopened outreach plan {plan.id} for a manual attempt")

        attempt = self._create_next_attempt(plan, latest, now)
        self.db.commit()
        self.db.refresh(attempt)
        logger.info(f"Triggered attempt #{attempt.attempt_number} now for episode {episode_id}")
        return attempt

    def apply_risk_change(self, episode_id: UUID, condition_code: str, risk_level: str) -> OutreachPlan | None:
        """
        Move the active plan onto the template for the new risk level.

        The contact window restarts from now. max_attempts never drops below
        the attempts already made.
        """
        plan = self.get_active_plan(episode_id, for_update=True)
        if not plan:
            return None

        template = self.resolve_template(condition_code, risk_level)
        latest = self._latest_attempt(plan.id)
        attempts_made = latest.attempt_number if latest else 0

        now = clock.utcnow()
        plan.window_start_at = now + timedelta(hours=template.first_contact_delay_hours)
        plan.window_end_at = plan.window_start_at + timedelta(hours=template.contact_window_hours)
        plan.max_attempts = max(template.max_attempts, attempts_made)
        plan.preferred_channel = template.preferred_channel
        plan.fallback_channel = template.fallback_channel
        plan.attempt_interval_hours = template.attempt_interval_hours
        self.db.commit()
        self.db.refresh(plan)
        logger.info(f"Outreach plan {plan.id} moved to {condition_code}/{risk_level} template")
        return plan

    # --- Helpers ---

    def _lock_plan(self, plan_id: UUID) -> OutreachPlan:
        plan = self.db.query(OutreachPlan).filter(OutreachPlan.id == plan_id).with_for_update().first()
        if not plan:
            raise NotFoundError(f"Outreach plan {plan_id} not found")
        return plan

    def _latest_attempt(self, plan_id: UUID) -> OutreachAttempt | None:
        return (
            self.db.query(OutreachAttempt)
            .filter(OutreachAttempt.outreach_plan_id == plan_id)
            .order_by(OutreachAttempt.attempt_number.desc())
            .with_for_update()
            .first()
        )

    def _fail_plan(self, plan: OutreachPlan, reason: str, now: datetime) -> None:
        plan.status = PlanStatus.FAILED
        plan.failure_reason = reason
        plan.completed_at = now
        logger.warning(f"Outreach plan {plan.id} failed: {reason}")

    def _next_attempt_time(self, plan: OutreachPlan, now: datetime) -> datetime:
        candidate = max(now + timedelta(hours=plan.attempt_interval_hours), plan.window_start_at)
        if candidate > plan.window_end_at:
            return now
        return candidate

    def _next_channel(self, plan: OutreachPlan, previous_channel: str | None) -> str:
        if plan.fallback_channel and previous_channel == plan.preferred_channel:
            return plan.fallback_channel
        return plan.preferred_channel

    def _create_next_attempt(
        self,
        plan: OutreachPlan,
        previous: OutreachAttempt | None,
        scheduled_at: datetime,
    ) -> OutreachAttempt:
        attempt = OutreachAttempt(
            id=uuid4(),
            outreach_plan_id=plan.id,
            attempt_number=(previous.attempt_number if previous else 0) + 1,
            channel=self._next_channel(plan, previous.channel if previous else None),
            status=AttemptStatus.PENDING,
            scheduled_at=scheduled_at,
        )
        self.db.add(attempt)
        self.db.flush()
        self._schedule_attempt(attempt)
        logger.info(
            f"Scheduled attempt #{attempt.attempt_number} of plan {plan.id} "
            f"via {attempt.channel} at {scheduled_at}"
        )
        return attempt

    def _schedule_attempt(self, attempt: OutreachAttempt) -> None:
        self.bus.schedule(
            Events.OUTREACH_ATTEMPT_DUE,
            {"attempt_id": attempt.id},
            run_at=attempt.scheduled_at,
            idempotency_key=f"attempt_due:{attempt.id}:{attempt.scheduled_at.isoformat()}",
        )

    def _checkin_message(self, episode: Episode, plan: OutreachPlan, attempt: OutreachAttempt) -> str:
        template = CHECKIN_MESSAGES.get(plan.language_code, CHECKIN_MESSAGES[LanguageCode.EN])
        return template.format(
            first_name=episode.patient.first_name,
            link=f"{settings.CHECKIN_BASE_URL}/{attempt.id}",
        )
