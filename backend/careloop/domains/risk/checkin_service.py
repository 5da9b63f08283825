"""Check-in conversations: patient message in, AI turn, tool calls applied, reply out."""
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from careloop.core import clock
from careloop.core.errors import ConfigurationError, ConflictError, NotFoundError, ValidationError
from careloop.domains.jobs.events import AlertKinds, Events
from careloop.domains.jobs.service import EventBus, OperatorAlerts
from careloop.domains.outreach.models import AttemptStatus, OutreachAttempt, OutreachPlan
from careloop.domains.risk.ai_client import ConversationalAIClient, get_ai_client
from careloop.domains.risk.models import CheckInInteraction, InteractionStatus
from careloop.domains.risk.service import RiskDecisionAdapter, ToolOutcome
from careloop.domains.risk.tools import TOOL_SCHEMA, parse_tool_call

logger = logging.getLogger(__name__)


@dataclass
class CheckInReply:
    interaction_id: UUID
    status: str
    assistant_message: str
    questions: list[str] = field(default_factory=list)
    applied: list[ToolOutcome] = field(default_factory=list)
    rejected: list[dict[str, Any]] = field(default_factory=list)

    @property
    def escalated(self) -> bool:
        return any(outcome.escalated for outcome in self.applied)


class CheckInService:
    def __init__(self, db: Session, ai_client: ConversationalAIClient | None = None):
        self.db = db
        self.bus = EventBus(db)
        self.adapter = RiskDecisionAdapter(db)
        self.ai_client = ai_client or get_ai_client()

    def get_interaction(self, interaction_id: UUID) -> CheckInInteraction | None:
        return self.db.query(CheckInInteraction).filter(CheckInInteraction.id == interaction_id).first()

    def get_interaction_for_attempt(self, attempt_id: UUID) -> CheckInInteraction | None:
        return (
            self.db.query(CheckInInteraction)
            .filter(CheckInInteraction.outreach_attempt_id == attempt_id)
            .first()
        )

    def open_interaction(self, attempt_id: UUID) -> CheckInInteraction:
        """
        Open the conversation for an outreach attempt.

        Reaching the patient completes the attempt. Opening twice returns the
        same interaction.
        """
        existing = self.get_interaction_for_attempt(attempt_id)
        if existing:
            return existing

        attempt = self.db.query(OutreachAttempt).filter(OutreachAttempt.id == attempt_id).first()
        if not attempt:
            raise NotFoundError(f"Outreach attempt {attempt_id} not found")
        if attempt.status not in (AttemptStatus.IN_PROGRESS, AttemptStatus.PENDING):
            raise ConflictError(f"Outreach attempt {attempt_id} is {attempt.status}")
        plan = self.db.query(OutreachPlan).filter(OutreachPlan.id == attempt.outreach_plan_id).first()

        interaction = CheckInInteraction(
            id=uuid4(),
            episode_id=plan.episode_id,
            outreach_attempt_id=attempt.id,
            status=InteractionStatus.IN_PROGRESS,
            wellness_confirmation_count=0,
            confirmed_areas=[],
            started_at=clock.utcnow(),
        )
        try:
            self.db.add(interaction)
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_interaction_for_attempt(attempt_id)
            if existing:
                return existing
            raise

        self.bus.publish(
            Events.ATTEMPT_OUTCOME,
            {"attempt_id": attempt.id, "outcome": AttemptStatus.COMPLETED, "reason_code": "PATIENT_RESPONDED"},
            idempotency_key=f"attempt_reached:{attempt.id}",
        )
        self.db.commit()
        self.db.refresh(interaction)
        logger.info(f"Opened check-in {interaction.id} for attempt {attempt.id}")
        return interaction

    def handle_patient_message(self, interaction_id: UUID, utterance: str) -> CheckInReply:
        """
        Run one conversational turn.

        Malformed tool calls are logged and reported as rejected; the rest of
        the batch still applies. Missing protocol configuration fails the
        interaction, raises an operator alert and propagates.
        """
        if not utterance or not utterance.strip():
            raise ValidationError("Message must not be empty")

        interaction = self.get_interaction(interaction_id)
        if not interaction:
            raise NotFoundError(f"Check-in {interaction_id} not found")
        if interaction.status not in InteractionStatus.OPEN:
            raise ConflictError(f"Check-in {interaction_id} is {interaction.status}")

        try:
            context = self.adapter.build_decision_context(interaction.episode_id, interaction)
        except ConfigurationError as e:
            interaction.status = InteractionStatus.FAILED
            interaction.failure_reason = e.message
            interaction.completed_at = clock.utcnow()
            OperatorAlerts(self.db).raise_alert(
                AlertKinds.CONFIGURATION,
                e.message,
                {"interaction_id": interaction.id, "episode_id": interaction.episode_id},
                commit=False,
            )
            self.db.commit()
            raise

        response = self.ai_client.respond(context.to_payload(), utterance.strip(), TOOL_SCHEMA)

        reply = CheckInReply(
            interaction_id=interaction.id,
            status=interaction.status,
            assistant_message=response.assistant_message,
        )
        for raw in response.tool_calls:
            try:
                call = parse_tool_call(raw)
            except ValidationError as e:
                logger.warning(f"Rejected tool call in check-in {interaction.id}: {e.message}")
                reply.rejected.append({"tool_call": raw, "error": e.message})
                continue
            outcome = self.adapter.interpret_tool_call(interaction, call)
            reply.applied.append(outcome)
            reply.questions.extend(outcome.questions)

        self.db.commit()
        self.db.refresh(interaction)
        reply.status = interaction.status
        return reply
