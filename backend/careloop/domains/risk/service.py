"""
Risk Decision Adapter.

Builds the grounding context for the conversational AI from the episode's
protocol, and turns the AI's tool calls into domain effects: risk signals,
escalation tasks, interaction state and automatic risk upgrades.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from careloop.core import clock
from careloop.core.config import settings
from careloop.core.errors import ConfigurationError, NotFoundError, ValidationError
from careloop.domains.episodes.models import SYSTEM_AUTO, Episode, RiskLevel, RiskUpgrade
from careloop.domains.episodes.service import EpisodeService
from careloop.domains.escalations.models import EscalationTask, Severity
from careloop.domains.escalations.service import EscalationTaskEngine
from careloop.domains.jobs.events import Events
from careloop.domains.jobs.service import EventBus
from careloop.domains.protocols.models import ProtocolAssignment, ProtocolConfig, ProtocolRule
from careloop.domains.protocols.service import ProtocolService
from careloop.domains.risk.models import CheckInInteraction, InteractionStatus, RiskSignal
from careloop.domains.risk.tools import (
    TOOL_NAMES,
    AskMore,
    CountWellnessConfirmation,
    HandoffToNurse,
    LogCheckin,
    RaiseFlag,
)

logger = logging.getLogger(__name__)

# Which rule severities are shown to the AI for an episode at each risk level
SEVERITY_FILTERS: dict[str, frozenset[str]] = {
    RiskLevel.HIGH: frozenset({Severity.CRITICAL, Severity.HIGH, Severity.MODERATE, Severity.LOW}),
    RiskLevel.MEDIUM: frozenset({Severity.CRITICAL, Severity.HIGH, Severity.MODERATE}),
    RiskLevel.LOW: frozenset({Severity.CRITICAL, Severity.HIGH}),
}

UPGRADE_SEVERITIES = [Severity.HIGH, Severity.CRITICAL]
HANDOFF_REASON = "NURSE_HANDOFF"


def get_severity_filter(risk_level: str) -> frozenset[str]:
    if risk_level not in SEVERITY_FILTERS:
        raise ValidationError(f"Unknown risk level {risk_level}")
    return SEVERITY_FILTERS[risk_level]


@dataclass
class DecisionContext:
    episode: Episode
    assignment: ProtocolAssignment
    config: ProtocolConfig
    rules: list[ProtocolRule]
    severity_filter: frozenset[str]
    wellness_confirmation_count: int = 0
    confirmed_areas: list[str] = field(default_factory=list)
    tool_names: list[str] = field(default_factory=lambda: list(TOOL_NAMES))

    def to_payload(self) -> dict[str, Any]:
        """Wire form sent to the conversational AI service."""
        return {
            "episode": {
                "id": str(self.episode.id),
                "conditionCode": self.episode.condition_code,
                "riskLevel": self.episode.risk_level,
                "dischargeAt": self.episode.discharge_at.isoformat(),
            },
            "protocol": {
                "conditionCode": self.assignment.condition_code,
                "riskLevel": self.assignment.risk_level,
                "criticalConfidenceThreshold": self.config.critical_confidence_threshold,
                "lowConfidenceThreshold": self.config.low_confidence_threshold,
                "vagueSymptoms": list(self.config.vague_symptoms or []),
                "enableSentimentBoost": self.config.enable_sentiment_boost,
                "distressedSeverityUpgrade": self.config.distressed_severity_upgrade,
                "routeMedicationQuestionsToInfo": self.config.route_medication_questions_to_info,
                "routeGeneralQuestionsToInfo": self.config.route_general_questions_to_info,
                "detectMultipleSymptoms": self.config.detect_multiple_symptoms,
            },
            "rules": [
                {
                    "ruleCode": rule.rule_code,
                    "ruleType": rule.rule_type,
                    "severity": rule.severity,
                    "textPatterns": list(rule.text_patterns or []),
                    "actionType": rule.action_type,
                    "message": rule.message,
                }
                for rule in self.rules
            ],
            "severityFilter": sorted(self.severity_filter),
            "wellnessConfirmationCount": self.wellness_confirmation_count,
            "confirmedAreas": list(self.confirmed_areas),
            "tools": list(self.tool_names),
        }


@dataclass
class ToolOutcome:
    """What interpreting one tool call did."""
    name: str
    escalated: bool = False
    signal_id: UUID | None = None
    questions: list[str] = field(default_factory=list)


class RiskDecisionAdapter:
    def __init__(self, db: Session):
        self.db = db
        self.bus = EventBus(db)
        self.protocols = ProtocolService(db)
        self._handlers = {
            RaiseFlag: self._handle_raise_flag,
            HandoffToNurse: self._handle_handoff,
            AskMore: self._handle_ask_more,
            LogCheckin: self._handle_log_checkin,
            CountWellnessConfirmation: self._handle_wellness,
        }

    # --- Context ---

    def build_decision_context(
        self,
        episode_id: UUID,
        interaction: CheckInInteraction | None = None,
    ) -> DecisionContext:
        """
        Assemble the grounding context for one AI turn.

        Raises NotFoundError for an unknown episode and ConfigurationError
        when the episode has no active protocol or the protocol has no config.
        """
        episode = self.db.query(Episode).filter(Episode.id == episode_id).first()
        if not episode:
            raise NotFoundError(f"Episode {episode_id} not found")

        assignment = self.protocols.get_active_assignment(episode_id)
        if not assignment:
            raise ConfigurationError(f"Episode {episode_id} has no active protocol assignment")

        config = self.protocols.require_config(assignment.condition_code, assignment.risk_level)
        severity_filter = get_severity_filter(assignment.risk_level)
        rules = self.protocols.list_rules(assignment.condition_code, set(severity_filter))

        return DecisionContext(
            episode=episode,
            assignment=assignment,
            config=config,
            rules=rules,
            severity_filter=severity_filter,
            wellness_confirmation_count=interaction.wellness_confirmation_count if interaction else 0,
            confirmed_areas=list(interaction.confirmed_areas or []) if interaction else [],
        )

    # --- Tool calls ---

    def interpret_tool_call(self, interaction: CheckInInteraction, call) -> ToolOutcome:
        """
        Apply one parsed tool call to the interaction.

        Changes are flushed, not committed; the caller owns the transaction.
        """
        handler = self._handlers.get(type(call))
        if handler is None:
            raise ValidationError(f"Unsupported tool call {type(call).__name__}")
        return handler(interaction, call)

    def _handle_raise_flag(self, interaction: CheckInInteraction, call: RaiseFlag) -> ToolOutcome:
        signal = self._record_signal(interaction, call.flag_type, call.severity, call.rationale, is_handoff=False)
        escalated = call.severity in Severity.ESCALATING
        if escalated:
            interaction.status = InteractionStatus.ESCALATED
        return ToolOutcome(name=call.name, escalated=escalated, signal_id=signal.id)

    def _handle_handoff(self, interaction: CheckInInteraction, call: HandoffToNurse) -> ToolOutcome:
        signal = self._record_signal(interaction, call.flag_type, Severity.CRITICAL, call.reason, is_handoff=True)
        interaction.status = InteractionStatus.ESCALATED
        return ToolOutcome(name=call.name, escalated=True, signal_id=signal.id)

    def _handle_ask_more(self, interaction: CheckInInteraction, call: AskMore) -> ToolOutcome:
        return ToolOutcome(name=call.name, questions=list(call.questions))

    def _handle_log_checkin(self, interaction: CheckInInteraction, call: LogCheckin) -> ToolOutcome:
        interaction.result = call.result
        if call.summary:
            interaction.summary = call.summary
        if interaction.status == InteractionStatus.IN_PROGRESS:
            interaction.status = InteractionStatus.COMPLETED
            interaction.completed_at = clock.utcnow()
        return ToolOutcome(name=call.name)

    def _handle_wellness(self, interaction: CheckInInteraction, call: CountWellnessConfirmation) -> ToolOutcome:
        if call.is_confirmation:
            interaction.wellness_confirmation_count = (interaction.wellness_confirmation_count or 0) + 1
            areas = list(interaction.confirmed_areas or [])
            if call.area_confirmed and call.area_confirmed not in areas:
                # Reassign so the JSON column change is detected
                interaction.confirmed_areas = [*areas, call.area_confirmed]
        return ToolOutcome(name=call.name)

    def _record_signal(
        self,
        interaction: CheckInInteraction,
        flag_type: str,
        severity: str,
        rationale: str,
        is_handoff: bool,
    ) -> RiskSignal:
        dedupe_key = f"{interaction.id}:{'handoff' if is_handoff else 'flag'}:{flag_type}:{severity}"
        existing = self.db.query(RiskSignal).filter(RiskSignal.dedupe_key == dedupe_key).first()
        if existing:
            return existing

        signal = RiskSignal(
            id=uuid4(),
            episode_id=interaction.episode_id,
            interaction_id=interaction.id,
            flag_type=flag_type,
            severity=severity,
            rationale=rationale,
            is_handoff=is_handoff,
            dedupe_key=dedupe_key,
            created_at=clock.utcnow(),
        )
        self.db.add(signal)
        self.db.flush()
        self.bus.publish(Events.RISK_SIGNAL, {"signal_id": signal.id}, idempotency_key=f"risk_signal:{signal.id}")
        logger.info(f"Risk signal {flag_type}/{severity} for episode {interaction.episode_id} (handoff={is_handoff})")
        return signal

    # --- Signal handling ---

    def handle_risk_signal(self, signal_id: UUID) -> EscalationTask | None:
        """
        Event handler for risk.signal.

        Escalating severities and every handoff open a task; afterwards the
        episode is checked for an automatic risk upgrade.
        """
        signal = self.db.query(RiskSignal).filter(RiskSignal.id == signal_id).first()
        if not signal:
            raise NotFoundError(f"Risk signal {signal_id} not found")

        task = None
        if signal.is_handoff or signal.severity in Severity.ESCALATING:
            reason_codes = [signal.flag_type, HANDOFF_REASON] if signal.is_handoff else [signal.flag_type]
            task = EscalationTaskEngine(self.db).create_task(
                signal.episode_id,
                signal.severity,
                reason_codes,
                interaction_id=signal.interaction_id,
                dedupe_key=f"signal:{signal.id}",
            )

        self.evaluate_risk_upgrade(signal.episode_id)
        return task

    def evaluate_risk_upgrade(self, episode_id: UUID) -> RiskUpgrade | None:
        """
        Raise the episode one level when enough HIGH/CRITICAL signals arrived.

        Only signals newer than both the lookback window and the previous
        upgrade count, so one burst of signals upgrades at most once. The
        episode row stays locked from the count to the upgrade, so concurrent
        evaluations see each other's upgrade.
        """
        episodes = EpisodeService(self.db)
        episode = episodes.lock_episode(episode_id)
        if episode.risk_level == RiskLevel.HIGH:
            return None

        since = clock.utcnow() - timedelta(hours=settings.RISK_UPGRADE_LOOKBACK_HOURS)
        last_upgrade = episodes.get_last_upgrade(episode_id)
        if last_upgrade and last_upgrade.upgraded_at > since:
            since = last_upgrade.upgraded_at

        count = (
            self.db.query(RiskSignal)
            .filter(
                RiskSignal.episode_id == episode_id,
                RiskSignal.severity.in_(UPGRADE_SEVERITIES),
                RiskSignal.created_at > since,
            )
            .count()
        )
        if count < settings.RISK_UPGRADE_SIGNAL_THRESHOLD:
            return None

        new_level = RiskLevel.ORDER[RiskLevel.rank(episode.risk_level) + 1]
        logger.info(f"Auto-upgrading episode {episode_id} to {new_level} after {count} high-severity signals")
        return episodes.upgrade_risk_level(
            episode_id,
            new_level,
            f"{count} HIGH/CRITICAL risk signals within {settings.RISK_UPGRADE_LOOKBACK_HOURS}h",
            upgraded_by=SYSTEM_AUTO,
        )
