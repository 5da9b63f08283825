"""Protocol Rule Store: configs, content-pack rules and episode assignments."""
import logging
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from careloop.core import clock
from careloop.core.errors import ConcurrencyError, ConfigurationError
from careloop.domains.protocols.models import ProtocolAssignment, ProtocolConfig, ProtocolRule
from careloop.domains.protocols.schemas import ProtocolConfigPayload, RedFlagRule

logger = logging.getLogger(__name__)


class ProtocolService:
    def __init__(self, db: Session):
        self.db = db

    # --- Configs ---

    def get_active_config(self, condition_code: str, risk_level: str) -> ProtocolConfig | None:
        return (
            self.db.query(ProtocolConfig)
            .filter(
                ProtocolConfig.condition_code == condition_code,
                ProtocolConfig.risk_level == risk_level,
                ProtocolConfig.active.is_(True),
            )
            .first()
        )

    def require_config(self, condition_code: str, risk_level: str) -> ProtocolConfig:
        config = self.get_active_config(condition_code, risk_level)
        if not config:
            raise ConfigurationError(f"No active protocol config for {condition_code}/{risk_level}")
        return config

    def list_configs(self, condition_code: str | None = None, include_inactive: bool = False) -> list[ProtocolConfig]:
        query = self.db.query(ProtocolConfig)
        if condition_code:
            query = query.filter(ProtocolConfig.condition_code == condition_code)
        if not include_inactive:
            query = query.filter(ProtocolConfig.active.is_(True))
        return query.order_by(ProtocolConfig.condition_code, ProtocolConfig.risk_level).all()

    def upsert_config(self, payload: ProtocolConfigPayload) -> ProtocolConfig:
        """Activate a new config version for the key, retiring the current one."""
        current = (
            self.db.query(ProtocolConfig)
            .filter(
                ProtocolConfig.condition_code == payload.condition_code,
                ProtocolConfig.risk_level == payload.risk_level,
                ProtocolConfig.active.is_(True),
            )
            .with_for_update()
            .all()
        )
        for config in current:
            config.active = False
        self.db.flush()

        config = ProtocolConfig(id=uuid4(), active=True, **payload.model_dump())
        self.db.add(config)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConcurrencyError(
                f"Concurrent update of protocol config {payload.condition_code}/{payload.risk_level}"
            ) from e
        self.db.refresh(config)
        logger.info(f"Activated protocol config {config.id} for {config.condition_code}/{config.risk_level}")
        return config

    # --- Rules ---

    def list_rules(self, condition_code: str, severities: set[str] | None = None) -> list[ProtocolRule]:
        """
        Active rules for a condition.

        When ``severities`` is given, red-flag rules outside it are dropped.
        Rules without a severity (closure, question) are always kept.
        """
        rules = (
            self.db.query(ProtocolRule)
            .filter(ProtocolRule.condition_code == condition_code, ProtocolRule.active.is_(True))
            .order_by(ProtocolRule.rule_code)
            .all()
        )
        if severities is None:
            return rules
        return [r for r in rules if r.severity is None or r.severity in severities]

    def create_rule(self, payload) -> ProtocolRule:
        data = payload.model_dump()
        columns = {
            "condition_code", "rule_code", "rule_type", "schema_version",
            "text_patterns", "action_type", "message",
        }
        rule = ProtocolRule(
            id=uuid4(),
            severity=payload.severity if isinstance(payload, RedFlagRule) else None,
            extra={k: v for k, v in data.items() if k not in columns and k != "severity"},
            active=True,
            **{k: v for k, v in data.items() if k in columns},
        )
        self.db.add(rule)
        self.db.commit()
        self.db.refresh(rule)
        return rule

    # --- Assignments ---

    def get_active_assignment(self, episode_id: UUID) -> ProtocolAssignment | None:
        return (
            self.db.query(ProtocolAssignment)
            .filter(ProtocolAssignment.episode_id == episode_id, ProtocolAssignment.is_active.is_(True))
            .first()
        )

    def assign_protocol(
        self,
        episode_id: UUID,
        condition_code: str,
        risk_level: str,
        assigned_by: str | None = None,
        commit: bool = True,
    ) -> ProtocolAssignment:
        """
        Make (condition, risk) the episode's active protocol.

        Every previously active assignment is deactivated first, so exactly
        one active row remains. A concurrent assigner that slips past the row
        lock trips the partial unique index and surfaces as ConcurrencyError.
        """
        now = clock.utcnow()
        previous = (
            self.db.query(ProtocolAssignment)
            .filter(ProtocolAssignment.episode_id == episode_id, ProtocolAssignment.is_active.is_(True))
            .with_for_update()
            .all()
        )
        for assignment in previous:
            assignment.is_active = False
            assignment.deactivated_at = now

        assignment = ProtocolAssignment(
            id=uuid4(),
            episode_id=episode_id,
            condition_code=condition_code,
            risk_level=risk_level,
            is_active=True,
            assigned_by=assigned_by,
            assigned_at=now,
        )
        try:
            self.db.flush()
            self.db.add(assignment)
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise ConcurrencyError(f"Concurrent protocol assignment for episode {episode_id}") from e

        logger.info(
            f"Episode {episode_id} assigned protocol {condition_code}/{risk_level} "
            f"(deactivated {len(previous)})"
        )
        if commit:
            self.db.commit()
            self.db.refresh(assignment)
        return assignment
