import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, func, text, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from careloop.core.database import Base

CURRENT_SCHEMA_VERSION = 1


class RuleType:
    RED_FLAG = "RED_FLAG"
    CLOSURE = "CLOSURE"
    QUESTION = "QUESTION"


class ProtocolConfig(Base):
    """Decision thresholds for one (condition, risk level) pair."""
    __tablename__ = "protocol_configs"
    __table_args__ = (
        # At most one active config per key
        Index(
            "uq_protocol_configs_active_key",
            "condition_code",
            "risk_level",
            unique=True,
            postgresql_where=text("active"),
        ),
        {"schema": "protocols"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    condition_code: Mapped[str] = mapped_column(String(20), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=CURRENT_SCHEMA_VERSION)
    critical_confidence_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    low_confidence_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.6)
    vague_symptoms: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    enable_sentiment_boost: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    distressed_severity_upgrade: Mapped[str | None] = mapped_column(String(20))
    route_medication_questions_to_info: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    route_general_questions_to_info: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    detect_multiple_symptoms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ProtocolRule(Base):
    """A red-flag, closure or question rule from a condition's content pack."""
    __tablename__ = "protocol_rules"
    __table_args__ = (
        Index("ix_protocol_rules_condition_active", "condition_code", "active"),
        {"schema": "protocols"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    condition_code: Mapped[str] = mapped_column(String(20), nullable=False)
    rule_code: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(20), nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=CURRENT_SCHEMA_VERSION)
    severity: Mapped[str | None] = mapped_column(String(20))  # RED_FLAG rules only
    text_patterns: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    action_type: Mapped[str | None] = mapped_column(String(50))
    message: Mapped[str | None] = mapped_column(Text)
    # Variant-specific fields that have no column of their own
    extra: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProtocolAssignment(Base):
    """Which protocol (condition, risk level) an episode currently follows."""
    __tablename__ = "protocol_assignments"
    __table_args__ = (
        # Exactly one active assignment per episode
        Index(
            "uq_protocol_assignments_active_episode",
            "episode_id",
            unique=True,
            postgresql_where=text("is_active"),
        ),
        {"schema": "protocols"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    episode_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    condition_code: Mapped[str] = mapped_column(String(20), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_by: Mapped[str | None] = mapped_column(String(64))
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
