import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from careloop.core.database import Base


class PlanStatus:
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    ACTIVE = [PENDING, IN_PROGRESS]
    TERMINAL = [COMPLETED, FAILED]


class AttemptStatus:
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    NO_CONTACT = "NO_CONTACT"
    DECLINED = "DECLINED"

    TERMINAL = [COMPLETED, FAILED, NO_CONTACT, DECLINED]


class PlanFailureReason:
    MAX_ATTEMPTS = "MAX_ATTEMPTS"
    WINDOW_CLOSED = "WINDOW_CLOSED"


class OutreachPlanTemplate(Base):
    """Outreach cadence for a (condition, risk level) pair."""
    __tablename__ = "outreach_plan_templates"
    __table_args__ = (
        Index(
            "uq_outreach_plan_templates_active_key",
            "condition_code",
            "risk_level",
            unique=True,
            postgresql_where=text("active"),
        ),
        {"schema": "outreach"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    condition_code: Mapped[str] = mapped_column(String(20), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    preferred_channel: Mapped[str] = mapped_column(String(20), nullable=False)
    fallback_channel: Mapped[str | None] = mapped_column(String(20))
    first_contact_delay_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    contact_window_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    attempt_interval_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutreachPlan(Base):
    __tablename__ = "outreach_plans"
    __table_args__ = (
        # At most one active plan per episode
        Index(
            "uq_outreach_plans_active_episode",
            "episode_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'IN_PROGRESS')"),
        ),
        {"schema": "outreach"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    episode_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    preferred_channel: Mapped[str] = mapped_column(String(20), nullable=False)
    fallback_channel: Mapped[str | None] = mapped_column(String(20))
    window_start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    attempt_interval_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    language_code: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PlanStatus.PENDING, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    attempts: Mapped[list["OutreachAttempt"]] = relationship(
        "OutreachAttempt", back_populates="plan", order_by="OutreachAttempt.attempt_number"
    )


class OutreachAttempt(Base):
    __tablename__ = "outreach_attempts"
    __table_args__ = (
        UniqueConstraint("outreach_plan_id", "attempt_number", name="uq_outreach_attempts_plan_number"),
        {"schema": "outreach"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    outreach_plan_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("outreach.outreach_plans.id"), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AttemptStatus.PENDING, index=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reason_code: Mapped[str | None] = mapped_column(String(50))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    plan: Mapped["OutreachPlan"] = relationship("OutreachPlan", back_populates="attempts")
