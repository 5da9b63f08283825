import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from careloop.core.database import Base


class InteractionStatus:
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ESCALATED = "ESCALATED"
    FAILED = "FAILED"

    # Still accepting patient messages
    OPEN = [IN_PROGRESS, ESCALATED]


class CheckInInteraction(Base):
    """One patient conversation opened from an outreach attempt."""
    __tablename__ = "checkin_interactions"
    __table_args__ = {"schema": "risk"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    episode_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    outreach_attempt_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=InteractionStatus.IN_PROGRESS, index=True)
    wellness_confirmation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confirmed_areas: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    result: Mapped[str | None] = mapped_column(String(20))  # ASK_MORE, FLAG, CLOSE
    summary: Mapped[str | None] = mapped_column(Text)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RiskSignal(Base):
    """Append-only record of a flag raised during a check-in."""
    __tablename__ = "risk_signals"
    __table_args__ = {"schema": "risk"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    episode_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    interaction_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    flag_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    is_handoff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
