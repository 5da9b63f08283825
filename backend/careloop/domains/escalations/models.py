import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, func, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from careloop.core.database import Base


class Severity:
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    ALL = [LOW, MODERATE, HIGH, CRITICAL]
    # Severities that open an escalation task on their own
    ESCALATING = [MODERATE, HIGH, CRITICAL]


class Priority:
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TaskStatus:
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"

    ACTIVE = [OPEN, IN_PROGRESS]
    TERMINAL = [RESOLVED, CANCELLED]


class ResolutionOutcome:
    EDUCATION_ONLY = "EDUCATION_ONLY"
    MED_ADJUST = "MED_ADJUST"
    TELEVISIT_SCHEDULED = "TELEVISIT_SCHEDULED"
    ED_SENT = "ED_SENT"
    NO_CONTACT = "NO_CONTACT"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    CONTACTED = "CONTACTED"

    ALL = [EDUCATION_ONLY, MED_ADJUST, TELEVISIT_SCHEDULED, ED_SENT, NO_CONTACT, FALSE_POSITIVE, CONTACTED]


SLA_MINUTES = {
    Severity.CRITICAL: 30,
    Severity.HIGH: 120,
    Severity.MODERATE: 240,
    Severity.LOW: 480,
}

FOLLOW_UP_SLA_MINUTES = 7 * 24 * 60

SEVERITY_PRIORITY = {
    Severity.CRITICAL: Priority.URGENT,
    Severity.HIGH: Priority.HIGH,
    Severity.MODERATE: Priority.NORMAL,
    Severity.LOW: Priority.LOW,
}


class EscalationTask(Base):
    """Nurse work item with an SLA deadline."""
    __tablename__ = "escalation_tasks"
    __table_args__ = {"schema": "escalations"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    episode_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    source_attempt_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    interaction_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    parent_task_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    reason_codes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    sla_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    sla_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TaskStatus.OPEN, index=True)
    assigned_to_user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    picked_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by_user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    resolution_outcome_code: Mapped[str | None] = mapped_column(String(50))
    resolution_notes: Mapped[str | None] = mapped_column(Text)
    warning_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    breach_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dedupe_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
