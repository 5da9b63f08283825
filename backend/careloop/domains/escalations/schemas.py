from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


class ManualTaskRequest(BaseModel):
    episode_id: UUID
    severity: Literal["LOW", "MODERATE", "HIGH", "CRITICAL"]
    reason_codes: list[str] = Field(min_length=1)


class AssignTaskRequest(BaseModel):
    user_id: UUID | None = None


class ResolveTaskRequest(BaseModel):
    outcome_code: Literal[
        "EDUCATION_ONLY",
        "MED_ADJUST",
        "TELEVISIT_SCHEDULED",
        "ED_SENT",
        "NO_CONTACT",
        "FALSE_POSITIVE",
        "CONTACTED",
    ]
    notes: str | None = None


class CancelTaskRequest(BaseModel):
    reason: str = Field(min_length=1)


class EscalationTaskResponse(BaseModel):
    id: UUID
    episode_id: UUID
    source_attempt_id: UUID | None
    interaction_id: UUID | None
    parent_task_id: UUID | None
    severity: str
    priority: str
    reason_codes: list[str]
    sla_minutes: int
    sla_due_at: datetime
    status: str
    assigned_to_user_id: UUID | None
    assigned_at: datetime | None
    picked_up_at: datetime | None
    resolved_at: datetime | None
    resolved_by_user_id: UUID | None
    resolution_outcome_code: str | None
    resolution_notes: str | None
    warning_sent_at: datetime | None
    breach_sent_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class ResolveTaskResponse(BaseModel):
    task: EscalationTaskResponse
    follow_up_task: EscalationTaskResponse | None = None


class EscalationTaskListResponse(BaseModel):
    items: list[EscalationTaskResponse]
    total: int
    skip: int
    limit: int
