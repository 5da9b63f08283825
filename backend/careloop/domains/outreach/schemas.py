from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel


class CreatePlanRequest(BaseModel):
    episode_id: UUID


class AttemptOutcomeRequest(BaseModel):
    outcome: Literal["COMPLETED", "FAILED", "NO_CONTACT", "DECLINED"]
    reason_code: str | None = None


class OutreachAttemptResponse(BaseModel):
    id: UUID
    outreach_plan_id: UUID
    attempt_number: int
    channel: str
    status: str
    scheduled_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    reason_code: str | None

    class Config:
        from_attributes = True


class OutreachPlanResponse(BaseModel):
    id: UUID
    episode_id: UUID
    preferred_channel: str
    fallback_channel: str | None
    window_start_at: datetime
    window_end_at: datetime
    max_attempts: int
    attempt_interval_hours: int
    timezone: str
    language_code: str
    status: str
    completed_at: datetime | None
    failure_reason: str | None
    attempts: list[OutreachAttemptResponse] = []

    class Config:
        from_attributes = True
