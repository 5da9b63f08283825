from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class CheckInInteractionResponse(BaseModel):
    id: UUID
    episode_id: UUID
    outreach_attempt_id: UUID | None
    status: str
    wellness_confirmation_count: int
    confirmed_areas: list[str]
    result: str | None
    summary: str | None
    started_at: datetime
    completed_at: datetime | None

    class Config:
        from_attributes = True


class PatientMessageRequest(BaseModel):
    message: str = Field(min_length=1)


class ToolOutcomeResponse(BaseModel):
    name: str
    escalated: bool
    signal_id: UUID | None
    questions: list[str]

    class Config:
        from_attributes = True


class CheckInReplyResponse(BaseModel):
    interaction_id: UUID
    status: str
    assistant_message: str
    questions: list[str]
    escalated: bool
    applied: list[ToolOutcomeResponse]
    rejected: list[dict[str, Any]]

    class Config:
        from_attributes = True


class DecisionContextResponse(BaseModel):
    episode_id: UUID
    condition_code: str
    risk_level: str
    severity_filter: list[str]
    rule_codes: list[str]
    tools: list[str]
    context: dict[str, Any]
