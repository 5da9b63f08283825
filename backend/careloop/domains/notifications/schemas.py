from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel


class ProviderCallback(BaseModel):
    provider_message_id: str
    status: Literal["DELIVERED", "FAILED"]
    failure_reason: str | None = None


class NotificationLogResponse(BaseModel):
    id: UUID
    notification_type: str
    channel: str
    status: str
    recipient_address: str
    recipient_user_id: UUID | None
    recipient_patient_id: UUID | None
    retry_count: int
    provider_message_id: str | None
    failure_reason: str | None
    task_id: UUID | None
    episode_id: UUID | None
    outreach_attempt_id: UUID | None
    sent_at: datetime | None
    delivered_at: datetime | None
    failed_at: datetime | None

    class Config:
        from_attributes = True
