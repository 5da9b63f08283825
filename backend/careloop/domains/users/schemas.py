from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class UserResponse(BaseModel):
    id: UUID
    email: str
    full_name: str
    phone: str | None
    roles: list[str]
    is_active: bool
    last_assigned_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class SetActiveRequest(BaseModel):
    is_active: bool
