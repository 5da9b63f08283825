from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class OperatorAlertResponse(BaseModel):
    id: UUID
    kind: str
    message: str
    payload: dict[str, Any]
    acknowledged_at: datetime | None
    acknowledged_by: UUID | None
    created_at: datetime

    class Config:
        from_attributes = True
