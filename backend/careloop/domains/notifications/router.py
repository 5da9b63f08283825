from uuid import UUID

from fastapi import APIRouter, Header, HTTPException, Query, status

from careloop.core.config import settings
from careloop.core.dependencies import ClinicalUser, DbSession
from careloop.domains.notifications.schemas import NotificationLogResponse, ProviderCallback
from careloop.domains.notifications.service import NotificationDispatcher

router = APIRouter()


@router.post("/callbacks", response_model=NotificationLogResponse)
def provider_callback(
    callback: ProviderCallback,
    db: DbSession,
    x_webhook_token: str | None = Header(None),
):
    """Delivery report webhook called by the messaging gateway."""
    if x_webhook_token != settings.PROVIDER_WEBHOOK_TOKEN:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")

    return NotificationDispatcher(db).handle_provider_callback(
        callback.provider_message_id,
        callback.status,
        callback.failure_reason,
    )


@router.get("/logs", response_model=list[NotificationLogResponse])
def list_logs(
    db: DbSession,
    current_user: ClinicalUser,
    task_id: UUID | None = Query(None),
    episode_id: UUID | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    return NotificationDispatcher(db).list_logs(task_id=task_id, episode_id=episode_id, status=status, limit=limit)
