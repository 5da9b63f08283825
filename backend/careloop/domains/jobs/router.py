from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from careloop.core.dependencies import AdminUser, DbSession
from careloop.domains.jobs.schemas import OperatorAlertResponse
from careloop.domains.jobs.service import OperatorAlerts

router = APIRouter()


@router.get("/alerts", response_model=list[OperatorAlertResponse])
def list_open_alerts(
    db: DbSession,
    current_user: AdminUser,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    return OperatorAlerts(db).list_open(skip=skip, limit=limit)


@router.post("/alerts/{alert_id}/acknowledge", response_model=OperatorAlertResponse)
def acknowledge_alert(alert_id: UUID, db: DbSession, current_user: AdminUser):
    alert = OperatorAlerts(db).acknowledge(alert_id, UUID(current_user.sub))
    if not alert:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return alert
