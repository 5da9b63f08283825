from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from careloop.core.dependencies import CareAdminUser, ClinicalUser, DbSession
from careloop.domains.escalations.schemas import (
    AssignTaskRequest,
    CancelTaskRequest,
    EscalationTaskListResponse,
    EscalationTaskResponse,
    ManualTaskRequest,
    ResolveTaskRequest,
    ResolveTaskResponse,
)
from careloop.domains.escalations.service import EscalationTaskEngine

router = APIRouter()


@router.get("/tasks", response_model=EscalationTaskListResponse)
def list_tasks(
    db: DbSession,
    current_user: ClinicalUser,
    status: str | None = Query(None, description="OPEN, IN_PROGRESS, RESOLVED or CANCELLED"),
    episode_id: UUID | None = Query(None),
    assigned_to_me: bool = Query(False, description="Show only tasks assigned to current user"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
):
    """List escalation tasks ordered by SLA due time."""
    assigned_to = UUID(current_user.sub) if assigned_to_me else None
    items, total = EscalationTaskEngine(db).list_tasks(
        status=status,
        assigned_to=assigned_to,
        episode_id=episode_id,
        skip=skip,
        limit=limit,
    )
    return EscalationTaskListResponse(items=items, total=total, skip=skip, limit=limit)


@router.post("/tasks", response_model=EscalationTaskResponse, status_code=status.HTTP_201_CREATED)
def create_manual_task(request: ManualTaskRequest, db: DbSession, current_user: ClinicalUser):
    return EscalationTaskEngine(db).create_task(
        request.episode_id,
        request.severity,
        request.reason_codes,
        manual=True,
    )


@router.get("/tasks/{task_id}", response_model=EscalationTaskResponse)
def get_task(task_id: UUID, db: DbSession, current_user: ClinicalUser):
    task = EscalationTaskEngine(db).get_task(task_id)
    if not task:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task


@router.post("/tasks/{task_id}/assign", response_model=EscalationTaskResponse)
def assign_task(
    task_id: UUID,
    db: DbSession,
    current_user: CareAdminUser,
    request: AssignTaskRequest | None = None,
):
    """
    Assign a task.

    With a user_id the task goes to that user; without one the next nurse in
    round-robin order is chosen.
    """
    engine = EscalationTaskEngine(db)
    if request and request.user_id:
        return engine.assign_to(task_id, request.user_id)

    engine.assign_round_robin(task_id)
    return engine.get_task(task_id)


@router.post("/tasks/{task_id}/pickup", response_model=EscalationTaskResponse)
def pick_up_task(task_id: UUID, db: DbSession, current_user: ClinicalUser):
    return EscalationTaskEngine(db).pick_up(task_id, UUID(current_user.sub))


@router.post("/tasks/{task_id}/resolve", response_model=ResolveTaskResponse)
def resolve_task(task_id: UUID, request: ResolveTaskRequest, db: DbSession, current_user: ClinicalUser):
    task, follow_up = EscalationTaskEngine(db).resolve(
        task_id,
        request.outcome_code,
        request.notes,
        resolved_by=UUID(current_user.sub),
    )
    return ResolveTaskResponse(task=task, follow_up_task=follow_up)


@router.post("/tasks/{task_id}/cancel", response_model=EscalationTaskResponse)
def cancel_task(task_id: UUID, request: CancelTaskRequest, db: DbSession, current_user: CareAdminUser):
    return EscalationTaskEngine(db).cancel(task_id, request.reason)
