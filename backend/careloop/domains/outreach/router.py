from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from careloop.core.dependencies import CareAdminUser, ClinicalUser, DbSession
from careloop.domains.outreach.schemas import (
    AttemptOutcomeRequest,
    CreatePlanRequest,
    OutreachAttemptResponse,
    OutreachPlanResponse,
)
from careloop.domains.outreach.service import OutreachPlanManager

router = APIRouter()


@router.post("/plans", response_model=OutreachPlanResponse, status_code=status.HTTP_201_CREATED)
def create_plan(request: CreatePlanRequest, db: DbSession, current_user: CareAdminUser):
    """Create the episode's outreach plan, or return the active one."""
    return OutreachPlanManager(db).create_plan(request.episode_id)


@router.get("/plans/{episode_id}", response_model=OutreachPlanResponse)
def get_plan_for_episode(episode_id: UUID, db: DbSession, current_user: ClinicalUser):
    """Active plan for the episode, falling back to the most recent one."""
    manager = OutreachPlanManager(db)
    plan = manager.get_active_plan(episode_id) or manager.get_latest_plan(episode_id)
    if not plan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Outreach plan not found")
    return plan


@router.post("/episodes/{episode_id}/trigger", response_model=OutreachAttemptResponse)
def trigger_outreach_now(episode_id: UUID, db: DbSession, current_user: CareAdminUser):
    """Contact the patient now, outside the scheduled window."""
    return OutreachPlanManager(db).trigger_now(episode_id)


@router.post("/attempts/{attempt_id}/outcome", response_model=OutreachAttemptResponse)
def record_attempt_outcome(
    attempt_id: UUID,
    request: AttemptOutcomeRequest,
    db: DbSession,
    current_user: ClinicalUser,
):
    return OutreachPlanManager(db).record_attempt_outcome(attempt_id, request.outcome, request.reason_code)
