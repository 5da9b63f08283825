from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from careloop.core.dependencies import CareAdminUser, ClinicalUser, DbSession
from careloop.domains.episodes.schemas import (
    EpisodeEnrollRequest,
    EpisodeResponse,
    RiskUpgradeRequest,
    RiskUpgradeResponse,
)
from careloop.domains.episodes.service import EpisodeService
from careloop.domains.risk.schemas import DecisionContextResponse
from careloop.domains.risk.service import RiskDecisionAdapter

router = APIRouter()


@router.post("", response_model=EpisodeResponse, status_code=status.HTTP_201_CREATED)
def enroll_episode(request: EpisodeEnrollRequest, db: DbSession, current_user: CareAdminUser):
    """
    Enroll a discharged patient.

    Creates the episode and its protocol assignment; outreach planning starts
    asynchronously from the patient.discharged event.
    """
    return EpisodeService(db).enroll(request, enrolled_by=current_user.sub)


@router.get("/{episode_id}", response_model=EpisodeResponse)
def get_episode(episode_id: UUID, db: DbSession, current_user: ClinicalUser):
    episode = EpisodeService(db).get_episode(episode_id)
    if not episode:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Episode not found")
    return episode


@router.get("/{episode_id}/risk-upgrades", response_model=list[RiskUpgradeResponse])
def list_risk_upgrades(episode_id: UUID, db: DbSession, current_user: ClinicalUser):
    return EpisodeService(db).list_risk_upgrades(episode_id)


@router.post("/{episode_id}/risk-upgrades", response_model=RiskUpgradeResponse, status_code=status.HTTP_201_CREATED)
def upgrade_risk(episode_id: UUID, request: RiskUpgradeRequest, db: DbSession, current_user: ClinicalUser):
    return EpisodeService(db).upgrade_risk_level(
        episode_id,
        request.new_risk_level,
        request.reason,
        upgraded_by=current_user.sub,
    )


@router.get("/{episode_id}/decision-context", response_model=DecisionContextResponse)
def get_decision_context(episode_id: UUID, db: DbSession, current_user: ClinicalUser):
    """Preview the grounding context the conversational AI receives for this episode."""
    context = RiskDecisionAdapter(db).build_decision_context(episode_id)
    return DecisionContextResponse(
        episode_id=context.episode.id,
        condition_code=context.assignment.condition_code,
        risk_level=context.assignment.risk_level,
        severity_filter=sorted(context.severity_filter),
        rule_codes=[rule.rule_code for rule in context.rules],
        tools=context.tool_names,
        context=context.to_payload(),
    )
