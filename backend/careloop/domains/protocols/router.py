from fastapi import APIRouter, Query, status

from careloop.core.dependencies import CareAdminUser, ClinicalUser, DbSession
from careloop.domains.protocols.schemas import (
    ProtocolAssignmentRequest,
    ProtocolAssignmentResponse,
    ProtocolConfigPayload,
    ProtocolConfigResponse,
    ProtocolRuleCreate,
    ProtocolRuleResponse,
)
from careloop.domains.protocols.service import ProtocolService

router = APIRouter()


@router.get("/configs", response_model=list[ProtocolConfigResponse])
def list_configs(
    db: DbSession,
    current_user: ClinicalUser,
    condition_code: str | None = Query(None),
    include_inactive: bool = Query(False),
):
    return ProtocolService(db).list_configs(condition_code, include_inactive)


@router.post("/configs", response_model=ProtocolConfigResponse, status_code=status.HTTP_201_CREATED)
def upsert_config(payload: ProtocolConfigPayload, db: DbSession, current_user: CareAdminUser):
    """Activate a new config version; the previous active version is retired."""
    return ProtocolService(db).upsert_config(payload)


@router.get("/rules", response_model=list[ProtocolRuleResponse])
def list_rules(condition_code: str, db: DbSession, current_user: ClinicalUser):
    return ProtocolService(db).list_rules(condition_code)


@router.post("/rules", response_model=ProtocolRuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule(payload: ProtocolRuleCreate, db: DbSession, current_user: CareAdminUser):
    return ProtocolService(db).create_rule(payload.root)


@router.post("/assignments", response_model=ProtocolAssignmentResponse, status_code=status.HTTP_201_CREATED)
def assign_protocol(request: ProtocolAssignmentRequest, db: DbSession, current_user: CareAdminUser):
    return ProtocolService(db).assign_protocol(
        request.episode_id,
        request.condition_code,
        request.risk_level,
        assigned_by=current_user.sub,
    )
