from uuid import UUID

from fastapi import APIRouter, status

from careloop.core.dependencies import DbSession
from careloop.domains.risk.checkin_service import CheckInService
from careloop.domains.risk.schemas import (
    CheckInInteractionResponse,
    CheckInReplyResponse,
    PatientMessageRequest,
    ToolOutcomeResponse,
)

router = APIRouter()

# Patient-facing: the attempt id in the check-in link is the credential.


@router.post("/attempts/{attempt_id}", response_model=CheckInInteractionResponse, status_code=status.HTTP_201_CREATED)
def open_checkin(attempt_id: UUID, db: DbSession):
    return CheckInService(db).open_interaction(attempt_id)


@router.post("/{interaction_id}/messages", response_model=CheckInReplyResponse)
def post_patient_message(interaction_id: UUID, request: PatientMessageRequest, db: DbSession):
    """Send one patient message through the conversational AI and apply its decisions."""
    reply = CheckInService(db).handle_patient_message(interaction_id, request.message)
    return CheckInReplyResponse(
        interaction_id=reply.interaction_id,
        status=reply.status,
        assistant_message=reply.assistant_message,
        questions=reply.questions,
        escalated=reply.escalated,
        applied=[ToolOutcomeResponse.model_validate(outcome) for outcome in reply.applied],
        rejected=reply.rejected,
    )
