from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from careloop.core.dependencies import AdminUser, CareAdminUser, DbSession
from careloop.domains.users.schemas import SetActiveRequest, UserResponse
from careloop.domains.users.service import UserDirectory

router = APIRouter()


@router.get("/nurses", response_model=list[UserResponse])
def list_active_nurses(db: DbSession, current_user: CareAdminUser):
    """Active nurses in the order they will receive new escalation tasks."""
    return UserDirectory(db).find_active_nurses()


@router.patch("/{user_id}/active", response_model=UserResponse)
def set_user_active(user_id: UUID, request: SetActiveRequest, db: DbSession, current_user: AdminUser):
    user = UserDirectory(db).set_active(user_id, request.is_active)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user
