from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from careloop.core.database import get_db
from careloop.core.security import TokenPayload, require_role, verify_token
from careloop.domains.users.roles import Roles

DbSession = Annotated[Session, Depends(get_db)]
CurrentUser = Annotated[TokenPayload, Depends(verify_token)]

# Role-gated principals
ClinicalUser = Annotated[TokenPayload, Depends(require_role([Roles.NURSE, Roles.CARE_ADMIN, Roles.ADMIN]))]
CareAdminUser = Annotated[TokenPayload, Depends(require_role([Roles.CARE_ADMIN, Roles.ADMIN]))]
AdminUser = Annotated[TokenPayload, Depends(require_role([Roles.ADMIN]))]
