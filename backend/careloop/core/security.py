from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from careloop.core.config import settings

security = HTTPBearer()


class TokenPayload:
    def __init__(self, sub: str, exp: datetime, email: str | None = None, roles: list[str] | None = None):
        self.sub = sub
        self.exp = exp
        self.email = email
        self.roles = roles or []


def create_access_token(
    subject: str,
    roles: list[str] | None = None,
    email: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {"exp": expire, "sub": str(subject), "roles": roles or []}
    if email:
        to_encode["email"] = email
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> TokenPayload:
    payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    return TokenPayload(
        sub=payload.get("sub"),
        exp=payload.get("exp"),
        email=payload.get("email"),
        roles=payload.get("roles", []),
    )


def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> TokenPayload:
    try:
        return decode_token(credentials.credentials)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_role(required_roles: list[str]):
    def role_checker(token: TokenPayload = Depends(verify_token)) -> TokenPayload:
        for role in required_roles:
            if role in token.roles:
                return token
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return role_checker
