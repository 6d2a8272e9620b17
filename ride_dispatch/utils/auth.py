"""Bearer token handling shared by HTTP routes and the realtime auth frame."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ..config import settings

security_scheme = HTTPBearer(auto_error=False)

ROLES = ("customer", "driver", "admin")


class InvalidTokenError(Exception):
    """Raised when a bearer token cannot be trusted."""
    pass


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    role: str


def create_access_token(user_id: UUID, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=12))
    to_encode = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> TokenClaims:
    """Decode and validate JWT token."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise InvalidTokenError(str(e)) from e

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in ROLES:
        raise InvalidTokenError("Token is missing subject or role")
    try:
        UUID(user_id)
    except ValueError as e:
        raise InvalidTokenError("Token subject is not a UUID") from e
    return TokenClaims(user_id=user_id, role=role)


# ============== Dependencies ==============


async def get_current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> TokenClaims:
    """Get caller identity from the Authorization header."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_access_token(credentials.credentials)
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_driver(claims: TokenClaims = Depends(get_current_claims)) -> TokenClaims:
    """Caller must hold the driver role."""
    if claims.role != "driver":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Driver role required")
    return claims
