# hospital_app/security.py
"""Bearer token handling.

Credentials are issued by the upstream identity service; this backend only
verifies the JWT and turns its claims into an :class:`~hospital_app.schemas.Actor`.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import ValidationError as PydanticValidationError

from .config import get_settings
from .models import UserRole
from .schemas import Actor

security_logger = logging.getLogger("security")

bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_TIER_ROLES = (UserRole.super_admin, UserRole.admin)
OT_SCHEDULING_ROLES = ADMIN_TIER_ROLES + (UserRole.doctor,)
CLINICAL_ROLES = OT_SCHEDULING_ROLES + (UserRole.nurse,)
FRONT_DESK_ROLES = ADMIN_TIER_ROLES + (UserRole.opd_manager,)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT access token"""
    settings = get_settings()
    to_encode = data.copy()
    if isinstance(to_encode.get("role"), UserRole):
        to_encode["role"] = to_encode["role"].value
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire, "iat": datetime.now(timezone.utc), "type": "access"})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Actor:
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as e:
        security_logger.warning(f"Rejected bearer token: {e}")
        raise credentials_exception

    if payload.get("type") != "access" or not payload.get("sub"):
        raise credentials_exception

    try:
        return Actor(user_id=payload.get("user_id"), username=payload["sub"], role=payload.get("role"))
    except PydanticValidationError:
        security_logger.warning(f"Token for {payload.get('sub')} carries unknown role {payload.get('role')!r}")
        raise credentials_exception


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_access_token(credentials.credentials)


def require_role(*roles: UserRole):
    """Dependency factory: 403 unless the actor holds one of ``roles``."""
    allowed = set(roles)

    async def role_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed:
            security_logger.warning(f"Access denied for {actor.username} ({actor.role.value})")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action.",
            )
        return actor

    return role_checker


require_admin = require_role(*ADMIN_TIER_ROLES)
