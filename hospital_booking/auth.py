"""
Request identity.

Authentication happens upstream: the gateway in front of this service
verifies the session and forwards the user id in the X-User-Id header. Here
we only resolve that id through the identity lookup and enforce roles.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from .database import get_db
from .domain.users.repository import UserRepository
from .models import User

logger = logging.getLogger(__name__)

STAFF_ROLES = ("staff", "manager", "admin")


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the authenticated user forwarded by the auth gateway"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        user_id = int(x_user_id)
    except ValueError as e:
        logger.warning(f"⚠️ Malformed X-User-Id header: {x_user_id!r}")
        raise HTTPException(status_code=401, detail="Not authenticated") from e

    user = UserRepository.find_user_by_id(db, user_id)
    if not user or not user.is_active:
        logger.warning(f"⚠️ Unknown or inactive user {user_id}")
        raise HTTPException(status_code=401, detail="Not authenticated")

    return user


def require_roles(*roles: str):
    """Dependency factory that only lets the given roles through"""

    async def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=403, detail=f"This action requires role: {', '.join(roles)}"
            )
        return current_user

    return checker


def get_request_info(request: Request) -> dict:
    """Client details recorded with audit events"""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
