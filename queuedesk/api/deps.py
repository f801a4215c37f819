from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from queuedesk.core.config import settings
from queuedesk.core.security import decode_token
from queuedesk.db.models import RoleEnum as Role
from queuedesk.db.session import get_session
from queuedesk.services.queue import QueueStatusService

# Tokens come from the external auth service; tokenUrl only feeds /api/docs
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

DBDep = Annotated[AsyncSession, Depends(get_session)]


@dataclass(frozen=True)
class Actor:
    id: int
    role: Role


async def get_current_actor(token: Annotated[str, Depends(oauth2_scheme)]) -> Actor:
    """
    Decode the Bearer JWT into the acting user (id + role).
    """
    try:
        payload = decode_token(token, settings.jwt_secret, settings.jwt_alg)
        actor_id = int(payload["sub"])
    except (ValueError, KeyError, TypeError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    try:
        role = Role(payload.get("role"))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return Actor(id=actor_id, role=role)


ActorDep = Annotated[Actor, Depends(get_current_actor)]


def require_role(*allowed: Role):
    """
    Only actors whose role is in allowed.
    Example: @router.post(..., dependencies=[Depends(require_role(Role.admin))])
    """
    allowed_set = set(allowed)

    async def _guard(current: ActorDep) -> Actor:
        if current.role not in allowed_set:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
        return current

    return _guard


def get_queue_service(request: Request) -> QueueStatusService:
    """The executor is built once in the app lifespan with its publisher and recorder."""
    return request.app.state.queue_service


QueueServiceDep = Annotated[QueueStatusService, Depends(get_queue_service)]
