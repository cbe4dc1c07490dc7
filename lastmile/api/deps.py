"""
FastAPI dependencies for the actor context, database sessions and services.

The bearer token's ``sub`` claim is the actor id and its ``role`` claim the
actor's role. The identity store is not consulted here: eligibility of
couriers is checked by the services against the user records they load.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import Settings, get_settings
from lastmile.core.errors import ErrorCode, PermissionDeniedError
from lastmile.core.logging import get_logger, set_actor_id
from lastmile.core.security import TokenError, decode_token
from lastmile.database.connection import get_db
from lastmile.schemas.common import Actor, PageParams
from lastmile.services.geo.service import GeoService, get_geo_service

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_actor(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Actor:
    """
    Validate the bearer token and build the actor.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        payload = decode_token(credentials.credentials)
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code)
        raise credentials_exception

    if payload.get("type") != "access":
        logger.warning("Authentication failed: Not an access token")
        raise credentials_exception

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or not role:
        logger.warning("Authentication failed: Token missing 'sub' or 'role' claim")
        raise credentials_exception

    try:
        actor = Actor(id=UUID(subject), role=role)
    except ValueError:
        logger.warning("Authentication failed: Invalid actor claims", subject=subject)
        raise credentials_exception

    set_actor_id(str(actor.id))
    return actor


async def require_elevated(
    actor: Annotated[Actor, Depends(get_current_actor)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Actor:
    """
    Restrict an endpoint to dispatchers and administrators.

    Raises:
        PermissionDeniedError: If the actor's role is not elevated
    """
    if not actor.is_elevated(settings):
        logger.warning(
            "Access denied: Elevated role required",
            actor_id=str(actor.id),
            role=actor.role,
        )
        raise PermissionDeniedError(
            "This operation requires a dispatcher or administrator role",
            code=ErrorCode.ELEVATED_ROLE_REQUIRED,
            role=actor.role,
        )
    return actor


DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
ElevatedActor = Annotated[Actor, Depends(require_elevated)]
GeoServiceDep = Annotated[GeoService, Depends(get_geo_service)]
Pagination = Annotated[PageParams, Depends()]
