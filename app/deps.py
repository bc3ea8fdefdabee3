"""FastAPI dependencies."""

import logging
from functools import lru_cache
from typing import Annotated
from uuid import UUID

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.auth import decode_access_token
from app.database import async_session_maker, get_db
from app.integrations.hubspot.auth import HubSpotAuth
from app.integrations.hubspot.client import HubSpotClient
from app.models.tenant import Tenant
from app.models.user import User, UserRole
from app.services.queue.manager import QueueManager

logger = logging.getLogger(__name__)


async def get_or_create_dev_user(db: AsyncSession) -> User:
    """Get or create a dev user for local development."""
    dev_email = "dev@autopdf.local"

    result = await db.execute(select(User).where(User.email == dev_email))
    user = result.scalar_one_or_none()
    if user:
        return user

    tenant = Tenant(name="Dev Tenant", hubspot_portal_id="dev-portal")
    db.add(tenant)
    await db.flush()

    user = User(
        email=dev_email,
        name="Dev User",
        tenant_id=tenant.id,
        role=UserRole.ADMIN,
    )
    db.add(user)
    await db.commit()
    return user


async def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Validate the bearer token and return the user it names.

    In dev mode (DEV_AUTH_BYPASS=true), returns a dev user.
    """
    settings = get_settings()

    if settings.dev_auth_bypass:
        return await get_or_create_dev_user(db)

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        scheme, token = authorization.split(" ", 1)
        if scheme.lower() != "bearer":
            raise ValueError("Invalid scheme")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = decode_access_token(token)
        user_id = UUID(claims["sub"])
        tenant_id = UUID(claims["tenant_id"])
    except (jwt.InvalidTokenError, ValueError) as e:
        logger.warning("Token validation failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = await db.execute(
        select(User)
        .join(Tenant, Tenant.id == User.tenant_id)
        .where(User.id == user_id, User.tenant_id == tenant_id, Tenant.is_active.is_(True))
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or tenant inactive",
        )
    return user


def get_queue_manager(request: Request) -> QueueManager:
    """Producer-side queue manager started by the app lifespan."""
    return request.app.state.queue_manager


@lru_cache
def get_hubspot_auth() -> HubSpotAuth:
    """Token provider shared by every request so refreshes stay serialised."""
    return HubSpotAuth(async_session_maker)


def get_crm_client(auth: Annotated[HubSpotAuth, Depends(get_hubspot_auth)]) -> HubSpotClient:
    return HubSpotClient(auth)


async def require_admin(user: Annotated[User, Depends(get_current_user)]) -> User:
    if user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


# Type aliases for dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(require_admin)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
Queue = Annotated[QueueManager, Depends(get_queue_manager)]
HubSpot = Annotated[HubSpotAuth, Depends(get_hubspot_auth)]
CrmClient = Annotated[HubSpotClient, Depends(get_crm_client)]
