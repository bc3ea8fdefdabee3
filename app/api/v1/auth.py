"""Session endpoints: HubSpot OAuth install, current user, token refresh, logout."""

import logging
import secrets

from fastapi import APIRouter, HTTPException, status

from app.core.auth import ACCESS_TOKEN_TTL, create_access_token
from app.core.exceptions import CrmApiError, CrmAuthError
from app.deps import AdminUser, CurrentUser, DbSession, HubSpot
from app.models.tenant import Tenant
from app.schemas.auth import (
    AuthorizeResponse,
    LoginResponse,
    MeResponse,
    TenantRead,
    TokenResponse,
    UserRead,
)
from app.services.audit import AuditAction, record_audit

logger = logging.getLogger(__name__)

router = APIRouter()


def _session_token(user_id, tenant_id) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user_id, tenant_id),
        expires_in=int(ACCESS_TOKEN_TTL.total_seconds()),
    )


@router.get("/hubspot/authorize", response_model=AuthorizeResponse)
async def authorize(hubspot: HubSpot) -> AuthorizeResponse:
    """Consent-screen URL to send the installing user to."""
    state = secrets.token_urlsafe(16)
    return AuthorizeResponse(auth_url=hubspot.authorization_url(state), state=state)


@router.get("/hubspot/callback", response_model=LoginResponse)
async def hubspot_callback(
    hubspot: HubSpot,
    code: str | None = None,
    error: str | None = None,
) -> LoginResponse:
    """OAuth redirect target: connect the portal and open a session."""
    if error:
        logger.warning("HubSpot authorization declined: %s", error)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"HubSpot authorization failed: {error}")
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Authorization code required")

    try:
        login = await hubspot.handle_oauth_callback(code)
    except CrmAuthError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CrmApiError as e:
        logger.error("HubSpot OAuth callback failed: %s", e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="HubSpot is unavailable")

    session = _session_token(login.user.id, login.tenant.id)
    return LoginResponse(
        **session.model_dump(),
        user=UserRead.model_validate(login.user),
        tenant=TenantRead.model_validate(login.tenant),
    )


@router.post("/login", status_code=status.HTTP_501_NOT_IMPLEMENTED)
async def login() -> None:
    raise HTTPException(
        status_code=status.HTTP_501_NOT_IMPLEMENTED,
        detail="Password login is not supported, connect through HubSpot OAuth",
    )


@router.get("/me", response_model=MeResponse)
async def me(user: CurrentUser, db: DbSession) -> MeResponse:
    tenant = await db.get(Tenant, user.tenant_id)
    return MeResponse(user=UserRead.model_validate(user), tenant=TenantRead.model_validate(tenant))


@router.post("/refresh-token", response_model=TokenResponse)
async def refresh_token(user: CurrentUser) -> TokenResponse:
    """Swap a still-valid session token for a fresh one."""
    return _session_token(user.id, user.tenant_id)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(user: CurrentUser, db: DbSession) -> None:
    # Sessions are stateless; the client drops its token
    record_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action=AuditAction.LOGOUT,
        entity_type="user",
        entity_id=user.id,
    )
    await db.commit()


@router.post("/hubspot/disconnect", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(user: AdminUser, db: DbSession, hubspot: HubSpot) -> None:
    """Drop the portal's tokens and deactivate the tenant."""
    await hubspot.disconnect_tenant(user.tenant_id)
    record_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action=AuditAction.DISCONNECT,
        entity_type="tenant",
        entity_id=user.tenant_id,
    )
    await db.commit()
