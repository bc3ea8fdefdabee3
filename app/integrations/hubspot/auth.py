"""HubSpot OAuth token management.

Tokens live on the ``Tenant`` row. ``get_valid_access_token`` hands out the
stored access token while it is fresh and transparently runs the
refresh-token grant when it is expired (or about to be), persisting the
rotated pair. Refreshes are serialised per tenant so two concurrent jobs do
not both spend the same refresh token.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode
from uuid import UUID

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.core.exceptions import CrmApiError, CrmAuthError
from app.models.tenant import Tenant
from app.models.user import User, UserRole
from app.services.audit import AuditAction, record_audit

settings = get_settings()
logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # sqlite drops tzinfo on round-trip
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class OAuthLogin:
    tenant: Tenant
    user: User
    created_tenant: bool = False


class HubSpotAuth:
    """Resolves a usable bearer token for a tenant."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        redirect_uri: str | None = None,
    ) -> None:
        self._session_maker = session_maker
        self.redirect_uri = redirect_uri or settings.hubspot_redirect_uri
        self.client_id = client_id or settings.hubspot_client_id
        self.client_secret = client_secret or settings.hubspot_client_secret
        self.base_url = (base_url or settings.hubspot_api_url).rstrip("/")
        self._locks: dict[UUID, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: UUID) -> asyncio.Lock:
        if tenant_id not in self._locks:
            self._locks[tenant_id] = asyncio.Lock()
        return self._locks[tenant_id]

    @staticmethod
    def _is_fresh(tenant: Tenant) -> bool:
        expires_at = _aware(tenant.token_expires_at)
        if not tenant.access_token or expires_at is None:
            return False
        skew = timedelta(seconds=settings.hubspot_token_refresh_skew_seconds)
        return datetime.now(timezone.utc) + skew < expires_at

    async def get_valid_access_token(self, tenant_id: UUID) -> str:
        """Return an access token for ``tenant_id``, refreshing it if needed.

        Raises:
            CrmAuthError: the tenant is unknown, inactive, or has no refresh token.
            CrmApiError: the token endpoint failed.
        """
        async with self._lock_for(tenant_id):
            async with self._session_maker() as db:
                result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
                tenant = result.scalar_one_or_none()
                if tenant is None or not tenant.is_active:
                    raise CrmAuthError(f"Tenant {tenant_id} has no active HubSpot connection")

                if self._is_fresh(tenant):
                    return tenant.access_token

                if not tenant.refresh_token:
                    raise CrmAuthError(f"Tenant {tenant_id} has no refresh token")

                tokens = await self.refresh_access_token(tenant.refresh_token)
                tenant.access_token = tokens["access_token"]
                tenant.refresh_token = tokens.get("refresh_token") or tenant.refresh_token
                tenant.token_expires_at = datetime.now(timezone.utc) + timedelta(
                    seconds=int(tokens.get("expires_in", 1800))
                )
                await db.commit()
                logger.info("Refreshed HubSpot token for tenant %s", tenant_id)
                return tenant.access_token

    async def refresh_access_token(self, refresh_token: str) -> dict:
        """Run the OAuth2 refresh-token grant."""
        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
        }
        try:
            async with httpx.AsyncClient(timeout=settings.hubspot_timeout_seconds) as client:
                response = await client.post(f"{self.base_url}/oauth/v1/token", data=data)
        except httpx.HTTPError as e:
            raise CrmApiError(f"HubSpot token refresh failed: {e}", retryable=True) from e

        if response.status_code in (400, 401):
            # Refresh token revoked or app uninstalled
            raise CrmAuthError("HubSpot rejected the refresh token", status_code=response.status_code)
        if response.status_code >= 400:
            raise CrmApiError(
                f"HubSpot token refresh failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    # ========== OAuth install flow ==========

    def authorization_url(self, state: str) -> str:
        """URL of HubSpot's consent screen for this app."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(settings.hubspot_scopes),
            "response_type": "code",
            "state": state,
        }
        return f"{settings.hubspot_authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> dict:
        """Run the OAuth2 authorization-code grant."""
        data = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "code": code,
        }
        try:
            async with httpx.AsyncClient(timeout=settings.hubspot_timeout_seconds) as client:
                response = await client.post(f"{self.base_url}/oauth/v1/token", data=data)
        except httpx.HTTPError as e:
            raise CrmApiError(f"HubSpot code exchange failed: {e}", retryable=True) from e

        if response.status_code in (400, 401):
            raise CrmAuthError("HubSpot rejected the authorization code", status_code=response.status_code)
        if response.status_code >= 400:
            raise CrmApiError(
                f"HubSpot code exchange failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def get_token_info(self, access_token: str) -> dict:
        """Portal and user an access token belongs to (``hub_id``, ``user``, ``user_id``)."""
        try:
            async with httpx.AsyncClient(timeout=settings.hubspot_timeout_seconds) as client:
                response = await client.get(f"{self.base_url}/oauth/v1/access-tokens/{access_token}")
        except httpx.HTTPError as e:
            raise CrmApiError(f"HubSpot token lookup failed: {e}", retryable=True) from e
        if response.status_code >= 400:
            raise CrmAuthError("HubSpot token lookup failed", status_code=response.status_code)
        return response.json()

    async def handle_oauth_callback(self, code: str) -> OAuthLogin:
        """Exchange ``code``, then create or refresh the portal's tenant and the installing user.

        The first user of a new tenant becomes its admin.
        """
        tokens = await self.exchange_code(code)
        info = await self.get_token_info(tokens["access_token"])
        portal_id = str(info["hub_id"])
        hubspot_user_id = str(info["user_id"]) if info.get("user_id") is not None else None
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(tokens.get("expires_in", 1800)))

        async with self._session_maker() as db:
            result = await db.execute(select(Tenant).where(Tenant.hubspot_portal_id == portal_id))
            tenant = result.scalar_one_or_none()
            new_tenant = tenant is None
            if new_tenant:
                tenant = Tenant(name=info.get("hub_domain") or f"Portal {portal_id}", hubspot_portal_id=portal_id)
                db.add(tenant)
            tenant.access_token = tokens["access_token"]
            tenant.refresh_token = tokens.get("refresh_token") or tenant.refresh_token
            tenant.token_expires_at = expires_at
            tenant.is_active = True
            await db.flush()

            email = info.get("user") or f"user{hubspot_user_id}@{info.get('hub_domain') or portal_id}"
            matches = [User.email == email]
            if hubspot_user_id:
                matches.append(User.hubspot_user_id == hubspot_user_id)
            result = await db.execute(
                select(User).where(User.tenant_id == tenant.id, or_(*matches)).limit(1)
            )
            user = result.scalar_one_or_none()
            if user is None:
                user = User(
                    tenant_id=tenant.id,
                    email=email,
                    role=UserRole.ADMIN if new_tenant else UserRole.USER,
                )
                db.add(user)
            user.hubspot_user_id = hubspot_user_id or user.hubspot_user_id
            await db.flush()

            record_audit(
                db,
                tenant_id=tenant.id,
                user_id=user.id,
                action=AuditAction.LOGIN,
                entity_type="user",
                entity_id=user.id,
                new_values={"method": "hubspot_oauth", "portal_id": portal_id},
            )
            await db.commit()

        logger.info(
            "HubSpot portal %s connected (tenant %s%s), user %s",
            portal_id,
            tenant.id,
            ", new" if new_tenant else "",
            user.id,
        )
        return OAuthLogin(tenant=tenant, user=user, created_tenant=new_tenant)

    async def disconnect_tenant(self, tenant_id: UUID) -> None:
        """Forget the tenant's credentials and deactivate it."""
        async with self._session_maker() as db:
            result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
            tenant = result.scalar_one_or_none()
            if tenant is None:
                return
            tenant.access_token = None
            tenant.refresh_token = None
            tenant.token_expires_at = None
            tenant.is_active = False
            await db.commit()
            logger.info("Disconnected HubSpot for tenant %s", tenant_id)
