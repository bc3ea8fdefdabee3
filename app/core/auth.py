"""JWT issuing and validation for API sessions, and HubSpot request signatures."""

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from app.config import get_settings

settings = get_settings()

ACCESS_TOKEN_TTL = timedelta(hours=24)


def create_access_token(
    user_id: UUID,
    tenant_id: UUID,
    expires_in: timedelta = ACCESS_TOKEN_TTL,
) -> str:
    """Sign a session token carrying the user and tenant ids."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "tenant_id": str(tenant_id),
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    """Validate a session token and return its claims.

    Raises:
        jwt.InvalidTokenError: If token is invalid or expired
    """
    claims = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        options={"require": ["sub", "tenant_id", "exp"]},
    )
    return claims


# ========== HubSpot request signatures ==========

SIGNATURE_MAX_AGE = timedelta(minutes=5)


def hubspot_signature(secret: str, method: str, uri: str, body: bytes, timestamp: str) -> str:
    """Base64 HMAC-SHA256 of ``method + uri + body + timestamp`` (signature v3)."""
    source = method.upper().encode() + uri.encode() + body + timestamp.encode()
    digest = hmac.new(secret.encode(), source, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_hubspot_signature(
    secret: str,
    method: str,
    uri: str,
    body: bytes,
    timestamp: str | None,
    signature: str | None,
    now: datetime | None = None,
) -> bool:
    """Whether a HubSpot v3 request signature is valid and recent."""
    if not timestamp or not signature:
        return False
    try:
        sent_at = datetime.fromtimestamp(int(timestamp) / 1000, tz=timezone.utc)
    except ValueError:
        return False
    now = now or datetime.now(timezone.utc)
    if abs(now - sent_at) > SIGNATURE_MAX_AGE:
        return False
    expected = hubspot_signature(secret, method, uri, body, timestamp)
    return hmac.compare_digest(expected, signature)
