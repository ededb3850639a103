from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from ghl_sync.core.clock import utcnow
from ghl_sync.errors import ExternalApiError, OAuthError
from ghl_sync.integrations.config import OAUTH_SCOPES, IntegrationConfig


logger = logging.getLogger(__name__)

STATE_ALGORITHM = "HS256"


def encode_state(config: IntegrationConfig, account_id: uuid.UUID, now: datetime | None = None) -> str:
    issued = now or utcnow()
    claims = {
        "sub": str(account_id),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=config.state_ttl_minutes)).timestamp()),
    }
    return jwt.encode(claims, config.client_secret, algorithm=STATE_ALGORITHM)


def decode_state(config: IntegrationConfig, state: str | None) -> uuid.UUID | None:
    if not state or not config.client_secret:
        return None
    try:
        claims = jwt.decode(state, config.client_secret, algorithms=[STATE_ALGORITHM])
        return uuid.UUID(str(claims["sub"]))
    except (JWTError, KeyError, ValueError):
        return None


def build_authorize_url(config: IntegrationConfig, account_id: uuid.UUID) -> str:
    if not config.credentials_configured:
        raise OAuthError("missing_credentials", "GHL OAuth credentials are not configured")
    query = urlencode(
        {
            "redirect_uri": config.redirect_uri,
            "client_id": config.client_id,
            "scope": " ".join(OAUTH_SCOPES),
            "response_type": "code",
            "state": encode_state(config, account_id),
        }
    )
    return f"{config.authorize_url}?{query}"


def _post_token(config: IntegrationConfig, form: dict[str, str], http_client: httpx.Client | None) -> dict[str, Any]:
    client = http_client or httpx.Client(timeout=config.http_timeout_seconds)
    try:
        response = client.post(config.token_url, data=form, headers={"Accept": "application/json"})
    except httpx.TimeoutException as exc:
        raise ExternalApiError("POST", "/oauth/token", None) from exc
    except httpx.TransportError as exc:
        raise ExternalApiError("POST", "/oauth/token", None, str(exc)) from exc
    finally:
        if http_client is None:
            client.close()

    try:
        payload = response.json() if response.content else {}
    except ValueError:
        payload = {}
    if not response.is_success:
        raise ExternalApiError("POST", "/oauth/token", response.status_code, payload)
    if not payload.get("access_token"):
        raise ExternalApiError("POST", "/oauth/token", response.status_code, {"error": "missing access_token"})
    return payload


def exchange_code(config: IntegrationConfig, code: str, http_client: httpx.Client | None = None) -> dict[str, Any]:
    if not config.credentials_configured:
        raise OAuthError("missing_credentials")
    form = {
        "grant_type": "authorization_code",
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "code": code,
        "redirect_uri": config.redirect_uri,
        "user_type": "Location",
    }
    try:
        return _post_token(config, form, http_client)
    except ExternalApiError as exc:
        logger.error("oauth.code_exchange_failed", extra={"status_code": exc.status, "error": str(exc)})
        raise OAuthError("token_exchange_failed", str(exc)) from exc


def refresh_access_token(
    config: IntegrationConfig, refresh_token: str, http_client: httpx.Client | None = None
) -> dict[str, Any]:
    form = {
        "grant_type": "refresh_token",
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "refresh_token": refresh_token,
        "user_type": "Location",
    }
    return _post_token(config, form, http_client)


def token_expiry(token: dict[str, Any], now: datetime | None = None) -> datetime | None:
    try:
        expires_in = int(token.get("expires_in") or 0)
    except (TypeError, ValueError):
        return None
    if expires_in <= 0:
        return None
    return (now or utcnow()) + timedelta(seconds=expires_in)


def connection_settings_from_token(token: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    expires_at = token_expiry(token, now)
    return {
        "token_type": token.get("token_type"),
        "expires_in": token.get("expires_in"),
        "scope": token.get("scope"),
        "user_type": token.get("userType"),
        "location_id": token.get("locationId"),
        "company_id": token.get("companyId"),
        "user_id": token.get("userId"),
        "connected_at": now.isoformat(),
        "expires_at": expires_at.isoformat() if expires_at else None,
    }
