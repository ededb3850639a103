from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from typing import Any
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from ghl_sync.billing.schemas import UsageResponse
from ghl_sync.billing.service import subscription_service
from ghl_sync.core.auth import ADMIN_ROLE, AuthUser, require_admin, require_authenticated
from ghl_sync.core.database import get_db
from ghl_sync.errors import ExternalApiError, OAuthError, RefreshNotSupportedError
from ghl_sync.integrations.client import HttpxGhlClient
from ghl_sync.integrations.config import (
    PREVIOUS_WEBHOOK_SECRET_KEY,
    WEBHOOK_SECRET_KEY,
    IntegrationConfig,
    load_integration_config,
)
from ghl_sync.integrations.models import CONNECTION_DISABLED, InstallationConfig
from ghl_sync.integrations.oauth import build_authorize_url, decode_state, exchange_code, refresh_access_token
from ghl_sync.integrations.repository import find_connection
from ghl_sync.integrations.tokens import TokenLifecycleManager
from ghl_sync.workspace.models import Account
from ghl_sync.workspace.provisioning import ProvisioningResult, ProvisioningService
from ghl_sync.workspace.repository import is_account_member


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ghl", tags=["ghl"])
admin_router = APIRouter(prefix="/admin/ghl", tags=["ghl-admin"])

TokenRefresher = Callable[[IntegrationConfig, str], dict[str, Any]]


def get_oauth_http_client() -> httpx.Client | None:
    return None


def get_token_refresher() -> TokenRefresher:
    return refresh_access_token


def _redirect(config: IntegrationConfig, **params: str) -> RedirectResponse:
    url = f"{config.frontend_url.rstrip('/')}/settings/integrations/ghl?{urlencode(params)}"
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


def require_account_access(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_authenticated),
) -> AuthUser:
    if ADMIN_ROLE in user.roles or is_account_member(db, account_id, user.sub):
        return user
    logger.warning("account.access_denied", extra={"account_id": str(account_id), "user_id": user.sub})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this account")


def _load_account(db: Session, account_id: uuid.UUID) -> Account:
    account = db.get(Account, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    return account


def _fetch_user_info(
    config: IntegrationConfig, token: dict[str, Any], http_client: httpx.Client | None
) -> dict[str, Any]:
    location_id = token.get("locationId")
    if not location_id:
        return {}
    try:
        with HttpxGhlClient(str(token["access_token"]), config, http_client) as client:
            _, payload = client.request("GET", f"/locations/{location_id}")
    except ExternalApiError as exc:
        logger.info("oauth.user_info_unavailable", extra={"location_id": location_id, "error": str(exc)})
        return {}
    location = payload.get("location") if isinstance(payload, dict) else None
    if not isinstance(location, dict):
        return {}
    return {
        "locationName": location.get("name"),
        "companyName": location.get("business", {}).get("name") if isinstance(location.get("business"), dict) else None,
        "email": location.get("email"),
        "name": " ".join(part for part in (location.get("firstName"), location.get("lastName")) if part) or None,
    }


@router.get("/accounts/{account_id}/authorize")
def authorize(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_account_access),
) -> dict[str, str]:
    _load_account(db, account_id)
    config = load_integration_config(db)
    try:
        url = build_authorize_url(config, account_id)
    except OAuthError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.reason)
    return {"url": url}


@router.get("/callback")
def oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: Session = Depends(get_db),
    http_client: httpx.Client | None = Depends(get_oauth_http_client),
) -> RedirectResponse:
    config = load_integration_config(db)
    if error:
        return _redirect(config, error=error)
    if not code:
        return _redirect(config, error="missing_code")
    if not config.credentials_configured:
        return _redirect(config, error="missing_credentials")

    account: Account | None = None
    if state:
        account_id = decode_state(config, state)
        account = db.get(Account, account_id) if account_id else None
        if account is None:
            return _redirect(config, error="invalid_state")

    try:
        token = exchange_code(config, code, http_client)
    except OAuthError as exc:
        return _redirect(config, error=exc.reason)

    service = ProvisioningService(db, config)
    result: ProvisioningResult
    if account is not None:
        result = service.bind_account(account, token)
    else:
        result = service.provision(token, _fetch_user_info(config, token, http_client))

    if not result.success or result.account is None:
        return _redirect(config, error="provisioning_failed")
    return _redirect(config, connected="1", account_id=str(result.account.id))


@router.get("/accounts/{account_id}/status")
def connection_status(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_account_access),
) -> dict[str, Any]:
    account = _load_account(db, account_id)
    connection = find_connection(db, account.id)
    subscription = subscription_service.get_for_account(db, account.id)
    settings = connection.settings if connection else {}
    return {
        "account_id": str(account.id),
        "connected": bool(connection and connection.enabled),
        "status": connection.status if connection else None,
        "location_id": account.ghl_location_id,
        "company_id": account.ghl_company_id,
        "expires_at": settings.get("expires_at"),
        "last_refreshed_at": settings.get("last_refreshed_at"),
        "subscription": subscription_service.usage_summary(subscription) if subscription else None,
    }


@router.post("/accounts/{account_id}/refresh")
def refresh_connection(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    refresher: TokenRefresher = Depends(get_token_refresher),
    _: AuthUser = Depends(require_account_access),
) -> dict[str, Any]:
    connection = find_connection(db, account_id)
    if connection is None or not connection.enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="connection not found")

    manager = TokenLifecycleManager(db, load_integration_config(db), refresher=refresher)
    try:
        manager.refresh_on_demand(connection)
    except RefreshNotSupportedError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except ExternalApiError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return {"status": "refreshed", "expires_at": (connection.settings or {}).get("expires_at")}


@router.delete("/accounts/{account_id}/connection")
def disconnect(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_account_access),
) -> dict[str, str]:
    connection = find_connection(db, account_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="connection not found")
    connection.status = CONNECTION_DISABLED
    connection.access_token = None
    connection.refresh_token = None
    db.add(connection)
    db.commit()
    logger.info("connection.disconnected", extra={"account_id": str(account_id), "connection_id": str(connection.id)})
    return {"status": "disconnected"}


@router.get("/accounts/{account_id}/usage", response_model=UsageResponse)
def usage(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_account_access),
) -> UsageResponse:
    subscription = subscription_service.get_for_account(db, account_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription not found")
    return UsageResponse(account_id=account_id, usage=subscription_service.usage_summary(subscription))


def _preview(secret: str | None) -> str | None:
    if not secret:
        return None
    return f"{secret[:4]}{'*' * 8}"


def _config_row(db: Session, name: str) -> InstallationConfig | None:
    return db.scalar(select(InstallationConfig).where(InstallationConfig.name == name))


@admin_router.get("/webhook-settings")
def webhook_settings(
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> dict[str, Any]:
    config = load_integration_config(db)
    current = config.webhook_secrets[0] if config.webhook_secrets else None
    row = _config_row(db, WEBHOOK_SECRET_KEY)
    return {
        "configured": current is not None,
        "secret_preview": _preview(current),
        "source": "database" if row is not None and row.value else "environment",
        "locked": bool(row and row.locked),
        "webhook_path": "/webhooks/ghl",
    }


@admin_router.post("/webhook-settings/regenerate")
def regenerate_webhook_secret(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_admin),
) -> dict[str, str]:
    row = _config_row(db, WEBHOOK_SECRET_KEY)
    if row is not None and row.locked:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="webhook secret is locked")

    config = load_integration_config(db)
    previous = config.webhook_secrets[0] if config.webhook_secrets else None
    secret = secrets.token_hex(32)

    if row is None:
        row = InstallationConfig(name=WEBHOOK_SECRET_KEY)
    row.value = secret
    db.add(row)
    if previous:
        previous_row = _config_row(db, PREVIOUS_WEBHOOK_SECRET_KEY) or InstallationConfig(name=PREVIOUS_WEBHOOK_SECRET_KEY)
        previous_row.value = previous
        db.add(previous_row)
    db.commit()
    logger.info("webhook_secret.regenerated", extra={"event": "webhook_secret.regenerated", "user_id": user.sub})
    return {"secret": secret}
