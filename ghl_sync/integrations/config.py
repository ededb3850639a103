from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghl_sync.core.config import Settings, get_settings
from ghl_sync.integrations.models import InstallationConfig


WEBHOOK_SECRET_KEY = "GHL_WEBHOOK_SECRET"
PREVIOUS_WEBHOOK_SECRET_KEY = "GHL_WEBHOOK_SECRET_PREVIOUS"
CLIENT_ID_KEY = "GHL_CLIENT_ID"
CLIENT_SECRET_KEY = "GHL_CLIENT_SECRET"

OAUTH_SCOPES = (
    "contacts.readonly",
    "contacts.write",
    "conversations.readonly",
    "conversations.write",
    "conversations/message.readonly",
    "conversations/message.write",
    "locations.readonly",
    "users.readonly",
)


@dataclass(frozen=True, slots=True)
class IntegrationConfig:
    """Immutable view of GHL credentials and tunables for one unit of work.

    Built once per request or job by `load_integration_config`; admin changes to the
    signing secret become visible on the next load.
    """

    client_id: str
    client_secret: str
    webhook_secrets: tuple[str, ...]
    api_base: str
    api_version: str
    authorize_url: str
    http_timeout_seconds: float
    frontend_url: str
    refresh_window_minutes: int
    legacy_refresh_window_minutes: int
    refresh_lock_ttl_seconds: int
    state_ttl_minutes: int
    contact_page_size: int
    ai_usage_source: str
    trial_days: int
    email_domain: str

    @property
    def redirect_uri(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/ghl/callback"

    @property
    def credentials_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def token_url(self) -> str:
        return f"{self.api_base.rstrip('/')}/oauth/token"


def _stored_values(session: Session | None) -> dict[str, str]:
    if session is None:
        return {}
    rows = session.scalars(select(InstallationConfig)).all()
    return {row.name: row.value for row in rows if row.value}


def load_integration_config(session: Session | None = None, settings: Settings | None = None) -> IntegrationConfig:
    settings = settings or get_settings()
    stored = _stored_values(session)

    candidates = [
        stored.get(WEBHOOK_SECRET_KEY) or settings.ghl_webhook_secret,
        stored.get(PREVIOUS_WEBHOOK_SECRET_KEY, ""),
        settings.ghl_webhook_secret_fallback,
    ]
    secrets: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in secrets:
            secrets.append(candidate)

    return IntegrationConfig(
        client_id=stored.get(CLIENT_ID_KEY) or settings.ghl_client_id,
        client_secret=stored.get(CLIENT_SECRET_KEY) or settings.ghl_client_secret,
        webhook_secrets=tuple(secrets),
        api_base=settings.ghl_api_base,
        api_version=settings.ghl_api_version,
        authorize_url=settings.ghl_oauth_authorize_url,
        http_timeout_seconds=settings.ghl_http_timeout_seconds,
        frontend_url=settings.frontend_url,
        refresh_window_minutes=settings.ghl_refresh_window_minutes,
        legacy_refresh_window_minutes=settings.ghl_legacy_refresh_window_minutes,
        refresh_lock_ttl_seconds=settings.ghl_refresh_lock_ttl_seconds,
        state_ttl_minutes=settings.ghl_oauth_state_ttl_minutes,
        contact_page_size=settings.ghl_contact_page_size,
        ai_usage_source=settings.ghl_ai_usage_source,
        trial_days=settings.trial_days,
        email_domain=settings.provisioning_email_domain,
    )
