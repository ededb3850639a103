"""Tenant provisioning for GHL installs.

A provisioning call either creates a brand new workspace (account, admin user,
trial subscription, connection, default inbox) or reconnects the workspace already
bound to the location. Everything happens in a single transaction; failures roll the
whole unit back and are reported through `ProvisioningResult` instead of raised.
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from typing import Any

from passlib.hash import pbkdf2_sha256
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ghl_sync.billing.models import Subscription
from ghl_sync.billing.service import subscription_service
from ghl_sync.core.clock import utcnow
from ghl_sync.integrations.config import OAUTH_SCOPES, IntegrationConfig
from ghl_sync.integrations.models import CONNECTION_ENABLED, GHL_APP_ID, Connection
from ghl_sync.integrations.oauth import connection_settings_from_token
from ghl_sync.integrations.repository import find_connection
from ghl_sync.jobs.queue import IMPORT_CONTACTS, JobQueue, get_job_queue
from ghl_sync.sync.lookups import DEFAULT_INBOX_NAME
from ghl_sync.workspace.models import Account, AccountUser, Inbox, User
from ghl_sync.workspace.repository import find_account_by_ghl_ids, find_user_by_email


logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_NAME = "DeskFlows Workspace"
DEFAULT_USER_NAME = "GHL User"
AUTO_RESOLVE_AFTER_MINUTES = 4320
AUTO_RESOLVE_MESSAGE = "This conversation was resolved after 3 days without activity. Reply to reopen it."
GREETING_MESSAGE = "Thanks for reaching out! A member of our team will be with you shortly."
ADMIN_ROLE = "administrator"


def generate_password() -> str:
    alphabet = string.ascii_letters + string.digits
    # trailing block guarantees symbol, upper, digit and lower classes
    return "".join(secrets.choice(alphabet) for _ in range(20)) + "!A1z"


@dataclass(slots=True)
class ProvisioningResult:
    success: bool
    account: Account | None = None
    user: User | None = None
    connection: Connection | None = None
    subscription: Subscription | None = None
    created: bool = False
    error: str | None = None


class ProvisioningService:
    def __init__(self, session: Session, config: IntegrationConfig, queue: JobQueue | None = None) -> None:
        self.session = session
        self.config = config
        self.queue = queue or get_job_queue()

    def provision(self, token: dict[str, Any], user_info: dict[str, Any] | None = None) -> ProvisioningResult:
        user_info = user_info or {}
        location_id = _str(token.get("locationId")) or _str(user_info.get("locationId"))
        company_id = _str(token.get("companyId")) or _str(user_info.get("companyId"))

        try:
            account = find_account_by_ghl_ids(self.session, location_id, company_id)
            if account is not None:
                result = self._reconnect(account, token, location_id, company_id)
            else:
                result = self._create(token, user_info, location_id, company_id)
            self.session.commit()
        except (SQLAlchemyError, ValueError) as exc:
            self.session.rollback()
            logger.error(
                "provisioning.failed",
                extra={"location_id": location_id, "error": str(exc)},
            )
            return ProvisioningResult(success=False, error=str(exc))

        if result.created and result.account is not None:
            self.queue.enqueue(IMPORT_CONTACTS, account_id=str(result.account.id))
        logger.info(
            "provisioning.completed",
            extra={
                "account_id": str(result.account.id) if result.account else None,
                "location_id": location_id,
                "status": "created" if result.created else "reconnected",
            },
        )
        return result

    def bind_account(self, account: Account, token: dict[str, Any]) -> ProvisioningResult:
        """Attach a token pair to an account chosen by the caller (state-bound OAuth connect)."""
        location_id = _str(token.get("locationId"))
        company_id = _str(token.get("companyId"))
        try:
            result = self._reconnect(account, token, location_id, company_id)
            self.session.commit()
        except (SQLAlchemyError, ValueError) as exc:
            self.session.rollback()
            logger.error("provisioning.bind_failed", extra={"account_id": str(account.id), "error": str(exc)})
            return ProvisioningResult(success=False, error=str(exc))
        logger.info("provisioning.bound", extra={"account_id": str(account.id), "location_id": location_id})
        return result

    def _reconnect(
        self,
        account: Account,
        token: dict[str, Any],
        location_id: str | None,
        company_id: str | None,
    ) -> ProvisioningResult:
        if location_id:
            account.ghl_location_id = location_id
        if company_id:
            account.ghl_company_id = company_id
        self.session.add(account)

        connection = self._upsert_connection(account, token, location_id)

        subscription = subscription_service.get_for_account(self.session, account.id)
        if subscription is None:
            subscription = self._create_subscription(account)
        elif subscription.status == "cancelled":
            subscription_service.activate(self.session, subscription)

        self.session.flush()
        return ProvisioningResult(
            success=True,
            account=account,
            connection=connection,
            subscription=subscription,
            created=False,
        )

    def _create(
        self,
        token: dict[str, Any],
        user_info: dict[str, Any],
        location_id: str | None,
        company_id: str | None,
    ) -> ProvisioningResult:
        name = _str(user_info.get("companyName")) or _str(user_info.get("locationName")) or _str(user_info.get("name"))
        account = Account(
            name=name or DEFAULT_WORKSPACE_NAME,
            status="active",
            ghl_location_id=location_id,
            ghl_company_id=company_id,
            custom_attributes={"onboarding_source": "ghl_marketplace"},
            settings={
                "auto_resolve_after": AUTO_RESOLVE_AFTER_MINUTES,
                "auto_resolve_message": AUTO_RESOLVE_MESSAGE,
            },
        )
        self.session.add(account)
        self.session.flush()

        user = self._admin_user(token, user_info)
        self.session.add(AccountUser(account_id=account.id, user_id=user.id, role=ADMIN_ROLE))

        subscription = self._create_subscription(account)
        connection = self._upsert_connection(account, token, location_id)
        self.session.add(
            Inbox(
                account_id=account.id,
                name=DEFAULT_INBOX_NAME,
                channel_type="api",
                greeting_enabled=True,
                greeting_message=GREETING_MESSAGE,
            )
        )
        self.session.flush()
        return ProvisioningResult(
            success=True,
            account=account,
            user=user,
            connection=connection,
            subscription=subscription,
            created=True,
        )

    def _admin_user(self, token: dict[str, Any], user_info: dict[str, Any]) -> User:
        email = _str(user_info.get("email"))
        if not email:
            suffix = _str(token.get("userId")) or secrets.token_hex(4)
            email = f"ghl-{suffix}@{self.config.email_domain}"
        email = email.lower()

        user = find_user_by_email(self.session, email)
        if user is not None:
            return user

        user = User(
            email=email,
            name=_str(user_info.get("name")) or DEFAULT_USER_NAME,
            password_hash=pbkdf2_sha256.hash(generate_password()),
            confirmed_at=utcnow(),
        )
        self.session.add(user)
        self.session.flush()
        return user

    def _create_subscription(self, account: Account) -> Subscription:
        return subscription_service.create_trial(
            self.session,
            account.id,
            trial_days=self.config.trial_days,
            metadata={"oauth_scopes": list(OAUTH_SCOPES), "source": "ghl_install"},
        )

    def _upsert_connection(self, account: Account, token: dict[str, Any], location_id: str | None) -> Connection:
        if not token.get("access_token"):
            raise ValueError("access_token missing from token response")

        connection = find_connection(self.session, account.id)
        settings = connection_settings_from_token(token)
        if connection is None:
            connection = Connection(account_id=account.id, app_id=GHL_APP_ID, settings={})
        connection.access_token = token["access_token"]
        connection.refresh_token = token.get("refresh_token") or connection.refresh_token
        connection.status = CONNECTION_ENABLED
        connection.reference_id = location_id or connection.reference_id
        connection.settings = {**(connection.settings or {}), **settings}
        self.session.add(connection)
        self.session.flush()
        return connection


def _str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
