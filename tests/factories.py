from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from ghl_sync.billing.models import Subscription
from ghl_sync.billing.plans import PLANS
from ghl_sync.core.clock import utcnow
from ghl_sync.errors import ExternalApiError
from ghl_sync.integrations.models import Connection
from ghl_sync.workspace.models import Account, AccountUser, User


LOCATION_ID = "loc-123"
COMPANY_ID = "comp-9"


@dataclass
class FakeGhlClient:
    """Records outbound calls and answers from a queue of canned responses."""

    responses: dict[tuple[str, str], list[Any]] = field(default_factory=dict)
    calls: list[tuple[str, str, dict[str, Any] | None, dict[str, Any] | None]] = field(default_factory=list)

    def respond(self, method: str, path: str, *payloads: Any) -> None:
        self.responses.setdefault((method, path), []).extend(payloads)

    def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        self.calls.append((method, path, body, query))
        queued = self.responses.get((method, path)) or []
        payload = queued.pop(0) if queued else {}
        if isinstance(payload, ExternalApiError):
            raise payload
        return 200, payload


def make_account(
    session: Session,
    *,
    name: str = "Acme Dental",
    location_id: str | None = LOCATION_ID,
    company_id: str | None = COMPANY_ID,
) -> Account:
    account = Account(
        name=name,
        ghl_location_id=location_id,
        ghl_company_id=company_id,
        custom_attributes={},
        settings={},
    )
    session.add(account)
    session.commit()
    return account


def make_connection(
    session: Session,
    account: Account,
    *,
    reference_id: str | None = LOCATION_ID,
    refresh_token: str | None = "refresh-1",
    expires_in: timedelta | None = timedelta(hours=24),
    status: str = "enabled",
) -> Connection:
    settings: dict[str, Any] = {}
    if expires_in is not None:
        settings["expires_at"] = (utcnow() + expires_in).isoformat()
    connection = Connection(
        account_id=account.id,
        access_token="access-1",
        refresh_token=refresh_token,
        status=status,
        reference_id=reference_id,
        settings=settings,
    )
    session.add(connection)
    session.commit()
    return connection


def make_member(session: Session, account: Account, *, email: str = "agent@acme.example", role: str = "agent") -> User:
    user = User(email=email, name="Acme Agent", password_hash="not-a-hash")
    session.add(user)
    session.flush()
    session.add(AccountUser(account_id=account.id, user_id=user.id, role=role))
    session.commit()
    return user


def make_subscription(
    session: Session,
    account: Account,
    *,
    plan: str = "starter",
    status: str = "active",
    ai_credits_used: int = 0,
    trial_days: int | None = None,
) -> Subscription:
    tier = PLANS[plan]
    trial_ends_at = utcnow() + timedelta(days=trial_days) if trial_days is not None else None
    subscription = Subscription(
        account_id=account.id,
        plan=plan,
        status=status,
        locations_limit=tier.locations_limit,
        agents_limit=tier.agents_limit,
        ai_credits_limit=tier.ai_credits_limit,
        locations_count=1,
        ai_credits_used=ai_credits_used,
        usage_data={},
        subscription_metadata={},
        trial_ends_at=trial_ends_at,
        current_period_ends_at=trial_ends_at,
    )
    session.add(subscription)
    session.commit()
    return subscription


def random_id() -> str:
    return uuid.uuid4().hex
