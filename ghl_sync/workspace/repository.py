from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghl_sync.workspace.models import Account, AccountUser, User


def find_account_by_ghl_ids(session: Session, location_id: str | None, company_id: str | None) -> Account | None:
    account = None
    if location_id:
        account = session.scalar(
            select(Account).where(Account.ghl_location_id == location_id).order_by(Account.created_at).limit(1)
        )
    if account is None and company_id:
        account = session.scalar(
            select(Account).where(Account.ghl_company_id == company_id).order_by(Account.created_at).limit(1)
        )
    return account


def find_user_by_email(session: Session, email: str) -> User | None:
    return session.scalar(select(User).where(User.email == email.lower()))


def is_account_member(session: Session, account_id: uuid.UUID, subject: str) -> bool:
    """`subject` is the JWT `sub`: an app_user id, or the user's email."""
    try:
        user_filter = User.id == uuid.UUID(subject)
    except ValueError:
        user_filter = User.email == subject.lower()
    membership = session.scalar(
        select(AccountUser.id)
        .join(User, User.id == AccountUser.user_id)
        .where(AccountUser.account_id == account_id, user_filter)
        .limit(1)
    )
    return membership is not None
