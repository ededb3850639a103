from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghl_sync.integrations.models import CONNECTION_ENABLED, GHL_APP_ID, Connection


def find_connection(session: Session, account_id: uuid.UUID) -> Connection | None:
    return session.scalar(
        select(Connection).where(Connection.account_id == account_id, Connection.app_id == GHL_APP_ID)
    )


def find_enabled_connection_by_reference(session: Session, reference_id: str | None) -> Connection | None:
    if not reference_id:
        return None
    return session.scalar(
        select(Connection)
        .where(
            Connection.app_id == GHL_APP_ID,
            Connection.reference_id == reference_id,
            Connection.status == CONNECTION_ENABLED,
        )
        .order_by(Connection.created_at)
        .limit(1)
    )


def find_enabled_connection(session: Session, account_id: uuid.UUID) -> Connection | None:
    connection = find_connection(session, account_id)
    if connection is None or connection.status != CONNECTION_ENABLED:
        return None
    return connection
