from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import redis
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from ghl_sync.core.clock import parse_timestamp, utcnow
from ghl_sync.errors import RefreshNotSupportedError
from ghl_sync.integrations.config import IntegrationConfig
from ghl_sync.integrations.models import CONNECTION_ENABLED, GHL_APP_ID, Connection
from ghl_sync.integrations.oauth import refresh_access_token, token_expiry
from ghl_sync.metrics import observe_token_refresh
from ghl_sync.otel import mark_span_error


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("ghl_sync.integrations.tokens")

TokenRefresher = Callable[[IntegrationConfig, str], dict[str, Any]]


class RefreshLock(Protocol):
    def acquire(self, key: str, ttl_seconds: int) -> bool: ...

    def release(self, key: str) -> None: ...


class InMemoryRefreshLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._expiry: dict[str, float] = {}

    def acquire(self, key: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        with self._guard:
            expires = self._expiry.get(key)
            if expires is not None and expires > now:
                return False
            self._expiry[key] = now + ttl_seconds
            return True

    def release(self, key: str) -> None:
        with self._guard:
            self._expiry.pop(key, None)


class RedisRefreshLock:
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisRefreshLock:
        return cls(redis.from_url(url))

    def acquire(self, key: str, ttl_seconds: int) -> bool:
        return bool(self._client.set(key, "1", nx=True, ex=ttl_seconds))

    def release(self, key: str) -> None:
        self._client.delete(key)


_REFRESH_LOCK: RefreshLock = InMemoryRefreshLock()
_REFRESH_LOCK_GUARD = threading.Lock()


def get_refresh_lock() -> RefreshLock:
    return _REFRESH_LOCK


def set_refresh_lock(lock: RefreshLock) -> None:
    global _REFRESH_LOCK
    with _REFRESH_LOCK_GUARD:
        _REFRESH_LOCK = lock


@dataclass(slots=True)
class SweepResult:
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0
    candidates: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "refreshed": self.refreshed,
            "failed": self.failed,
            "skipped": self.skipped,
            "candidates": self.candidates,
        }


def _lock_key(connection_id: uuid.UUID) -> str:
    return f"ghl:token_refresh:{connection_id}"


def needs_refresh(connection: Connection, window: timedelta, now: datetime | None = None) -> bool:
    if not connection.refresh_token:
        return False
    expires_at = parse_timestamp((connection.settings or {}).get("expires_at"))
    if expires_at is None:
        return True
    return expires_at <= (now or utcnow()) + window


class TokenLifecycleManager:
    """Keeps GHL access tokens fresh, either on a timer sweep or on demand.

    Concurrent sweeps are tolerated: each refresh yields a valid token pair and the last
    commit wins. The per-connection lock only avoids paying for duplicate external calls.
    """

    def __init__(
        self,
        session: Session,
        config: IntegrationConfig,
        *,
        lock: RefreshLock | None = None,
        refresher: TokenRefresher | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.lock = lock or get_refresh_lock()
        self.refresher = refresher or refresh_access_token

    def find_candidates(self, window: timedelta, now: datetime | None = None) -> list[Connection]:
        connections = self.session.scalars(
            select(Connection).where(
                Connection.app_id == GHL_APP_ID,
                Connection.status == CONNECTION_ENABLED,
                Connection.refresh_token.is_not(None),
                Connection.refresh_token != "",
            )
        ).all()
        return [connection for connection in connections if needs_refresh(connection, window, now)]

    def sweep(self, window_minutes: int | None = None) -> SweepResult:
        window = timedelta(minutes=window_minutes or self.config.refresh_window_minutes)
        candidates = self.find_candidates(window)
        result = SweepResult(candidates=len(candidates))

        with tracer.start_as_current_span("ghl.token_refresh.sweep") as span:
            span.set_attribute("window_minutes", int(window.total_seconds() // 60))
            for connection in candidates:
                connection_id = connection.id
                account_id = connection.account_id
                try:
                    if self.refresh_connection(connection):
                        result.refreshed += 1
                    else:
                        result.skipped += 1
                except Exception as exc:
                    self.session.rollback()
                    result.failed += 1
                    logger.error(
                        "token_refresh.failed",
                        extra={"connection_id": str(connection_id), "account_id": str(account_id), "error": str(exc)},
                    )
            span.set_attribute("refreshed", result.refreshed)
            span.set_attribute("failed", result.failed)

        observe_token_refresh("refreshed", result.refreshed)
        observe_token_refresh("failed", result.failed)
        observe_token_refresh("skipped", result.skipped)
        logger.info("token_refresh.sweep_completed", extra=result.to_dict())
        return result

    def refresh_connection(self, connection: Connection) -> bool:
        """Refresh one connection; False when another worker holds its lock."""
        key = _lock_key(connection.id)
        if not self.lock.acquire(key, self.config.refresh_lock_ttl_seconds):
            logger.info("token_refresh.lock_busy", extra={"connection_id": str(connection.id)})
            return False
        try:
            self._refresh(connection)
            return True
        finally:
            self.lock.release(key)

    def refresh_on_demand(self, connection: Connection) -> Connection:
        if not connection.refresh_token:
            raise RefreshNotSupportedError()
        self.refresh_connection(connection)
        return connection

    def _refresh(self, connection: Connection) -> None:
        previous_refresh_token = connection.refresh_token or ""
        with tracer.start_as_current_span("ghl.token_refresh.connection") as span:
            span.set_attribute("connection_id", str(connection.id))
            try:
                token = self.refresher(self.config, previous_refresh_token)
            except Exception as exc:
                mark_span_error(span, exc)
                raise

        now = utcnow()
        expires_at = token_expiry(token, now)
        connection.access_token = token["access_token"]
        connection.refresh_token = token.get("refresh_token") or previous_refresh_token
        connection.settings = {
            **(connection.settings or {}),
            "expires_in": token.get("expires_in"),
            "expires_at": expires_at.isoformat() if expires_at else None,
            "last_refreshed_at": now.isoformat(),
        }
        self.session.add(connection)
        self.session.commit()
        logger.info(
            "token_refresh.succeeded",
            extra={"connection_id": str(connection.id), "account_id": str(connection.account_id)},
        )
