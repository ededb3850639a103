from __future__ import annotations

from datetime import timedelta

import pytest

from ghl_sync.errors import ExternalApiError, RefreshNotSupportedError
from ghl_sync.integrations.tokens import InMemoryRefreshLock, TokenLifecycleManager, needs_refresh
from tests.factories import make_account, make_connection


class FakeRefresher:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.seen: list[str] = []

    def __call__(self, config, refresh_token: str) -> dict:
        self.seen.append(refresh_token)
        if refresh_token in self.fail_for:
            raise ExternalApiError("POST", "/oauth/token", 400, {"error": "invalid_grant"})
        return {"access_token": f"access-for-{refresh_token}", "expires_in": 86399}


def _connection(db_session, location_id: str, **kwargs):
    account = make_account(db_session, location_id=location_id, company_id=None)
    return make_connection(db_session, account, reference_id=location_id, **kwargs)


def test_needs_refresh_respects_window(db_session) -> None:
    soon = _connection(db_session, "loc-soon", expires_in=timedelta(minutes=90))
    later = _connection(db_session, "loc-later", expires_in=timedelta(hours=3))
    unknown = _connection(db_session, "loc-unknown", expires_in=None)
    no_token = _connection(db_session, "loc-none", refresh_token=None, expires_in=timedelta(minutes=5))

    window = timedelta(minutes=120)
    assert needs_refresh(soon, window)
    assert not needs_refresh(later, window)
    assert needs_refresh(unknown, window)
    assert not needs_refresh(no_token, window)
    assert needs_refresh(later, timedelta(minutes=360))


def test_sweep_refreshes_only_expiring_connections(db_session, integration_config) -> None:
    soon = _connection(db_session, "loc-soon", refresh_token="r-soon", expires_in=timedelta(minutes=90))
    later = _connection(db_session, "loc-later", refresh_token="r-later", expires_in=timedelta(hours=3))
    refresher = FakeRefresher()

    result = TokenLifecycleManager(db_session, integration_config, refresher=refresher).sweep()

    assert result.to_dict() == {"refreshed": 1, "failed": 0, "skipped": 0, "candidates": 1}
    assert refresher.seen == ["r-soon"]
    assert soon.access_token == "access-for-r-soon"
    assert soon.refresh_token == "r-soon"
    assert soon.settings["last_refreshed_at"]
    assert soon.settings["expires_in"] == 86399
    assert later.access_token == "access-1"


def test_sweep_isolates_failures(db_session, integration_config) -> None:
    bad = _connection(db_session, "loc-bad", refresh_token="r-bad", expires_in=timedelta(minutes=10))
    good = _connection(db_session, "loc-good", refresh_token="r-good", expires_in=timedelta(minutes=10))
    refresher = FakeRefresher(fail_for={"r-bad"})

    result = TokenLifecycleManager(db_session, integration_config, refresher=refresher).sweep()

    assert result.refreshed == 1
    assert result.failed == 1
    assert sorted(refresher.seen) == ["r-bad", "r-good"]
    db_session.refresh(good)
    db_session.refresh(bad)
    assert good.access_token == "access-for-r-good"
    assert bad.access_token == "access-1"


def test_sweep_skips_connection_locked_elsewhere(db_session, integration_config) -> None:
    connection = _connection(db_session, "loc-locked", expires_in=timedelta(minutes=10))
    lock = InMemoryRefreshLock()
    assert lock.acquire(f"ghl:token_refresh:{connection.id}", 300)
    refresher = FakeRefresher()

    result = TokenLifecycleManager(db_session, integration_config, lock=lock, refresher=refresher).sweep()

    assert result.skipped == 1
    assert result.refreshed == 0
    assert refresher.seen == []


def test_wider_window_catches_more_connections(db_session, integration_config) -> None:
    _connection(db_session, "loc-later", refresh_token="r-later", expires_in=timedelta(hours=3))
    refresher = FakeRefresher()
    manager = TokenLifecycleManager(db_session, integration_config, refresher=refresher)

    assert manager.sweep().candidates == 0
    assert manager.sweep(window_minutes=360).refreshed == 1


def test_rotated_refresh_token_replaces_old_one(db_session, integration_config) -> None:
    connection = _connection(db_session, "loc-rotate", refresh_token="r-old", expires_in=timedelta(minutes=10))

    def rotating(config, refresh_token: str) -> dict:
        return {"access_token": "fresh", "refresh_token": "r-new", "expires_in": 3600}

    TokenLifecycleManager(db_session, integration_config, refresher=rotating).refresh_on_demand(connection)

    assert connection.access_token == "fresh"
    assert connection.refresh_token == "r-new"


def test_manual_refresh_without_refresh_token_is_rejected(db_session, integration_config) -> None:
    connection = _connection(db_session, "loc-legacy", refresh_token=None)

    with pytest.raises(RefreshNotSupportedError, match="Refresh token not available"):
        TokenLifecycleManager(db_session, integration_config, refresher=FakeRefresher()).refresh_on_demand(connection)
