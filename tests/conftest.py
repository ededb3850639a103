from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ghl_sync.billing import models as billing_models  # noqa: F401
from ghl_sync.core.config import Settings, get_settings
from ghl_sync.core.database import Base
from ghl_sync.integrations import models as integration_models  # noqa: F401
from ghl_sync.integrations.config import IntegrationConfig, load_integration_config
from ghl_sync.integrations.tokens import InMemoryRefreshLock, set_refresh_lock
from ghl_sync.jobs.queue import InMemoryJobQueue, set_job_queue
from ghl_sync.sync import models as sync_models  # noqa: F401
from ghl_sync.workspace import models as workspace_models  # noqa: F401
from tests.factories import FakeGhlClient


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def job_queue() -> Generator[InMemoryJobQueue, None, None]:
    queue = InMemoryJobQueue()
    set_job_queue(queue)
    set_refresh_lock(InMemoryRefreshLock())
    get_settings.cache_clear()
    yield queue
    set_job_queue(InMemoryJobQueue())
    set_refresh_lock(InMemoryRefreshLock())
    get_settings.cache_clear()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        ghl_client_id="client-id",
        ghl_client_secret="client-secret",
        ghl_webhook_secret="primary-secret",
        ghl_webhook_secret_fallback="",
        frontend_url="https://app.example.test",
    )


@pytest.fixture()
def integration_config(settings: Settings) -> IntegrationConfig:
    return load_integration_config(None, settings)


@pytest.fixture()
def fake_client() -> FakeGhlClient:
    return FakeGhlClient()
