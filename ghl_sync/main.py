from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from ghl_sync.api.routes import router as api_router
from ghl_sync.core.config import Settings, get_settings
from ghl_sync.integrations.tokens import InMemoryRefreshLock, RedisRefreshLock, RefreshLock, set_refresh_lock
from ghl_sync.jobs.queue import CeleryJobQueue, InlineJobQueue, JobQueue, set_job_queue
from ghl_sync.logging import configure_logging
from ghl_sync.middleware.correlation_id import CorrelationIdMiddleware
from ghl_sync.middleware.request_logging import RequestLoggingMiddleware
from ghl_sync.otel import server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("ghl_sync.lifecycle")


def select_job_queue(settings: Settings) -> JobQueue:
    return InlineJobQueue() if settings.auto_run_jobs else CeleryJobQueue()


def select_refresh_lock(settings: Settings) -> RefreshLock:
    backend = settings.refresh_lock_backend.lower()
    if backend == "auto":
        backend = "redis" if settings.app_env.lower() in {"prod", "production"} else "inmemory"
    if backend == "redis":
        return RedisRefreshLock.from_url(settings.redis_url)
    return InMemoryRefreshLock()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "system.started",
        extra={"status": settings.app_env, "event": "jobs.inline" if settings.auto_run_jobs else "jobs.celery"},
    )
    yield
    logger.info("system.stopped")


_settings = get_settings()
set_job_queue(select_job_queue(_settings))
set_refresh_lock(select_refresh_lock(_settings))
setup_otel(_settings.otel_enabled)

app = FastAPI(title="DeskFlows GHL Integration", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)
FastAPIInstrumentor.instrument_app(app, server_request_hook=server_request_hook)
