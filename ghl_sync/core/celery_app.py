from celery import Celery
from celery.schedules import crontab

from ghl_sync.core.config import get_settings
from ghl_sync.logging import configure_logging
from ghl_sync.otel import setup_otel

settings = get_settings()

configure_logging()
setup_otel(settings.otel_enabled)

celery_app = Celery(
    "ghl_sync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["ghl_sync.jobs.tasks"],
)
celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_hijack_root_logger=False,
    timezone="UTC",
)

celery_app.conf.beat_schedule = {
    "ghl-token-refresh-hourly": {
        "task": "ghl_sync.jobs.refresh_expiring_tokens",
        "schedule": crontab(minute=0),
        "kwargs": {"window_minutes": settings.ghl_refresh_window_minutes},
    },
    "ghl-token-refresh-legacy": {
        "task": "ghl_sync.jobs.refresh_expiring_tokens",
        "schedule": crontab(minute=30, hour="*/12"),
        "kwargs": {"window_minutes": settings.ghl_legacy_refresh_window_minutes},
    },
    "ghl-monthly-usage-reset": {
        "task": "ghl_sync.jobs.reset_monthly_usage",
        "schedule": crontab(minute=0, hour=0, day_of_month=1),
    },
}

