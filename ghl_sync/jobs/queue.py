from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol

from ghl_sync.context import get_correlation_id
from ghl_sync.core.celery_app import celery_app


logger = logging.getLogger(__name__)

PROCESS_WEBHOOK_EVENT = "ghl_sync.jobs.process_webhook_event"
ENRICH_CONTACT = "ghl_sync.jobs.enrich_contact"
PUSH_CONTACT = "ghl_sync.jobs.push_contact"
SEND_MESSAGE = "ghl_sync.jobs.send_message"
IMPORT_CONTACTS = "ghl_sync.jobs.import_contacts"
REFRESH_EXPIRING_TOKENS = "ghl_sync.jobs.refresh_expiring_tokens"
RESET_MONTHLY_USAGE = "ghl_sync.jobs.reset_monthly_usage"


class JobQueue(Protocol):
    def enqueue(self, name: str, **kwargs: Any) -> None: ...


@dataclass(slots=True)
class QueuedJob:
    name: str
    kwargs: dict[str, Any]


@dataclass(slots=True)
class InMemoryJobQueue:
    jobs: list[QueuedJob] = field(default_factory=list)

    def enqueue(self, name: str, **kwargs: Any) -> None:
        self.jobs.append(QueuedJob(name=name, kwargs=kwargs))

    def named(self, name: str) -> list[QueuedJob]:
        return [job for job in self.jobs if job.name == name]

    def clear(self) -> None:
        self.jobs.clear()


class CeleryJobQueue:
    def enqueue(self, name: str, **kwargs: Any) -> None:
        kwargs.setdefault("correlation_id", get_correlation_id())
        celery_app.send_task(name, kwargs=kwargs)
        logger.info("job.enqueued", extra={"job_type": name})


class InlineJobQueue:
    """Runs registered tasks synchronously in-process; used when `auto_run_jobs` is on."""

    def enqueue(self, name: str, **kwargs: Any) -> None:
        from ghl_sync.jobs import tasks  # noqa: F401  registers task names

        kwargs.setdefault("correlation_id", get_correlation_id())
        celery_app.tasks[name].apply(kwargs=kwargs)


_JOB_QUEUE: JobQueue = InMemoryJobQueue()
_JOB_QUEUE_LOCK = Lock()


def get_job_queue() -> JobQueue:
    return _JOB_QUEUE


def set_job_queue(queue: JobQueue) -> None:
    global _JOB_QUEUE
    with _JOB_QUEUE_LOCK:
        _JOB_QUEUE = queue
