"""Celery application for UploadGuard background work.

Deferred upload processing, debounced latest-wins processing, readiness
polling and the quarantine maintenance sweeps all run here.  Broker and
result backend are Redis (``settings.redis_url``); tasks go to the
``uploadguard`` queue.

Starting a worker::

    celery -A uploadguard.celery_app worker --loglevel=info -Q uploadguard

Starting the beat scheduler::

    celery -A uploadguard.celery_app beat --loglevel=info
"""

from celery import Celery

from uploadguard.config import settings

#: Shared Celery application instance.  Import this in task modules.
celery_app = Celery(
    "uploadguard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["uploadguard.workers.upload_worker"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="uploadguard",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=86400,
)

# ---------------------------------------------------------------------------
# Beat schedule: quarantine TTL prune and orphaned sidecar cleanup
# ---------------------------------------------------------------------------

celery_app.conf.beat_schedule = {
    "prune-stale-quarantine": {
        "task": "uploadguard.workers.upload_worker.prune_quarantine_task",
        "schedule": settings.quarantine_prune_interval_seconds,
        "options": {"queue": "uploadguard"},
    },
    "cleanup-orphaned-sidecars": {
        "task": "uploadguard.workers.upload_worker.cleanup_sidecars_task",
        "schedule": settings.quarantine_prune_interval_seconds,
        "options": {"queue": "uploadguard"},
    },
}
