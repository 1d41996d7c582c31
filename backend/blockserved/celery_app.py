"""Celery application for reconciliation scans and submission retries."""

from __future__ import annotations

import os

from celery import Celery

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "0"))
RECONCILE_MODE = os.getenv("RECONCILE_MODE", "events")


def beat_schedule(interval: int = RECONCILE_INTERVAL_SECONDS, mode: str = RECONCILE_MODE) -> dict:
    """Periodic full reconciliation, off unless an interval is configured."""
    if interval <= 0:
        return {}
    return {
        "reconcile-notices": {
            "task": "blockserved.tasks.reconcile_notices",
            "schedule": float(interval),
            "args": (1, None, mode),
            "options": {"queue": "reconcile"},
        }
    }


celery_app = Celery(
    "blockserved",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["blockserved.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue=os.getenv("CELERY_QUEUE", "default"),
    task_routes={
        "blockserved.tasks.reconcile_notices": {"queue": "reconcile"},
        "blockserved.tasks.retry_submission": {"queue": "issue"},
    },
    beat_schedule=beat_schedule(),
)
