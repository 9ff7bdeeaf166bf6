from __future__ import annotations

from celery import Celery

from receipt_tracker.core.config import settings


def make_celery() -> Celery:
    app = Celery("receipt_tracker", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment == "dev",
        task_eager_propagates=True,
        task_track_started=True,
        # The pipeline owns failure handling; a lost worker should not replay model calls.
        task_acks_late=False,
    )
    app.autodiscover_tasks(["receipt_tracker.worker.tasks"])
    return app


celery_app = make_celery()
