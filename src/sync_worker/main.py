"""Celery application for the catalog sync worker."""

from datetime import timedelta

from celery import Celery

from catalog_mirror.config import get_settings
from shared.constants import SYNC_TYPE_INCREMENTAL

settings = get_settings()

# Create Celery app
app = Celery(
    "sync_worker",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
    include=[
        "sync_worker.tasks.sync_catalog",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # 1 hour
    task_soft_time_limit=3540,
    # one task at a time per worker process
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="sync",
    task_routes={
        "sync_worker.tasks.*": {"queue": "sync"},
    },
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    "sync-catalog-products": {
        "task": "sync_worker.tasks.sync_catalog.sync_all_organizations",
        "schedule": timedelta(minutes=settings.sync_products_interval_minutes),
    },
    "sync-catalog-incremental": {
        "task": "sync_worker.tasks.sync_catalog.sync_all_organizations",
        "schedule": timedelta(minutes=settings.sync_incremental_interval_minutes),
        "args": (SYNC_TYPE_INCREMENTAL,),
    },
}


def run() -> None:
    """Run the Celery worker."""
    app.worker_main(["worker", "--loglevel=info", "-Q", "sync"])


if __name__ == "__main__":
    run()
