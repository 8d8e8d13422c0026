from __future__ import annotations

import logging

from celery import Celery

from app.core.config import settings


logger = logging.getLogger(__name__)

BROKER_CONFIGURED = bool(settings.CELERY_BROKER_URL)

celery_app = Celery("billing-webhooks", include=["app.tasks.subscriptions"])

if BROKER_CONFIGURED:
    broker_url = settings.CELERY_BROKER_URL
else:
    broker_url = "memory://"
    logger.warning("CELERY_BROKER_URL is not configured; Celery will run in in-memory mode.")

celery_app.conf.update(
    broker_url=broker_url,
    result_backend=None,
    task_default_queue="billing-tasks",
    task_serializer="json",
    accept_content=["json"],
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "subscription-lifecycle-sweep": {
            "task": "subscriptions.run_lifecycle_sweep",
            "schedule": float(max(60, settings.SWEEP_INTERVAL_SECONDS)),
        },
        "rate-limit-compaction": {
            "task": "rate_limits.compact",
            "schedule": 300.0,
        },
    },
)

