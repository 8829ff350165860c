"""Celery application for payment reconciliation.

Broker and result backend come from ``settings.redis.url`` (or the
``CELERY_BROKER_URL`` / ``CELERY_RESULT_BACKEND`` env vars). In development
and test environments tasks run eagerly in-process.
"""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


logger = get_logger(__name__)

TASK_PACKAGES = ("infrastructure.tasks.tasks",)
EAGER_ENVIRONMENTS = {"development", "dev", "test", "testing"}

celery_app = Celery("checkout_payments")

celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Ack after the provider call so a lost worker re-runs the reconciliation
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="payments",
    task_default_retry_delay=5,
    # Captures move money and must not queue behind the periodic sweep
    task_queues=(
        Queue("payments.capture"),
        Queue("payments"),
        Queue("payments.sweep"),
    ),
    task_routes={
        "payments.auto_capture_order": {"queue": "payments.capture"},
        "payments.reconcile_session": {"queue": "payments"},
        "payments.reconcile_pending": {"queue": "payments.sweep"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=TASK_PACKAGES,
)

if (settings.ENVIRONMENT or "production").lower() in EAGER_ENVIRONMENTS:
    celery_app.conf.task_always_eager = True

celery_app.autodiscover_tasks(packages=TASK_PACKAGES)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        eager=bool(sender.conf.task_always_eager),
    )
