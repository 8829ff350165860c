"""Celery beat schedule configuration.

Periodic sweep for sessions whose webhook never arrived.
"""
from __future__ import annotations

CELERY_BEAT_SCHEDULE = {
    "payments-reconcile-pending": {
        "task": "payments.reconcile_pending",
        "schedule": 600,  # every 10 minutes
    },
}
