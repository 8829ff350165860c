"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Any, Dict

from ..config.celery import celery_app


class TaskDispatcher:
    """Internal facade used by application layer to schedule tasks."""

    def schedule_reconciliation(self, session_id: str, *, countdown: int = 60) -> None:
        """Re-check a session with its provider after ``countdown`` seconds."""
        celery_app.send_task(
            "payments.reconcile_session",
            kwargs={"session_id": session_id},
            countdown=countdown,
        )

    def request_auto_capture(self, order_id: str) -> None:
        celery_app.send_task("payments.auto_capture_order", kwargs={"order_id": order_id})

    def enqueue(self, task_name: str, *, args: tuple | None = None, kwargs: Dict[str, Any] | None = None) -> None:
        """Generic escape hatch for scheduling arbitrary tasks by name."""
        celery_app.send_task(task_name, args=args or (), kwargs=kwargs or {})
