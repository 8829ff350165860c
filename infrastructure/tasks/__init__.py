"""Celery wiring for payment reconciliation and auto-capture.

Run a worker with ``celery -A infrastructure.tasks worker -Q payments.capture,payments,payments.sweep``
and the periodic sweep with ``celery -A infrastructure.tasks beat``.
"""
from .config.celery import celery_app
from .utils.dispatcher import TaskDispatcher

__all__ = ["celery_app", "TaskDispatcher"]
