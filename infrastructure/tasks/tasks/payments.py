"""Payment reconciliation Celery tasks.

Webhooks can be lost or arrive late; these jobs pull the provider's view for
sessions left pending or in a transient error and apply it through the same
PaymentService path the API uses.
"""
from __future__ import annotations

import asyncio

from celery import shared_task

from ..utils.base_task import BaseTask
from application.services.auto_capture import AutoCaptureReactor
from application.services.payment_service import PaymentService
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.payment.entity import CanonicalStatus
from domain.payment.events import OrderPlaced
from domain.payment.exceptions import PaymentRecoverableError
from infrastructure.external.payments import close_payment_gateways, get_payment_gateway
from infrastructure.repositories.payment_repository import get_payment_repository

logger = get_logger(__name__)

# Provider data keys that prove a remote transaction exists
_REMOTE_KEYS = ("transaction_id", "payment_id", "preference_id")


def _service() -> PaymentService:
    return PaymentService(get_payment_repository(), resolver=get_payment_gateway, retry=payment_settings.retry)


@shared_task(
    name="payments.reconcile_session",
    bind=True,
    base=BaseTask,
    autoretry_for=(PaymentRecoverableError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def reconcile_session(self, session_id: str) -> dict:
    """Synchronize one session with its provider and return the new status."""
    async def _run():
        try:
            return await _service().sync_session(session_id)
        finally:
            await close_payment_gateways()

    session = asyncio.run(_run())
    logger.info("payment_session_reconciled", session_id=session_id, status=session.status.value)
    return {"session_id": session_id, "status": session.status.value}


async def _pending_session_ids() -> list[str]:
    sessions = await get_payment_repository().list_sessions()
    return [
        s.id for s in sessions
        if s.status in (CanonicalStatus.PENDING, CanonicalStatus.ERROR)
        and any(s.data.get(key) for key in _REMOTE_KEYS)
    ]


@shared_task(name="payments.reconcile_pending", bind=True, base=BaseTask)
def reconcile_pending(self) -> dict:
    """Fan out reconciliation for every session still waiting on its provider."""
    session_ids = asyncio.run(_pending_session_ids())
    for session_id in session_ids:
        reconcile_session.delay(session_id)
    logger.info("payment_reconciliation_scheduled", count=len(session_ids))
    return {"scheduled": len(session_ids)}


@shared_task(name="payments.auto_capture_order", bind=True, base=BaseTask)
def auto_capture_order(self, order_id: str) -> None:
    """Run the auto-capture reactor for an order placed outside this process."""
    async def _run():
        repository = get_payment_repository()
        reactor = AutoCaptureReactor(repository, PaymentService(repository, resolver=get_payment_gateway))
        try:
            await reactor.handle(OrderPlaced(order_id=order_id))
        finally:
            await close_payment_gateways()

    asyncio.run(_run())
