"""
Auto-capture reactor for single-call gateways.

When an order is finalized, sessions whose provider already moved the money
on authorize are marked captured so the order's payment state is accurate.
Failures are logged per session and never propagated to the order flow.
"""
from __future__ import annotations

from application.ports.events import OrderEventBus
from application.services.payment_service import PaymentService
from core.logging_config import get_logger
from domain.payment.entity import CanonicalStatus
from domain.payment.events import ORDER_PLACED, OrderPlaced
from domain.payment.repository import PaymentSessionRepository


logger = get_logger(__name__)


class AutoCaptureReactor:
    def __init__(self, repository: PaymentSessionRepository, payments: PaymentService) -> None:
        self.repository = repository
        self.payments = payments

    async def register(self, bus: OrderEventBus) -> None:
        await bus.subscribe(ORDER_PLACED, self.handle)

    async def handle(self, event: OrderPlaced) -> None:
        captured = 0
        for collection in await self.repository.list_collections(order_id=event.order_id):
            sessions = await self.repository.list_sessions(payment_collection_id=collection.id)
            for session in sessions:
                if session.status != CanonicalStatus.AUTHORIZED:
                    logger.info(
                        "auto_capture_skipped",
                        session_id=session.id,
                        order_id=event.order_id,
                        status=session.status.value,
                    )
                    continue
                try:
                    if not self.payments.gateway_for(session).captures_on_authorize:
                        continue
                    await self.payments.capture_session(session.id)
                    captured += 1
                except Exception as exc:
                    # Order placement must not fail because of a capture problem
                    logger.error(
                        "auto_capture_failed",
                        session_id=session.id,
                        order_id=event.order_id,
                        error=str(exc),
                    )
        logger.info("auto_capture_completed", order_id=event.order_id, captured=captured)
