"""In-memory implementation of OrderEventBus.

Single-process only. Useful for local dev and tests.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Dict, List
import asyncio

from application.ports.events import OrderEventBus, OrderHandler
from core.logging_config import get_logger
from domain.payment.events import OrderPlaced


logger = get_logger(__name__)


class InMemoryOrderEventBus(OrderEventBus):
    def __init__(self) -> None:
        self._handlers: Dict[str, List[OrderHandler]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, event: OrderPlaced) -> None:  # type: ignore[override]
        # Deliver sequentially; one failing subscriber does not starve the others
        async with self._lock:
            handlers = list(self._handlers.get(event.name, ()))
        for h in handlers:
            try:
                await h(event)
            except Exception as exc:
                logger.error(
                    "order_event_handler_failed",
                    topic=event.name,
                    event_id=event.event_id,
                    order_id=event.order_id,
                    error=str(exc),
                )

    async def subscribe(self, topic: str, handler: OrderHandler) -> None:  # type: ignore[override]
        async with self._lock:
            self._handlers[topic].append(handler)

    async def aclose(self) -> None:  # type: ignore[override]
        async with self._lock:
            self._handlers.clear()
