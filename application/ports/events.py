"""
Order event port (contracts-first).

The payment layer only consumes the finalized-order stream; publishers live in
the host framework. Ordering relative to other subscribers is not guaranteed.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from domain.payment.events import OrderPlaced


OrderHandler = Callable[[OrderPlaced], Awaitable[None]]


class OrderEventBus(Protocol):
    async def publish(self, event: OrderPlaced) -> None: ...

    async def subscribe(self, topic: str, handler: OrderHandler) -> None: ...

    async def aclose(self) -> None: ...  # pragma: no cover - optional


__all__ = ["OrderEventBus", "OrderHandler"]
