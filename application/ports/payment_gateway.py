"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
Adapters are independent classes: they share the method contract, not state.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    AuthorizeResult,
    InitiateResult,
    PaymentContext,
    WebhookActionResult,
)
from domain.payment.entity import CanonicalStatus


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Every operation is a single remote attempt bounded by the adapter's
    timeout. Provider rejections come back as structured statuses; only
    invalid input, lifecycle conflicts and unexpected faults raise.
    """

    provider: str
    # True when authorize already moves the money (single-call charge)
    captures_on_authorize: bool

    async def initiate(self, amount: int, currency_code: str, context: PaymentContext) -> InitiateResult: ...

    async def update(
        self,
        amount: int,
        currency_code: str,
        data: dict[str, Any],
        context: PaymentContext,
    ) -> dict[str, Any]: ...

    async def delete(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def authorize(self, data: dict[str, Any], context: PaymentContext) -> AuthorizeResult: ...

    async def capture(self, data: dict[str, Any], amount: Optional[int] = None) -> dict[str, Any]: ...

    async def refund(self, data: dict[str, Any], amount: int) -> dict[str, Any]: ...

    async def cancel(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def retrieve(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def get_status(self, data: dict[str, Any]) -> CanonicalStatus: ...

    def verify_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> None: ...

    async def handle_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> WebhookActionResult: ...

    async def aclose(self) -> None: ...
