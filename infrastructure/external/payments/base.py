"""
HTTP transport shared by payment adapters via composition: timeouts, error
mapping, logging.

Every call is a single attempt with an explicit timeout. Retry policy belongs
to the caller (checkout flow), never to the transport.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

import httpx

from core.logging_config import get_logger
from domain.payment.exceptions import (
    PaymentProviderError,
    RemoteTimeoutError,
    RemoteUnavailableError,
)
from shared.codes.payment_codes import DEFAULT_CANONICAL_STATUS, PROVIDER_STATUS_TO_CANONICAL


logger = get_logger(__name__)

# Currencies without minor units
_ZERO_DECIMAL_CURRENCIES = {"CLP", "JPY", "KRW", "PYG"}


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in _ZERO_DECIMAL_CURRENCIES else 2


def to_major(amount: int, currency: str) -> Decimal:
    """Minor units -> provider major-unit decimal (50000 COP -> 500.00)."""
    exponent = currency_exponent(currency)
    return (Decimal(int(amount)) / (Decimal(10) ** exponent)).quantize(Decimal(1) / (Decimal(10) ** exponent))


def to_minor(amount: Any, currency: str) -> int:
    exponent = currency_exponent(currency)
    return int((Decimal(str(amount)) * (Decimal(10) ** exponent)).to_integral_value())


def map_status(provider: str, provider_status: Optional[str]) -> str:
    """Explicit lookup; unknown provider states never count as success."""
    mapping = PROVIDER_STATUS_TO_CANONICAL.get(provider, {})
    return mapping.get(provider_status or "", DEFAULT_CANONICAL_STATUS)


class PaymentHttpClient:
    """Thin httpx wrapper owned by one adapter instance."""

    def __init__(
        self,
        *,
        provider: str,
        base_url: str = "",
        timeouts: Optional[dict[str, float]] = None,
        headers: Optional[dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.provider = provider
        self._base_url = base_url
        self._timeouts_cfg = timeouts or {"connect": 2.0, "read": 15.0, "write": 5.0, "total": 20.0}
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._client = client

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["total"],
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self.timeouts)
        return self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
        operation: str = "request",
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Timeouts raise RemoteTimeoutError; transport failures and 5xx raise
        RemoteUnavailableError; other non-2xx raise PaymentProviderError.
        """
        client = self._get_client()
        try:
            resp = await client.request(
                method,
                url,
                json=json,
                headers={**self._headers, **(headers or {})},
                timeout=self.timeouts,
            )
        except httpx.TimeoutException as exc:
            logger.warning("payment_remote_timeout", provider=self.provider, operation=operation)
            raise RemoteTimeoutError(
                f"{self.provider} {operation} timed out",
                provider=self.provider,
                details={"operation": operation},
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("payment_remote_unavailable", provider=self.provider, operation=operation, error=str(exc))
            raise RemoteUnavailableError(
                f"{self.provider} {operation} unavailable",
                provider=self.provider,
                details={"operation": operation},
            ) from exc

        logger.info(
            "payment_remote_call",
            provider=self.provider,
            operation=operation,
            status_code=resp.status_code,
        )
        if resp.status_code >= 500:
            raise RemoteUnavailableError(
                f"{self.provider} {operation} failed with HTTP {resp.status_code}",
                provider=self.provider,
                details={"operation": operation, "status_code": resp.status_code},
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise PaymentProviderError(
                f"{self.provider} {operation} returned a non-JSON body",
                provider=self.provider,
                details={"status_code": resp.status_code},
            ) from exc
        if resp.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            raise PaymentProviderError(
                message or f"{self.provider} {operation} rejected with HTTP {resp.status_code}",
                provider=self.provider,
                provider_code=str(resp.status_code),
                details={"operation": operation},
            )
        return body
