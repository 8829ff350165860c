"""
Application service orchestrating payment session use-cases.

This class depends only on the application PaymentGateway port, the session
repository and DTOs. Gateway implementations are resolved through an injected
callable from the composition root (API/tasks), keeping dependencies one-way.

Adapters return data patches and a canonical status; this service is the only
writer of session state and the only place a bounded retry happens.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import AuthorizeResult, PaymentContext
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from core.settings import PaymentRetry
from domain.common.exceptions import BusinessException
from domain.payment.entity import CanonicalStatus, PaymentSession, ensure_transition
from domain.payment.exceptions import (
    DeclinedError,
    PaymentSessionNotFound,
    PaymentUnavailableError,
    StateConflictError,
)
from domain.payment.repository import PaymentSessionRepository


logger = get_logger(__name__)

GatewayResolver = Callable[[str], PaymentGateway]

# error_code values written by adapters for transient remote failures
RECOVERABLE_ERROR_CODES = frozenset({"PaymentRecoverableError", "RemoteTimeoutError", "RemoteUnavailableError"})

# Reconciliation never moves a session backwards along this order
_PROGRESS = {
    CanonicalStatus.PENDING: 0,
    CanonicalStatus.REQUIRES_MORE: 0,
    CanonicalStatus.ERROR: 0,
    CanonicalStatus.AUTHORIZED: 1,
    CanonicalStatus.CANCELED: 1,
    CanonicalStatus.CAPTURED: 2,
    CanonicalStatus.REFUNDED: 3,
}

_INITIATABLE = (CanonicalStatus.PENDING, CanonicalStatus.REQUIRES_MORE, CanonicalStatus.ERROR)


class _TransientAuthorizeResult(Exception):
    def __init__(self, result: AuthorizeResult) -> None:
        self.result = result
        super().__init__(result.provider_data.get("error") or "transient authorize failure")


def is_transient(result: AuthorizeResult) -> bool:
    return (
        result.status == CanonicalStatus.ERROR
        and result.provider_data.get("error_code") in RECOVERABLE_ERROR_CODES
    )


class PaymentService:
    def __init__(
        self,
        repository: PaymentSessionRepository,
        resolver: GatewayResolver,
        retry: Optional[PaymentRetry] = None,
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.retry = retry or PaymentRetry()

    @contextmanager
    def _guard(self, operation: str, session_id: str) -> Iterator[None]:
        # Business errors keep their meaning; anything else is hidden behind a generic message
        try:
            yield
        except BusinessException:
            raise
        except Exception as exc:
            logger.exception("payment_operation_failed", operation=operation, session_id=session_id, error=str(exc))
            raise PaymentUnavailableError(session_id=session_id) from exc

    async def get_session(self, session_id: str) -> PaymentSession:
        session = await self.repository.retrieve_session(session_id)
        if session is None:
            raise PaymentSessionNotFound(session_id)
        return session

    def gateway_for(self, session: PaymentSession) -> PaymentGateway:
        return self.resolver(session.provider_id)

    async def initiate_session(self, session_id: str, context: PaymentContext) -> PaymentSession:
        with self._guard("initiate", session_id):
            session = await self.get_session(session_id)
            if session.status not in _INITIATABLE:
                # Provider transaction ids are kept once a session leaves pending
                raise StateConflictError(
                    "Payment session is past pending and cannot be initiated again",
                    current=session.status.value,
                    target="pending",
                )
            gateway = self.gateway_for(session)
            result = await gateway.initiate(session.amount, session.currency_code, context)
            logger.info("payment_session_initiated", session_id=session_id, external_id=result.session_external_id)
            return await self.repository.update_session(session_id, data=result.provider_data)

    async def update_session(
        self,
        session_id: str,
        *,
        amount: int,
        currency_code: str,
        context: PaymentContext,
    ) -> PaymentSession:
        with self._guard("update", session_id):
            session = await self.get_session(session_id)
            gateway = self.gateway_for(session)
            data = await gateway.update(amount, currency_code, session.data, context)
            status = CanonicalStatus.PENDING if session.status in (
                CanonicalStatus.REQUIRES_MORE, CanonicalStatus.ERROR
            ) else None
            updated = await self.repository.update_session(
                session_id,
                data=data,
                status=status,
                amount=amount,
                currency_code=currency_code,
            )
            if session.payment_collection_id:
                await self.repository.update_collection(
                    session.payment_collection_id,
                    amount=amount,
                    currency_code=currency_code,
                )
            logger.info("payment_session_updated", session_id=session_id, amount=amount, currency=currency_code)
            return updated

    async def delete_session(self, session_id: str) -> PaymentSession:
        """Abandon the provider side of a session; the session itself is kept."""
        with self._guard("delete", session_id):
            session = await self.get_session(session_id)
            if session.is_settled():
                raise StateConflictError(
                    "Settled payment sessions cannot be deleted",
                    current=session.status.value,
                    target="deleted",
                )
            data = await self.gateway_for(session).delete(session.data)
            return await self.repository.update_session(session_id, data=data)

    async def _authorize_once(self, gateway: PaymentGateway, session_id: str, context: PaymentContext) -> AuthorizeResult:
        # Re-read so a retry sends the same reference with the latest data
        session = await self.get_session(session_id)
        result = await gateway.authorize(session.data, context)
        if is_transient(result):
            raise _TransientAuthorizeResult(result)
        return result

    async def authorize_session(self, session_id: str, context: Optional[PaymentContext] = None) -> PaymentSession:
        context = context or PaymentContext()
        with self._guard("authorize", session_id):
            session = await self.get_session(session_id)
            if session.is_settled():
                logger.info("payment_authorize_noop", session_id=session_id, status=session.status.value)
                return session
            gateway = self.gateway_for(session)

            retrying = AsyncRetrying(
                reraise=True,
                stop=stop_after_attempt(self.retry.max + 1),
                wait=wait_exponential(
                    multiplier=self.retry.base_backoff,
                    min=self.retry.base_backoff,
                    max=self.retry.base_backoff * 8,
                ),
                retry=retry_if_exception_type(_TransientAuthorizeResult),
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        result = await self._authorize_once(gateway, session_id, context)
            except _TransientAuthorizeResult as exc:
                result = exc.result
                logger.warning(
                    "payment_authorize_retries_exhausted",
                    session_id=session_id,
                    attempts=self.retry.max + 1,
                    error=result.provider_data.get("error"),
                )

            updated = await self.repository.update_session(
                session_id,
                data=result.provider_data,
                status=result.status,
            )
            logger.info(
                "payment_session_authorized" if result.status == CanonicalStatus.AUTHORIZED else "payment_session_not_authorized",
                session_id=session_id,
                provider=gateway.provider,
                status=result.status.value,
                source=context.source,
            )
            return updated

    async def capture_session(self, session_id: str, amount: Optional[int] = None) -> PaymentSession:
        with self._guard("capture", session_id):
            session = await self.get_session(session_id)
            if session.status == CanonicalStatus.CAPTURED:
                logger.info("payment_capture_noop", session_id=session_id)
                return session
            ensure_transition(session.status, CanonicalStatus.CAPTURED)
            gateway = self.gateway_for(session)
            data = await gateway.capture(session.data, amount)
            if not data.get("captured_at"):
                await self.repository.update_session(session_id, data=data)
                raise DeclinedError(
                    data.get("error") or "Capture was not approved",
                    provider=gateway.provider,
                    response_code=data.get("error_code"),
                )
            logger.info("payment_session_captured", session_id=session_id, provider=gateway.provider)
            return await self.repository.update_session(session_id, data=data, status=CanonicalStatus.CAPTURED)

    async def refund_session(self, session_id: str, amount: int) -> PaymentSession:
        with self._guard("refund", session_id):
            session = await self.get_session(session_id)
            ensure_transition(session.status, CanonicalStatus.REFUNDED)
            gateway = self.gateway_for(session)
            data = await gateway.refund(session.data, amount)
            if data.get("refund_status") == "declined":
                await self.repository.update_session(session_id, data=data)
                raise DeclinedError(
                    data.get("error") or "Refund was declined",
                    provider=gateway.provider,
                    response_code=data.get("error_code"),
                )
            status = CanonicalStatus.REFUNDED if data.get("status") == "refunded" else None
            logger.info("payment_session_refunded", session_id=session_id, amount=amount, full=status is not None)
            return await self.repository.update_session(session_id, data=data, status=status)

    async def cancel_session(self, session_id: str) -> PaymentSession:
        with self._guard("cancel", session_id):
            session = await self.get_session(session_id)
            if session.status == CanonicalStatus.CANCELED:
                return session
            ensure_transition(session.status, CanonicalStatus.CANCELED)
            gateway = self.gateway_for(session)
            data = await gateway.cancel(session.data)
            if data.get("cancel_supported") is False:
                logger.warning("payment_cancel_unsupported", session_id=session_id, provider=gateway.provider)
                return await self.repository.update_session(session_id, data=data)
            logger.info("payment_session_canceled", session_id=session_id, provider=gateway.provider)
            return await self.repository.update_session(session_id, data=data, status=CanonicalStatus.CANCELED)

    async def sync_session(self, session_id: str) -> PaymentSession:
        """Reconcile local state with the provider's view, never moving backwards."""
        with self._guard("sync", session_id):
            session = await self.get_session(session_id)
            gateway = self.gateway_for(session)
            data = await gateway.retrieve(session.data)
            remote = await gateway.get_status(data)
            status: Optional[CanonicalStatus] = None
            if remote != session.status and _PROGRESS[remote] >= _PROGRESS[session.status]:
                try:
                    ensure_transition(session.status, remote)
                    status = remote
                except StateConflictError:
                    logger.warning(
                        "payment_sync_conflict",
                        session_id=session_id,
                        local=session.status.value,
                        remote=remote.value,
                    )
            logger.info("payment_session_synced", session_id=session_id, remote=remote.value, applied=status is not None)
            return await self.repository.update_session(session_id, data=data, status=status)
