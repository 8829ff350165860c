"""
Payment error taxonomy mapped to unified BusinessException variants.

Expected provider rejections are returned by adapters as structured status
objects; these exceptions cover invalid input, failed authentication of
callbacks, transient remote failures, and lifecycle conflicts.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


def _merge(base: dict, details: Optional[dict]) -> dict:
    merged = dict(base)
    if details:
        merged.update(details)
    return merged


class PaymentValidationError(BusinessException):
    """Required input is missing or malformed. Never retried automatically."""

    def __init__(self, message: str, *, provider: str | None = None, field: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.VALIDATION_ERROR,
            message=message,
            error_type="PaymentValidationError",
            details=_merge({"provider": provider}, details),
            field=field,
        )


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=_merge({"provider": provider}, details),
        )


class PaymentProviderError(BusinessException):
    """Unexpected integration fault (bad credentials, malformed response, 4xx)."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=_merge({"provider": provider, "provider_code": provider_code}, details),
        )


class PaymentRecoverableError(BusinessException):
    """Transient remote failure; the caller may retry with the same reference."""

    error_code: int = PaymentCode.PROVIDER_RECOVERABLE
    error_name: str = "PaymentRecoverableError"

    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        super().__init__(
            code=self.error_code,
            message=message,
            error_type=self.error_name,
            details=_merge({"provider": provider}, details),
        )


class RemoteTimeoutError(PaymentRecoverableError):
    error_code = PaymentCode.TIMEOUT
    error_name = "RemoteTimeoutError"


class RemoteUnavailableError(PaymentRecoverableError):
    error_code = PaymentCode.UNAVAILABLE
    error_name = "RemoteUnavailableError"


class DeclinedError(BusinessException):
    """Provider explicitly rejected the attempt; new payment input is needed."""

    def __init__(self, message: str, *, provider: str, response_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.DECLINED,
            message=message,
            error_type="DeclinedError",
            details=_merge({"provider": provider, "response_code": response_code}, details),
        )


class StateConflictError(BusinessException):
    def __init__(self, message: str, *, current: str | None = None, target: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.STATE_CONFLICT,
            message=message,
            error_type="StateConflictError",
            details=_merge({"current": current, "target": target}, details),
            field="status",
        )


class PaymentSessionNotFound(BusinessException):
    def __init__(self, session_id: str):
        super().__init__(
            code=PaymentCode.SESSION_NOT_FOUND,
            message="Payment session not found",
            error_type="PaymentSessionNotFound",
            details={"session_id": session_id},
        )


class PaymentUnavailableError(BusinessException):
    """User-facing wrapper for unexpected faults; carries no provider internals."""

    def __init__(self, *, session_id: str | None = None):
        super().__init__(
            code=PaymentCode.PAYMENT_UNAVAILABLE,
            message="Payment temporarily unavailable, please try again later",
            error_type="PaymentUnavailable",
            details={"session_id": session_id} if session_id else None,
        )
