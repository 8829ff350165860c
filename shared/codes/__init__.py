"""
Business codes shared by every layer.

``BusinessCode`` covers generic request/system outcomes; payment outcomes live
in ``shared.codes.payment_codes.PaymentCode`` (6xxxx range) together with the
provider status tables.
"""
from enum import IntEnum

from .payment_codes import PaymentCode


class BusinessCode(IntEnum):
    SUCCESS = 0

    # Request errors (1xxxx)
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # Generic business errors (2xxxx)
    NOT_FOUND = 20006

    # System errors (4xxxx)
    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003


__all__ = ["BusinessCode", "PaymentCode"]
