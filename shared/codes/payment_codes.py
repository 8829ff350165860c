"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Caller/state errors (6xxxx)
    VALIDATION_ERROR = 60000
    STATE_CONFLICT = 60001
    SESSION_NOT_FOUND = 60002

    # Provider/Network errors (61xxx)
    PROVIDER_ERROR = 61000
    PROVIDER_RECOVERABLE = 61001
    SIGNATURE_ERROR = 61002
    TIMEOUT = 61003
    UNAVAILABLE = 61004
    DECLINED = 61005
    PAYMENT_UNAVAILABLE = 61006


# Provider -> canonical status. Unmapped states fall back to "pending".
PROVIDER_STATUS_TO_CANONICAL = {
    "payu": {
        # transactionResponse.state
        "APPROVED": "authorized",
        "PENDING": "pending",
        "DECLINED": "requires_more",
        "EXPIRED": "requires_more",
        "ERROR": "error",
    },
    "mercadopago": {
        # payment.status
        "approved": "authorized",
        "authorized": "authorized",
        "pending": "pending",
        "in_process": "pending",
        "in_mediation": "pending",
        "rejected": "requires_more",
        "cancelled": "canceled",
        "refunded": "refunded",
        "charged_back": "refunded",
    },
}

# Provider webhook state -> ingress action. Unmapped states are "not_supported".
PROVIDER_WEBHOOK_STATE_TO_ACTION = {
    "payu": {
        # state_pol
        "4": "authorized",
        "5": "failed",
        "6": "failed",
        "7": "not_supported",
        "104": "failed",
        # textual states sent by some confirmation pages
        "APPROVED": "authorized",
        "DECLINED": "failed",
    },
    "mercadopago": {
        "approved": "authorized",
        "authorized": "authorized",
        "rejected": "failed",
        "cancelled": "failed",
    },
}

DEFAULT_CANONICAL_STATUS = "pending"
DEFAULT_WEBHOOK_ACTION = "not_supported"
