"""
Request/callback signature codec shared by outbound calls and webhook checks.

Canonicalization: fields are stringified and joined with a fixed delimiter in
the caller's declared order. Amounts must go through ``format_amount`` on both
sides of every computation.
"""
from __future__ import annotations

import hashlib
import hmac
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Literal


SignatureAlgorithm = Literal["md5", "hmac-sha256"]
DEFAULT_DELIMITER = "~"

_TWO_PLACES = Decimal("0.01")
_ONE_PLACE = Decimal("0.1")


def format_amount(value: Any) -> str:
    """Single numeric-to-string rule for signed amounts.

    Two decimals, collapsed to one when the second decimal is zero:
    ``500 -> "500.0"``, ``500.50 -> "500.5"``, ``500.55 -> "500.55"``.
    Strings are parsed as numbers first, so ``"500.00"`` and ``500`` agree.
    """
    amount = Decimal(str(value)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    if amount == amount.quantize(_ONE_PLACE):
        amount = amount.quantize(_ONE_PLACE)
    return f"{amount:f}"


def canonicalize(fields: Iterable[Any], delimiter: str = DEFAULT_DELIMITER) -> str:
    return delimiter.join("" if f is None else str(f) for f in fields)


def sign(
    secret: str,
    fields: Iterable[Any],
    *,
    algorithm: SignatureAlgorithm = "md5",
    delimiter: str = DEFAULT_DELIMITER,
) -> str:
    """Return the lowercase hex digest for ``fields`` under ``secret``.

    ``md5`` digests ``secret~f1~f2...`` (the secret is the first field);
    ``hmac-sha256`` keys the MAC with ``secret`` over ``f1~f2...``.
    """
    if not secret:
        raise ValueError("signature secret must not be empty")
    if algorithm == "md5":
        message = canonicalize([secret, *fields], delimiter)
        return hashlib.md5(message.encode("utf-8")).hexdigest()
    if algorithm == "hmac-sha256":
        message = canonicalize(fields, delimiter)
        return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    raise ValueError(f"Unsupported signature algorithm: {algorithm}")


def verify(
    secret: str,
    fields: Iterable[Any],
    received: str | None,
    *,
    algorithm: SignatureAlgorithm = "md5",
    delimiter: str = DEFAULT_DELIMITER,
) -> bool:
    """Constant-time comparison of ``received`` against the expected digest.

    Hex case is ignored; providers send both.
    """
    if not received:
        return False
    expected = sign(secret, fields, algorithm=algorithm, delimiter=delimiter)
    return hmac.compare_digest(expected.encode("ascii"), received.lower().encode("utf-8"))
