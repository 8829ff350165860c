"""
Payment DTOs (Pydantic v2) used at application boundaries.

Provider data is typed per provider (a discriminated union on ``provider``)
and only becomes a plain dict at the persistence edge via
``load_provider_data`` / ``dump_provider_data``.
"""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Annotated, Any, Optional, Literal, Union
from pydantic import BaseModel, Field, ConfigDict, TypeAdapter, field_validator, model_validator

from domain.payment.entity import CanonicalStatus


WebhookAction = Literal["authorized", "failed", "not_supported"]

_CARD_BRANDS = (
    ("34", "AMEX"),
    ("37", "AMEX"),
    ("36", "DINERS"),
    ("4", "VISA"),
    ("5", "MASTERCARD"),
)

# Flat card keys accepted on the authorize context (storefront card form shape)
_FLAT_CARD_KEYS = {
    "card_number": "number",
    "holder_name": "holder_name",
    "expiry_month": "expiry_month",
    "expiry_year": "expiry_year",
    "cvv": "cvv",
    "card_type": "brand",
}

# Provider data kept server-side only
_INTERNAL_DATA_KEYS = frozenset({"declined_card_fingerprint"})


class CardInput(BaseModel):
    number: str
    holder_name: str
    expiry_month: str
    expiry_year: str
    cvv: str
    brand: Optional[str] = None

    @field_validator("number", "cvv", "expiry_month", "expiry_year", mode="before")
    @classmethod
    def _digits_only(cls, v: Any) -> str:
        s = "".join(str(v or "").split())
        if not s.isdigit():
            raise ValueError("must contain digits only")
        return s

    @field_validator("expiry_month")
    @classmethod
    def _valid_month(cls, v: str) -> str:
        if not 1 <= int(v) <= 12:
            raise ValueError("expiry_month must be between 01 and 12")
        return v.zfill(2)

    @field_validator("expiry_year")
    @classmethod
    def _four_digit_year(cls, v: str) -> str:
        return v if len(v) == 4 else f"20{v.zfill(2)}"

    @property
    def last4(self) -> str:
        return self.number[-4:]

    @property
    def expiration_date(self) -> str:
        # PayU expects YYYY/MM
        return f"{self.expiry_year}/{self.expiry_month}"

    @property
    def payment_method(self) -> str:
        if self.brand:
            return self.brand.upper()
        for prefix, brand in _CARD_BRANDS:
            if self.number.startswith(prefix):
                return brand
        return "VISA"

    def fingerprint(self, key: str) -> str:
        """Keyed hash identifying this card input without storing it.

        The CVV is never part of the digest.
        """
        base = "|".join((self.number, self.expiry_year, self.expiry_month, self.holder_name.upper()))
        return hmac.new(key.encode("utf-8"), base.encode("utf-8"), hashlib.sha256).hexdigest()


class PaymentContext(BaseModel):
    reference: Optional[str] = None
    description: Optional[str] = None
    email: Optional[str] = None
    card: Optional[CardInput] = None
    payer: Optional[dict[str, Any]] = None
    billing_address: Optional[dict[str, Any]] = None
    payment_id: Optional[str] = None  # wallet payment id from redirect
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_session_id: Optional[str] = None
    source: Literal["customer", "webhook", "reconciliation"] = "customer"

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_card_fields(cls, values: Any) -> Any:
        if not isinstance(values, dict) or values.get("card") is not None:
            return values
        if "card_number" not in values:
            return values
        values = dict(values)
        values["card"] = {
            target: values.pop(source)
            for source, target in _FLAT_CARD_KEYS.items()
            if source in values
        }
        return values


class PayUData(BaseModel):
    provider: Literal["payu"] = "payu"
    reference: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[int] = None
    currency_code: Optional[str] = None
    status: str = "created"
    capture_mode: Optional[str] = None

    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    authorization_code: Optional[str] = None
    trazability_code: Optional[str] = None
    response_code: Optional[str] = None
    response_message: Optional[str] = None
    reference_pol: Optional[str] = None
    state_pol: Optional[str] = None
    action_url: Optional[str] = None

    payment_method: Optional[str] = None
    payment_method_type: Optional[str] = None
    payment_method_name: Optional[str] = None
    card_last4: Optional[str] = None
    card_holder: Optional[str] = None
    declined_card_fingerprint: Optional[str] = None

    authorized_at: Optional[str] = None
    captured_at: Optional[str] = None
    captured_amount: Optional[int] = None
    capture_id: Optional[str] = None
    refund_id: Optional[str] = None
    refunded_amount: Optional[int] = None
    refunded_at: Optional[str] = None
    refund_status: Optional[str] = None
    canceled_at: Optional[str] = None
    cancel_supported: Optional[bool] = None
    cancel_message: Optional[str] = None

    error: Optional[str] = None
    error_code: Optional[str] = None
    updated_at: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class MercadoPagoData(BaseModel):
    provider: Literal["mercadopago"] = "mercadopago"
    preference_id: Optional[str] = None
    init_point: Optional[str] = None
    external_reference: Optional[str] = None
    amount: Optional[int] = None
    currency_code: Optional[str] = None
    status: str = "pending"
    status_detail: Optional[str] = None

    payment_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_type_id: Optional[str] = None
    captured: Optional[bool] = None

    authorized_at: Optional[str] = None
    captured_at: Optional[str] = None
    captured_amount: Optional[int] = None
    capture_id: Optional[str] = None
    refund_id: Optional[str] = None
    refunded_amount: Optional[int] = None
    refunded_at: Optional[str] = None
    refund_status: Optional[str] = None
    canceled_at: Optional[str] = None

    error: Optional[str] = None
    error_code: Optional[str] = None
    updated_at: Optional[str] = None

    model_config = ConfigDict(extra="allow")


ProviderData = Annotated[Union[PayUData, MercadoPagoData], Field(discriminator="provider")]
_provider_data_adapter: TypeAdapter = TypeAdapter(ProviderData)


def load_provider_data(data: Optional[dict[str, Any]], provider: str) -> PayUData | MercadoPagoData:
    """Parse the open provider-data map into the provider's typed model."""
    payload = dict(data or {})
    payload.setdefault("provider", provider)
    if payload["provider"] != provider:
        raise ValueError(f"provider data belongs to '{payload['provider']}', not '{provider}'")
    return _provider_data_adapter.validate_python(payload)


def dump_provider_data(model: PayUData | MercadoPagoData) -> dict[str, Any]:
    """Serialize typed provider data back to the schema-less storage map."""
    return model.model_dump(mode="json", exclude_none=True)


class InitiateResult(BaseModel):
    session_external_id: str
    provider_data: dict[str, Any]


class AuthorizeResult(BaseModel):
    status: CanonicalStatus
    provider_data: dict[str, Any]


class WebhookActionResult(BaseModel):
    action: WebhookAction
    session_reference_key: Optional[str] = None
    amount: int = 0
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookOutcome(BaseModel):
    """Sender-facing webhook acknowledgement body."""
    status: Literal["success", "received", "error", "rejected"]
    message: str
    action: Optional[str] = None
    reference: Optional[str] = None


class RefundPayload(BaseModel):
    amount: int = Field(gt=0)


class CapturePayload(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)


class UpdateSessionPayload(BaseModel):
    amount: int = Field(ge=0)
    currency_code: str = Field(min_length=3, max_length=3)
    context: PaymentContext = Field(default_factory=PaymentContext)


class PaymentSessionDTO(BaseModel):
    """Session as returned by the API; card data never lives in ``data``."""
    id: str
    provider_id: str
    amount: int
    currency_code: str
    status: CanonicalStatus
    payment_collection_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("data", mode="before")
    @classmethod
    def _hide_internal_keys(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {k: val for k, val in v.items() if k not in _INTERNAL_DATA_KEYS}
        return v
