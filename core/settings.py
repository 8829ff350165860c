"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Each adapter receives its own provider model in its constructor; nothing in
the adapters reads the environment directly.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 15.0
    write: float = 5.0
    total: float = 20.0


class PaymentRetry(BaseModel):
    # Bounded retry performed by the checkout flow, never by adapters
    max: int = 2
    base_backoff: float = 0.5


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class PayUSettings(BaseModel):
    api_key: Optional[str] = None
    api_login: Optional[str] = None
    merchant_id: Optional[str] = None
    account_id: Optional[str] = None
    api_url: str = "https://api.payulatam.com/payments-api/4.0/service.cgi"
    reports_url: str = "https://api.payulatam.com/reports-api/4.0/service.cgi"
    sandbox_api_url: str = "https://sandbox.api.payulatam.com/payments-api/4.0/service.cgi"
    sandbox_reports_url: str = "https://sandbox.api.payulatam.com/reports-api/4.0/service.cgi"
    test_mode: bool = False
    # AUTHORIZATION_AND_CAPTURE (single call) or AUTHORIZATION
    transaction_type: str = "AUTHORIZATION_AND_CAPTURE"
    country: str = "CO"
    language: str = "es"

    @property
    def payments_endpoint(self) -> str:
        return self.sandbox_api_url if self.test_mode else self.api_url

    @property
    def reports_endpoint(self) -> str:
        return self.sandbox_reports_url if self.test_mode else self.reports_url


class MercadoPagoSettings(BaseModel):
    access_token: Optional[str] = None
    public_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    test_mode: bool = False
    api_url: str = "https://api.mercadopago.com"
    store_url: str = "http://localhost:8000"
    notification_url: Optional[str] = None


class PaymentSettings(BaseSettings):
    providers: list[str] = Field(default_factory=lambda: ["payu", "mercadopago"])
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    payu: PayUSettings = Field(default_factory=PayUSettings)
    mercadopago: MercadoPagoSettings = Field(default_factory=MercadoPagoSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
