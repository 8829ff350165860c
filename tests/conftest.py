"""Pytest bootstrap configuration.

Settings are instantiated at import time, so deterministic environment values
are set before test collection imports application modules.
"""
import os

import httpx
import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PAYMENT__PAYU__API_KEY", "4Vj8eK4rloUd272L48hsrarnUA")
os.environ.setdefault("PAYMENT__PAYU__API_LOGIN", "pRRXKOl8ikMmt9u")
os.environ.setdefault("PAYMENT__PAYU__MERCHANT_ID", "508029")
os.environ.setdefault("PAYMENT__PAYU__ACCOUNT_ID", "512321")
os.environ.setdefault("PAYMENT__PAYU__TEST_MODE", "true")
os.environ.setdefault("PAYMENT__MERCADOPAGO__ACCESS_TOKEN", "TEST-access-token")
os.environ.setdefault("PAYMENT__MERCADOPAGO__WEBHOOK_SECRET", "mp-webhook-secret")
os.environ.setdefault("PAYMENT__RETRY__BASE_BACKOFF", "0")

from core.settings import MercadoPagoSettings, PayUSettings  # noqa: E402
from infrastructure.repositories.payment_repository import InMemoryPaymentSessionRepository  # noqa: E402


PAYU_API_KEY = "4Vj8eK4rloUd272L48hsrarnUA"
PAYU_MERCHANT_ID = "508029"
MP_WEBHOOK_SECRET = "mp-webhook-secret"


@pytest.fixture
def payu_settings() -> PayUSettings:
    return PayUSettings(
        api_key=PAYU_API_KEY,
        api_login="pRRXKOl8ikMmt9u",
        merchant_id=PAYU_MERCHANT_ID,
        account_id="512321",
        test_mode=True,
    )


@pytest.fixture
def mp_settings() -> MercadoPagoSettings:
    return MercadoPagoSettings(
        access_token="TEST-access-token",
        webhook_secret=MP_WEBHOOK_SECRET,
        test_mode=True,
    )


@pytest.fixture
def repository() -> InMemoryPaymentSessionRepository:
    return InMemoryPaymentSessionRepository()


class RecordingTransport:
    """httpx MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def recording_transport():
    return RecordingTransport
