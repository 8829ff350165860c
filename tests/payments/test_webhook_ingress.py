import hashlib
import hmac
import time

import httpx
import pytest
import pytest_asyncio

from application.dtos.payments import PaymentContext
from application.services.payment_service import PaymentService
from application.services.webhook_service import PaymentWebhookService
from core.settings import PaymentRetry
from domain.payment.entity import CanonicalStatus
from domain.payment.exceptions import PaymentSignatureError
from infrastructure.external.payments import resolve_provider_name
from infrastructure.external.payments.mercadopago_client import MercadoPagoClient
from infrastructure.external.payments.payu_client import PayUClient
from infrastructure.external.payments.signature import format_amount, sign


API_KEY = "4Vj8eK4rloUd272L48hsrarnUA"


def payu_notification(state_pol: str = "4", value: str = "500.00", reference: str = "order-1001", **overrides) -> dict:
    payload = {
        "merchant_id": "508029",
        "reference_sale": reference,
        "value": value,
        "currency": "COP",
        "state_pol": state_pol,
        "transaction_id": "tx-9",
        "reference_pol": "8450001",
        "response_message_pol": "APPROVED" if state_pol == "4" else "DECLINED",
    }
    payload["sign"] = sign(API_KEY, ["508029", reference, format_amount(value), "COP", state_pol])
    payload.update(overrides)
    return payload


@pytest.fixture
def payu_transport(recording_transport):
    # Any remote call during webhook handling is a failure
    return recording_transport(httpx.Response(500))


@pytest.fixture
def gateways(payu_settings, mp_settings, payu_transport, recording_transport):
    mp_transport = recording_transport(httpx.Response(503, json={"message": "down"}))
    return {
        "payu": PayUClient(payu_settings, http_client=payu_transport.client()),
        "mercadopago": MercadoPagoClient(mp_settings, http_client=mp_transport.client()),
    }


@pytest.fixture
def resolver(gateways):
    def resolve(provider, subprovider=None):
        return gateways[resolve_provider_name(provider, subprovider)]
    return resolve


@pytest.fixture
def payments(repository, resolver):
    return PaymentService(repository, resolver=resolver, retry=PaymentRetry(max=2, base_backoff=0))


@pytest.fixture
def webhooks(repository, payments, resolver):
    return PaymentWebhookService(repository, payments, resolver=resolver)


@pytest_asyncio.fixture
async def payu_session(repository, payments):
    session = await repository.create_session(provider_id="pp_payu_payu", amount=50000, currency_code="COP")
    return await payments.initiate_session(session.id, PaymentContext(reference="order-1001"))


@pytest.mark.asyncio
async def test_bad_signature_raises_and_leaves_session_untouched(webhooks, repository, payu_session):
    payload = payu_notification(sign="0" * 32)

    with pytest.raises(PaymentSignatureError):
        await webhooks.process("pp_payu", "payu", payload, {})

    stored = await repository.retrieve_session(payu_session.id)
    assert stored.status == CanonicalStatus.PENDING
    assert stored.data == payu_session.data


@pytest.mark.asyncio
async def test_approved_notification_authorizes_without_remote_call(webhooks, repository, payu_session, payu_transport):
    outcome = await webhooks.process("pp_payu", "payu", payu_notification(), {})

    assert outcome.status == "success"
    assert outcome.action == "authorized"
    assert outcome.reference == "order-1001"
    stored = await repository.retrieve_session(payu_session.id)
    assert stored.status == CanonicalStatus.AUTHORIZED
    assert stored.data["transaction_id"] == "tx-9"
    assert stored.data["status"] == "approved"
    assert stored.data["captured_at"]
    assert payu_transport.requests == []


@pytest.mark.asyncio
async def test_replayed_notification_is_acknowledged_once(webhooks, repository, payu_session, payu_transport):
    await webhooks.process("pp_payu", "payu", payu_notification(), {})
    first = await repository.retrieve_session(payu_session.id)

    replay = await webhooks.process("pp_payu", "payu", payu_notification(), {})

    assert replay.status == "success"
    assert replay.message == "Already processed"
    second = await repository.retrieve_session(payu_session.id)
    assert second.data == first.data
    assert second.status == CanonicalStatus.AUTHORIZED
    assert payu_transport.requests == []


@pytest.mark.asyncio
async def test_unknown_reference_is_received_without_changes(webhooks, repository, payu_session):
    outcome = await webhooks.process("pp_payu", "payu", payu_notification(reference="order-unknown"), {})

    assert outcome.status == "received"
    stored = await repository.retrieve_session(payu_session.id)
    assert stored.status == CanonicalStatus.PENDING


@pytest.mark.asyncio
async def test_amount_mismatch_is_rejected(webhooks, repository, payu_session):
    outcome = await webhooks.process("pp_payu", "payu", payu_notification(value="400.00"), {})

    assert outcome.status == "rejected"
    stored = await repository.retrieve_session(payu_session.id)
    assert stored.status == CanonicalStatus.PENDING


@pytest.mark.asyncio
async def test_failed_notification_marks_session_error(webhooks, repository, payu_session):
    outcome = await webhooks.process("pp_payu", "payu", payu_notification(state_pol="6"), {})

    assert outcome.status == "success"
    assert outcome.action == "failed"
    stored = await repository.retrieve_session(payu_session.id)
    assert stored.status == CanonicalStatus.ERROR
    assert stored.data["state_pol"] == "6"
    assert stored.data["error"]


@pytest.mark.asyncio
async def test_unmapped_state_is_ignored(webhooks, repository, payu_session):
    outcome = await webhooks.process("pp_payu", "payu", payu_notification(state_pol="7"), {})

    assert outcome.status == "received"
    assert outcome.action == "not_supported"
    stored = await repository.retrieve_session(payu_session.id)
    assert stored.status == CanonicalStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_provider_is_acknowledged_as_error(webhooks):
    outcome = await webhooks.process("pp_stripe", "stripe", {}, {})

    assert outcome.status == "error"


@pytest.mark.asyncio
async def test_processing_failure_is_acknowledged_as_error(webhooks, repository):
    await repository.create_session(
        provider_id="pp_mercadopago_mercadopago",
        amount=50000,
        currency_code="ARS",
        data={"provider": "mercadopago", "external_reference": "order-2001"},
    )
    ts = int(time.time())
    manifest = f"id:123456;request-id:req-1;ts:{ts};"
    v1 = hmac.new(b"mp-webhook-secret", manifest.encode(), hashlib.sha256).hexdigest()
    headers = {"x-signature": f"ts={ts},v1={v1}", "x-request-id": "req-1"}

    # Signature passes, then the payment lookup hits a 503
    outcome = await webhooks.process(
        "pp_mercadopago", "mercadopago", {"type": "payment", "data": {"id": "123456"}}, headers
    )

    assert outcome.status == "error"


@pytest.mark.asyncio
async def test_find_session_is_scoped_to_provider(webhooks, repository, payu_session):
    await repository.create_session(
        provider_id="pp_mercadopago_mercadopago",
        amount=50000,
        currency_code="ARS",
        data={"provider": "mercadopago", "external_reference": "order-1001"},
    )

    matches = await webhooks.find_session("payu", "order-1001")

    assert [s.id for s in matches] == [payu_session.id]


@pytest.mark.asyncio
async def test_unconfigured_provider_is_acknowledged_as_error(repository, payments, mp_settings):
    def resolve(provider, subprovider=None):
        return MercadoPagoClient(mp_settings.model_copy(update={"access_token": None}))

    webhooks = PaymentWebhookService(repository, payments, resolver=resolve)

    outcome = await webhooks.process("pp_mercadopago", "mercadopago", {"type": "payment"}, {})

    assert outcome.status == "error"
    assert outcome.message == "Payment provider unavailable"


@pytest.mark.asyncio
async def test_unexpected_verification_failure_is_acknowledged_as_error(repository, payments, payu_session):
    class BrokenVerifier:
        provider = "payu"

        def verify_webhook(self, payload, headers):
            raise KeyError("merchant_id")

        async def handle_webhook(self, payload, headers):
            raise AssertionError("must not be called")

    webhooks = PaymentWebhookService(repository, payments, resolver=lambda provider, subprovider=None: BrokenVerifier())

    outcome = await webhooks.process("pp_payu", "payu", payu_notification(), {})

    assert outcome.status == "error"
    stored = await repository.retrieve_session(payu_session.id)
    assert stored.status == CanonicalStatus.PENDING
