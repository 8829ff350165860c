import hashlib
import json

import httpx
import pytest

from application.dtos.payments import PaymentContext
from domain.payment.entity import CanonicalStatus
from domain.payment.exceptions import PaymentSignatureError, PaymentValidationError, StateConflictError
from infrastructure.external.payments.payu_client import PayUClient
from infrastructure.external.payments.signature import sign


API_KEY = "4Vj8eK4rloUd272L48hsrarnUA"
APPROVED_CARD = {
    "card_number": "4097440000000004",
    "holder_name": "APPROVED",
    "expiry_month": "12",
    "expiry_year": "30",
    "cvv": "321",
}
REJECTED_CARD = {**APPROVED_CARD, "holder_name": "REJECTED"}


def _tx_response(state: str, **extra) -> httpx.Response:
    body = {
        "code": "SUCCESS",
        "error": None,
        "transactionResponse": {
            "orderId": 1400434,
            "transactionId": "tx-" + state.lower(),
            "state": state,
            "responseCode": "APPROVED" if state == "APPROVED" else "ANTIFRAUD_REJECTED",
            "authorizationCode": "00000123" if state == "APPROVED" else None,
            **extra,
        },
    }
    return httpx.Response(200, json=body)


async def _initiated(client: PayUClient, amount: int = 50000, currency: str = "COP") -> dict:
    result = await client.initiate(amount, currency, PaymentContext(reference="order-1001", email="buyer@example.com"))
    return result.provider_data


@pytest.mark.asyncio
async def test_initiate_is_local_and_uses_reference(payu_settings, recording_transport):
    transport = recording_transport(httpx.Response(500))
    client = PayUClient(payu_settings, http_client=transport.client())

    result = await client.initiate(50000, "cop", PaymentContext())

    assert transport.requests == []
    assert result.session_external_id.startswith("medusa-")
    assert result.provider_data["status"] == "created"
    assert result.provider_data["currency_code"] == "COP"
    assert result.provider_data["amount"] == 50000


@pytest.mark.asyncio
async def test_authorize_approved_signs_major_amount_and_captures(payu_settings, recording_transport):
    transport = recording_transport(_tx_response("APPROVED"))
    client = PayUClient(payu_settings, http_client=transport.client())
    data = await _initiated(client)

    result = await client.authorize(data, PaymentContext(**APPROVED_CARD))

    assert result.status == CanonicalStatus.AUTHORIZED
    assert result.provider_data["status"] == "approved"
    assert result.provider_data["transaction_id"] == "tx-approved"
    assert result.provider_data["order_id"] == "1400434"
    # Single-call mode: money already moved
    assert result.provider_data["captured_at"]
    assert result.provider_data["card_last4"] == "0004"
    assert "4097440000000004" not in json.dumps(result.provider_data)

    sent = json.loads(transport.requests[0].content)
    order = sent["transaction"]["order"]
    expected_sig = hashlib.md5(f"{API_KEY}~508029~order-1001~500.0~COP".encode()).hexdigest()
    assert order["signature"] == expected_sig
    assert order["additionalValues"]["TX_VALUE"] == {"value": 500.0, "currency": "COP"}
    assert sent["transaction"]["creditCard"]["expirationDate"] == "2030/12"
    assert sent["transaction"]["paymentMethod"] == "VISA"
    assert sent["transaction"]["type"] == "AUTHORIZATION_AND_CAPTURE"
    assert sent["test"] is True
    assert str(transport.requests[0].url) == payu_settings.sandbox_api_url


@pytest.mark.asyncio
async def test_declined_attempt_is_not_resubmitted_without_new_input(payu_settings, recording_transport):
    transport = recording_transport(_tx_response("DECLINED"))
    client = PayUClient(payu_settings, http_client=transport.client())
    data = await _initiated(client)

    first = await client.authorize(data, PaymentContext(**REJECTED_CARD))
    assert first.status == CanonicalStatus.REQUIRES_MORE
    assert first.provider_data["status"] == "declined"
    assert first.provider_data["declined_card_fingerprint"]
    assert len(transport.requests) == 1

    # No card at all
    again = await client.authorize(first.provider_data, PaymentContext())
    assert again.status == CanonicalStatus.REQUIRES_MORE
    # Same card again
    same = await client.authorize(first.provider_data, PaymentContext(**REJECTED_CARD))
    assert same.status == CanonicalStatus.REQUIRES_MORE
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_new_card_after_decline_is_submitted(payu_settings, recording_transport):
    transport = recording_transport(_tx_response("DECLINED"), _tx_response("APPROVED"))
    client = PayUClient(payu_settings, http_client=transport.client())
    data = await _initiated(client)

    declined = await client.authorize(data, PaymentContext(**REJECTED_CARD))
    approved = await client.authorize(declined.provider_data, PaymentContext(**APPROVED_CARD))

    assert approved.status == CanonicalStatus.AUTHORIZED
    assert "declined_card_fingerprint" not in approved.provider_data
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_update_clears_decline_markers(payu_settings, recording_transport):
    transport = recording_transport(_tx_response("DECLINED"))
    client = PayUClient(payu_settings, http_client=transport.client())
    declined = await client.authorize(await _initiated(client), PaymentContext(**REJECTED_CARD))

    updated = await client.update(60000, "COP", declined.provider_data, PaymentContext(**APPROVED_CARD))

    assert updated["status"] == "created"
    assert updated["amount"] == 60000
    assert updated["card_last4"] == "0004"
    for marker in ("error", "response_code", "declined_card_fingerprint"):
        assert marker not in updated


@pytest.mark.asyncio
async def test_pending_with_redirect_requires_more(payu_settings, recording_transport):
    transport = recording_transport(
        _tx_response("PENDING", extraParameters={"THREEDS_AUTH_REDIRECT_URL": "https://bank.example/3ds"})
    )
    client = PayUClient(payu_settings, http_client=transport.client())

    result = await client.authorize(await _initiated(client), PaymentContext(**APPROVED_CARD))

    assert result.status == CanonicalStatus.REQUIRES_MORE
    assert result.provider_data["action_url"] == "https://bank.example/3ds"


@pytest.mark.asyncio
async def test_provider_error_code_surfaces_error_status(payu_settings, recording_transport):
    transport = recording_transport(httpx.Response(200, json={"code": "ERROR", "error": "Invalid signature"}))
    client = PayUClient(payu_settings, http_client=transport.client())

    result = await client.authorize(await _initiated(client), PaymentContext(**APPROVED_CARD))

    assert result.status == CanonicalStatus.ERROR
    assert result.provider_data["error"] == "Invalid signature"


@pytest.mark.asyncio
async def test_timeout_surfaces_error_not_success(payu_settings, recording_transport):
    transport = recording_transport(httpx.ReadTimeout("timed out"))
    client = PayUClient(payu_settings, http_client=transport.client())
    data = await _initiated(client)

    result = await client.authorize(data, PaymentContext(**APPROVED_CARD))

    assert result.status == CanonicalStatus.ERROR
    assert result.provider_data["error_code"] == "RemoteTimeoutError"
    # Reference is kept so a retry can be deduplicated by the provider
    assert result.provider_data["reference"] == data["reference"]
    assert "authorized_at" not in result.provider_data


@pytest.mark.asyncio
async def test_authorize_without_card_or_recovery_path_is_rejected(payu_settings, recording_transport):
    transport = recording_transport(httpx.Response(500))
    client = PayUClient(payu_settings, http_client=transport.client())

    with pytest.raises(PaymentValidationError):
        await client.authorize(await _initiated(client), PaymentContext())
    assert transport.requests == []


@pytest.mark.asyncio
async def test_authorize_when_already_approved_is_noop(payu_settings, recording_transport):
    transport = recording_transport(_tx_response("APPROVED"))
    client = PayUClient(payu_settings, http_client=transport.client())
    approved = await client.authorize(await _initiated(client), PaymentContext(**APPROVED_CARD))

    again = await client.authorize(approved.provider_data, PaymentContext(**APPROVED_CARD))

    assert again.status == CanonicalStatus.AUTHORIZED
    assert again.provider_data == approved.provider_data
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_webhook_confirmation_path_makes_no_remote_call(payu_settings, recording_transport):
    transport = recording_transport(httpx.Response(500))
    client = PayUClient(payu_settings, http_client=transport.client())
    data = {**(await _initiated(client)), "transaction_id": "tx-9", "state_pol": "4"}

    result = await client.authorize(data, PaymentContext(source="webhook"))

    assert result.status == CanonicalStatus.AUTHORIZED
    assert result.provider_data["status"] == "approved"
    assert result.provider_data["captured_at"]
    assert transport.requests == []


@pytest.mark.asyncio
async def test_capture_in_single_call_mode_only_stamps_and_is_idempotent(payu_settings, recording_transport):
    transport = recording_transport(_tx_response("APPROVED"))
    client = PayUClient(payu_settings, http_client=transport.client())
    approved = await client.authorize(await _initiated(client), PaymentContext(**APPROVED_CARD))

    first = await client.capture(approved.provider_data)
    second = await client.capture(first)

    assert first["captured_at"] == approved.provider_data["captured_at"]
    assert second == first
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_capture_before_authorize_conflicts(payu_settings, recording_transport):
    client = PayUClient(payu_settings, http_client=recording_transport(httpx.Response(500)).client())
    with pytest.raises(StateConflictError):
        await client.capture(await _initiated(client))


@pytest.mark.asyncio
async def test_two_step_mode_calls_capture(payu_settings, recording_transport):
    settings = payu_settings.model_copy(update={"transaction_type": "AUTHORIZATION"})
    transport = recording_transport(_tx_response("APPROVED"), _tx_response("APPROVED", transactionId="cap-1"))
    client = PayUClient(settings, http_client=transport.client())
    assert client.captures_on_authorize is False

    approved = await client.authorize(await _initiated(client), PaymentContext(**APPROVED_CARD))
    assert "captured_at" not in approved.provider_data

    captured = await client.capture(approved.provider_data)

    assert captured["captured_at"]
    assert captured["capture_id"] == "cap-1"
    sent = json.loads(transport.requests[1].content)
    assert sent["transaction"]["type"] == "CAPTURE"
    assert sent["transaction"]["parentTransactionId"] == "tx-approved"


@pytest.mark.asyncio
async def test_refund_requires_captured_transaction(payu_settings, recording_transport):
    client = PayUClient(payu_settings, http_client=recording_transport(httpx.Response(500)).client())
    with pytest.raises(StateConflictError):
        await client.refund(await _initiated(client), 1000)


@pytest.mark.asyncio
async def test_refund_partial_then_full(payu_settings, recording_transport):
    transport = recording_transport(
        _tx_response("APPROVED"),
        _tx_response("PENDING", transactionId="ref-1"),
        _tx_response("APPROVED", transactionId="ref-2"),
    )
    client = PayUClient(payu_settings, http_client=transport.client())
    approved = await client.authorize(await _initiated(client), PaymentContext(**APPROVED_CARD))

    partial = await client.refund(approved.provider_data, 20000)
    assert partial["refunded_amount"] == 20000
    assert partial["refund_status"] == "pending"
    assert partial["status"] == "approved"
    sent = json.loads(transport.requests[1].content)
    assert sent["transaction"]["type"] == "REFUND"
    assert sent["transaction"]["additionalValues"]["TX_VALUE"]["value"] == 200.0

    with pytest.raises(StateConflictError):
        await client.refund(partial, 40000)

    full = await client.refund(partial, 30000)
    assert full["refunded_amount"] == 50000
    assert full["status"] == "refunded"


@pytest.mark.asyncio
async def test_cancel_is_reported_as_unsupported(payu_settings, recording_transport):
    transport = recording_transport(httpx.Response(500))
    client = PayUClient(payu_settings, http_client=transport.client())

    data = await client.cancel(await _initiated(client))

    assert data["cancel_supported"] is False
    assert "refund" in data["cancel_message"]
    assert transport.requests == []


@pytest.mark.asyncio
async def test_get_status_reads_reports_api(payu_settings, recording_transport):
    report = httpx.Response(200, json={"code": "SUCCESS", "result": {"payload": {"state": "APPROVED", "responseCode": "APPROVED"}}})
    transport = recording_transport(report)
    client = PayUClient(payu_settings, http_client=transport.client())
    data = {**(await _initiated(client)), "transaction_id": "tx-1", "status": "pending"}

    status = await client.get_status(data)

    assert status == CanonicalStatus.CAPTURED
    sent = json.loads(transport.requests[0].content)
    assert sent["command"] == "TRANSACTION_RESPONSE_DETAIL"
    assert str(transport.requests[0].url) == payu_settings.sandbox_reports_url


def _webhook(state_pol: str = "4", value: str = "500.00", **overrides) -> dict:
    payload = {
        "merchant_id": "508029",
        "reference_sale": "order-1001",
        "value": value,
        "currency": "COP",
        "state_pol": state_pol,
        "transaction_id": "tx-9",
        "reference_pol": "8450001",
        "response_message_pol": "APPROVED",
    }
    payload["sign"] = sign(API_KEY, ["508029", "order-1001", "500.0", "COP", state_pol])
    payload.update(overrides)
    return payload


def test_verify_webhook_accepts_valid_signature(payu_settings):
    PayUClient(payu_settings).verify_webhook(_webhook(), {})


@pytest.mark.parametrize(
    "overrides",
    [
        {"sign": "0" * 32},
        {"value": "501.00"},
        {"state_pol": "6"},
        {"sign": ""},
        {"value": "not-a-number"},
    ],
)
def test_verify_webhook_rejects_tampering(payu_settings, overrides):
    with pytest.raises(PaymentSignatureError):
        PayUClient(payu_settings).verify_webhook(_webhook(**overrides), {})


@pytest.mark.asyncio
async def test_handle_webhook_maps_states(payu_settings):
    client = PayUClient(payu_settings)

    approved = await client.handle_webhook(_webhook("4"), {})
    assert approved.action == "authorized"
    assert approved.session_reference_key == "order-1001"
    assert approved.amount == 50000
    assert approved.data["transaction_id"] == "tx-9"
    assert approved.data["state_pol"] == "4"

    assert (await client.handle_webhook(_webhook("6"), {})).action == "failed"
    assert (await client.handle_webhook(_webhook("7"), {})).action == "not_supported"
    assert (await client.handle_webhook(_webhook("99"), {})).action == "not_supported"


def test_missing_credentials_fail_fast(payu_settings):
    with pytest.raises(RuntimeError):
        PayUClient(payu_settings.model_copy(update={"api_key": None}))


@pytest.mark.asyncio
async def test_pending_transaction_is_polled_even_with_new_card(payu_settings, recording_transport):
    report = httpx.Response(200, json={"code": "SUCCESS", "result": {"payload": {"state": "PENDING"}}})
    transport = recording_transport(_tx_response("PENDING"), report)
    client = PayUClient(payu_settings, http_client=transport.client())

    pending = await client.authorize(await _initiated(client), PaymentContext(**APPROVED_CARD))
    assert pending.status == CanonicalStatus.PENDING
    assert pending.provider_data["transaction_id"] == "tx-pending"

    again = await client.authorize(pending.provider_data, PaymentContext(**APPROVED_CARD))

    assert again.status == CanonicalStatus.PENDING
    assert again.provider_data["transaction_id"] == "tx-pending"
    commands = [json.loads(r.content)["command"] for r in transport.requests]
    assert commands == ["SUBMIT_TRANSACTION", "TRANSACTION_RESPONSE_DETAIL"]
    assert str(transport.requests[1].url) == payu_settings.sandbox_reports_url


def test_card_fingerprint_is_keyed_and_excludes_cvv():
    card = PaymentContext(**REJECTED_CARD).card
    other_cvv = PaymentContext(**{**REJECTED_CARD, "cvv": "999"}).card

    assert card.fingerprint(API_KEY) == other_cvv.fingerprint(API_KEY)
    assert card.fingerprint(API_KEY) != card.fingerprint("another-key")
    unkeyed = hashlib.sha256("|".join(("4097440000000004", "2030", "12", "REJECTED")).encode()).hexdigest()
    assert card.fingerprint(API_KEY) != unkeyed
