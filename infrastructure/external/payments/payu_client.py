"""
PayU Latam card gateway adapter over the JSON payments/reports API.

Notes on PayU usage:
- Every call is a POST to ``service.cgi`` with a ``command`` and merchant
  credentials; HTTP 200 is returned even for failures, so the body ``code``
  (``SUCCESS``/``ERROR``) and ``transactionResponse.state`` carry the outcome.
- The default transaction type is ``AUTHORIZATION_AND_CAPTURE``: authorize
  already moves the money, so capture only stamps ``captured_at``.
- Sandbox outcomes are driven by the card holder name (``APPROVED``,
  ``REJECTED``, ``PENDING``).
- PayU has no cancel for captured charges; cancel is reported as unsupported.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import (
    AuthorizeResult,
    CardInput,
    InitiateResult,
    PaymentContext,
    PayUData,
    WebhookActionResult,
    dump_provider_data,
    load_provider_data,
)
from core.logging_config import get_logger
from core.settings import PayUSettings, PaymentTimeouts
from domain.payment.entity import CanonicalStatus
from domain.payment.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
    PaymentValidationError,
    StateConflictError,
)
from infrastructure.external.payments.base import PaymentHttpClient, map_status, to_major, to_minor
from infrastructure.external.payments.signature import format_amount, sign, verify
from shared.codes.payment_codes import DEFAULT_WEBHOOK_ACTION, PROVIDER_WEBHOOK_STATE_TO_ACTION


logger = get_logger(__name__)

SINGLE_CALL = "AUTHORIZATION_AND_CAPTURE"

# Local provider statuses that may be retried after update()
_RETRYABLE_STATUSES = {"declined", "expired", "error"}
_ERROR_MARKERS = ("error", "error_code", "response_code", "response_message", "declined_card_fingerprint", "action_url")
_ACTION_URL_KEYS = ("THREEDS_AUTH_REDIRECT_URL", "BANK_URL", "URL_PAYMENT_RECEIPT_HTML")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PayUClient:
    provider = "payu"

    def __init__(
        self,
        config: PayUSettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        missing = [k for k in ("api_key", "api_login", "merchant_id", "account_id") if not getattr(config, k)]
        if missing:
            raise RuntimeError(f"PayU not configured, missing: {', '.join(missing)}")
        self._config = config
        self._http = PaymentHttpClient(
            provider=self.provider,
            timeouts=(timeouts or PaymentTimeouts()).model_dump(),
            headers={"Content-Type": "application/json"},
            client=http_client,
        )

    @property
    def captures_on_authorize(self) -> bool:
        return self._config.transaction_type == SINGLE_CALL

    async def aclose(self) -> None:
        await self._http.aclose()

    # ---- request helpers ----

    def _merchant(self) -> dict[str, str]:
        return {"apiKey": self._config.api_key, "apiLogin": self._config.api_login}

    def _envelope(self, command: str, **body: Any) -> dict[str, Any]:
        return {
            "language": self._config.language,
            "command": command,
            "merchant": self._merchant(),
            "test": self._config.test_mode,
            **body,
        }

    def order_signature(self, reference: str, amount: int, currency: str) -> str:
        """apiKey~merchantId~referenceCode~amount~currencyCode"""
        value = format_amount(to_major(amount, currency))
        return sign(self._config.api_key, [self._config.merchant_id, reference, value, currency])

    def _load(self, data: Optional[dict[str, Any]]) -> PayUData:
        return load_provider_data(data, self.provider)

    @staticmethod
    def _payer(context: PaymentContext, card: CardInput) -> dict[str, Any]:
        payer = dict(context.payer or {})
        payer.setdefault("fullName", card.holder_name)
        if context.email:
            payer.setdefault("emailAddress", context.email)
        if context.billing_address:
            address = context.billing_address
            payer["billingAddress"] = {
                "street1": address.get("street") or address.get("street1"),
                "city": address.get("city"),
                "state": address.get("state"),
                "country": address.get("country"),
                "postalCode": address.get("postalCode") or address.get("postal_code"),
                "phone": address.get("phone"),
            }
        return payer

    # ---- lifecycle ----

    async def initiate(self, amount: int, currency_code: str, context: PaymentContext) -> InitiateResult:
        # PayU has no payment intents; the session is a local intent keyed by reference
        reference = context.reference or f"medusa-{int(time.time())}"
        data = PayUData(
            reference=reference,
            description=context.description or "Payment from store",
            amount=amount,
            currency_code=currency_code.upper(),
            status="created",
            capture_mode=self._config.transaction_type,
            updated_at=_now(),
        )
        logger.info("payu_payment_initiated", reference=reference, amount=amount, currency=currency_code)
        return InitiateResult(session_external_id=reference, provider_data=dump_provider_data(data))

    async def update(
        self,
        amount: int,
        currency_code: str,
        data: dict[str, Any],
        context: PaymentContext,
    ) -> dict[str, Any]:
        current = self._load(data)
        if current.status == "approved":
            raise StateConflictError(
                "PayU payment already authorized, it cannot be updated",
                current="authorized",
                target="pending",
            )
        changes: dict[str, Any] = {name: None for name in _ERROR_MARKERS}
        changes.update(amount=amount, currency_code=currency_code.upper(), updated_at=_now())
        if current.status in _RETRYABLE_STATUSES:
            changes["status"] = "created"
        if context.reference:
            changes["reference"] = context.reference
        if context.card:
            changes.update(
                card_last4=context.card.last4,
                card_holder=context.card.holder_name,
                payment_method=context.card.payment_method,
            )
        logger.info("payu_payment_updated", reference=current.reference, amount=amount)
        return dump_provider_data(current.model_copy(update=changes))

    async def delete(self, data: dict[str, Any]) -> dict[str, Any]:
        logger.info("payu_payment_deleted", reference=(data or {}).get("reference"))
        return {}

    async def authorize(self, data: dict[str, Any], context: PaymentContext) -> AuthorizeResult:
        current = self._load(data)

        if current.status == "approved":
            logger.info("payu_authorize_noop", reference=current.reference, transaction_id=current.transaction_id)
            return AuthorizeResult(status=CanonicalStatus.AUTHORIZED, provider_data=dump_provider_data(current))

        if context.source == "webhook":
            return self._confirm_from_webhook(current)

        if current.status == "pending" and current.transaction_id:
            # An open transaction is polled, never resubmitted
            return await self._poll(current)

        card = context.card
        if card is None:
            if current.status == "declined":
                return self._fail_fast(current)
            raise PaymentValidationError(
                "Card data is required to authorize a PayU payment",
                provider=self.provider,
                field="card",
            )

        fingerprint = card.fingerprint(self._config.api_key)
        if current.status in ("declined", "expired") and current.declined_card_fingerprint == fingerprint:
            return self._fail_fast(current)

        if current.amount is None or not current.currency_code or not current.reference:
            raise PaymentValidationError(
                "PayU session is missing amount, currency or reference",
                provider=self.provider,
                field="data",
            )

        payload = self._authorize_payload(current, context, card)
        logger.info(
            "payu_authorize_request",
            reference=current.reference,
            amount=current.amount,
            currency=current.currency_code,
            card_last4=card.last4,
        )
        try:
            body = await self._http.request("POST", self._config.payments_endpoint, json=payload, operation="authorize")
        except PaymentRecoverableError as exc:
            failed = current.model_copy(update={"error": exc.message, "error_code": exc.error_type, "updated_at": _now()})
            return AuthorizeResult(status=CanonicalStatus.ERROR, provider_data=dump_provider_data(failed))
        return self._apply_transaction_response(current, body, card, fingerprint)

    def _authorize_payload(self, current: PayUData, context: PaymentContext, card: CardInput) -> dict[str, Any]:
        currency = current.currency_code or ""
        major = to_major(current.amount or 0, currency)
        payer = self._payer(context, card)
        transaction: dict[str, Any] = {
            "order": {
                "accountId": self._config.account_id,
                "referenceCode": current.reference,
                "description": current.description or context.description or "Payment from store",
                "language": self._config.language,
                "signature": self.order_signature(current.reference or "", current.amount or 0, currency),
                "additionalValues": {
                    "TX_VALUE": {"value": float(major), "currency": currency},
                },
                "buyer": {k: v for k, v in payer.items() if k != "billingAddress"},
            },
            "payer": payer,
            "creditCard": {
                "number": card.number,
                "securityCode": card.cvv,
                "expirationDate": card.expiration_date,
                "name": card.holder_name,
            },
            "extraParameters": {"INSTALLMENTS_NUMBER": 1},
            "type": self._config.transaction_type,
            "paymentMethod": card.payment_method,
            "paymentCountry": self._config.country,
        }
        if context.device_session_id:
            transaction["deviceSessionId"] = context.device_session_id
        if context.ip_address:
            transaction["ipAddress"] = context.ip_address
        if context.user_agent:
            transaction["userAgent"] = context.user_agent
        return self._envelope("SUBMIT_TRANSACTION", transaction=transaction)

    def _apply_transaction_response(
        self,
        current: PayUData,
        body: dict[str, Any],
        card: CardInput,
        fingerprint: str,
    ) -> AuthorizeResult:
        now = _now()
        if body.get("code") != "SUCCESS":
            message = body.get("error") or "PayU rejected the request"
            logger.error("payu_authorize_error", reference=current.reference, error=message)
            failed = current.model_copy(update={"status": "error", "error": message, "error_code": "PAYU_ERROR", "updated_at": now})
            return AuthorizeResult(status=CanonicalStatus.ERROR, provider_data=dump_provider_data(failed))

        tr = body.get("transactionResponse") or {}
        state = str(tr.get("state") or "").upper()
        changes: dict[str, Any] = {
            "transaction_id": tr.get("transactionId") or current.transaction_id,
            "order_id": str(tr["orderId"]) if tr.get("orderId") is not None else current.order_id,
            "response_code": tr.get("responseCode"),
            "response_message": tr.get("responseMessage") or tr.get("paymentNetworkResponseErrorMessage"),
            "authorization_code": tr.get("authorizationCode"),
            "trazability_code": tr.get("trazabilityCode"),
            "card_last4": card.last4,
            "card_holder": card.holder_name,
            "payment_method": card.payment_method,
            "error": None,
            "error_code": None,
            "updated_at": now,
        }
        canonical = CanonicalStatus(map_status(self.provider, state))

        if state == "APPROVED":
            changes.update(status="approved", authorized_at=now, declined_card_fingerprint=None)
            if self.captures_on_authorize:
                changes.update(captured_at=now, captured_amount=current.amount)
            logger.info("payu_payment_approved", reference=current.reference, transaction_id=changes["transaction_id"])
        elif state in ("DECLINED", "EXPIRED"):
            changes.update(status=state.lower(), declined_card_fingerprint=fingerprint)
            logger.info(
                "payu_payment_declined",
                reference=current.reference,
                transaction_id=changes["transaction_id"],
                response_code=changes["response_code"],
            )
        elif state == "PENDING":
            extra = tr.get("extraParameters") or {}
            action_url = next((extra[k] for k in _ACTION_URL_KEYS if extra.get(k)), None)
            changes.update(status="pending", action_url=action_url)
            if action_url:
                canonical = CanonicalStatus.REQUIRES_MORE
            logger.info("payu_payment_pending", reference=current.reference, requires_action=bool(action_url))
        else:
            changes.update(status="error" if state == "ERROR" else (state.lower() or "pending"), error=changes["response_message"])
            logger.warning("payu_payment_unexpected_state", reference=current.reference, state=state)

        return AuthorizeResult(status=canonical, provider_data=dump_provider_data(current.model_copy(update=changes)))

    def _fail_fast(self, current: PayUData) -> AuthorizeResult:
        logger.info("payu_declined_without_new_input", reference=current.reference)
        return AuthorizeResult(status=CanonicalStatus.REQUIRES_MORE, provider_data=dump_provider_data(current))

    def _confirm_from_webhook(self, current: PayUData) -> AuthorizeResult:
        if current.state_pol != "4" or not current.transaction_id:
            return AuthorizeResult(status=self._canonical(current), provider_data=dump_provider_data(current))
        now = _now()
        changes: dict[str, Any] = {
            "status": "approved",
            "authorized_at": current.authorized_at or now,
            "error": None,
            "error_code": None,
            "declined_card_fingerprint": None,
            "updated_at": now,
        }
        if self.captures_on_authorize:
            changes.update(captured_at=current.captured_at or now, captured_amount=current.captured_amount or current.amount)
        logger.info("payu_authorized_by_webhook", reference=current.reference, transaction_id=current.transaction_id)
        return AuthorizeResult(status=CanonicalStatus.AUTHORIZED, provider_data=dump_provider_data(current.model_copy(update=changes)))

    async def _poll(self, current: PayUData) -> AuthorizeResult:
        try:
            refreshed = self._load(await self.retrieve(dump_provider_data(current)))
        except PaymentRecoverableError as exc:
            failed = current.model_copy(update={"error": exc.message, "error_code": exc.error_type, "updated_at": _now()})
            return AuthorizeResult(status=CanonicalStatus.ERROR, provider_data=dump_provider_data(failed))
        status = self._canonical(refreshed)
        if status == CanonicalStatus.CAPTURED:
            status = CanonicalStatus.AUTHORIZED
        return AuthorizeResult(status=status, provider_data=dump_provider_data(refreshed))

    async def capture(self, data: dict[str, Any], amount: Optional[int] = None) -> dict[str, Any]:
        current = self._load(data)
        if current.captured_at:
            logger.info("payu_capture_noop", reference=current.reference, captured_at=current.captured_at)
            return dump_provider_data(current)
        if current.status != "approved":
            raise StateConflictError(
                "PayU payment must be authorized before capture",
                current=current.status,
                target="captured",
            )
        capture_amount = amount or current.amount
        if current.capture_mode in (None, SINGLE_CALL):
            now = _now()
            logger.info("payu_capture_stamped", reference=current.reference)
            return dump_provider_data(
                current.model_copy(update={"captured_at": now, "captured_amount": capture_amount, "updated_at": now})
            )

        if not current.transaction_id or not current.order_id:
            raise StateConflictError("PayU capture requires the authorized transaction", current=current.status, target="captured")
        payload = self._envelope(
            "SUBMIT_TRANSACTION",
            transaction={
                "order": {"id": current.order_id},
                "type": "CAPTURE",
                "parentTransactionId": current.transaction_id,
            },
        )
        body = await self._http.request("POST", self._config.payments_endpoint, json=payload, operation="capture")
        tr = body.get("transactionResponse") or {}
        now = _now()
        if body.get("code") == "SUCCESS" and str(tr.get("state")).upper() == "APPROVED":
            logger.info("payu_payment_captured", reference=current.reference, capture_id=tr.get("transactionId"))
            return dump_provider_data(current.model_copy(update={
                "captured_at": now,
                "captured_amount": capture_amount,
                "capture_id": tr.get("transactionId"),
                "updated_at": now,
            }))
        message = body.get("error") or tr.get("responseMessage") or "PayU capture was not approved"
        logger.warning("payu_capture_rejected", reference=current.reference, error=message)
        return dump_provider_data(current.model_copy(update={
            "error": message,
            "error_code": tr.get("responseCode") or "CAPTURE_REJECTED",
            "updated_at": now,
        }))

    async def refund(self, data: dict[str, Any], amount: int) -> dict[str, Any]:
        current = self._load(data)
        if not current.transaction_id or not current.order_id:
            raise StateConflictError("Refund requires the original PayU transaction id", current=current.status, target="refunded")
        if not current.captured_at:
            raise StateConflictError("Refund requires a captured PayU payment", current=current.status, target="refunded")
        captured = current.captured_amount or current.amount or 0
        already = current.refunded_amount or 0
        if amount <= 0 or amount + already > captured:
            raise StateConflictError(
                f"Refund amount {amount} exceeds refundable amount {captured - already}",
                current=current.status,
                target="refunded",
            )

        transaction: dict[str, Any] = {
            "order": {"id": current.order_id},
            "type": "REFUND",
            "reason": "Refund requested by merchant",
            "parentTransactionId": current.transaction_id,
        }
        if amount + already < captured or already:
            currency = current.currency_code or ""
            transaction["additionalValues"] = {
                "TX_VALUE": {"value": float(to_major(amount, currency)), "currency": currency},
            }
        body = await self._http.request(
            "POST",
            self._config.payments_endpoint,
            json=self._envelope("SUBMIT_TRANSACTION", transaction=transaction),
            operation="refund",
        )
        tr = body.get("transactionResponse") or {}
        state = str(tr.get("state") or "").upper()
        now = _now()
        if body.get("code") != "SUCCESS" or state not in ("APPROVED", "PENDING"):
            message = body.get("error") or tr.get("responseMessage") or "PayU refund was declined"
            logger.warning("payu_refund_declined", reference=current.reference, error=message)
            return dump_provider_data(current.model_copy(update={
                "refund_status": "declined",
                "error": message,
                "error_code": tr.get("responseCode") or "REFUND_DECLINED",
                "updated_at": now,
            }))

        refunded = already + amount
        logger.info("payu_refund_submitted", reference=current.reference, amount=amount, state=state)
        return dump_provider_data(current.model_copy(update={
            "refund_id": tr.get("transactionId"),
            "refund_status": state.lower(),
            "refunded_amount": refunded,
            "refunded_at": now,
            "status": "refunded" if refunded >= captured else current.status,
            "error": None,
            "error_code": None,
            "updated_at": now,
        }))

    async def cancel(self, data: dict[str, Any]) -> dict[str, Any]:
        current = self._load(data)
        if current.captured_at or current.status == "refunded":
            raise StateConflictError("Captured PayU payments cannot be canceled, use refund", current=current.status, target="canceled")
        logger.warning("payu_cancel_not_supported", reference=current.reference, transaction_id=current.transaction_id)
        return dump_provider_data(current.model_copy(update={
            "cancel_supported": False,
            "cancel_message": "Cancel is not supported by PayU, use refund",
            "updated_at": _now(),
        }))

    async def retrieve(self, data: dict[str, Any]) -> dict[str, Any]:
        current = self._load(data)
        if current.transaction_id:
            payload = self._envelope("TRANSACTION_RESPONSE_DETAIL", details={"transactionId": current.transaction_id})
        elif current.reference and current.status != "created":
            payload = self._envelope("ORDER_DETAIL_BY_REFERENCE_CODE", details={"referenceCode": current.reference})
        else:
            return dump_provider_data(current)

        body = await self._http.request("POST", self._config.reports_endpoint, json=payload, operation="retrieve")
        if body.get("code") != "SUCCESS":
            raise PaymentProviderError(body.get("error") or "PayU query failed", provider=self.provider)

        result = (body.get("result") or {}).get("payload")
        changes: dict[str, Any] = {"updated_at": _now()}
        if isinstance(result, list):
            transactions = (result[0].get("transactions") or []) if result else []
            if not transactions:
                return dump_provider_data(current)
            latest = transactions[-1]
            tr = latest.get("transactionResponse") or {}
            changes["transaction_id"] = latest.get("id")
            changes["order_id"] = str(result[0].get("id")) if result[0].get("id") is not None else current.order_id
        else:
            tr = result or {}

        state = str(tr.get("state") or "").upper()
        if state:
            changes["status"] = state.lower()
            changes["response_code"] = tr.get("responseCode")
        if state == "APPROVED" and not current.authorized_at:
            changes["authorized_at"] = changes["updated_at"]
            if self.captures_on_authorize and not current.captured_at:
                changes.update(captured_at=changes["updated_at"], captured_amount=current.amount)
        logger.info("payu_payment_retrieved", reference=current.reference, state=state)
        return dump_provider_data(current.model_copy(update=changes))

    def _canonical(self, current: PayUData) -> CanonicalStatus:
        if current.status == "refunded":
            return CanonicalStatus.REFUNDED
        if current.captured_at:
            return CanonicalStatus.CAPTURED
        return CanonicalStatus(map_status(self.provider, current.status.upper()))

    async def get_status(self, data: dict[str, Any]) -> CanonicalStatus:
        try:
            refreshed = self._load(await self.retrieve(data))
        except PaymentRecoverableError:
            return CanonicalStatus.ERROR
        return self._canonical(refreshed)

    # ---- webhooks ----

    def verify_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> None:
        """apiKey~merchant_id~reference_sale~value~currency~state_pol"""
        received = payload.get("sign")
        if not received:
            raise PaymentSignatureError("Missing sign field", provider=self.provider)
        try:
            value = format_amount(payload.get("value"))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise PaymentSignatureError("Invalid value field", provider=self.provider) from exc
        fields = [
            self._config.merchant_id,
            payload.get("reference_sale"),
            value,
            payload.get("currency"),
            payload.get("state_pol"),
        ]
        if not verify(self._config.api_key, fields, str(received)):
            logger.error("payu_webhook_signature_invalid", reference=payload.get("reference_sale"))
            raise PaymentSignatureError("Invalid webhook signature", provider=self.provider)

    async def handle_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> WebhookActionResult:
        state = str(payload.get("state_pol") or payload.get("status") or "")
        action = PROVIDER_WEBHOOK_STATE_TO_ACTION[self.provider].get(state, DEFAULT_WEBHOOK_ACTION)
        reference = payload.get("reference_sale") or payload.get("transaction_id")
        try:
            amount = to_minor(payload.get("value") or 0, str(payload.get("currency") or ""))
        except (InvalidOperation, TypeError, ValueError):
            amount = 0
        data = {
            "transaction_id": payload.get("transaction_id"),
            "reference_pol": payload.get("reference_pol"),
            "authorization_code": payload.get("authorization_code"),
            "state_pol": state or None,
            "response_code": payload.get("response_code_pol"),
            "response_message": payload.get("response_message_pol"),
            "payment_method_type": payload.get("payment_method_type"),
            "payment_method_name": payload.get("payment_method_name"),
        }
        logger.info("payu_webhook_mapped", reference=reference, state=state, action=action)
        return WebhookActionResult(
            action=action,
            session_reference_key=str(reference) if reference else None,
            amount=amount,
            data={k: v for k, v in data.items() if v is not None},
        )
