"""
MercadoPago wallet gateway adapter (Checkout Pro preferences + Payments API).

The buyer pays on MercadoPago's hosted checkout; the session only learns the
payment id from the redirect or a webhook. Authorize therefore stays pending
until a payment id is known, then reads the payment state remotely.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import (
    AuthorizeResult,
    InitiateResult,
    MercadoPagoData,
    PaymentContext,
    WebhookActionResult,
    dump_provider_data,
    load_provider_data,
)
from core.logging_config import get_logger
from core.settings import MercadoPagoSettings, PaymentTimeouts
from domain.payment.entity import CanonicalStatus
from domain.payment.exceptions import (
    PaymentRecoverableError,
    PaymentSignatureError,
    PaymentValidationError,
    StateConflictError,
)
from infrastructure.external.payments.base import PaymentHttpClient, map_status, to_major, to_minor
from infrastructure.external.payments.signature import verify
from shared.codes.payment_codes import DEFAULT_WEBHOOK_ACTION, PROVIDER_WEBHOOK_STATE_TO_ACTION


logger = get_logger(__name__)

_ERROR_MARKERS = ("error", "error_code", "status_detail")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_signature_header(value: str) -> dict[str, str]:
    """``ts=1704908010,v1=abc...`` -> {"ts": ..., "v1": ...}"""
    parts: dict[str, str] = {}
    for chunk in value.split(","):
        key, sep, val = chunk.partition("=")
        if sep:
            parts[key.strip()] = val.strip()
    return parts


class MercadoPagoClient:
    provider = "mercadopago"
    # Approved wallet payments are captured by default; capture is explicit only for auth-only payments
    captures_on_authorize = False

    def __init__(
        self,
        config: MercadoPagoSettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        webhook_tolerance_seconds: int = 300,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not config.access_token:
            raise RuntimeError("MercadoPago not configured, missing: access_token")
        self._config = config
        self._tolerance = webhook_tolerance_seconds
        self._http = PaymentHttpClient(
            provider=self.provider,
            base_url=config.api_url,
            timeouts=(timeouts or PaymentTimeouts()).model_dump(),
            headers={
                "Authorization": f"Bearer {config.access_token}",
                "Content-Type": "application/json",
            },
            client=http_client,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _url(self, path: str) -> str:
        return f"{self._config.api_url.rstrip('/')}{path}"

    def _load(self, data: Optional[dict[str, Any]]) -> MercadoPagoData:
        return load_provider_data(data, self.provider)

    async def _get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._http.request("GET", self._url(f"/v1/payments/{payment_id}"), operation="get_payment")

    async def _create_preference(
        self,
        amount: int,
        currency_code: str,
        external_reference: str,
        context: Optional[PaymentContext] = None,
    ) -> dict[str, Any]:
        store_url = self._config.store_url.rstrip("/")
        body: dict[str, Any] = {
            "items": [{
                "title": (context.description if context else None) or "Payment from store",
                "quantity": 1,
                "unit_price": float(to_major(amount, currency_code)),
                "currency_id": currency_code.upper(),
            }],
            "external_reference": external_reference,
            "back_urls": {
                "success": f"{store_url}/checkout/success",
                "failure": f"{store_url}/checkout/failure",
                "pending": f"{store_url}/checkout/pending",
            },
            "auto_return": "approved",
        }
        if context and context.email:
            body["payer"] = {"email": context.email}
        if self._config.notification_url:
            body["notification_url"] = self._config.notification_url
        # Same reference -> same preference on retry
        return await self._http.request(
            "POST",
            self._url("/checkout/preferences"),
            json=body,
            headers={"X-Idempotency-Key": f"pref-{external_reference}-{amount}"},
            operation="create_preference",
        )

    def _checkout_url(self, preference: dict[str, Any]) -> Optional[str]:
        if self._config.test_mode and preference.get("sandbox_init_point"):
            return preference["sandbox_init_point"]
        return preference.get("init_point")

    # ---- lifecycle ----

    async def initiate(self, amount: int, currency_code: str, context: PaymentContext) -> InitiateResult:
        reference = context.reference or f"medusa-{int(time.time())}"
        preference = await self._create_preference(amount, currency_code, reference, context)
        data = MercadoPagoData(
            preference_id=str(preference.get("id")),
            init_point=self._checkout_url(preference),
            external_reference=reference,
            amount=amount,
            currency_code=currency_code.upper(),
            status="pending",
            updated_at=_now(),
        )
        logger.info("mercadopago_preference_created", preference_id=data.preference_id, reference=reference)
        return InitiateResult(session_external_id=data.preference_id or reference, provider_data=dump_provider_data(data))

    async def update(
        self,
        amount: int,
        currency_code: str,
        data: dict[str, Any],
        context: PaymentContext,
    ) -> dict[str, Any]:
        current = self._load(data)
        if current.authorized_at or current.captured_at:
            raise StateConflictError(
                "MercadoPago payment already authorized, it cannot be updated",
                current="authorized",
                target="pending",
            )
        # Preferences are immutable; a new one is created under the same external reference
        reference = current.external_reference or context.reference or f"medusa-{int(time.time())}"
        preference = await self._create_preference(amount, currency_code, reference, context)
        changes: dict[str, Any] = {name: None for name in _ERROR_MARKERS}
        changes.update(
            preference_id=str(preference.get("id")),
            init_point=self._checkout_url(preference),
            external_reference=reference,
            amount=amount,
            currency_code=currency_code.upper(),
            status="pending",
            updated_at=_now(),
        )
        logger.info("mercadopago_preference_updated", preference_id=changes["preference_id"], reference=reference)
        return dump_provider_data(current.model_copy(update=changes))

    async def delete(self, data: dict[str, Any]) -> dict[str, Any]:
        # Preferences expire on their own
        logger.info("mercadopago_session_deleted", preference_id=(data or {}).get("preference_id"))
        return {}

    def _apply_payment(self, current: MercadoPagoData, payment: dict[str, Any]) -> MercadoPagoData:
        now = _now()
        status = str(payment.get("status") or current.status)
        changes: dict[str, Any] = {
            "payment_id": str(payment.get("id") or current.payment_id),
            "status": status,
            "status_detail": payment.get("status_detail"),
            "payment_method_id": payment.get("payment_method_id"),
            "payment_type_id": payment.get("payment_type_id"),
            "captured": payment.get("captured"),
            "updated_at": now,
        }
        if status in ("approved", "authorized") and not current.authorized_at:
            changes["authorized_at"] = now
        if status == "approved" and payment.get("captured") and not current.captured_at:
            currency = str(payment.get("currency_id") or current.currency_code or "")
            amount = payment.get("transaction_amount")
            changes["captured_at"] = now
            changes["captured_amount"] = to_minor(amount, currency) if amount is not None else current.amount
        if status == "rejected":
            changes["error"] = f"Payment rejected: {payment.get('status_detail')}"
        return current.model_copy(update=changes)

    def _canonical(self, current: MercadoPagoData) -> CanonicalStatus:
        if current.status in ("refunded", "charged_back"):
            return CanonicalStatus.REFUNDED
        if current.captured_at:
            return CanonicalStatus.CAPTURED
        return CanonicalStatus(map_status(self.provider, current.status))

    async def authorize(self, data: dict[str, Any], context: PaymentContext) -> AuthorizeResult:
        current = self._load(data)
        if current.authorized_at and current.status in ("approved", "authorized"):
            logger.info("mercadopago_authorize_noop", payment_id=current.payment_id)
            return AuthorizeResult(status=CanonicalStatus.AUTHORIZED, provider_data=dump_provider_data(current))

        payment_id = context.payment_id or current.payment_id
        if not payment_id:
            # Buyer has not completed the hosted checkout yet
            return AuthorizeResult(
                status=CanonicalStatus.PENDING,
                provider_data=dump_provider_data(current.model_copy(update={"status": "pending"})),
            )

        try:
            payment = await self._get_payment(str(payment_id))
        except PaymentRecoverableError as exc:
            failed = current.model_copy(update={"error": exc.message, "error_code": exc.error_type, "updated_at": _now()})
            return AuthorizeResult(status=CanonicalStatus.ERROR, provider_data=dump_provider_data(failed))

        remote_reference = payment.get("external_reference")
        if remote_reference and current.external_reference and remote_reference != current.external_reference:
            raise PaymentValidationError(
                "Payment does not belong to this session",
                provider=self.provider,
                field="payment_id",
                details={"external_reference": remote_reference},
            )

        updated = self._apply_payment(current, payment)
        status = CanonicalStatus(map_status(self.provider, updated.status))
        if updated.status == "cancelled":
            status = CanonicalStatus.ERROR
            updated = updated.model_copy(update={"error": "Payment was cancelled"})
        elif status == CanonicalStatus.REFUNDED:
            status = CanonicalStatus.ERROR
        logger.info(
            "mercadopago_payment_authorized" if status == CanonicalStatus.AUTHORIZED else "mercadopago_payment_not_authorized",
            payment_id=updated.payment_id,
            status=updated.status,
            status_detail=updated.status_detail,
        )
        return AuthorizeResult(status=status, provider_data=dump_provider_data(updated))

    async def capture(self, data: dict[str, Any], amount: Optional[int] = None) -> dict[str, Any]:
        current = self._load(data)
        if current.captured_at:
            logger.info("mercadopago_capture_noop", payment_id=current.payment_id)
            return dump_provider_data(current)
        if not current.payment_id or current.status not in ("approved", "authorized"):
            raise StateConflictError(
                "MercadoPago payment must be authorized before capture",
                current=current.status,
                target="captured",
            )
        now = _now()
        if current.captured:
            return dump_provider_data(current.model_copy(update={
                "captured_at": now,
                "captured_amount": amount or current.amount,
                "capture_id": current.payment_id,
                "updated_at": now,
            }))

        body: dict[str, Any] = {"capture": True}
        if amount:
            body["transaction_amount"] = float(to_major(amount, current.currency_code or ""))
        payment = await self._http.request(
            "PUT",
            self._url(f"/v1/payments/{current.payment_id}"),
            json=body,
            headers={"X-Idempotency-Key": f"capture-{current.payment_id}"},
            operation="capture",
        )
        if payment.get("captured") or payment.get("status") == "approved":
            logger.info("mercadopago_payment_captured", payment_id=current.payment_id)
            return dump_provider_data(current.model_copy(update={
                "status": "approved",
                "captured": True,
                "captured_at": now,
                "captured_amount": amount or current.amount,
                "capture_id": str(payment.get("id") or current.payment_id),
                "updated_at": now,
            }))
        logger.warning("mercadopago_capture_rejected", payment_id=current.payment_id, status=payment.get("status"))
        return dump_provider_data(current.model_copy(update={
            "error": f"Capture not approved: {payment.get('status_detail') or payment.get('status')}",
            "error_code": "CAPTURE_REJECTED",
            "updated_at": now,
        }))

    async def refund(self, data: dict[str, Any], amount: int) -> dict[str, Any]:
        current = self._load(data)
        if not current.payment_id or not current.captured_at:
            raise StateConflictError("Refund requires a captured MercadoPago payment", current=current.status, target="refunded")
        captured = current.captured_amount or current.amount or 0
        already = current.refunded_amount or 0
        if amount <= 0 or amount + already > captured:
            raise StateConflictError(
                f"Refund amount {amount} exceeds refundable amount {captured - already}",
                current=current.status,
                target="refunded",
            )
        refund = await self._http.request(
            "POST",
            self._url(f"/v1/payments/{current.payment_id}/refunds"),
            json={"amount": float(to_major(amount, current.currency_code or ""))},
            headers={"X-Idempotency-Key": f"refund-{current.payment_id}-{already + amount}"},
            operation="refund",
        )
        now = _now()
        refunded = already + amount
        logger.info("mercadopago_refund_created", payment_id=current.payment_id, refund_id=refund.get("id"), amount=amount)
        return dump_provider_data(current.model_copy(update={
            "refund_id": str(refund.get("id")) if refund.get("id") is not None else None,
            "refund_status": refund.get("status"),
            "refunded_amount": refunded,
            "refunded_at": now,
            "status": "refunded" if refunded >= captured else current.status,
            "updated_at": now,
        }))

    async def cancel(self, data: dict[str, Any]) -> dict[str, Any]:
        current = self._load(data)
        if current.captured_at or current.status in ("refunded", "charged_back"):
            raise StateConflictError("Captured MercadoPago payments cannot be canceled, use refund", current=current.status, target="canceled")
        now = _now()
        if current.payment_id:
            payment = await self._http.request(
                "PUT",
                self._url(f"/v1/payments/{current.payment_id}"),
                json={"status": "cancelled"},
                operation="cancel",
            )
            status = payment.get("status") or "cancelled"
        else:
            # Nothing was paid; abandoning the preference is enough
            status = "cancelled"
        logger.info("mercadopago_payment_canceled", payment_id=current.payment_id, status=status)
        return dump_provider_data(current.model_copy(update={"status": status, "canceled_at": now, "updated_at": now}))

    async def retrieve(self, data: dict[str, Any]) -> dict[str, Any]:
        current = self._load(data)
        if current.payment_id:
            payment = await self._get_payment(current.payment_id)
        elif current.external_reference:
            found = await self._http.request(
                "GET",
                self._url(
                    f"/v1/payments/search?external_reference={current.external_reference}"
                    "&sort=date_created&criteria=desc"
                ),
                operation="search_payments",
            )
            results = found.get("results") or []
            if not results:
                return dump_provider_data(current)
            payment = results[0]
        else:
            return dump_provider_data(current)
        logger.info("mercadopago_payment_retrieved", payment_id=payment.get("id"), status=payment.get("status"))
        return dump_provider_data(self._apply_payment(current, payment))

    async def get_status(self, data: dict[str, Any]) -> CanonicalStatus:
        try:
            refreshed = self._load(await self.retrieve(data))
        except PaymentRecoverableError:
            return CanonicalStatus.ERROR
        return self._canonical(refreshed)

    # ---- webhooks ----

    @staticmethod
    def _data_id(payload: Mapping[str, Any]) -> Optional[str]:
        data = payload.get("data")
        value = data.get("id") if isinstance(data, Mapping) else None
        value = value or payload.get("data.id") or payload.get("id")
        return str(value) if value is not None else None

    def verify_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> None:
        """HMAC-SHA256 over ``id:{data.id};request-id:{x-request-id};ts:{ts};``"""
        secret = self._config.webhook_secret
        if not secret:
            raise PaymentSignatureError("Webhook secret not configured", provider=self.provider)
        lowered = {k.lower(): v for k, v in headers.items()}
        parts = _parse_signature_header(lowered.get("x-signature") or "")
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            raise PaymentSignatureError("Missing x-signature header", provider=self.provider)

        if self._tolerance > 0:
            try:
                sent_at = int(ts)
            except ValueError as exc:
                raise PaymentSignatureError("Invalid signature timestamp", provider=self.provider) from exc
            if sent_at > 10**12:
                sent_at //= 1000
            if abs(time.time() - sent_at) > self._tolerance:
                raise PaymentSignatureError("Signature timestamp outside tolerance", provider=self.provider)

        data_id = self._data_id(payload) or ""
        if data_id.isalnum():
            data_id = data_id.lower()
        manifest = f"id:{data_id};request-id:{lowered.get('x-request-id') or ''};ts:{ts};"
        if not verify(secret, [manifest], received, algorithm="hmac-sha256"):
            logger.error("mercadopago_webhook_signature_invalid", data_id=data_id)
            raise PaymentSignatureError("Invalid webhook signature", provider=self.provider)

    async def handle_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> WebhookActionResult:
        topic = str(payload.get("type") or payload.get("topic") or payload.get("action") or "")
        payment_id = self._data_id(payload)
        if "payment" not in topic or not payment_id:
            logger.info("mercadopago_webhook_ignored", topic=topic, data_id=payment_id)
            return WebhookActionResult(action="not_supported", session_reference_key=payment_id)

        payment = await self._get_payment(payment_id)
        status = str(payment.get("status") or "")
        action = PROVIDER_WEBHOOK_STATE_TO_ACTION[self.provider].get(status, DEFAULT_WEBHOOK_ACTION)
        try:
            amount = to_minor(payment.get("transaction_amount") or 0, str(payment.get("currency_id") or ""))
        except (InvalidOperation, TypeError, ValueError):
            amount = 0
        reference = payment.get("external_reference") or payment_id
        data = {
            "payment_id": str(payment.get("id") or payment_id),
            "status": status or None,
            "status_detail": payment.get("status_detail"),
            "payment_method_id": payment.get("payment_method_id"),
            "payment_type_id": payment.get("payment_type_id"),
            "captured": payment.get("captured"),
        }
        logger.info("mercadopago_webhook_mapped", payment_id=payment_id, status=status, action=action)
        return WebhookActionResult(
            action=action,
            session_reference_key=str(reference),
            amount=amount,
            data={k: v for k, v in data.items() if v is not None},
        )
