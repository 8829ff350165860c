"""
Webhook ingress orchestration.

Flow per notification: verify signature -> map to an action -> locate exactly
one session of that provider -> apply the action idempotently. Only a failed
signature check escapes to the caller; every other outcome is an acknowledged
``WebhookOutcome`` so the sender stops retrying.
"""
from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

from application.dtos.payments import PaymentContext, WebhookActionResult, WebhookOutcome
from application.ports.payment_gateway import PaymentGateway
from application.services.payment_service import PaymentService
from core.logging_config import get_logger
from domain.payment.entity import CanonicalStatus, PaymentSession, provider_id_for
from domain.payment.exceptions import PaymentSignatureError
from domain.payment.repository import PaymentSessionRepository


logger = get_logger(__name__)

WebhookGatewayResolver = Callable[[str, Optional[str]], PaymentGateway]

# Provider data keys a webhook reference may match
_REFERENCE_KEYS = ("reference", "transaction_id", "external_reference", "payment_id", "preference_id")


class PaymentWebhookService:
    def __init__(
        self,
        repository: PaymentSessionRepository,
        payments: PaymentService,
        resolver: WebhookGatewayResolver,
    ) -> None:
        self.repository = repository
        self.payments = payments
        self.resolver = resolver

    async def find_session(self, provider: str, reference: Optional[str]) -> list[PaymentSession]:
        if not reference:
            return []
        sessions = await self.repository.list_sessions(provider_id=provider_id_for(provider))
        return [
            s for s in sessions
            if s.id == reference or any(str(s.data.get(key)) == reference for key in _REFERENCE_KEYS if s.data.get(key))
        ]

    async def process(
        self,
        provider: str,
        subprovider: Optional[str],
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> WebhookOutcome:
        try:
            gateway = self.resolver(provider, subprovider)
        except ValueError:
            logger.warning("payment_webhook_unknown_provider", provider=provider, subprovider=subprovider)
            return WebhookOutcome(status="error", message="Unsupported payment provider")
        except Exception as exc:
            # Provider listed but not configured
            logger.error(
                "payment_webhook_gateway_unavailable",
                provider=provider,
                subprovider=subprovider,
                error=str(exc),
                exc_info=True,
            )
            return WebhookOutcome(status="error", message="Payment provider unavailable")

        # Raises PaymentSignatureError before any state is read or written
        try:
            gateway.verify_webhook(payload, headers)
        except PaymentSignatureError:
            raise
        except Exception as exc:
            logger.error(
                "payment_webhook_verification_failed",
                provider=gateway.provider,
                error=str(exc),
                exc_info=True,
            )
            return WebhookOutcome(status="error", message="Webhook verification failed")

        try:
            result = await gateway.handle_webhook(payload, headers)
            return await self._apply(gateway, result)
        except PaymentSignatureError:
            raise
        except Exception as exc:
            logger.error(
                "payment_webhook_processing_failed",
                provider=gateway.provider,
                error=str(exc),
                exc_info=True,
            )
            return WebhookOutcome(status="error", message="Webhook processing failed")

    async def _apply(self, gateway: PaymentGateway, result: WebhookActionResult) -> WebhookOutcome:
        reference = result.session_reference_key
        log = logger.bind(provider=gateway.provider, action=result.action, reference=reference)

        if result.action == "not_supported":
            log.info("payment_webhook_ignored")
            return WebhookOutcome(status="received", message="Notification ignored", action=result.action, reference=reference)

        matches = await self.find_session(gateway.provider, reference)
        if len(matches) != 1:
            # Unknown or ambiguous reference: acknowledge without touching any session
            log.warning("payment_webhook_session_unresolved", matches=len(matches))
            return WebhookOutcome(status="received", message="No matching payment session", action=result.action, reference=reference)
        session = matches[0]
        log = log.bind(session_id=session.id)

        if session.is_settled() or session.status in (CanonicalStatus.REFUNDED, CanonicalStatus.CANCELED):
            log.info("payment_webhook_already_processed", status=session.status.value)
            return WebhookOutcome(status="success", message="Already processed", action=result.action, reference=reference)

        if result.amount and result.amount != session.amount:
            log.warning("payment_webhook_amount_mismatch", expected=session.amount, received=result.amount)
            return WebhookOutcome(status="rejected", message="Amount mismatch", action=result.action, reference=reference)

        merged = {**session.data, **result.data}

        if result.action == "authorized":
            await self.repository.update_session(session.id, data=merged)
            context = PaymentContext(source="webhook", payment_id=result.data.get("payment_id"))
            updated = await self.payments.authorize_session(session.id, context)
            log.info("payment_webhook_authorized", status=updated.status.value)
            return WebhookOutcome(
                status="success",
                message=f"Payment {updated.status.value}",
                action=result.action,
                reference=reference,
            )

        merged.setdefault("error", "Payment failed according to provider notification")
        await self.repository.update_session(session.id, data=merged, status=CanonicalStatus.ERROR)
        log.info("payment_webhook_failed_applied")
        return WebhookOutcome(status="success", message="Payment marked as failed", action=result.action, reference=reference)
