"""
Payment webhook ingress route.

Always acknowledges with HTTP 200 so providers do not hot-retry, except when
the signature check fails (HTTP 400, nothing read or written).
"""
from __future__ import annotations

import json
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_webhook_service
from application.dtos.payments import WebhookOutcome
from application.services.webhook_service import PaymentWebhookService
from core.logging_config import get_logger
from domain.payment.exceptions import PaymentSignatureError


router = APIRouter(prefix="/webhooks/payment", tags=["Webhooks"])
logger = get_logger(__name__)


async def parse_webhook_payload(request: Request) -> dict[str, Any]:
    """Form (PayU confirmation page) or JSON body, plus query parameters."""
    payload: dict[str, Any] = dict(request.query_params)
    raw = await request.body()
    if not raw:
        return payload
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/x-www-form-urlencoded" in content_type:
        payload.update(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True))
        return payload
    try:
        body = json.loads(raw)
    except ValueError:
        logger.warning("payment_webhook_unparseable_body", content_type=content_type)
        return payload
    if isinstance(body, dict):
        payload.update(body)
    return payload


def _reply(outcome: WebhookOutcome, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=outcome.model_dump(exclude_none=True))


@router.post("/{provider}/{subprovider}", summary="Receive payment provider notification")
async def payment_webhook(
    provider: str,
    subprovider: str,
    request: Request,
    service: PaymentWebhookService = Depends(get_webhook_service),
):
    payload = await parse_webhook_payload(request)
    headers = {k: v for k, v in request.headers.items()}
    try:
        outcome = await service.process(provider, subprovider, payload, headers)
    except PaymentSignatureError as exc:
        logger.warning("payment_webhook_rejected", provider=provider, subprovider=subprovider, reason=exc.message)
        return _reply(WebhookOutcome(status="rejected", message=exc.message), status_code=400)
    logger.info(
        "payment_webhook_acknowledged",
        provider=provider,
        subprovider=subprovider,
        status=outcome.status,
        action=outcome.action,
    )
    return _reply(outcome)
