"""
Payments API routes.

Thin wrappers over PaymentService for the checkout flow and back office:
each call loads the session, runs one lifecycle operation and returns the
persisted session. No provider details here.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends

from api.dependencies import get_payment_service
from api.middleware import get_client_ip, get_user_agent
from application.dtos.payments import (
    CapturePayload,
    PaymentContext,
    PaymentSessionDTO,
    RefundPayload,
    UpdateSessionPayload,
)
from application.services.payment_service import PaymentService
from core.response import success_response
from domain.payment.entity import PaymentSession
from infrastructure.external.payments import list_payment_providers


router = APIRouter(prefix="/payments", tags=["Payments"])


def _view(session: PaymentSession) -> dict:
    return PaymentSessionDTO.model_validate(session).model_dump(mode="json")


@router.get("/providers", summary="List payment providers")
async def list_providers():
    return success_response(data=list_payment_providers())


@router.get("/sessions/{session_id}", summary="Get payment session")
async def get_session(session_id: str, service: PaymentService = Depends(get_payment_service)):
    return success_response(data=_view(await service.get_session(session_id)))


@router.post("/sessions/{session_id}/initiate", summary="Initiate provider payment")
async def initiate_session(
    session_id: str,
    context: Optional[PaymentContext] = Body(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    session = await service.initiate_session(session_id, context or PaymentContext())
    return success_response(data=_view(session), message="Payment initiated")


@router.post("/sessions/{session_id}/update", summary="Update amount or payment input")
async def update_session(
    session_id: str,
    payload: UpdateSessionPayload,
    service: PaymentService = Depends(get_payment_service),
):
    session = await service.update_session(
        session_id,
        amount=payload.amount,
        currency_code=payload.currency_code,
        context=payload.context,
    )
    return success_response(data=_view(session), message="Payment updated")


@router.post("/sessions/{session_id}/authorize", summary="Authorize payment")
async def authorize_session(
    session_id: str,
    context: Optional[PaymentContext] = Body(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    context = context or PaymentContext()
    # Only the webhook ingress may use the webhook confirmation path
    context = context.model_copy(update={
        "source": "customer",
        "ip_address": context.ip_address or get_client_ip(),
        "user_agent": context.user_agent or get_user_agent(),
    })
    session = await service.authorize_session(session_id, context)
    return success_response(data=_view(session), message=f"Payment {session.status.value}")


@router.post("/sessions/{session_id}/capture", summary="Capture payment")
async def capture_session(
    session_id: str,
    payload: Optional[CapturePayload] = Body(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    session = await service.capture_session(session_id, payload.amount if payload else None)
    return success_response(data=_view(session), message="Payment captured")


@router.post("/sessions/{session_id}/refund", summary="Refund payment")
async def refund_session(
    session_id: str,
    payload: RefundPayload,
    service: PaymentService = Depends(get_payment_service),
):
    session = await service.refund_session(session_id, payload.amount)
    return success_response(data=_view(session), message="Refund submitted")


@router.post("/sessions/{session_id}/cancel", summary="Cancel payment")
async def cancel_session(session_id: str, service: PaymentService = Depends(get_payment_service)):
    session = await service.cancel_session(session_id)
    message = session.data.get("cancel_message") or "Payment canceled"
    return success_response(data=_view(session), message=message)


@router.post("/sessions/{session_id}/sync", summary="Reconcile with provider")
async def sync_session(session_id: str, service: PaymentService = Depends(get_payment_service)):
    session = await service.sync_session(session_id)
    return success_response(data=_view(session), message="Payment synchronized")


@router.delete("/sessions/{session_id}", summary="Abandon provider payment")
async def delete_session(session_id: str, service: PaymentService = Depends(get_payment_service)):
    session = await service.delete_session(session_id)
    return success_response(data=_view(session), message="Payment session deleted")
