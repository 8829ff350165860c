"""
API依赖项 - 支付服务装配（组合根）

应用层只依赖端口；具体网关与仓储在这里注入。
"""
from fastapi import Depends

from application.services.payment_service import PaymentService
from application.services.webhook_service import PaymentWebhookService
from core.settings import payment_settings
from domain.payment.repository import PaymentSessionRepository
from infrastructure.external.payments import get_payment_gateway
from infrastructure.repositories.payment_repository import get_payment_repository


async def get_session_repository() -> PaymentSessionRepository:
    return get_payment_repository()


async def get_payment_service(
    repository: PaymentSessionRepository = Depends(get_session_repository),
) -> PaymentService:
    return PaymentService(repository, resolver=get_payment_gateway, retry=payment_settings.retry)


async def get_webhook_service(
    repository: PaymentSessionRepository = Depends(get_session_repository),
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentWebhookService:
    return PaymentWebhookService(repository, payments, resolver=get_payment_gateway)
