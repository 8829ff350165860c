"""
FastAPI 应用入口：支付会话 API + 提供方回调入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import payments as payments_routes
from api.routes import webhooks as webhooks_routes
from application.services.auto_capture import AutoCaptureReactor
from application.services.payment_service import PaymentService
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings
from infrastructure.events.inmemory import InMemoryOrderEventBus
from infrastructure.external.payments import close_payment_gateways, get_payment_gateway, list_payment_providers
from infrastructure.repositories.payment_repository import get_payment_repository


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 宿主框架在下单完成时向 app.state.order_events 发布 order.placed
    repository = get_payment_repository()
    payments = PaymentService(repository, resolver=get_payment_gateway, retry=payment_settings.retry)
    bus = InMemoryOrderEventBus()
    await AutoCaptureReactor(repository, payments).register(bus)
    app.state.order_events = bus
    logger.info("payments_started", providers=payment_settings.providers, environment=settings.ENVIRONMENT)

    yield

    await bus.aclose()
    await close_payment_gateways()
    logger.info("payments_stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Checkout payment-provider integration layer (PayU, Mercado Pago)",
)

# add_middleware 后加的先执行：CORS -> RequestID -> Logging
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(payments_routes.router, prefix="/api/v1")
# 回调地址在提供方后台配置，不带版本前缀
app.include_router(webhooks_routes.router)


@app.get("/", tags=["Root"])
async def root():
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "providers": [p["id"] for p in list_payment_providers()],
            "docs": "/docs",
        },
        message="Welcome",
    )


@app.get("/health", tags=["Health"])
async def health_check():
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
