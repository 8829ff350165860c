"""
请求/响应日志中间件

请求体只在调试环境（或 X-Log-Body: true）记录，且卡号、CVV、有效期、
签名与密钥类字段一律脱敏；无法解析的请求体不记录原文。
"""
import json
import time
from typing import Any
from urllib.parse import parse_qs

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)

MASK = "***"


class LoggingMiddleware(BaseHTTPMiddleware):
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    # 小写比较
    SENSITIVE_FIELDS = {
        "card_number", "number", "cvv", "securitycode", "expiry_month", "expiry_year",
        "expirationdate", "api_key", "apikey", "access_token", "webhook_secret", "sign", "signature",
    }

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.log_body_by_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        info = await self._request_info(request)
        logger.info("request_started", **info)
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.perf_counter() - started,
                error_type=type(exc).__name__,
                exc_info=True,
                **info,
            )
            raise

        duration = time.perf_counter() - started
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        self._log_response(response, duration, info)
        return response

    async def _request_info(self, request: Request) -> dict:
        info: dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            # PayU 的确认页回调可能把签名放在查询参数里
            "query_params": self.sanitize(dict(request.query_params)),
        }
        if request.method in ("POST", "PUT", "PATCH") and self._body_logging_enabled(request):
            body = await self._parsed_body(request)
            if body is not None:
                info["body"] = self.sanitize(body)
        return info

    def _body_logging_enabled(self, request: Request) -> bool:
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return self.log_body_by_default and settings.DEBUG

    async def _parsed_body(self, request: Request) -> Any:
        raw = await request.body()
        if not raw:
            return None
        snippet = raw[: self.max_body_bytes].decode("utf-8", errors="ignore")
        content_type = request.headers.get("content-type", "").lower()
        if "application/json" in content_type:
            try:
                return json.loads(snippet)
            except ValueError:
                # 截断的 JSON 可能包含完整卡号
                return None
        if "application/x-www-form-urlencoded" in content_type:
            return {k: v[0] if len(v) == 1 else v for k, v in parse_qs(snippet).items()}
        return None

    def sanitize(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: MASK if str(k).lower() in self.SENSITIVE_FIELDS else self.sanitize(v)
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [self.sanitize(v) for v in data]
        return data

    def _log_response(self, response: Response, duration: float, info: dict) -> None:
        status_code = response.status_code
        if status_code >= 500:
            log = logger.error
        elif status_code >= 400:
            log = logger.warning
        else:
            log = logger.info
        log("request_completed", status_code=status_code, duration=duration, **info)
