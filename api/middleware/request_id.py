"""
Request ID 中间件

透传或生成追踪ID，并记录买家的 IP 与 User-Agent：
卡支付网关的反欺诈要求授权请求携带这两个字段。
"""
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)
user_agent_var: ContextVar[Optional[str]] = ContextVar("user_agent", default=None)


def _client_ip(request: Request) -> str:
    """反向代理优先：X-Forwarded-For 的第一个地址，其次 X-Real-IP。"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or (request.client.host if request.client else "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    Mercado Pago 的回调同样使用 X-Request-ID，并把它纳入签名清单，
    因此这里只读取、不改写请求头。
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        client_ip = _client_ip(request)
        user_agent = request.headers.get("User-Agent")

        request.state.request_id = request_id
        request_id_var.set(request_id)
        client_ip_var.set(client_ip)
        user_agent_var.set(user_agent)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def get_client_ip() -> Optional[str]:
    """当前请求的买家 IP；不在请求上下文中时为 None"""
    return client_ip_var.get()


def get_user_agent() -> Optional[str]:
    return user_agent_var.get()
