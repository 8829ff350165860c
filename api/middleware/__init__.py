from .request_id import RequestIDMiddleware, get_client_ip, get_request_id, get_user_agent
from .logging import LoggingMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "get_request_id",
    "get_client_ip",
    "get_user_agent",
]
