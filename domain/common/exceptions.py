"""领域层业务异常基类

支付异常（domain/payment/exceptions.py）都继承自 BusinessException，
core 层只负责把 code 映射为 HTTP 状态码。
"""
from __future__ import annotations

from typing import Any, Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类：code + 面向调用方的 message，details 不含提供方内部信息"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        # None 值没有信息量，统一剔除
        self.details = {k: v for k, v in details.items() if v is not None} if details else None
        self.field = field
        super().__init__(self.message)

    def log_fields(self) -> dict[str, Any]:
        """结构化日志字段"""
        return {"code": int(self.code), "error_type": self.error_type, **(self.details or {})}


class DomainValidationException(BusinessException):
    """实体不变量被破坏（负金额、非法币种等）"""

    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )
