"""
支付领域实体 - 支付会话与支付集合
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from enum import Enum

from domain.common.exceptions import DomainValidationException
from domain.payment.exceptions import StateConflictError


class CanonicalStatus(str, Enum):
    """规范化支付状态，所有适配器的状态都必须映射到这里"""
    PENDING = "pending"
    REQUIRES_MORE = "requires_more"   # 需要重新收集支付信息（如被拒绝）
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    ERROR = "error"


# 目标状态 -> 允许的前置状态
_REQUIRED_PREDECESSORS: dict[CanonicalStatus, frozenset[CanonicalStatus]] = {
    CanonicalStatus.CAPTURED: frozenset({CanonicalStatus.AUTHORIZED}),
    CanonicalStatus.REFUNDED: frozenset({CanonicalStatus.CAPTURED}),
}

# 目标状态 -> 禁止的前置状态
_FORBIDDEN_PREDECESSORS: dict[CanonicalStatus, frozenset[CanonicalStatus]] = {
    CanonicalStatus.CANCELED: frozenset({CanonicalStatus.CAPTURED, CanonicalStatus.REFUNDED}),
}


def ensure_transition(current: CanonicalStatus, target: CanonicalStatus) -> None:
    """
    校验状态转换

    业务规则（偏序，不要求全序）：
    1. captured 只能在 authorized 之后
    2. refunded 只能在 captured 之后
    3. canceled 只能在 captured 之前
    4. 重复进入当前状态视为幂等
    """
    current = CanonicalStatus(current)
    target = CanonicalStatus(target)
    if current == target:
        return
    required = _REQUIRED_PREDECESSORS.get(target)
    if required is not None and current not in required:
        raise StateConflictError(
            f"Cannot transition payment from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )
    if current in _FORBIDDEN_PREDECESSORS.get(target, frozenset()):
        raise StateConflictError(
            f"Cannot transition payment from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class PaymentSession:
    """
    支付会话 - 一次支付尝试

    业务规则：
    1. 金额为最小货币单位的整数，且不能为负
    2. 适配器只返回 data 的补丁，由服务层持久化
    3. 会话不会被删除，只会做状态转换
    """

    id: str
    amount: int
    currency_code: str
    provider_id: str  # pp_payu_payu, pp_mercadopago_mercadopago
    status: CanonicalStatus = CanonicalStatus.PENDING
    data: dict[str, Any] = field(default_factory=dict)
    payment_collection_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount < 0:
            raise DomainValidationException(
                f"Payment amount must not be negative: {self.amount}",
                field="amount",
            )
        if not self.currency_code or len(self.currency_code) != 3 or not self.currency_code.isalpha():
            raise DomainValidationException(
                f"Invalid currency code: {self.currency_code}",
                field="currency_code",
            )
        self.currency_code = self.currency_code.upper()
        self.status = CanonicalStatus(self.status)
        if self.data is None:
            self.data = {}
        self.created_at = _ensure_utc(self.created_at) or datetime.now(timezone.utc)
        self.updated_at = _ensure_utc(self.updated_at) or self.created_at

    def transition_to(self, target: CanonicalStatus) -> None:
        """按状态机转换状态"""
        ensure_transition(self.status, target)
        self.status = CanonicalStatus(target)
        self.updated_at = datetime.now(timezone.utc)

    def is_settled(self) -> bool:
        """已授权或已扣款，重复的授权/扣款应视为无操作"""
        return self.status in (CanonicalStatus.AUTHORIZED, CanonicalStatus.CAPTURED)


@dataclass
class PaymentCollection:
    """支付集合 - 一次结账的所有支付会话"""

    id: str
    amount: int
    currency_code: str
    order_id: Optional[str] = None
    payment_session_ids: list[str] = field(default_factory=list)


def provider_id_for(name: str) -> str:
    """payu -> pp_payu_payu（宿主框架的支付提供方ID格式）"""
    return f"pp_{name}_{name}"
