"""
支付会话仓储接口 - 持久化门面（由宿主框架提供）
"""
from abc import ABC, abstractmethod
from typing import Any, Optional, List

from .entity import PaymentSession, PaymentCollection, CanonicalStatus


class PaymentSessionRepository(ABC):
    """支付会话仓储抽象接口 - 只定义能做什么，不管怎么做

    读-改-写的串行化由实现方保证，支付层不做加锁。
    """

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> Optional[PaymentSession]:
        """根据ID获取支付会话"""
        pass

    @abstractmethod
    async def list_sessions(
        self,
        *,
        provider_id: Optional[str] = None,
        payment_collection_id: Optional[str] = None,
    ) -> List[PaymentSession]:
        """按条件列出支付会话"""
        pass

    @abstractmethod
    async def update_session(
        self,
        session_id: str,
        *,
        data: Optional[dict[str, Any]] = None,
        status: Optional[CanonicalStatus] = None,
        amount: Optional[int] = None,
        currency_code: Optional[str] = None,
    ) -> PaymentSession:
        """更新支付会话（只写入提供的字段）"""
        pass

    @abstractmethod
    async def retrieve_collection(self, collection_id: str) -> Optional[PaymentCollection]:
        """根据ID获取支付集合"""
        pass

    @abstractmethod
    async def list_collections(self, *, order_id: str) -> List[PaymentCollection]:
        """获取订单的支付集合"""
        pass

    @abstractmethod
    async def update_collection(
        self,
        collection_id: str,
        *,
        amount: int,
        currency_code: str,
    ) -> PaymentCollection:
        """更新支付集合金额与币种"""
        pass
