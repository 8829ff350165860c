"""
支付会话仓储实现 - 进程内存储

宿主框架拥有真正的持久化；这里的实现用于本地开发、测试与演示，
读写都返回副本，调用方必须通过 update_* 才能落库。
"""
from __future__ import annotations

import asyncio
import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, List

from domain.payment.entity import PaymentSession, PaymentCollection, CanonicalStatus
from domain.payment.exceptions import PaymentSessionNotFound
from domain.payment.repository import PaymentSessionRepository
from core.logging_config import get_logger


logger = get_logger(__name__)


class InMemoryPaymentSessionRepository(PaymentSessionRepository):
    """支付会话仓储的内存实现"""

    def __init__(self) -> None:
        self._sessions: dict[str, PaymentSession] = {}
        self._collections: dict[str, PaymentCollection] = {}
        self._lock = asyncio.Lock()

    async def create_collection(
        self,
        *,
        amount: int,
        currency_code: str,
        order_id: Optional[str] = None,
        collection_id: Optional[str] = None,
    ) -> PaymentCollection:
        collection = PaymentCollection(
            id=collection_id or f"paycol_{uuid.uuid4().hex}",
            amount=amount,
            currency_code=currency_code.upper(),
            order_id=order_id,
        )
        async with self._lock:
            self._collections[collection.id] = collection
        return copy.deepcopy(collection)

    async def create_session(
        self,
        *,
        provider_id: str,
        amount: int,
        currency_code: str,
        data: Optional[dict[str, Any]] = None,
        payment_collection_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> PaymentSession:
        session = PaymentSession(
            id=session_id or f"payses_{uuid.uuid4().hex}",
            amount=amount,
            currency_code=currency_code,
            provider_id=provider_id,
            data=dict(data or {}),
            payment_collection_id=payment_collection_id,
        )
        async with self._lock:
            self._sessions[session.id] = session
            if payment_collection_id and payment_collection_id in self._collections:
                self._collections[payment_collection_id].payment_session_ids.append(session.id)
        logger.info("payment_session_created", session_id=session.id, provider_id=provider_id)
        return copy.deepcopy(session)

    async def retrieve_session(self, session_id: str) -> Optional[PaymentSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    async def list_sessions(
        self,
        *,
        provider_id: Optional[str] = None,
        payment_collection_id: Optional[str] = None,
    ) -> List[PaymentSession]:
        async with self._lock:
            sessions = [
                s for s in self._sessions.values()
                if (provider_id is None or s.provider_id == provider_id)
                and (payment_collection_id is None or s.payment_collection_id == payment_collection_id)
            ]
            return copy.deepcopy(sessions)

    async def update_session(
        self,
        session_id: str,
        *,
        data: Optional[dict[str, Any]] = None,
        status: Optional[CanonicalStatus] = None,
        amount: Optional[int] = None,
        currency_code: Optional[str] = None,
    ) -> PaymentSession:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise PaymentSessionNotFound(session_id)
            # 状态校验先于任何写入
            if status is not None:
                session.transition_to(status)
            if data is not None:
                session.data = dict(data)
            if amount is not None:
                session.amount = amount
            if currency_code is not None:
                session.currency_code = currency_code.upper()
            session.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(session)

    async def retrieve_collection(self, collection_id: str) -> Optional[PaymentCollection]:
        async with self._lock:
            collection = self._collections.get(collection_id)
            return copy.deepcopy(collection) if collection else None

    async def list_collections(self, *, order_id: str) -> List[PaymentCollection]:
        async with self._lock:
            return copy.deepcopy([c for c in self._collections.values() if c.order_id == order_id])

    async def update_collection(
        self,
        collection_id: str,
        *,
        amount: int,
        currency_code: str,
    ) -> PaymentCollection:
        async with self._lock:
            collection = self._collections.get(collection_id)
            if collection is None:
                raise PaymentSessionNotFound(collection_id)
            collection.amount = amount
            collection.currency_code = currency_code.upper()
            return copy.deepcopy(collection)

    async def attach_order(self, collection_id: str, order_id: str) -> PaymentCollection:
        """完成下单后将支付集合绑定到订单"""
        async with self._lock:
            collection = self._collections.get(collection_id)
            if collection is None:
                raise PaymentSessionNotFound(collection_id)
            collection.order_id = order_id
            return copy.deepcopy(collection)


_repository: Optional[InMemoryPaymentSessionRepository] = None


def get_payment_repository() -> InMemoryPaymentSessionRepository:
    global _repository
    if _repository is None:
        _repository = InMemoryPaymentSessionRepository()
    return _repository
