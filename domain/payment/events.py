"""
Order/payment domain events.

Dataclass events record lifecycle facts consumed by in-process subscribers
(e.g., the auto-capture reactor). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid


ORDER_PLACED = "order.placed"


@dataclass
class OrderPlaced:
    order_id: str
    name: str = ORDER_PLACED
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
