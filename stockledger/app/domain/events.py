from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    """
    Base class for everything the core announces after a committed change.

    Handlers (notifications, integrations) subscribe through
    ``stockledger.app.domain.dispatcher``; the core never depends on them.
    """

    occurred_at: datetime = field(default_factory=_utcnow)
    actor_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------- STOCK ----------
@dataclass(frozen=True, kw_only=True)
class StockMoved(DomainEvent):
    movement_id: int
    product_id: int
    location_id: int
    kind: str
    quantity: int
    new_quantity: int


@dataclass(frozen=True, kw_only=True)
class LowStockReached(DomainEvent):
    product_id: int
    location_id: int
    quantity: int
    min_stock_level: int


# ---------- PURCHASE ORDERS ----------
@dataclass(frozen=True, kw_only=True)
class OrderCreated(DomainEvent):
    order_id: int
    order_number: str
    supplier_id: int


@dataclass(frozen=True, kw_only=True)
class OrderUpdated(DomainEvent):
    order_id: int
    order_number: str


@dataclass(frozen=True, kw_only=True)
class OrderStatusChanged(DomainEvent):
    order_id: int
    order_number: str
    old_status: str
    new_status: str


@dataclass(frozen=True, kw_only=True)
class ItemsReceived(DomainEvent):
    order_id: int
    order_number: str
    location_id: int
    lines: tuple[dict[str, Any], ...]
