"""
Purchase order numbering.

Format: ``<prefix><YYYYMMDD><NNNN>`` e.g. ``PO202610190007``. Numbers sort
lexically in creation order within a prefix; the counter restarts at 0001
every day.

The read-max-then-increment is not locked: two concurrent creators may
compute the same number. The unique constraint on ``order_number`` rejects
the second INSERT and ``create_order`` retries with a fresh number.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.app.core.config import get_settings
from stockledger.app.db.models.models_v1 import PurchaseOrder

SEQUENCE_WIDTH = 4


def day_prefix(prefix: str, on: date) -> str:
    return f"{prefix}{on:%Y%m%d}"


def format_order_number(prefix: str, on: date, seq: int) -> str:
    return f"{day_prefix(prefix, on)}{seq:0{SEQUENCE_WIDTH}d}"


def next_order_number(db: Session, *, prefix: str | None = None, on: date | None = None) -> str:
    prefix = prefix or get_settings().order_number_prefix
    on = on or datetime.now(timezone.utc).date()
    head = day_prefix(prefix, on)

    last = db.execute(
        select(func.max(PurchaseOrder.order_number)).where(PurchaseOrder.order_number.like(f"{head}%"))
    ).scalar_one_or_none()

    seq = 1
    if last:
        tail = last[len(head):]
        if tail.isdigit():
            seq = int(tail) + 1
    return format_order_number(prefix, on, seq)
