"""
Procurement service.

Purchase order lifecycle (create, edit, status transitions) and receiving.
Quantities are never touched here directly: every receipt goes through
``stockledger.services.inventory.record_movement`` inside the same unit of
work as the order bookkeeping.

Concurrency: every operation on an existing order locks the order row
(FOR UPDATE) and reloads it before checking its status.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from stockledger.app.core.config import Settings, get_settings
from stockledger.app.core.errors import (
    ConcurrencyConflict,
    ExpectedDateRequired,
    InvalidTransition,
    LineNotInOrder,
    OrderNotModifiable,
    OrderNotReceivable,
    OverReceipt,
    PartialReceiptNotAllowed,
    UnknownLocation,
    UnknownOrder,
    UnknownProduct,
    UnknownSupplier,
)
from stockledger.app.db.models.core_types import (
    MODIFIABLE_PO_STATUSES,
    RECEIVABLE_PO_STATUSES,
    VALID_TRANSITIONS,
    MovementKind,
    POStatus,
)
from stockledger.app.db.models.models_v1 import (
    Location,
    Product,
    PurchaseOrder,
    PurchaseOrderLine,
    Supplier,
)
from stockledger.app.db.session import atomic
from stockledger.app.domain.dispatcher import emit_all
from stockledger.app.domain.events import (
    DomainEvent,
    ItemsReceived,
    OrderCreated,
    OrderStatusChanged,
    OrderUpdated,
)
from stockledger.app.schemas.purchase_order import (
    PurchaseOrderCreate,
    PurchaseOrderLineIn,
    PurchaseOrderUpdate,
    ReceiptResult,
    ReceivedDetail,
    ReceivedLine,
)
from stockledger.services.inventory import lock_stock_levels, record_movement
from stockledger.services.numbering import next_order_number
from stockledger.services.retry import retry_on_conflict

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ---------- Helpers ----------
def _lock_order(db: Session, order_id: int) -> PurchaseOrder:
    order = (
        db.execute(
            select(PurchaseOrder)
            .where(PurchaseOrder.id == order_id)
            .options(selectinload(PurchaseOrder.lines))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalars()
        .one_or_none()
    )
    if not order:
        raise UnknownOrder(order_id)
    return order


def _require_supplier(db: Session, supplier_id: int) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if not supplier or not supplier.active:
        raise UnknownSupplier(supplier_id)
    return supplier


def _add_lines(db: Session, order: PurchaseOrder, lines: Iterable[PurchaseOrderLineIn]) -> None:
    for ln in lines:
        product = db.get(Product, ln.product_id)
        if not product or not product.active:
            raise UnknownProduct(ln.product_id, reason="is not available")
        order.lines.append(
            PurchaseOrderLine(
                product_id=ln.product_id,
                quantity=ln.quantity,
                unit_price=ln.unit_price,
                line_total=ln.line_total.quantize(CENT, rounding=ROUND_HALF_UP),
                received_quantity=0,
            )
        )


def compute_totals(line_totals: Iterable[Decimal], tax_rate: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    """Return ``(subtotal, tax_amount, total_amount)``; tax = subtotal * rate / 100, cents half-up."""
    subtotal = sum((Decimal(t) for t in line_totals), Decimal("0")).quantize(CENT, rounding=ROUND_HALF_UP)
    tax_amount = (subtotal * Decimal(tax_rate) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    return subtotal, tax_amount, subtotal + tax_amount


def _recompute_totals(order: PurchaseOrder) -> None:
    order.subtotal, order.tax_amount, order.total_amount = compute_totals(
        (ln.line_total for ln in order.lines),
        order.tax_rate,
    )


def _transition(order: PurchaseOrder, requested: POStatus | str) -> POStatus:
    """Move ``order`` along one edge of VALID_TRANSITIONS; returns the old status."""
    current = POStatus(order.status)
    try:
        target = POStatus(requested)
    except ValueError:
        raise InvalidTransition(current.value, str(requested)) from None

    if target not in VALID_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)

    order.status = target
    return current


def _status_event(order: PurchaseOrder, old: POStatus, actor_id: int | None) -> OrderStatusChanged:
    return OrderStatusChanged(
        order_id=order.id,
        order_number=order.order_number,
        old_status=old.value,
        new_status=POStatus(order.status).value,
        actor_id=actor_id,
    )


def can_modify(order: PurchaseOrder) -> bool:
    return order.status in MODIFIABLE_PO_STATUSES


def can_receive(order: PurchaseOrder) -> bool:
    return order.status in RECEIVABLE_PO_STATUSES


# ---------- Public API ----------
def get_order(db: Session, order_id: int) -> PurchaseOrder:
    order = db.get(PurchaseOrder, order_id)
    if not order:
        raise UnknownOrder(order_id)
    return order


@retry_on_conflict
def create_order(
    db: Session,
    payload: PurchaseOrderCreate,
    *,
    actor_id: int | None = None,
    settings: Settings | None = None,
) -> PurchaseOrder:
    settings = settings or get_settings()
    if settings.require_expected_date and payload.expected_date is None:
        raise ExpectedDateRequired()

    events: list[DomainEvent] = []
    with atomic(db):
        _require_supplier(db, payload.supplier_id)

        tax_rate = payload.tax_rate if payload.tax_rate is not None else Decimal(str(settings.default_tax_rate))
        order = PurchaseOrder(
            order_number=next_order_number(db, prefix=settings.order_number_prefix),
            supplier_id=payload.supplier_id,
            status=POStatus.pending,
            order_date=payload.order_date or datetime.now(timezone.utc).date(),
            expected_date=payload.expected_date,
            notes=payload.notes,
            created_by=actor_id,
            subtotal=Decimal("0.00"),
            tax_rate=tax_rate,
            tax_amount=Decimal("0.00"),
            total_amount=Decimal("0.00"),
        )

        # unique order_number is the arbiter between concurrent creators
        try:
            with db.begin_nested():
                db.add(order)
                db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                f"Order number {order.order_number} was taken concurrently",
                order_number=order.order_number,
            ) from exc

        _add_lines(db, order, payload.lines)
        _recompute_totals(order)

        events.append(
            OrderCreated(
                order_id=order.id,
                order_number=order.order_number,
                supplier_id=order.supplier_id,
                actor_id=actor_id,
            )
        )

        if settings.auto_confirm_orders:
            old = _transition(order, POStatus.confirmed)
            events.append(_status_event(order, old, actor_id))

        db.flush()

    logger.info(
        "Purchase order created: id=%s number=%s supplier=%s total=%s status=%s",
        order.id,
        order.order_number,
        order.supplier_id,
        order.total_amount,
        POStatus(order.status).value,
    )
    emit_all(events)
    return order


def edit_order(
    db: Session,
    order_id: int,
    payload: PurchaseOrderUpdate,
    *,
    actor_id: int | None = None,
) -> PurchaseOrder:
    with atomic(db):
        order = _lock_order(db, order_id)
        if not can_modify(order):
            raise OrderNotModifiable(order.order_number, POStatus(order.status).value)

        if payload.supplier_id is not None and payload.supplier_id != order.supplier_id:
            _require_supplier(db, payload.supplier_id)
            order.supplier_id = payload.supplier_id
        if payload.expected_date is not None:
            order.expected_date = payload.expected_date
        if payload.notes is not None:
            order.notes = payload.notes
        if payload.tax_rate is not None:
            order.tax_rate = payload.tax_rate

        if payload.lines is not None:
            # old lines must be DELETEd before the new set is INSERTed (unique order/product)
            order.lines.clear()
            db.flush()
            _add_lines(db, order, payload.lines)

        _recompute_totals(order)
        db.flush()

    logger.info(
        "Purchase order updated: id=%s number=%s lines=%s total=%s",
        order.id,
        order.order_number,
        len(order.lines),
        order.total_amount,
    )
    emit_all([OrderUpdated(order_id=order.id, order_number=order.order_number, actor_id=actor_id)])
    return order


def change_status(
    db: Session,
    order_id: int,
    new_status: POStatus | str,
    *,
    notes: str | None = None,
    actor_id: int | None = None,
) -> PurchaseOrder:
    """
    Pure state transition: no quantity side effect. ``notes`` is appended to
    the order's note history, never replaces it.
    """
    with atomic(db):
        order = _lock_order(db, order_id)
        try:
            old = _transition(order, new_status)
        except InvalidTransition as exc:
            logger.warning("Purchase order %s: %s", order.order_number, exc.detail)
            raise

        if notes:
            order.notes = f"{order.notes}\n\n{notes}" if order.notes else notes
        db.flush()

    logger.info(
        "Purchase order status changed: id=%s number=%s %s -> %s",
        order.id,
        order.order_number,
        old.value,
        POStatus(order.status).value,
    )
    emit_all([_status_event(order, old, actor_id)])
    return order


@retry_on_conflict
def receive_items(
    db: Session,
    order_id: int,
    lines: Iterable[ReceivedLine | Mapping[str, Any]],
    *,
    location_id: int,
    notes: str | None = None,
    actor_id: int | None = None,
    settings: Settings | None = None,
) -> ReceiptResult:
    """
    Receive goods against a purchase order (partial deliveries supported).

    For each submitted line:
    - unknown product for this order -> LineNotInOrder (whole call rejected)
    - quantity <= 0                  -> skipped
    - cumulative receipt > ordered   -> OverReceipt (unless allowed by config)
    - otherwise an ``in`` movement at ``location_id`` referencing the order

    New status, from the durable per-line received totals:
        every line fully received -> received
        something received now    -> partially_received
        nothing received          -> unchanged

    Stock rows are locked in ascending product order before the first movement.
    Movements, line totals and the status change commit together or not at all.
    """
    settings = settings or get_settings()
    items = [ReceivedLine.model_validate(ln) for ln in lines]

    events: list[DomainEvent] = []
    status_events: list[DomainEvent] = []
    details: list[ReceivedDetail] = []
    total_received = 0

    with atomic(db):
        order = _lock_order(db, order_id)
        if not can_receive(order):
            raise OrderNotReceivable(order.order_number, POStatus(order.status).value)

        location = db.get(Location, location_id)
        if not location:
            raise UnknownLocation(location_id)

        reason = "Purchase order received" + (f" - {notes}" if notes else "")
        levels = lock_stock_levels(
            db,
            [
                (item.product_id, location.id)
                for item in items
                if item.received_quantity > 0 and order.line_for(item.product_id) is not None
            ],
        )

        for item in items:
            line = order.line_for(item.product_id)
            if line is None:
                raise LineNotInOrder(order.order_number, item.product_id)

            qty = item.received_quantity
            if qty <= 0:
                continue

            cumulative = line.received_quantity + qty
            if cumulative > line.quantity and not settings.allow_over_receiving:
                logger.warning(
                    "Over-receipt rejected: order=%s product=%s ordered=%s cumulative=%s",
                    order.order_number,
                    line.product_id,
                    line.quantity,
                    cumulative,
                )
                raise OverReceipt(line.product_id, line.product.name, line.quantity, cumulative)

            _, mv_events = record_movement(
                db,
                product=line.product,
                location=location,
                kind=MovementKind.inbound,
                quantity=qty,
                reference=order.order_number,
                reason=reason,
                notes=notes,
                actor_id=actor_id,
                stock_level=levels[(line.product_id, location.id)],
                low_stock_threshold=settings.low_stock_threshold,
            )
            events.extend(mv_events)

            line.received_quantity = cumulative
            details.append(
                ReceivedDetail(
                    product_id=line.product_id,
                    product_name=line.product.name,
                    ordered_quantity=line.quantity,
                    received_quantity=qty,
                )
            )
            total_received += qty

        fully_received = bool(order.lines) and all(ln.is_fully_received for ln in order.lines)
        if fully_received:
            new_status = POStatus.received
        elif total_received > 0:
            new_status = POStatus.partially_received
        else:
            new_status = POStatus(order.status)

        if total_received > 0 and not fully_received and not settings.allow_partial_receiving:
            raise PartialReceiptNotAllowed(order.order_number)

        if new_status != order.status:
            old = _transition(order, new_status)
            status_events.append(_status_event(order, old, actor_id))

        db.flush()

    logger.info(
        "Purchase order items received: id=%s number=%s location=%s total_received=%s new_status=%s",
        order.id,
        order.order_number,
        location_id,
        total_received,
        new_status.value,
    )

    if details:
        events.append(
            ItemsReceived(
                order_id=order.id,
                order_number=order.order_number,
                location_id=location_id,
                lines=tuple(d.model_dump() for d in details),
                actor_id=actor_id,
            )
        )
    emit_all(events + status_events)

    return ReceiptResult(
        order_id=order.id,
        order_number=order.order_number,
        location_id=location_id,
        received_details=details,
        total_received=total_received,
        new_status=new_status,
    )
