"""
Stock ledger service.

Single entry point for every quantity change:
    apply_movement  -> one movement (in / out / adjustment / reserve / unreserve)
    transfer_stock  -> out at source + in at destination, one unit of work

Rules:
- a StockLevel row is read FOR UPDATE for the whole read-modify-write
- the movement is appended to the ledger, then the level is written
- any rejection leaves both the ledger and the level untouched
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.app.core.config import Settings, get_settings
from stockledger.app.core.errors import (
    InsufficientReserved,
    InsufficientStock,
    ReasonRequired,
    UnknownLocation,
    UnknownProduct,
    ZeroOrNegativeQuantity,
    SameLocationTransfer,
)
from stockledger.app.db.models.core_types import MovementKind
from stockledger.app.db.models.models_v1 import Location, Product, StockLevel, StockMovement
from stockledger.app.db.session import atomic
from stockledger.app.domain.dispatcher import emit_all
from stockledger.app.domain.events import DomainEvent, LowStockReached, StockMoved
from stockledger.app.schemas.stock_level import StockLevelRead
from stockledger.services.retry import retry_on_conflict

logger = logging.getLogger(__name__)

# kinds whose quantity is a positive count (adjustment carries an absolute value)
COUNTED_KINDS = {
    MovementKind.inbound,
    MovementKind.outbound,
    MovementKind.reserve,
    MovementKind.unreserve,
}


@dataclass(frozen=True)
class TransferResult:
    out_movement: StockMovement
    in_movement: StockMovement

    @property
    def reference(self) -> str | None:
        return self.out_movement.reference


# ---------- Quantity arithmetic ----------
def validate_movement_quantity(kind: MovementKind, quantity: int) -> None:
    if kind in COUNTED_KINDS and quantity <= 0:
        raise ZeroOrNegativeQuantity(quantity)
    if kind == MovementKind.adjustment and quantity < 0:
        raise ZeroOrNegativeQuantity(quantity)


def next_levels(
    kind: MovementKind,
    quantity: int,
    *,
    on_hand: int,
    reserved: int,
    product_id: int,
    location_id: int,
) -> tuple[int, int]:
    """
    Return ``(new_on_hand, new_reserved)`` for one movement, or raise.

    - in          : on_hand + n
    - out         : on_hand - n, limited to what is not reserved
    - adjustment  : n (absolute), never below what is reserved
    - reserve     : reserved + n, limited to what is available
    - unreserve   : reserved - n
    """
    available = on_hand - reserved

    if kind == MovementKind.inbound:
        return on_hand + quantity, reserved

    if kind == MovementKind.outbound:
        if quantity > available:
            raise InsufficientStock(product_id, location_id, available=available, requested=quantity)
        return on_hand - quantity, reserved

    if kind == MovementKind.adjustment:
        if quantity < reserved:
            raise InsufficientStock(
                product_id,
                location_id,
                available=available,
                requested=on_hand - quantity,
            )
        return quantity, reserved

    if kind == MovementKind.reserve:
        if quantity > available:
            raise InsufficientStock(product_id, location_id, available=available, requested=quantity)
        return on_hand, reserved + quantity

    if kind == MovementKind.unreserve:
        if quantity > reserved:
            raise InsufficientReserved(product_id, location_id, reserved=reserved, requested=quantity)
        return on_hand, reserved - quantity

    raise ValueError(f"Unsupported movement kind {kind!r}")


def replay_movements(movements: Iterable[StockMovement]) -> tuple[int, int]:
    """Fold ledger entries (in commit order) into ``(on_hand, reserved)``."""
    on_hand, reserved = 0, 0
    for mv in movements:
        on_hand, reserved = next_levels(
            MovementKind(mv.kind),
            mv.quantity,
            on_hand=on_hand,
            reserved=reserved,
            product_id=mv.product_id,
            location_id=mv.location_id,
        )
    return on_hand, reserved


# ---------- Helpers ----------
def _require_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise UnknownProduct(product_id)
    return product


def _require_location(db: Session, location_id: int) -> Location:
    loc = db.get(Location, location_id)
    if not loc:
        raise UnknownLocation(location_id)
    return loc


def stock_level_for_update(product_id: int, location_id: int):
    return (
        select(StockLevel)
        .where(StockLevel.product_id == product_id)
        .where(StockLevel.location_id == location_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def _lock_stock_level(db: Session, product_id: int, location_id: int) -> StockLevel:
    """
    Return the (product, location) row locked FOR UPDATE, creating it at 0/0.

    Two callers may race to create the same row: the loser's INSERT fails on
    the primary key inside its own SAVEPOINT and it locks the winner's row.
    """
    stmt = stock_level_for_update(product_id, location_id)
    sl = db.execute(stmt).scalar_one_or_none()
    if sl:
        return sl

    sl = StockLevel(
        product_id=product_id,
        location_id=location_id,
        quantity=0,
        reserved_quantity=0,
    )
    try:
        with db.begin_nested():
            db.add(sl)
            db.flush()
    except IntegrityError:
        logger.info("Stock level (%s, %s) created concurrently, locking existing row", product_id, location_id)
        return db.execute(stmt).scalar_one()
    return sl


def lock_stock_levels(
    db: Session,
    pairs: Iterable[tuple[int, int]],
) -> dict[tuple[int, int], StockLevel]:
    """
    Lock every ``(product_id, location_id)`` row in ascending key order.

    Every multi-row writer goes through here so two of them can never wait on
    each other's rows in opposite orders.
    """
    return {key: _lock_stock_level(db, *key) for key in sorted(set(pairs))}


def record_movement(
    db: Session,
    *,
    product: Product,
    location: Location,
    kind: MovementKind,
    quantity: int,
    reference: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
    related_movement_id: int | None = None,
    stock_level: StockLevel | None = None,
    low_stock_threshold: int = 0,
) -> tuple[StockMovement, list[DomainEvent]]:
    """
    Apply one movement inside the caller's unit of work.

    ``low_stock_threshold`` stands in for ``product.min_stock_level`` when the
    product does not set its own.

    Does not open a transaction and does not emit: returns the events so the
    caller can publish them once its whole unit has succeeded.
    """
    validate_movement_quantity(kind, quantity)
    sl = stock_level or _lock_stock_level(db, product.id, location.id)

    try:
        new_on_hand, new_reserved = next_levels(
            kind,
            quantity,
            on_hand=sl.quantity,
            reserved=sl.reserved_quantity,
            product_id=product.id,
            location_id=location.id,
        )
    except (InsufficientStock, InsufficientReserved) as exc:
        logger.warning("Stock movement rejected: %s", exc.detail)
        raise

    mv = StockMovement(
        product_id=product.id,
        location_id=location.id,
        kind=kind,
        quantity=quantity,
        reference=reference,
        reason=reason,
        notes=notes,
        related_movement_id=related_movement_id,
        created_by=actor_id,
    )
    db.add(mv)
    sl.quantity = new_on_hand
    sl.reserved_quantity = new_reserved
    db.flush()

    events: list[DomainEvent] = [
        StockMoved(
            movement_id=mv.id,
            product_id=product.id,
            location_id=location.id,
            kind=kind.value,
            quantity=quantity,
            new_quantity=new_on_hand,
            actor_id=actor_id,
        )
    ]
    threshold = product.min_stock_level or low_stock_threshold
    if kind in (MovementKind.outbound, MovementKind.adjustment) and 0 < threshold and new_on_hand <= threshold:
        events.append(
            LowStockReached(
                product_id=product.id,
                location_id=location.id,
                quantity=new_on_hand,
                min_stock_level=threshold,
                actor_id=actor_id,
            )
        )

    logger.info(
        "Stock movement %s recorded: product=%s location=%s kind=%s qty=%s on_hand=%s reserved=%s",
        mv.id,
        product.id,
        location.id,
        kind.value,
        quantity,
        new_on_hand,
        new_reserved,
    )
    return mv, events


# ---------- Public API ----------
@retry_on_conflict
def apply_movement(
    db: Session,
    *,
    product_id: int,
    location_id: int,
    kind: MovementKind | str,
    quantity: int,
    reference: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
    settings: Settings | None = None,
) -> StockMovement:
    settings = settings or get_settings()
    kind = MovementKind(kind)
    validate_movement_quantity(kind, quantity)
    if settings.require_movement_reason and not (reason and reason.strip()):
        raise ReasonRequired(kind.value)

    with atomic(db):
        product = _require_product(db, product_id)
        location = _require_location(db, location_id)
        mv, events = record_movement(
            db,
            product=product,
            location=location,
            kind=kind,
            quantity=quantity,
            reference=reference,
            reason=reason,
            notes=notes,
            actor_id=actor_id,
            low_stock_threshold=settings.low_stock_threshold,
        )

    emit_all(events)
    return mv


@retry_on_conflict
def transfer_stock(
    db: Session,
    *,
    product_id: int,
    from_location_id: int,
    to_location_id: int,
    quantity: int,
    reference: str | None = None,
    reason: str | None = None,
    actor_id: int | None = None,
    settings: Settings | None = None,
) -> TransferResult:
    """
    Move ``quantity`` between two locations: ``out`` at the source then ``in``
    at the destination. Both rows are locked in ascending location id order
    so two opposite transfers cannot deadlock. Either both legs commit or
    neither does.

    Linking: the ``in`` entry points at the ``out`` entry through
    ``related_movement_id``. Ledger entries are never updated, so the ``out``
    entry cannot point forward; going from ``out`` to ``in`` relies on the
    shared ``TRF-...`` reference, which is unique per transfer.
    """
    settings = settings or get_settings()
    if quantity <= 0:
        raise ZeroOrNegativeQuantity(quantity)
    if from_location_id == to_location_id:
        raise SameLocationTransfer(from_location_id)

    with atomic(db):
        product = _require_product(db, product_id)
        src_loc = _require_location(db, from_location_id)
        dst_loc = _require_location(db, to_location_id)

        levels = lock_stock_levels(db, [(product_id, from_location_id), (product_id, to_location_id)])
        src = levels[(product_id, from_location_id)]
        if src.available_quantity < quantity:
            logger.warning(
                "Transfer rejected: product=%s from=%s available=%s requested=%s",
                product_id,
                from_location_id,
                src.available_quantity,
                quantity,
            )
            raise InsufficientStock(
                product_id,
                from_location_id,
                available=src.available_quantity,
                requested=quantity,
            )

        ref = reference or f"TRF-{uuid.uuid4().hex[:12].upper()}"
        out_mv, out_events = record_movement(
            db,
            product=product,
            location=src_loc,
            kind=MovementKind.outbound,
            quantity=quantity,
            reference=ref,
            reason=reason or "Transfer",
            notes=f"Transfer to {dst_loc.name}",
            actor_id=actor_id,
            stock_level=src,
            low_stock_threshold=settings.low_stock_threshold,
        )
        in_mv, in_events = record_movement(
            db,
            product=product,
            location=dst_loc,
            kind=MovementKind.inbound,
            quantity=quantity,
            reference=ref,
            reason=reason or "Transfer",
            notes=f"Transfer from {src_loc.name}",
            actor_id=actor_id,
            related_movement_id=out_mv.id,
            stock_level=levels[(product_id, to_location_id)],
        )

    logger.info(
        "Stock transferred: product=%s qty=%s from=%s to=%s ref=%s",
        product_id,
        quantity,
        from_location_id,
        to_location_id,
        ref,
    )
    emit_all(out_events + in_events)
    return TransferResult(out_movement=out_mv, in_movement=in_mv)


# ---------- Read side ----------
def get_stock_level(db: Session, product_id: int, location_id: int) -> StockLevelRead:
    sl = db.get(StockLevel, (product_id, location_id))
    if not sl:
        return StockLevelRead(
            product_id=product_id,
            location_id=location_id,
            quantity=0,
            reserved_quantity=0,
            available_quantity=0,
        )
    return StockLevelRead.model_validate(sl)


def get_product_history(db: Session, product_id: int, limit: int = 20) -> Sequence[StockMovement]:
    return (
        db.execute(
            select(StockMovement)
            .where(StockMovement.product_id == product_id)
            .order_by(StockMovement.id.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


def get_location_history(db: Session, location_id: int, limit: int = 20) -> Sequence[StockMovement]:
    return (
        db.execute(
            select(StockMovement)
            .where(StockMovement.location_id == location_id)
            .order_by(StockMovement.id.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


def rebuild_stock_levels(
    db: Session,
    *,
    product_ids: Iterable[int],
    location_id: int | None = None,
) -> int:
    """
    Rebuild StockLevel rows from the ledger, the source of truth.

    Rule:
        quantity / reserved_quantity = replay of every movement of the
        (product, location) pair in commit (id) order

    Properties:
    - deterministic
    - idempotent
    - transaction-safe (rows locked FOR UPDATE before the ledger is read,
      one unit of work)

    Returns the number of rows rebuilt.
    """
    product_ids = sorted({int(pid) for pid in product_ids if pid is not None})
    if not product_ids:
        return 0

    pairs_stmt = (
        select(StockMovement.product_id, StockMovement.location_id)
        .where(StockMovement.product_id.in_(product_ids))
        .distinct()
    )
    if location_id is not None:
        pairs_stmt = pairs_stmt.where(StockMovement.location_id == location_id)

    rebuilt = 0
    with atomic(db):
        pairs = [(pid, lid) for pid, lid in db.execute(pairs_stmt).all()]
        # writers hold these locks while appending, so the ledger read below is complete
        levels = lock_stock_levels(db, pairs)

        for (pid, lid), sl in levels.items():
            movements = db.execute(
                select(StockMovement)
                .where(
                    StockMovement.product_id == pid,
                    StockMovement.location_id == lid,
                )
                .order_by(StockMovement.id)
            ).scalars()
            on_hand, reserved = replay_movements(movements)
            if (sl.quantity, sl.reserved_quantity) != (on_hand, reserved):
                logger.warning(
                    "Stock level (%s, %s) drifted from ledger: stored=%s/%s ledger=%s/%s",
                    pid,
                    lid,
                    sl.quantity,
                    sl.reserved_quantity,
                    on_hand,
                    reserved,
                )
            sl.quantity = on_hand
            sl.reserved_quantity = reserved
            rebuilt += 1
        db.flush()

    return rebuilt
