import random

import pytest
from sqlalchemy import func, select

from stockledger.app.core.errors import (
    InsufficientReserved,
    InsufficientStock,
    LedgerEntryImmutable,
    ReasonRequired,
    UnknownLocation,
    UnknownProduct,
    ZeroOrNegativeQuantity,
)
from stockledger.app.db.models.core_types import MovementKind
from stockledger.app.db.models.models_v1 import StockLevel, StockMovement
from stockledger.app.domain.events import LowStockReached, StockMoved
from stockledger.app.schemas.stock_level import StockMovementRead
from stockledger.services import inventory


def _ledger_count(db) -> int:
    return db.execute(select(func.count(StockMovement.id))).scalar_one()


def _level(db, product, location):
    return inventory.get_stock_level(db, product.id, location.id)


def test_in_out_adjustment_sequence(db_session, make_product, make_location):
    """
    GIVEN an empty (product, location)
    WHEN in 10, out 3, adjustment 20
    THEN quantity is 20 and the ledger holds three entries in order
    """
    # ---------- ARRANGE ----------
    p = make_product()
    a = make_location()

    # ---------- ACT ----------
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=10)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=3)
    assert _level(db_session, p, a).quantity == 7
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="adjustment", quantity=20)

    # ---------- ASSERT ----------
    assert _level(db_session, p, a).quantity == 20

    history = list(reversed(inventory.get_product_history(db_session, p.id)))
    assert [(MovementKind(m.kind), m.quantity) for m in history] == [
        (MovementKind.inbound, 10),
        (MovementKind.outbound, 3),
        (MovementKind.adjustment, 20),
    ]


def test_out_exceeding_stock_is_rejected_without_side_effects(db_session, make_product, make_location):
    p = make_product()
    a = make_location()
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=5)

    with pytest.raises(InsufficientStock) as exc:
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=6)

    assert exc.value.context["available"] == 5
    assert exc.value.context["requested"] == 6
    assert exc.value.as_payload()["code"] == "INSUFFICIENT_STOCK"
    assert _level(db_session, p, a).quantity == 5
    assert _ledger_count(db_session) == 1


def test_out_on_missing_stock_row_is_rejected(db_session, make_product, make_location):
    p = make_product()
    a = make_location()

    with pytest.raises(InsufficientStock):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=1)

    assert db_session.get(StockLevel, (p.id, a.id)) is None
    assert _ledger_count(db_session) == 0


@pytest.mark.parametrize("kind", ["in", "out", "reserve", "unreserve"])
@pytest.mark.parametrize("quantity", [0, -3])
def test_counted_kinds_reject_zero_or_negative(db_session, make_product, make_location, kind, quantity):
    p = make_product()
    a = make_location()

    with pytest.raises(ZeroOrNegativeQuantity):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind=kind, quantity=quantity)

    assert _ledger_count(db_session) == 0


def test_adjustment_to_zero_is_allowed_but_negative_is_not(db_session, make_product, make_location):
    p = make_product()
    a = make_location()
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=4)

    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="adjustment", quantity=0)
    assert _level(db_session, p, a).quantity == 0

    with pytest.raises(ZeroOrNegativeQuantity):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="adjustment", quantity=-1)


def test_unknown_kind_is_rejected(db_session, make_product, make_location):
    p = make_product()
    a = make_location()
    with pytest.raises(ValueError):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="teleport", quantity=1)


def test_unknown_product_and_location(db_session, make_product, make_location):
    p = make_product()
    a = make_location()

    with pytest.raises(UnknownProduct):
        inventory.apply_movement(db_session, product_id=9999, location_id=a.id, kind="in", quantity=1)
    with pytest.raises(UnknownLocation):
        inventory.apply_movement(db_session, product_id=p.id, location_id=9999, kind="in", quantity=1)

    assert _ledger_count(db_session) == 0


def test_reserve_limits_out_and_adjustment(db_session, make_product, make_location):
    """
    GIVEN 10 on hand with 6 reserved
    THEN out is limited to the 4 available and adjustment cannot go below 6
    """
    p = make_product()
    a = make_location()
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=10)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="reserve", quantity=6)

    lvl = _level(db_session, p, a)
    assert (lvl.quantity, lvl.reserved_quantity, lvl.available_quantity) == (10, 6, 4)

    with pytest.raises(InsufficientStock):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=5)
    with pytest.raises(InsufficientStock):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="reserve", quantity=5)
    with pytest.raises(InsufficientStock):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="adjustment", quantity=5)

    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=4)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="unreserve", quantity=6)

    lvl = _level(db_session, p, a)
    assert (lvl.quantity, lvl.reserved_quantity, lvl.available_quantity) == (6, 0, 6)


def test_unreserve_more_than_reserved_is_rejected(db_session, make_product, make_location):
    p = make_product()
    a = make_location()
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=10)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="reserve", quantity=2)

    with pytest.raises(InsufficientReserved):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="unreserve", quantity=3)

    assert _level(db_session, p, a).reserved_quantity == 2


def test_ledger_entries_cannot_be_updated_or_deleted(db_session, make_product, make_location):
    p = make_product()
    a = make_location()
    mv = inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=3)

    mv.quantity = 300
    with pytest.raises(LedgerEntryImmutable):
        db_session.commit()
    db_session.rollback()

    db_session.delete(db_session.get(StockMovement, mv.id))
    with pytest.raises(LedgerEntryImmutable):
        db_session.commit()
    db_session.rollback()

    stored = db_session.execute(select(StockMovement.quantity).where(StockMovement.id == mv.id)).scalar_one()
    assert stored == 3


def test_get_stock_level_defaults_to_zero(db_session, make_product, make_location):
    p = make_product()
    a = make_location()

    lvl = _level(db_session, p, a)

    assert (lvl.quantity, lvl.reserved_quantity, lvl.available_quantity) == (0, 0, 0)


def test_location_history_is_newest_first_and_limited(db_session, make_product, make_location):
    p = make_product()
    a = make_location()
    b = make_location()
    for qty in (1, 2, 3):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=qty)
    inventory.apply_movement(db_session, product_id=p.id, location_id=b.id, kind="in", quantity=9)

    history = inventory.get_location_history(db_session, a.id, limit=2)

    assert [m.quantity for m in history] == [3, 2]
    read = StockMovementRead.model_validate(history[0])
    assert (read.kind, read.location_id, read.created_at is not None) == (MovementKind.inbound, a.id, True)


def test_stock_level_always_matches_ledger_replay(db_session, make_product, make_location):
    """
    GIVEN a random sequence of movements, some of them rejected
    THEN replaying the ledger gives the stored level and it never went negative
    """
    rng = random.Random(20261019)
    p = make_product()
    a = make_location()

    for _ in range(60):
        kind = rng.choice(["in", "out", "adjustment", "reserve", "unreserve"])
        qty = rng.randint(0 if kind == "adjustment" else 1, 15)
        try:
            inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind=kind, quantity=qty)
        except (InsufficientStock, InsufficientReserved):
            pass

        lvl = _level(db_session, p, a)
        assert lvl.quantity >= 0
        assert 0 <= lvl.reserved_quantity <= lvl.quantity

    movements = db_session.execute(
        select(StockMovement).where(StockMovement.product_id == p.id).order_by(StockMovement.id)
    ).scalars()
    lvl = _level(db_session, p, a)
    assert inventory.replay_movements(movements) == (lvl.quantity, lvl.reserved_quantity)


def test_rebuild_stock_levels_repairs_drift(db_session, make_product, make_location, caplog):
    p = make_product()
    a = make_location()
    b = make_location()
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=8)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="reserve", quantity=2)
    inventory.apply_movement(db_session, product_id=p.id, location_id=b.id, kind="in", quantity=5)

    sl = db_session.get(StockLevel, (p.id, a.id))
    sl.quantity = 99
    db_session.commit()

    rebuilt = inventory.rebuild_stock_levels(db_session, product_ids=[p.id])

    assert rebuilt == 2
    lvl = _level(db_session, p, a)
    assert (lvl.quantity, lvl.reserved_quantity) == (8, 2)
    assert _level(db_session, p, b).quantity == 5
    assert "drifted from ledger" in caplog.text

    assert inventory.rebuild_stock_levels(db_session, product_ids=[]) == 0


def test_movement_events_and_low_stock(db_session, make_product, make_location, captured_events):
    p = make_product(min_stock_level=5)
    a = make_location()

    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=12, actor_id=7)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=4)
    assert not [e for e in captured_events if isinstance(e, LowStockReached)]

    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=3)

    moved = [e for e in captured_events if isinstance(e, StockMoved)]
    assert [(e.kind, e.quantity, e.new_quantity) for e in moved] == [("in", 12, 12), ("out", 4, 8), ("out", 3, 5)]
    assert moved[0].actor_id == 7

    low = [e for e in captured_events if isinstance(e, LowStockReached)]
    assert len(low) == 1
    assert (low[0].quantity, low[0].min_stock_level) == (5, 5)


def test_rejected_movement_emits_nothing(db_session, make_product, make_location, captured_events):
    p = make_product()
    a = make_location()

    with pytest.raises(InsufficientStock):
        inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=1)

    assert captured_events == []


def test_rebuild_locks_rows_before_reading_the_ledger(db_session, make_product, make_location, monkeypatch):
    """
    GIVEN stock at two locations
    WHEN the levels are rebuilt
    THEN every row is locked (ascending key order) before any movement is replayed
    """
    # ---------- ARRANGE ----------
    p = make_product()
    a = make_location()
    b = make_location()
    inventory.apply_movement(db_session, product_id=p.id, location_id=b.id, kind="in", quantity=4)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=6)

    calls = []
    real_lock = inventory._lock_stock_level
    real_replay = inventory.replay_movements

    def recording_lock(db, product_id, location_id):
        calls.append(("lock", location_id))
        return real_lock(db, product_id, location_id)

    def recording_replay(movements):
        result = real_replay(movements)
        calls.append(("replay", result))
        return result

    monkeypatch.setattr(inventory, "_lock_stock_level", recording_lock)
    monkeypatch.setattr(inventory, "replay_movements", recording_replay)

    # ---------- ACT ----------
    assert inventory.rebuild_stock_levels(db_session, product_ids=[p.id]) == 2

    # ---------- ASSERT ----------
    assert calls == [("lock", a.id), ("lock", b.id), ("replay", (6, 0)), ("replay", (4, 0))]


def test_reason_required_by_configuration(db_session, make_product, make_location, settings, captured_events):
    p = make_product()
    a = make_location()
    strict = settings.model_copy(update={"require_movement_reason": True})

    for reason in (None, "   "):
        with pytest.raises(ReasonRequired) as exc_info:
            inventory.apply_movement(
                db_session, product_id=p.id, location_id=a.id, kind="in", quantity=5, reason=reason, settings=strict
            )
        assert exc_info.value.context == {"kind": "in"}
    assert _ledger_count(db_session) == 0
    assert captured_events == []

    mv = inventory.apply_movement(
        db_session, product_id=p.id, location_id=a.id, kind="in", quantity=5, reason="Opening count", settings=strict
    )
    assert mv.reason == "Opening count"
    assert _level(db_session, p, a).quantity == 5

    # not required by default
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=1, settings=settings)
    assert _ledger_count(db_session) == 2


@pytest.mark.parametrize(
    "threshold, expected",
    [(10, [(8, 10)]), (0, [])],
)
def test_global_low_stock_threshold_for_products_without_their_own(
    db_session, make_product, make_location, settings, captured_events, threshold, expected
):
    """
    GIVEN a product with min_stock_level 0
    WHEN an out movement leaves 8 on hand
    THEN LowStockReached follows the configured low_stock_threshold (0 disables it)
    """
    p = make_product(min_stock_level=0)
    a = make_location()
    configured = settings.model_copy(update={"low_stock_threshold": threshold})

    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=20, settings=configured)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=12, settings=configured)

    low = [e for e in captured_events if isinstance(e, LowStockReached)]
    assert [(e.quantity, e.min_stock_level) for e in low] == expected


def test_product_min_stock_level_overrides_global_threshold(
    db_session, make_product, make_location, settings, captured_events
):
    p = make_product(min_stock_level=3)
    a = make_location()
    configured = settings.model_copy(update={"low_stock_threshold": 50})

    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="in", quantity=20, settings=configured)
    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=12, settings=configured)
    assert not [e for e in captured_events if isinstance(e, LowStockReached)]

    inventory.apply_movement(db_session, product_id=p.id, location_id=a.id, kind="out", quantity=5, settings=configured)
    low = [e for e in captured_events if isinstance(e, LowStockReached)]
    assert [(e.quantity, e.min_stock_level) for e in low] == [(3, 3)]
