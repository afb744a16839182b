import itertools
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from stockledger.app.core.config import Settings
from stockledger.app.db.base import Base
from stockledger.app.db.models.core_types import POStatus
from stockledger.app.db.models.models_v1 import Location, Product, PurchaseOrder, Supplier
from stockledger.app.db.session import SessionLocal, create_db_engine
from stockledger.app.domain import events as ev
from stockledger.app.domain.dispatcher import dispatcher
from stockledger.app.schemas.purchase_order import PurchaseOrderCreate, PurchaseOrderLineIn
from stockledger.services import procurement

ALL_EVENT_TYPES = (
    ev.StockMoved,
    ev.LowStockReached,
    ev.OrderCreated,
    ev.OrderUpdated,
    ev.OrderStatusChanged,
    ev.ItemsReceived,
)


@pytest.fixture(scope="function")
def engine():
    """
    One private in-memory SQLite database per test.

    StaticPool keeps the single connection alive so every session sees the
    same database; create_db_engine enables real SAVEPOINTs on pysqlite.
    """
    engine = create_db_engine(
        "sqlite+pysqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        # transfer legs reference each other; SQLite enforces that FK while
        # dropping stock_movements, so turn enforcement off for teardown
        raw = engine.raw_connection()
        try:
            raw.driver_connection.execute("PRAGMA foreign_keys=OFF")
        finally:
            raw.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    session = SessionLocal(bind=engine)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        default_tax_rate=10.0,
        order_number_prefix="PO",
        auto_confirm_orders=False,
        require_expected_date=False,
        allow_partial_receiving=True,
        allow_over_receiving=False,
    )


@pytest.fixture
def captured_events():
    captured = []

    def _capture(event):
        captured.append(event)

    for event_type in ALL_EVENT_TYPES:
        dispatcher.register_handler(event_type)(_capture)
    try:
        yield captured
    finally:
        for event_type in ALL_EVENT_TYPES:
            dispatcher.unregister_handler(event_type, _capture)


# ---------- MASTER DATA FACTORIES ----------
@pytest.fixture
def make_product(db_session):
    counter = itertools.count(1)

    def _make(name: str | None = None, *, min_stock_level: int = 0, active: bool = True) -> Product:
        n = next(counter)
        product = Product(
            sku=f"TEST-SKU-{n}",
            name=name or f"TEST-PROD-{n}",
            cost_price=Decimal("1.00"),
            min_stock_level=min_stock_level,
            active=active,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def make_location(db_session):
    counter = itertools.count(1)

    def _make(name: str | None = None, *, active: bool = True) -> Location:
        loc = Location(name=name or f"TEST-LOC-{next(counter)}", active=active)
        db_session.add(loc)
        db_session.commit()
        return loc

    return _make


@pytest.fixture
def make_supplier(db_session):
    counter = itertools.count(1)

    def _make(name: str | None = None, *, active: bool = True) -> Supplier:
        sup = Supplier(name=name or f"TEST-SUP-{next(counter)}", active=active)
        db_session.add(sup)
        db_session.commit()
        return sup

    return _make


@pytest.fixture
def make_order(db_session, make_supplier, settings):
    """
    Create a purchase order through the service, then force its status.

    ``lines`` is a list of ``(product, quantity)`` or ``(product, quantity, unit_price)``.
    """

    def _make(lines, *, status: POStatus = POStatus.pending, tax_rate: str | None = None) -> PurchaseOrder:
        supplier = make_supplier()
        payload = PurchaseOrderCreate(
            supplier_id=supplier.id,
            tax_rate=Decimal(tax_rate) if tax_rate is not None else None,
            lines=[
                PurchaseOrderLineIn(
                    product_id=ln[0].id,
                    quantity=ln[1],
                    unit_price=Decimal(ln[2]) if len(ln) > 2 else Decimal("1.00"),
                )
                for ln in lines
            ],
        )
        order = procurement.create_order(db_session, payload, actor_id=1, settings=settings)
        if status != POStatus.pending:
            order.status = status
            db_session.commit()
        return order

    return _make
