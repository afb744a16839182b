from __future__ import annotations

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from stockledger.app.db.models.core_types import POStatus


def _reject_duplicate_products(lines):
    seen: set[int] = set()
    for ln in lines:
        if ln.product_id in seen:
            raise ValueError(f"product_id {ln.product_id} appears more than once")
        seen.add(ln.product_id)
    return lines


# ---------- INPUT ----------
class PurchaseOrderLineIn(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0, max_digits=14, decimal_places=2)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class PurchaseOrderCreate(BaseModel):
    supplier_id: int
    order_date: date | None = None
    expected_date: date | None = None
    tax_rate: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    lines: list[PurchaseOrderLineIn] = Field(default_factory=list)

    @field_validator("lines")
    @classmethod
    def check_unique_lines(cls, lines):
        return _reject_duplicate_products(lines)


class PurchaseOrderUpdate(BaseModel):
    """Fields left as ``None`` keep their current value; ``lines`` replaces the whole set."""

    supplier_id: int | None = None
    expected_date: date | None = None
    tax_rate: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    lines: list[PurchaseOrderLineIn] | None = None

    @field_validator("lines")
    @classmethod
    def check_unique_lines(cls, lines):
        if lines is None:
            return lines
        return _reject_duplicate_products(lines)


class ReceivedLine(BaseModel):
    product_id: int
    # <= 0 is accepted and skipped by the reconciler
    received_quantity: int


# ---------- OUTPUT ----------
class ReceivedDetail(BaseModel):
    product_id: int
    product_name: str
    ordered_quantity: int
    received_quantity: int


class ReceiptResult(BaseModel):
    order_id: int
    order_number: str
    location_id: int
    received_details: list[ReceivedDetail]
    total_received: int
    new_status: POStatus


class PurchaseOrderLineRead(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    received_quantity: int
    remaining_quantity: int
    is_fully_received: bool

    class Config:
        from_attributes = True


class PurchaseOrderRead(BaseModel):
    id: int
    order_number: str
    supplier_id: int
    status: POStatus
    order_date: date
    expected_date: date | None = None
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    notes: str | None = None
    lines: list[PurchaseOrderLineRead] = Field(default_factory=list)

    class Config:
        from_attributes = True
