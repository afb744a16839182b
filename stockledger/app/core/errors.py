"""
Typed failures raised by the ledger and purchase-order services.

Every error carries a stable machine ``code`` and a human readable
``detail``; callers translate them to their own surface (HTTP payload,
form error, CLI message). Raising inside ``atomic()`` rolls back the whole
unit of work, so none of these leave partial state behind.
"""

from __future__ import annotations

from typing import Any


class InventoryError(Exception):
    code = "INVENTORY_ERROR"

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def as_payload(self) -> dict[str, Any]:
        return {"code": self.code, "detail": self.detail, **self.context}


# ---------- STOCK ----------
class ZeroOrNegativeQuantity(InventoryError, ValueError):
    code = "ZERO_OR_NEGATIVE_QUANTITY"

    def __init__(self, quantity: int) -> None:
        super().__init__(f"Quantity must be greater than zero (got {quantity})", quantity=quantity)


class InsufficientStock(InventoryError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, location_id: int, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id} at location {location_id} "
            f"(available={available}, requested={requested})",
            product_id=product_id,
            location_id=location_id,
            available=available,
            requested=requested,
        )


class InsufficientReserved(InventoryError):
    code = "INSUFFICIENT_RESERVED"

    def __init__(self, product_id: int, location_id: int, reserved: int, requested: int) -> None:
        super().__init__(
            f"Not enough reserved stock to release (reserved={reserved}, requested={requested})",
            product_id=product_id,
            location_id=location_id,
            reserved=reserved,
            requested=requested,
        )


class SameLocationTransfer(InventoryError, ValueError):
    code = "SAME_LOCATION_TRANSFER"

    def __init__(self, location_id: int) -> None:
        super().__init__("from_location_id and to_location_id must differ", location_id=location_id)


class ReasonRequired(InventoryError, ValueError):
    code = "REASON_REQUIRED"

    def __init__(self, kind: str) -> None:
        super().__init__(f"A reason is required for {kind} stock movements", kind=kind)


class LedgerEntryImmutable(InventoryError):
    code = "LEDGER_ENTRY_IMMUTABLE"

    def __init__(self, movement_id: int | None) -> None:
        super().__init__(f"Stock movement {movement_id} is append-only", movement_id=movement_id)


# ---------- MASTER DATA ----------
class UnknownProduct(InventoryError):
    code = "UNKNOWN_PRODUCT"

    def __init__(self, product_id: int, reason: str = "not found") -> None:
        super().__init__(f"Product {product_id} {reason}", product_id=product_id)


class UnknownLocation(InventoryError):
    code = "UNKNOWN_LOCATION"

    def __init__(self, location_id: int) -> None:
        super().__init__(f"Location {location_id} not found", location_id=location_id)


class UnknownSupplier(InventoryError):
    code = "UNKNOWN_SUPPLIER"

    def __init__(self, supplier_id: int) -> None:
        super().__init__(f"Supplier {supplier_id} is not available", supplier_id=supplier_id)


# ---------- PURCHASE ORDERS ----------
class UnknownOrder(InventoryError):
    code = "UNKNOWN_ORDER"

    def __init__(self, order_id: int) -> None:
        super().__init__(f"Purchase order {order_id} not found", order_id=order_id)


class InvalidTransition(InventoryError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot change status from {current} to {requested}",
            current=current,
            requested=requested,
        )


class OrderNotModifiable(InventoryError):
    code = "ORDER_NOT_MODIFIABLE"

    def __init__(self, order_number: str, status: str) -> None:
        super().__init__(
            f"Cannot modify order {order_number} in status {status}",
            order_number=order_number,
            status=status,
        )


class OrderNotReceivable(InventoryError):
    code = "ORDER_NOT_RECEIVABLE"

    def __init__(self, order_number: str, status: str) -> None:
        super().__init__(
            f"Purchase order {order_number} must be confirmed before receiving items (status={status})",
            order_number=order_number,
            status=status,
        )


class ExpectedDateRequired(InventoryError, ValueError):
    code = "EXPECTED_DATE_REQUIRED"

    def __init__(self) -> None:
        super().__init__("An expected delivery date is required for purchase orders")


class LineNotInOrder(InventoryError):
    code = "LINE_NOT_IN_ORDER"

    def __init__(self, order_number: str, product_id: int) -> None:
        super().__init__(
            f"Product {product_id} is not in purchase order {order_number}",
            order_number=order_number,
            product_id=product_id,
        )


class OverReceipt(InventoryError):
    code = "OVER_RECEIPT"

    def __init__(self, product_id: int, product_name: str, ordered: int, received: int) -> None:
        super().__init__(
            f"Cannot receive more than ordered quantity for product {product_name} "
            f"(ordered={ordered}, would receive={received})",
            product_id=product_id,
            ordered=ordered,
            received=received,
        )


class PartialReceiptNotAllowed(InventoryError):
    code = "PARTIAL_RECEIPT_NOT_ALLOWED"

    def __init__(self, order_number: str) -> None:
        super().__init__(
            f"Partial receiving is disabled: order {order_number} must be received in full",
            order_number=order_number,
        )


# ---------- CONCURRENCY ----------
class ConcurrencyConflict(InventoryError):
    code = "CONCURRENCY_CONFLICT"
