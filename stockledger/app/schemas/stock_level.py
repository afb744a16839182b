from datetime import datetime

from pydantic import BaseModel

from stockledger.app.db.models.core_types import MovementKind


class StockLevelRead(BaseModel):
    product_id: int
    location_id: int

    quantity: int
    reserved_quantity: int
    available_quantity: int  # READ ONLY: quantity - reserved_quantity

    class Config:
        from_attributes = True


class StockMovementRead(BaseModel):
    id: int
    product_id: int
    location_id: int
    kind: MovementKind
    quantity: int
    reference: str | None = None
    reason: str | None = None
    notes: str | None = None
    related_movement_id: int | None = None
    created_by: int | None = None
    created_at: datetime

    class Config:
        from_attributes = True
