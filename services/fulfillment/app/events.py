"""
Fulfillment Service — Event definitions

Every mutation of an order is recorded as one of these events, named in the
past tense and never changed after being written. The order's version is the
number of events in its stream, so event N always carries version N.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from .transitions import OrderStatus, Role


# ── Value objects snapshotted into events ────────


class LineItem(BaseModel):
    """A line as it was at placement: name and price are copies, not references."""

    product_id: str
    name: str
    unit_price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., gt=0)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class DeliveryAddress(BaseModel):
    street: str
    area: str = ""
    ward: str = ""
    city: str = ""
    landmark: str | None = None
    phone: str | None = None


PACKING_STEPS = ("items_verified", "quality_checked", "invoice_included", "package_sealed")

DeliveryType = Literal["standard", "express", "scheduled"]


# ── Events ───────────────────────────────────────


class OrderEvent(BaseModel):
    order_id: UUID
    actor_id: str
    actor_role: Role
    timestamp: datetime


class OrderPlaced(OrderEvent):
    """A customer placed an order; the stream always starts with this."""

    order_number: str
    customer_id: str
    supplier_id: str
    items: list[LineItem]
    subtotal: Decimal
    delivery_fee: Decimal
    discount: Decimal
    total: Decimal
    delivery_address: DeliveryAddress
    delivery_type: DeliveryType = "standard"
    scheduled_time: datetime | None = None
    estimated_delivery: datetime | None = None
    delivery_instructions: str = ""
    payment_method: str = "COD"
    note: str = "Order placed successfully"


class OrderStatusChanged(OrderEvent):
    from_status: OrderStatus
    to_status: OrderStatus
    note: str | None = None


class LineItemPicked(OrderEvent):
    line_index: int
    picked: bool
    note: str | None = None


class PackingChecklistUpdated(OrderEvent):
    checklist: dict[str, bool]
    notes: str | None = None


class OrderReviewed(OrderEvent):
    rating: int = Field(..., ge=1, le=5)
    review: str | None = None


EVENT_TYPES: dict[str, type[OrderEvent]] = {
    cls.__name__: cls
    for cls in (
        OrderPlaced,
        OrderStatusChanged,
        LineItemPicked,
        PackingChecklistUpdated,
        OrderReviewed,
    )
}
