"""
Pydantic schemas for the Fulfillment service.

`Order` and `StockLevel` are the documents the query side returns; the
*Request models are the command payloads accepted by the HTTP API.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, computed_field, field_validator

from .events import PACKING_STEPS, DeliveryAddress, DeliveryType, LineItem
from .transitions import OrderStatus, Role


class Actor(BaseModel):
    """Authenticated caller, as returned by the identity service."""

    id: str
    role: Role


# ── Order document (read model) ──────────────────


class HistoryEntry(BaseModel):
    status: OrderStatus
    actor_id: str
    actor_role: Role
    timestamp: datetime
    note: str | None = None


class OrderLine(LineItem):
    picked: bool = False
    pick_note: str | None = None


class PackingState(BaseModel):
    items_verified: bool = False
    quality_checked: bool = False
    invoice_included: bool = False
    package_sealed: bool = False
    notes: str | None = None

    @property
    def complete(self) -> bool:
        return all(getattr(self, step) for step in PACKING_STEPS)


class Order(BaseModel):
    """
    Order document, rebuilt from the event stream.

    Attributes:
        version: number of committed events; pass it back as expected_version
        status_history: append-only audit trail, last entry == status
        reserved: True while an inventory reservation is held for the order
    """

    id: UUID
    order_number: str
    customer_id: str
    supplier_id: str
    status: OrderStatus
    version: int
    items: list[OrderLine]
    subtotal: Decimal
    delivery_fee: Decimal
    discount: Decimal
    total: Decimal
    delivery_address: DeliveryAddress
    delivery_type: DeliveryType
    scheduled_time: datetime | None = None
    estimated_delivery: datetime | None = None
    delivery_instructions: str = ""
    payment_method: str
    status_history: list[HistoryEntry]
    packing: PackingState = Field(default_factory=PackingState)
    reserved: bool = False
    rating: int | None = None
    review: str | None = None
    created_at: datetime
    updated_at: datetime
    delivered_at: datetime | None = None



class InvoiceLine(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class Invoice(BaseModel):
    """Billing view of one order, for the customer who placed it."""

    order_id: UUID
    order_number: str
    date: datetime
    customer_id: str
    supplier_id: str
    status: OrderStatus
    items: list[InvoiceLine]
    subtotal: Decimal
    delivery_fee: Decimal
    discount: Decimal
    total: Decimal
    payment_method: str
    delivery_address: DeliveryAddress

# ── Inventory ────────────────────────────────────


class StockLevel(BaseModel):
    product_id: str
    supplier_id: str
    name: str
    unit_price: Decimal
    on_hand: int = Field(..., ge=0)
    reserved: int = Field(0, ge=0)
    version: int = 1
    updated_at: datetime | None = None

    @computed_field
    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


class StockAdjustment(BaseModel):
    product_id: str
    mode: Literal["set", "add", "remove"]
    quantity: int
    previous_on_hand: int
    new_on_hand: int
    reason: str
    actor_id: str
    created_at: datetime


# ── Command payloads ─────────────────────────────


class PlaceLine(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)


class PlaceOrderRequest(BaseModel):
    """
    Prices and names are never accepted from the client; they are copied
    from the supplier's inventory listing. `total`, when sent, is only
    checked against the computed value.
    """

    order_id: UUID | None = None
    supplier_id: str
    items: list[PlaceLine]
    delivery_address: DeliveryAddress
    delivery_fee: Decimal = Field(Decimal("0"), ge=0)
    discount: Decimal = Field(Decimal("0"), ge=0)
    total: Decimal | None = None
    delivery_type: DeliveryType = "standard"
    scheduled_time: datetime | None = None
    delivery_instructions: str = ""
    payment_method: str = "COD"

    @field_validator("scheduled_time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class TransitionRequest(BaseModel):
    target_status: OrderStatus
    expected_version: int
    note: str | None = None
    idempotency_key: str | None = None


class PickRequest(BaseModel):
    line_index: int = Field(..., ge=0)
    picked: bool = True
    note: str | None = None
    expected_version: int


class PackingRequest(BaseModel):
    checklist: dict[str, bool] = Field(default_factory=dict)
    notes: str | None = None
    expected_version: int


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: str | None = None
    expected_version: int


class ListProductRequest(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal = Field(..., ge=0)
    on_hand: int = Field(0, ge=0)
    supplier_id: str | None = None


class AdjustStockRequest(BaseModel):
    mode: Literal["set", "add", "remove"]
    quantity: int = Field(..., ge=0)
    reason: str = Field(..., min_length=1)
