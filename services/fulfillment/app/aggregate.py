"""
Fulfillment Service — Order aggregate

The aggregate's state is never stored directly: it is rebuilt by replaying
the order's events in version order. apply_xxx methods apply one event each.

Invariants kept here:
    - status_history is never empty once placed, and its last entry's
      status is the current status
    - version == number of applied events
"""

from decimal import Decimal
from uuid import UUID

from .events import (
    EVENT_TYPES,
    LineItemPicked,
    OrderEvent,
    OrderPlaced,
    OrderReviewed,
    OrderStatusChanged,
    PackingChecklistUpdated,
)
from .schemas import HistoryEntry, Order, OrderLine, PackingState
from .transitions import OrderStatus


class OrderAggregate:
    def __init__(self) -> None:
        self.id: UUID | None = None
        self.placed: OrderPlaced | None = None
        self.status: OrderStatus | None = None
        self.items: list[OrderLine] = []
        self.history: list[HistoryEntry] = []
        self.packing = PackingState()
        self.reserved: bool = False
        self.rating: int | None = None
        self.review: str | None = None
        self.delivered_at = None
        self.updated_at = None
        self.version: int = 0

    # ── Convenience ──────────────────────────────

    @property
    def customer_id(self) -> str:
        return self.placed.customer_id

    @property
    def supplier_id(self) -> str:
        return self.placed.supplier_id

    @property
    def all_picked(self) -> bool:
        return all(line.picked for line in self.items)

    # ── Event application ────────────────────────

    def apply_order_placed(self, event: OrderPlaced) -> None:
        self.id = event.order_id
        self.placed = event
        self.status = OrderStatus.PLACED
        self.items = [OrderLine(**item.model_dump()) for item in event.items]
        self.history.append(
            HistoryEntry(
                status=OrderStatus.PLACED,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                timestamp=event.timestamp,
                note=event.note,
            )
        )

    def apply_order_status_changed(self, event: OrderStatusChanged) -> None:
        self.status = event.to_status
        self.history.append(
            HistoryEntry(
                status=event.to_status,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                timestamp=event.timestamp,
                note=event.note,
            )
        )
        if event.to_status is OrderStatus.CONFIRMED:
            self.reserved = True
        elif event.to_status.is_terminal:
            # delivered commits the reservation, cancelled releases it
            self.reserved = False
        if event.to_status is OrderStatus.DELIVERED:
            self.delivered_at = event.timestamp

    def apply_line_item_picked(self, event: LineItemPicked) -> None:
        line = self.items[event.line_index]
        line.picked = event.picked
        line.pick_note = event.note

    def apply_packing_checklist_updated(self, event: PackingChecklistUpdated) -> None:
        self.packing = self.packing.model_copy(
            update={**event.checklist, "notes": event.notes or self.packing.notes}
        )

    def apply_order_reviewed(self, event: OrderReviewed) -> None:
        self.rating = event.rating
        self.review = event.review

    # ── Event replay ─────────────────────────────

    def apply(self, event: OrderEvent) -> None:
        handler = {
            OrderPlaced: self.apply_order_placed,
            OrderStatusChanged: self.apply_order_status_changed,
            LineItemPicked: self.apply_line_item_picked,
            PackingChecklistUpdated: self.apply_packing_checklist_updated,
            OrderReviewed: self.apply_order_reviewed,
        }[type(event)]
        handler(event)
        self.updated_at = event.timestamp
        self.version += 1

    def apply_event(self, event_type: str, event_data: dict) -> None:
        self.apply(EVENT_TYPES[event_type].model_validate(event_data))

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """Rebuild the aggregate from stored event records."""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            if agg.version != e["version"]:
                raise ValueError(
                    f"Event stream for {agg.id} is out of order at version {e['version']}"
                )
        return agg

    # ── Projection ───────────────────────────────

    def to_document(self) -> Order:
        placed = self.placed
        return Order(
            id=self.id,
            order_number=placed.order_number,
            customer_id=placed.customer_id,
            supplier_id=placed.supplier_id,
            status=self.status,
            version=self.version,
            items=[line.model_copy() for line in self.items],
            subtotal=placed.subtotal,
            delivery_fee=placed.delivery_fee,
            discount=placed.discount,
            total=placed.total,
            delivery_address=placed.delivery_address,
            delivery_type=placed.delivery_type,
            scheduled_time=placed.scheduled_time,
            estimated_delivery=placed.estimated_delivery,
            delivery_instructions=placed.delivery_instructions,
            payment_method=placed.payment_method,
            status_history=list(self.history),
            packing=self.packing.model_copy(),
            reserved=self.reserved,
            rating=self.rating,
            review=self.review,
            created_at=placed.timestamp,
            updated_at=self.updated_at,
            delivered_at=self.delivered_at,
        )


def order_totals(items: list, delivery_fee: Decimal, discount: Decimal) -> tuple[Decimal, Decimal]:
    """(subtotal, total) for a set of snapshotted lines."""
    subtotal = sum((item.line_total for item in items), Decimal("0"))
    return subtotal, subtotal + delivery_fee - discount
