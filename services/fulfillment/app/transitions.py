"""
Fulfillment Service — Order status transition table

    placed → confirmed → picking → packing → ready → out_for_delivery → delivered
       │
       └──→ rejected                 (supplier, only from placed)

    any non-terminal ──→ cancelled   (customer only while placed; supplier; admin)

Each edge names the roles allowed to take it and the inventory side effect
the state machine must apply in the same unit of work.
"""

from dataclasses import dataclass
from enum import Enum


class OrderStatus(str, Enum):
    PLACED = "placed"
    CONFIRMED = "confirmed"
    PICKING = "picking"
    PACKING = "packing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REJECTED}
)


class Role(str, Enum):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    DISPATCH = "dispatch"
    ADMIN = "admin"


class Effect(str, Enum):
    NONE = "none"
    RESERVE = "reserve"
    COMMIT = "commit"
    RELEASE = "release"


@dataclass(frozen=True)
class Edge:
    source: OrderStatus
    target: OrderStatus
    roles: frozenset[Role]
    effect: Effect = Effect.NONE


_SUPPLIER = frozenset({Role.SUPPLIER})
_LAST_MILE = frozenset({Role.SUPPLIER, Role.DISPATCH})

_FORWARD = [
    Edge(OrderStatus.PLACED, OrderStatus.CONFIRMED, _SUPPLIER, Effect.RESERVE),
    Edge(OrderStatus.PLACED, OrderStatus.REJECTED, _SUPPLIER),
    Edge(OrderStatus.CONFIRMED, OrderStatus.PICKING, _SUPPLIER),
    Edge(OrderStatus.PICKING, OrderStatus.PACKING, _SUPPLIER),
    Edge(OrderStatus.PACKING, OrderStatus.READY, _SUPPLIER),
    Edge(OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY, _LAST_MILE),
    Edge(OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, _LAST_MILE, Effect.COMMIT),
]

_CANCEL = [
    Edge(
        status,
        OrderStatus.CANCELLED,
        frozenset({Role.CUSTOMER, Role.SUPPLIER, Role.ADMIN})
        if status is OrderStatus.PLACED
        else frozenset({Role.SUPPLIER, Role.ADMIN}),
        Effect.RELEASE,
    )
    for status in OrderStatus
    if status not in TERMINAL_STATUSES
]

EDGES: dict[tuple[OrderStatus, OrderStatus], Edge] = {
    (edge.source, edge.target): edge for edge in _FORWARD + _CANCEL
}


def find_edge(source: OrderStatus, target: OrderStatus) -> Edge | None:
    return EDGES.get((source, target))


def next_statuses(source: OrderStatus) -> list[OrderStatus]:
    """Targets reachable from `source` in one step."""
    return [target for (src, target) in EDGES if src is source]
