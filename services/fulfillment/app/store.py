"""
Fulfillment Service — Store contracts and the in-memory store

The state machine only talks to these interfaces:

    Store        read side (documents, event log, stock) + unit_of_work()
    UnitOfWork   everything one command writes; commit() applies all of it
                 or nothing

Two implementations exist: SqlStore (sql_store.py, one database
transaction per unit of work) and MemoryStore below, used for local runs
and tests.

MemoryStore stages every write inside the unit of work and validates and
applies the whole batch in commit() without suspending, so on a single
event loop nothing can interleave with it. Staging calls do suspend
(asyncio.sleep(0)) to behave like real storage I/O. Orders are protected by
their event-stream length (= version). Reservations, releases and commits
are re-checked against the live entry at commit (available >= q,
reserved >= q); direct stock corrections compare-and-swap on a per-entry
version.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator
from uuid import UUID

from .errors import (
    IdempotencyConflict,
    InsufficientInventory,
    StockContention,
    ValidationFailed,
    VersionConflict,
)
from .events import OrderEvent
from .schemas import Order, StockAdjustment, StockLevel
from .transitions import OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def event_record(event: OrderEvent, version: int) -> dict:
    return {
        "order_id": str(event.order_id),
        "event_type": type(event).__name__,
        "event_data": event.model_dump(mode="json"),
        "version": version,
        "created_at": event.timestamp,
    }


class UnitOfWork(ABC):
    # ── Orders ───────────────────────────────────

    @abstractmethod
    async def load_events(self, order_id: UUID) -> list[dict]:
        """All events of one order in version order (includes staged ones)."""

    @abstractmethod
    async def append_event(self, event: OrderEvent, expected_version: int) -> int:
        """
        Append one event as version expected_version + 1.
        Raises VersionConflict if the stream is no longer at expected_version.
        """

    @abstractmethod
    async def save_document(self, order: Order) -> None:
        """Write the read-model document for order.version."""

    # ── Idempotency keys ─────────────────────────

    @abstractmethod
    async def find_idempotency_key(self, key: str) -> dict | None: ...

    @abstractmethod
    async def save_idempotency_key(
        self, key: str, order_id: UUID, target_status: OrderStatus, version: int
    ) -> None: ...

    # ── Inventory ────────────────────────────────

    @abstractmethod
    async def get_stock(self, product_id: str) -> StockLevel | None: ...

    @abstractmethod
    async def add_stock(self, stock: StockLevel) -> None: ...

    @abstractmethod
    async def try_reserve(self, product_id: str, quantity: int) -> bool:
        """reserved += quantity iff available >= quantity."""

    @abstractmethod
    async def release(self, product_id: str, quantity: int) -> None:
        """reserved -= quantity, floored at 0."""

    @abstractmethod
    async def try_commit(self, product_id: str, quantity: int) -> bool:
        """on_hand -= quantity and reserved -= quantity iff reserved >= quantity."""

    @abstractmethod
    async def update_on_hand(
        self, product_id: str, new_on_hand: int, expected_version: int
    ) -> bool:
        """Set on_hand iff the entry is still at expected_version and reserved <= new_on_hand."""

    @abstractmethod
    async def update_reserved(
        self, product_id: str, new_reserved: int, expected_version: int
    ) -> bool: ...

    @abstractmethod
    async def record_adjustment(self, adjustment: StockAdjustment) -> None: ...

    # ── Transaction ──────────────────────────────

    @abstractmethod
    async def commit(self) -> None: ...


class Store(ABC):
    @abstractmethod
    def unit_of_work(self) -> "AsyncIterator[UnitOfWork]":
        """Async context manager; leaving it without commit() discards all writes."""

    @abstractmethod
    async def get_order(self, order_id: UUID) -> Order | None: ...

    @abstractmethod
    async def list_orders(
        self,
        customer_id: str | None = None,
        supplier_id: str | None = None,
        status: OrderStatus | None = None,
        limit: int | None = None,
    ) -> list[Order]:
        """Newest first."""

    @abstractmethod
    async def load_events(self, order_id: UUID) -> list[dict]: ...

    @abstractmethod
    async def get_stock(self, product_id: str) -> StockLevel | None: ...

    @abstractmethod
    async def list_stock(self, supplier_id: str | None = None) -> list[StockLevel]: ...

    @abstractmethod
    async def list_adjustments(self, product_id: str) -> list[StockAdjustment]: ...

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass


# ── In-memory implementation ─────────────────────


def _apply_op(stock: StockLevel, op: str, quantity: int) -> bool:
    if op == "reserve":
        if stock.available < quantity:
            return False
        stock.reserved += quantity
    elif op == "commit":
        if stock.reserved < quantity:
            return False
        stock.on_hand -= quantity
        stock.reserved -= quantity
    else:
        stock.reserved = max(0, stock.reserved - quantity)
    return True


class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self._appends: dict[UUID, tuple[int, list[dict]]] = {}
        self._documents: dict[UUID, Order] = {}
        self._keys: dict[str, dict] = {}
        self._stock: dict[str, StockLevel] = {}
        self._stock_base: dict[str, int] = {}
        self._dirty: set[str] = set()
        self._added: set[str] = set()
        self._ops: dict[str, list[tuple[str, int]]] = {}
        self._adjustments: list[StockAdjustment] = []
        self.committed = False

    # orders

    async def load_events(self, order_id: UUID) -> list[dict]:
        await asyncio.sleep(0)
        committed = list(self._store._events.get(order_id, []))
        staged = self._appends.get(order_id, (0, []))[1]
        return committed + staged

    async def append_event(self, event: OrderEvent, expected_version: int) -> int:
        await asyncio.sleep(0)
        order_id = event.order_id
        if order_id not in self._appends:
            current = len(self._store._events.get(order_id, []))
            if current != expected_version:
                raise VersionConflict(
                    f"Order {order_id} is at version {current}, not {expected_version}",
                    current_version=current,
                )
            self._appends[order_id] = (current, [])
        base, staged = self._appends[order_id]
        if base + len(staged) != expected_version:
            raise VersionConflict(f"Order {order_id} moved past version {expected_version}")
        version = expected_version + 1
        staged.append(event_record(event, version))
        return version

    async def save_document(self, order: Order) -> None:
        await asyncio.sleep(0)
        self._documents[order.id] = order.model_copy(deep=True)

    # idempotency

    async def find_idempotency_key(self, key: str) -> dict | None:
        await asyncio.sleep(0)
        found = self._keys.get(key) or self._store._keys.get(key)
        return dict(found) if found else None

    async def save_idempotency_key(
        self, key: str, order_id: UUID, target_status: OrderStatus, version: int
    ) -> None:
        await asyncio.sleep(0)
        self._keys[key] = {
            "order_id": order_id,
            "target_status": OrderStatus(target_status),
            "version": version,
        }

    # inventory
    #
    # reserve / commit / release are kept as operations and re-applied to the
    # committed entry in commit(), like the conditional UPDATEs of the SQL
    # store. update_on_hand / update_reserved stage a copy and compare-and-swap
    # on the entry version.

    def _view(self, product_id: str) -> StockLevel | None:
        if product_id in self._stock:
            return self._stock[product_id]
        current = self._store._stock.get(product_id)
        if current is None:
            return None
        stock = current.model_copy()
        for op, quantity in self._ops.get(product_id, []):
            _apply_op(stock, op, quantity)
        return stock

    def _stage(self, product_id: str) -> StockLevel | None:
        if product_id not in self._stock:
            current = self._store._stock.get(product_id)
            if current is None:
                return None
            self._stock[product_id] = self._view(product_id)
            self._stock_base[product_id] = current.version
            if self._ops.pop(product_id, None):
                self._dirty.add(product_id)
        return self._stock[product_id]

    def _stage_op(self, product_id: str, op: str, quantity: int) -> bool:
        if product_id in self._stock:
            if not _apply_op(self._stock[product_id], op, quantity):
                return False
            self._dirty.add(product_id)
            return True
        stock = self._view(product_id)
        if stock is None or not _apply_op(stock, op, quantity):
            return False
        self._ops.setdefault(product_id, []).append((op, quantity))
        return True

    async def get_stock(self, product_id: str) -> StockLevel | None:
        await asyncio.sleep(0)
        stock = self._view(product_id)
        return stock.model_copy() if stock else None

    async def add_stock(self, stock: StockLevel) -> None:
        await asyncio.sleep(0)
        if self._view(stock.product_id) is not None:
            raise ValidationFailed(f"Product {stock.product_id} is already listed")
        self._stock[stock.product_id] = stock.model_copy()
        self._added.add(stock.product_id)

    async def try_reserve(self, product_id: str, quantity: int) -> bool:
        await asyncio.sleep(0)
        return self._stage_op(product_id, "reserve", quantity)

    async def release(self, product_id: str, quantity: int) -> None:
        await asyncio.sleep(0)
        self._stage_op(product_id, "release", quantity)

    async def try_commit(self, product_id: str, quantity: int) -> bool:
        await asyncio.sleep(0)
        return self._stage_op(product_id, "commit", quantity)

    async def update_on_hand(
        self, product_id: str, new_on_hand: int, expected_version: int
    ) -> bool:
        await asyncio.sleep(0)
        stock = self._stage(product_id)
        if stock is None or stock.version != expected_version or stock.reserved > new_on_hand:
            return False
        stock.on_hand = new_on_hand
        self._dirty.add(product_id)
        return True

    async def update_reserved(
        self, product_id: str, new_reserved: int, expected_version: int
    ) -> bool:
        await asyncio.sleep(0)
        stock = self._stage(product_id)
        if stock is None or stock.version != expected_version or new_reserved > stock.on_hand:
            return False
        stock.reserved = new_reserved
        self._dirty.add(product_id)
        return True

    async def record_adjustment(self, adjustment: StockAdjustment) -> None:
        await asyncio.sleep(0)
        self._adjustments.append(adjustment)

    # transaction

    async def commit(self) -> None:
        # No awaits below this line: validate-then-apply runs as one step.
        store = self._store
        for order_id, (base, _) in self._appends.items():
            current = len(store._events.get(order_id, []))
            if current != base:
                raise VersionConflict(
                    f"Order {order_id} changed concurrently (now version {current})",
                    current_version=current,
                )
        for key, entry in self._keys.items():
            existing = store._keys.get(key)
            if existing is not None and existing != entry:
                raise IdempotencyConflict(f"Idempotency key {key!r} was already used")
        for product_id in self._added:
            if product_id in store._stock:
                raise ValidationFailed(f"Product {product_id} is already listed")
        for product_id in self._dirty - self._added:
            if store._stock[product_id].version != self._stock_base[product_id]:
                raise StockContention(product_id)

        settled: dict[str, StockLevel] = {}
        short: list[dict] = []
        for product_id, ops in self._ops.items():
            stock = store._stock[product_id].model_copy()
            for op, quantity in ops:
                available = stock.available
                if not _apply_op(stock, op, quantity):
                    short.append({
                        "product_id": product_id,
                        "name": stock.name,
                        "requested": quantity,
                        "available": available,
                    })
                    break
            settled[product_id] = stock
        if short:
            raise InsufficientInventory(
                "Out of stock: " + ", ".join(
                    f"{i['name']} (requested {i['requested']}, available {i['available']})"
                    for i in short
                ),
                items=short,
            )

        now = utcnow()
        for order_id, (_, staged) in self._appends.items():
            store._events.setdefault(order_id, []).extend(staged)
        store._orders.update(self._documents)
        store._keys.update(self._keys)
        for product_id in self._added:
            store._stock[product_id] = self._stock[product_id].model_copy()
        for product_id in self._dirty - self._added:
            stock = self._stock[product_id]
            store._stock[product_id] = stock.model_copy(
                update={"version": self._stock_base[product_id] + 1, "updated_at": now}
            )
        for product_id, stock in settled.items():
            store._stock[product_id] = stock.model_copy(
                update={"version": stock.version + 1, "updated_at": now}
            )
        store._adjustments.extend(self._adjustments)
        self.committed = True


class MemoryStore(Store):
    def __init__(self) -> None:
        self._events: dict[UUID, list[dict]] = {}
        self._orders: dict[UUID, Order] = {}
        self._keys: dict[str, dict] = {}
        self._stock: dict[str, StockLevel] = {}
        self._adjustments: list[StockAdjustment] = []

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[MemoryUnitOfWork]:
        yield MemoryUnitOfWork(self)

    async def get_order(self, order_id: UUID) -> Order | None:
        await asyncio.sleep(0)
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def list_orders(
        self,
        customer_id: str | None = None,
        supplier_id: str | None = None,
        status: OrderStatus | None = None,
        limit: int | None = None,
    ) -> list[Order]:
        await asyncio.sleep(0)
        orders = [
            order
            for order in self._orders.values()
            if (customer_id is None or order.customer_id == customer_id)
            and (supplier_id is None or order.supplier_id == supplier_id)
            and (status is None or order.status == status)
        ]
        orders.sort(key=lambda o: (o.created_at, o.order_number), reverse=True)
        if limit is not None:
            orders = orders[:limit]
        return [order.model_copy(deep=True) for order in orders]

    async def load_events(self, order_id: UUID) -> list[dict]:
        await asyncio.sleep(0)
        return [dict(e) for e in self._events.get(order_id, [])]

    async def get_stock(self, product_id: str) -> StockLevel | None:
        await asyncio.sleep(0)
        stock = self._stock.get(product_id)
        return stock.model_copy() if stock else None

    async def list_stock(self, supplier_id: str | None = None) -> list[StockLevel]:
        await asyncio.sleep(0)
        return sorted(
            (
                s.model_copy()
                for s in self._stock.values()
                if supplier_id is None or s.supplier_id == supplier_id
            ),
            key=lambda s: s.name,
        )

    async def list_adjustments(self, product_id: str) -> list[StockAdjustment]:
        await asyncio.sleep(0)
        return [a for a in self._adjustments if a.product_id == product_id]
