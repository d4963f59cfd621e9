"""
Fulfillment Service — SQL store (SQLAlchemy async)

One unit of work == one database transaction. Nothing is read-modify-write
in Python on the contended paths; the database decides:

    reserve   UPDATE inventory SET reserved = reserved + :q
              WHERE product_id = :p AND on_hand - reserved >= :q
    commit    UPDATE inventory SET on_hand = on_hand - :q, reserved = reserved - :q
              WHERE product_id = :p AND reserved >= :q
    order     INSERT order_events (...)  -- UNIQUE(order_id, version)
              UPDATE orders ... WHERE id = :id AND version = :expected

A lost race shows up as rowcount 0 or an IntegrityError and is raised as
VersionConflict; any other driver error is a TransientStorageFailure.
"""

import json
import logging
from contextlib import asynccontextmanager, contextmanager
from decimal import Decimal
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy import case, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import IdempotencyConflict, TransientStorageFailure, ValidationFailed, VersionConflict
from .events import OrderEvent
from .schemas import Order, StockAdjustment, StockLevel
from .store import Store, UnitOfWork, utcnow
from .tables import idempotency_keys, inventory, metadata, order_events, orders, stock_adjustments
from .transitions import OrderStatus

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@contextmanager
def _translate_errors():
    try:
        yield
    except IntegrityError:
        # the specific call sites turn these into domain errors
        raise
    except (DBAPIError, OSError) as exc:
        logger.warning("Storage error: %s", exc)
        raise TransientStorageFailure("Storage is temporarily unavailable, retry the request") from exc


def _stock_from_row(row) -> StockLevel:
    return StockLevel(
        product_id=row.product_id,
        supplier_id=row.supplier_id,
        name=row.name,
        unit_price=Decimal(str(row.unit_price)).quantize(CENT),
        on_hand=row.on_hand,
        reserved=row.reserved,
        version=row.version,
        updated_at=row.updated_at,
    )


def _event_from_row(row) -> dict:
    return {
        "order_id": row.order_id,
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data),
        "version": row.version,
        "created_at": row.created_at,
    }


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ── Orders ───────────────────────────────────

    async def load_events(self, order_id: UUID) -> list[dict]:
        result = await self.session.execute(
            select(order_events)
            .where(order_events.c.order_id == str(order_id))
            .order_by(order_events.c.version)
        )
        return [_event_from_row(row) for row in result]

    async def append_event(self, event: OrderEvent, expected_version: int) -> int:
        new_version = expected_version + 1
        try:
            await self.session.execute(
                insert(order_events).values(
                    order_id=str(event.order_id),
                    event_type=type(event).__name__,
                    event_data=event.model_dump_json(),
                    version=new_version,
                    created_at=event.timestamp,
                )
            )
        except IntegrityError as exc:
            raise VersionConflict(
                f"Order {event.order_id} already has a version {new_version}"
            ) from exc
        return new_version

    async def save_document(self, order: Order) -> None:
        values = {
            "status": order.status.value,
            "version": order.version,
            "reserved": order.reserved,
            "document": order.model_dump_json(),
            "updated_at": order.updated_at,
        }
        if order.version == 1:
            try:
                await self.session.execute(
                    insert(orders).values(
                        id=str(order.id),
                        order_number=order.order_number,
                        customer_id=order.customer_id,
                        supplier_id=order.supplier_id,
                        created_at=order.created_at,
                        **values,
                    )
                )
            except IntegrityError as exc:
                raise VersionConflict(f"Order {order.id} already exists") from exc
            return
        result = await self.session.execute(
            update(orders)
            .where(orders.c.id == str(order.id), orders.c.version == order.version - 1)
            .values(**values)
        )
        if result.rowcount != 1:
            raise VersionConflict(f"Order {order.id} changed concurrently")

    # ── Idempotency keys ─────────────────────────

    async def find_idempotency_key(self, key: str) -> dict | None:
        result = await self.session.execute(
            select(idempotency_keys).where(idempotency_keys.c.key == key)
        )
        row = result.first()
        if row is None:
            return None
        return {
            "order_id": UUID(row.order_id),
            "target_status": OrderStatus(row.target_status),
            "version": row.version,
        }

    async def save_idempotency_key(
        self, key: str, order_id: UUID, target_status: OrderStatus, version: int
    ) -> None:
        try:
            await self.session.execute(
                insert(idempotency_keys).values(
                    key=key,
                    order_id=str(order_id),
                    target_status=OrderStatus(target_status).value,
                    version=version,
                    created_at=utcnow(),
                )
            )
        except IntegrityError as exc:
            raise IdempotencyConflict(f"Idempotency key {key!r} was already used") from exc

    # ── Inventory ────────────────────────────────

    async def get_stock(self, product_id: str) -> StockLevel | None:
        result = await self.session.execute(
            select(inventory).where(inventory.c.product_id == product_id)
        )
        row = result.first()
        return _stock_from_row(row) if row else None

    async def add_stock(self, stock: StockLevel) -> None:
        try:
            await self.session.execute(
                insert(inventory).values(
                    product_id=stock.product_id,
                    supplier_id=stock.supplier_id,
                    name=stock.name,
                    unit_price=stock.unit_price,
                    on_hand=stock.on_hand,
                    reserved=stock.reserved,
                    version=stock.version,
                    updated_at=stock.updated_at or utcnow(),
                )
            )
        except IntegrityError as exc:
            raise ValidationFailed(f"Product {stock.product_id} is already listed") from exc

    async def _update_stock(self, product_id: str, *conditions, **values) -> bool:
        result = await self.session.execute(
            update(inventory)
            .where(inventory.c.product_id == product_id, *conditions)
            .values(version=inventory.c.version + 1, updated_at=utcnow(), **values)
        )
        return result.rowcount == 1

    async def try_reserve(self, product_id: str, quantity: int) -> bool:
        return await self._update_stock(
            product_id,
            inventory.c.on_hand - inventory.c.reserved >= quantity,
            reserved=inventory.c.reserved + quantity,
        )

    async def release(self, product_id: str, quantity: int) -> None:
        await self._update_stock(
            product_id,
            reserved=case(
                (inventory.c.reserved >= quantity, inventory.c.reserved - quantity),
                else_=0,
            ),
        )

    async def try_commit(self, product_id: str, quantity: int) -> bool:
        return await self._update_stock(
            product_id,
            inventory.c.reserved >= quantity,
            on_hand=inventory.c.on_hand - quantity,
            reserved=inventory.c.reserved - quantity,
        )

    async def update_on_hand(
        self, product_id: str, new_on_hand: int, expected_version: int
    ) -> bool:
        return await self._update_stock(
            product_id,
            inventory.c.version == expected_version,
            inventory.c.reserved <= new_on_hand,
            on_hand=new_on_hand,
        )

    async def update_reserved(
        self, product_id: str, new_reserved: int, expected_version: int
    ) -> bool:
        return await self._update_stock(
            product_id,
            inventory.c.version == expected_version,
            inventory.c.on_hand >= new_reserved,
            reserved=new_reserved,
        )

    async def record_adjustment(self, adjustment: StockAdjustment) -> None:
        await self.session.execute(insert(stock_adjustments).values(**adjustment.model_dump()))

    # ── Transaction ──────────────────────────────

    async def commit(self) -> None:
        await self.session.commit()


class SqlStore(Store):
    def __init__(self, database_url: str, auto_create_schema: bool = True) -> None:
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self.auto_create_schema = auto_create_schema

    async def initialize(self) -> None:
        if self.auto_create_schema:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
            logger.info("Database schema ready")

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlUnitOfWork]:
        with _translate_errors():
            async with self.async_session() as session:
                yield SqlUnitOfWork(session)

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        with _translate_errors():
            async with self.async_session() as session:
                yield session

    # ── Read side ────────────────────────────────

    async def get_order(self, order_id: UUID) -> Order | None:
        async with self._read() as session:
            result = await session.execute(
                select(orders.c.document).where(orders.c.id == str(order_id))
            )
            document = result.scalar_one_or_none()
        return Order.model_validate_json(document) if document else None

    async def list_orders(
        self,
        customer_id: str | None = None,
        supplier_id: str | None = None,
        status: OrderStatus | None = None,
        limit: int | None = None,
    ) -> list[Order]:
        query = select(orders.c.document).order_by(
            orders.c.created_at.desc(), orders.c.order_number.desc()
        )
        if customer_id is not None:
            query = query.where(orders.c.customer_id == customer_id)
        if supplier_id is not None:
            query = query.where(orders.c.supplier_id == supplier_id)
        if status is not None:
            query = query.where(orders.c.status == OrderStatus(status).value)
        if limit is not None:
            query = query.limit(limit)
        async with self._read() as session:
            result = await session.execute(query)
            documents = result.scalars().all()
        return [Order.model_validate_json(doc) for doc in documents]

    async def load_events(self, order_id: UUID) -> list[dict]:
        async with self._read() as session:
            return await SqlUnitOfWork(session).load_events(order_id)

    async def get_stock(self, product_id: str) -> StockLevel | None:
        async with self._read() as session:
            return await SqlUnitOfWork(session).get_stock(product_id)

    async def list_stock(self, supplier_id: str | None = None) -> list[StockLevel]:
        query = select(inventory).order_by(inventory.c.name)
        if supplier_id is not None:
            query = query.where(inventory.c.supplier_id == supplier_id)
        async with self._read() as session:
            result = await session.execute(query)
            return [_stock_from_row(row) for row in result]

    async def list_adjustments(self, product_id: str) -> list[StockAdjustment]:
        async with self._read() as session:
            result = await session.execute(
                select(stock_adjustments)
                .where(stock_adjustments.c.product_id == product_id)
                .order_by(stock_adjustments.c.id)
            )
            return [
                StockAdjustment(
                    product_id=row.product_id,
                    mode=row.mode,
                    quantity=row.quantity,
                    previous_on_hand=row.previous_on_hand,
                    new_on_hand=row.new_on_hand,
                    reason=row.reason,
                    actor_id=row.actor_id,
                    created_at=row.created_at,
                )
                for row in result
            ]
