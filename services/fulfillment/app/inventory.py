"""
Fulfillment Service — Inventory ledger

    on_hand    physical stock
    reserved   soft holds for confirmed, not yet delivered orders
    available  on_hand - reserved  (never negative)

reserve / release / commit never open their own transaction: they stage into
the caller's unit of work, so the order status change and the stock change
commit together. The catalogue operations (list_product, adjust) run in a
unit of work of their own.
"""

import logging

from .errors import (
    Forbidden,
    InsufficientInventory,
    NotFound,
    StockContention,
    ValidationFailed,
    VersionConflict,
)
from .schemas import Actor, ListProductRequest, OrderLine, StockAdjustment, StockLevel
from .store import Store, UnitOfWork, utcnow
from .transitions import Role

logger = logging.getLogger(__name__)


def _shortfall(product_id: str, name: str, requested: int, stock: StockLevel | None) -> dict:
    return {
        "product_id": product_id,
        "name": stock.name if stock else name,
        "requested": requested,
        "available": stock.available if stock else 0,
    }


def _describe(items: list[dict]) -> str:
    return ", ".join(
        f"{item['name']} (requested {item['requested']}, available {item['available']})"
        for item in items
    )


def _in_lock_order(lines: list[OrderLine]) -> list[OrderLine]:
    return sorted(lines, key=lambda line: line.product_id)


class InventoryLedger:
    def __init__(self, store: Store, retry_limit: int = 3) -> None:
        self.store = store
        self.retry_limit = retry_limit

    # ── Reservation primitives (caller's unit of work) ──

    async def reserve(self, uow: UnitOfWork, product_id: str, quantity: int) -> None:
        if not await uow.try_reserve(product_id, quantity):
            stock = await uow.get_stock(product_id)
            item = _shortfall(product_id, product_id, quantity, stock)
            raise InsufficientInventory(f"Out of stock: {_describe([item])}", items=[item])

    async def release(self, uow: UnitOfWork, product_id: str, quantity: int) -> None:
        await uow.release(product_id, quantity)

    async def commit(self, uow: UnitOfWork, product_id: str, quantity: int) -> None:
        if not await uow.try_commit(product_id, quantity):
            stock = await uow.get_stock(product_id)
            raise InsufficientInventory(
                f"Cannot commit {quantity} of {product_id}: only "
                f"{stock.reserved if stock else 0} reserved",
                items=[_shortfall(product_id, product_id, quantity, stock)],
            )

    async def reserve_all(self, uow: UnitOfWork, lines: list[OrderLine]) -> None:
        """
        Reserve every line or fail naming every short line. Lines that did
        reserve stay staged in `uow`; the caller discards it on failure.
        Rows are touched in product_id order so two orders over the same
        products always lock them in the same sequence.
        """
        short = []
        for line in _in_lock_order(lines):
            if not await uow.try_reserve(line.product_id, line.quantity):
                stock = await uow.get_stock(line.product_id)
                short.append(_shortfall(line.product_id, line.name, line.quantity, stock))
        if short:
            raise InsufficientInventory(f"Out of stock: {_describe(short)}", items=short)

    async def release_all(self, uow: UnitOfWork, lines: list[OrderLine]) -> None:
        for line in _in_lock_order(lines):
            await self.release(uow, line.product_id, line.quantity)

    async def commit_all(self, uow: UnitOfWork, lines: list[OrderLine]) -> None:
        for line in _in_lock_order(lines):
            await self.commit(uow, line.product_id, line.quantity)

    # ── Catalogue ────────────────────────────────

    async def get(self, product_id: str) -> StockLevel:
        stock = await self.store.get_stock(product_id)
        if stock is None:
            raise NotFound(f"Product {product_id} not found")
        return stock

    async def list_stock(self, supplier_id: str | None = None) -> list[StockLevel]:
        return await self.store.list_stock(supplier_id)

    async def list_product(self, request: ListProductRequest, actor: Actor) -> StockLevel:
        """Create a ledger entry. Suppliers list for themselves; admins name the supplier."""
        if actor.role is Role.SUPPLIER:
            if request.supplier_id not in (None, actor.id):
                raise Forbidden("Suppliers can only list their own products")
            supplier_id = actor.id
        elif actor.role is Role.ADMIN:
            if not request.supplier_id:
                raise ValidationFailed("supplier_id is required when an admin lists a product")
            supplier_id = request.supplier_id
        else:
            raise Forbidden(f"Role {actor.role.value} cannot list products")

        stock = StockLevel(
            product_id=request.product_id,
            supplier_id=supplier_id,
            name=request.name,
            unit_price=request.unit_price,
            on_hand=request.on_hand,
            updated_at=utcnow(),
        )
        async with self.store.unit_of_work() as uow:
            await uow.add_stock(stock)
            await uow.commit()
        logger.info("Product %s listed by %s with %d on hand", stock.product_id, actor.id, stock.on_hand)
        return stock

    async def adjust(
        self, product_id: str, mode: str, quantity: int, reason: str, actor: Actor
    ) -> StockLevel:
        """
        Stock correction: `set` replaces on_hand, `add` / `remove` move it
        (remove floors at 0). Rejected if it would leave on_hand below what
        is already reserved.
        """
        for attempt in range(1, self.retry_limit + 1):
            try:
                async with self.store.unit_of_work() as uow:
                    stock = await uow.get_stock(product_id)
                    if stock is None:
                        raise NotFound(f"Product {product_id} not found")
                    self._authorize(stock, actor)

                    if mode == "set":
                        new_on_hand = quantity
                    elif mode == "add":
                        new_on_hand = stock.on_hand + quantity
                    elif mode == "remove":
                        new_on_hand = max(0, stock.on_hand - quantity)
                    else:
                        raise ValidationFailed(f"Unknown adjustment mode: {mode}")

                    if new_on_hand < stock.reserved:
                        raise InsufficientInventory(
                            f"{stock.name}: {stock.reserved} units are reserved, "
                            f"stock cannot go down to {new_on_hand}",
                            items=[{
                                "product_id": product_id,
                                "name": stock.name,
                                "requested": new_on_hand,
                                "available": stock.available,
                            }],
                        )
                    if not await uow.update_on_hand(product_id, new_on_hand, stock.version):
                        logger.info("Stock %s moved during adjustment, attempt %d", product_id, attempt)
                        continue
                    await uow.record_adjustment(
                        StockAdjustment(
                            product_id=product_id,
                            mode=mode,
                            quantity=quantity,
                            previous_on_hand=stock.on_hand,
                            new_on_hand=new_on_hand,
                            reason=reason,
                            actor_id=actor.id,
                            created_at=utcnow(),
                        )
                    )
                    await uow.commit()
            except StockContention:
                logger.info("Stock %s contended during adjustment, attempt %d", product_id, attempt)
                continue
            logger.info(
                "Stock %s adjusted (%s %d): %d -> %d, reason: %s",
                product_id, mode, quantity, stock.on_hand, new_on_hand, reason,
            )
            return await self.get(product_id)
        raise VersionConflict(f"Stock for {product_id} is changing too quickly, retry the adjustment")

    @staticmethod
    def _authorize(stock: StockLevel, actor: Actor) -> None:
        if actor.role is Role.ADMIN:
            return
        if actor.role is Role.SUPPLIER and stock.supplier_id == actor.id:
            return
        raise Forbidden(f"Not allowed to adjust stock of {stock.product_id}")
