"""
Fulfillment Service — Order state machine (the write side)

The only way an order changes. Every command follows the same steps inside
one unit of work:

    1. rebuild the aggregate from its events
    2. check ownership, expected_version, edge, role, preconditions
    3. stage the inventory side effect (reserve / commit / release)
    4. append one event + write the read-model document
    5. commit                       ── all of the above, or none of it
    6. enqueue notifications, publish the live update   (after commit,
       never rolls anything back)

Commands run under asyncio.wait_for(TRANSITION_TIMEOUT_SECONDS). Stock is
checked again when the unit of work commits, so InsufficientInventory means
the stock really was short at that moment.
"""

import asyncio
import logging
import random
from datetime import datetime
from uuid import UUID, uuid4

from . import validators
from .aggregate import OrderAggregate, order_totals
from .broker import Broker
from .config import Settings
from .errors import (
    Forbidden,
    FulfillmentError,
    IdempotencyConflict,
    IncompleteFulfillment,
    InvalidTransition,
    NotFound,
    TransientStorageFailure,
    ValidationFailed,
    VersionConflict,
)
from .events import (
    PACKING_STEPS,
    LineItem,
    LineItemPicked,
    OrderEvent,
    OrderPlaced,
    OrderReviewed,
    OrderStatusChanged,
    PackingChecklistUpdated,
)
from .inventory import InventoryLedger
from .notifications import NotificationDispatcher
from .schemas import Actor, Order, PlaceOrderRequest
from .store import Store, UnitOfWork, utcnow
from .transitions import Effect, OrderStatus, Role, find_edge, next_statuses

logger = logging.getLogger(__name__)


def generate_order_number(prefix: str, now: datetime) -> str:
    return f"{prefix}-{now:%Y%m%d}-{random.randint(0, 999):03d}"


def authorize_owner(agg: OrderAggregate, actor: Actor) -> None:
    """Customers act on their own orders, suppliers on orders addressed to them."""
    if actor.role is Role.CUSTOMER and agg.customer_id != actor.id:
        raise Forbidden(f"Order {agg.id} belongs to another customer")
    if actor.role is Role.SUPPLIER and agg.supplier_id != actor.id:
        raise Forbidden(f"Order {agg.id} is addressed to another supplier")


def check_version(agg: OrderAggregate, expected_version: int) -> None:
    if expected_version != agg.version:
        raise VersionConflict(
            f"Order {agg.id} is at version {agg.version}, not {expected_version}; "
            "re-read the order and retry",
            current_version=agg.version,
        )


class OrderStateMachine:
    def __init__(
        self,
        store: Store,
        ledger: InventoryLedger,
        dispatcher: NotificationDispatcher,
        broker: Broker,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.broker = broker
        self.settings = settings or Settings()

    # ── Commands ─────────────────────────────────

    async def place_order(self, request: PlaceOrderRequest, actor: Actor) -> Order:
        if actor.role is not Role.CUSTOMER:
            raise Forbidden("Only customers can place orders")
        ok, message = validators.validate_order_items(request.items)
        if not ok:
            raise ValidationFailed(message)
        ok, message = validators.validate_delivery(request, utcnow())
        if not ok:
            raise ValidationFailed(message)

        order_id = request.order_id or uuid4()
        try:
            order, created = await self._run(self._place, order_id, request, actor)
        except VersionConflict:
            # lost a race against a retry of the same placement
            if request.order_id is None:
                raise
            order, created = await self._run(self._existing_placement, order_id, actor), False
        if created:
            logger.info(
                "Order %s (%s) placed by %s for supplier %s, total %s",
                order.id, order.order_number, actor.id, order.supplier_id, order.total,
            )
            await self._after_commit(order)
        return order

    async def transition(
        self,
        order_id: UUID,
        target_status: OrderStatus,
        actor: Actor,
        expected_version: int,
        note: str | None = None,
        idempotency_key: str | None = None,
    ) -> Order:
        target_status = OrderStatus(target_status)
        try:
            order, applied = await self._run(
                self._transition, order_id, target_status, actor,
                expected_version, note, idempotency_key,
            )
        except VersionConflict as conflict:
            replayed = None
            if idempotency_key is not None:
                replayed = await self._run(
                    self._replay_after_conflict, idempotency_key, order_id, target_status, actor
                )
            if replayed is None:
                self._log_rejection(order_id, target_status, actor, conflict.message)
                raise
            order, applied = replayed, False
        except FulfillmentError as exc:
            self._log_rejection(order_id, target_status, actor, exc.message)
            raise

        if applied:
            previous = order.status_history[-2].status
            logger.info(
                "Order %s %s -> %s by %s (%s), version %d",
                order.id, previous.value, order.status.value,
                actor.id, actor.role.value, order.version,
            )
            await self._after_commit(order)
        else:
            logger.info("Order %s: replayed idempotent %s request", order_id, target_status.value)
        return order

    async def mark_picked(
        self,
        order_id: UUID,
        line_index: int,
        actor: Actor,
        expected_version: int,
        picked: bool = True,
        note: str | None = None,
    ) -> Order:
        async def build(agg: OrderAggregate) -> OrderEvent:
            if agg.status is not OrderStatus.PICKING:
                raise InvalidTransition(
                    f"Items can only be picked while the order is picking (now {agg.status.value})"
                )
            if not 0 <= line_index < len(agg.items):
                raise ValidationFailed(f"Order {order_id} has no line {line_index}")
            return LineItemPicked(
                order_id=order_id, actor_id=actor.id, actor_role=actor.role,
                timestamp=utcnow(), line_index=line_index, picked=picked, note=note,
            )

        order = await self._run(self._update, order_id, actor, expected_version, {Role.SUPPLIER}, build)
        logger.info("Order %s line %d picked=%s by %s", order_id, line_index, picked, actor.id)
        await self._after_commit(order, notify=False)
        return order

    async def update_packing(
        self,
        order_id: UUID,
        checklist: dict[str, bool],
        actor: Actor,
        expected_version: int,
        notes: str | None = None,
    ) -> Order:
        unknown = set(checklist) - set(PACKING_STEPS)
        if unknown:
            raise ValidationFailed(
                f"Unknown packing steps: {', '.join(sorted(unknown))}",
                allowed=list(PACKING_STEPS),
            )

        async def build(agg: OrderAggregate) -> OrderEvent:
            if agg.status is not OrderStatus.PACKING:
                raise InvalidTransition(
                    f"The packing checklist can only change while packing (now {agg.status.value})"
                )
            return PackingChecklistUpdated(
                order_id=order_id, actor_id=actor.id, actor_role=actor.role,
                timestamp=utcnow(), checklist=checklist, notes=notes,
            )

        order = await self._run(self._update, order_id, actor, expected_version, {Role.SUPPLIER}, build)
        logger.info("Order %s packing checklist updated by %s", order_id, actor.id)
        await self._after_commit(order, notify=False)
        return order

    async def review(
        self,
        order_id: UUID,
        rating: int,
        actor: Actor,
        expected_version: int,
        review: str | None = None,
    ) -> Order:
        async def build(agg: OrderAggregate) -> OrderEvent:
            if agg.status is not OrderStatus.DELIVERED:
                raise InvalidTransition("Only delivered orders can be reviewed")
            if agg.rating is not None:
                raise InvalidTransition(f"Order {order_id} has already been reviewed")
            return OrderReviewed(
                order_id=order_id, actor_id=actor.id, actor_role=actor.role,
                timestamp=utcnow(), rating=rating, review=review,
            )

        order = await self._run(self._update, order_id, actor, expected_version, {Role.CUSTOMER}, build)
        logger.info("Order %s rated %d by %s", order_id, rating, actor.id)
        await self._after_commit(order, notify=False)
        return order

    # ── Timeout ──────────────────────────────────

    async def _run(self, operation, *args):
        try:
            return await asyncio.wait_for(
                operation(*args),
                timeout=self.settings.transition_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransientStorageFailure(
                "The order could not be updated in time; re-read it before retrying"
            ) from exc

    # ── Units of work ────────────────────────────

    async def _load(self, uow: UnitOfWork, order_id: UUID) -> OrderAggregate:
        events = await uow.load_events(order_id)
        if not events:
            raise NotFound(f"Order {order_id} not found")
        return OrderAggregate.from_events(events)

    async def _append(self, uow: UnitOfWork, agg: OrderAggregate, event: OrderEvent) -> Order:
        await uow.append_event(event, agg.version)
        agg.apply(event)
        order = agg.to_document()
        await uow.save_document(order)
        return order

    async def _place(
        self, order_id: UUID, request: PlaceOrderRequest, actor: Actor
    ) -> tuple[Order, bool]:
        async with self.store.unit_of_work() as uow:
            existing = await uow.load_events(order_id)
            if existing:
                agg = OrderAggregate.from_events(existing)
                if agg.customer_id != actor.id:
                    raise IdempotencyConflict(f"Order id {order_id} is already taken")
                return agg.to_document(), False

            lines = []
            for line in request.items:
                stock = await uow.get_stock(line.product_id)
                if stock is None or stock.supplier_id != request.supplier_id:
                    raise ValidationFailed(
                        f"Product {line.product_id} is not sold by supplier {request.supplier_id}"
                    )
                lines.append(
                    LineItem(
                        product_id=stock.product_id,
                        name=stock.name,
                        unit_price=stock.unit_price,
                        quantity=line.quantity,
                    )
                )

            subtotal, total = order_totals(lines, request.delivery_fee, request.discount)
            ok, message = validators.validate_order_total(total, request.total)
            if not ok:
                raise ValidationFailed(message, calculated_total=str(total))

            now = utcnow()
            event = OrderPlaced(
                order_id=order_id,
                actor_id=actor.id,
                actor_role=actor.role,
                timestamp=now,
                order_number=generate_order_number(self.settings.order_number_prefix, now),
                customer_id=actor.id,
                supplier_id=request.supplier_id,
                items=lines,
                subtotal=subtotal,
                delivery_fee=request.delivery_fee,
                discount=request.discount,
                total=total,
                delivery_address=request.delivery_address,
                delivery_type=request.delivery_type,
                scheduled_time=request.scheduled_time,
                estimated_delivery=validators.estimate_delivery(
                    request.delivery_type, now, request.scheduled_time
                ),
                delivery_instructions=request.delivery_instructions,
                payment_method=request.payment_method,
            )
            order = await self._append(uow, OrderAggregate(), event)
            await uow.commit()
        return order, True

    async def _existing_placement(self, order_id: UUID, actor: Actor) -> Order:
        async with self.store.unit_of_work() as uow:
            agg = await self._load(uow, order_id)
        if agg.customer_id != actor.id:
            raise IdempotencyConflict(f"Order id {order_id} is already taken")
        return agg.to_document()

    async def _transition(
        self,
        order_id: UUID,
        target: OrderStatus,
        actor: Actor,
        expected_version: int,
        note: str | None,
        idempotency_key: str | None,
    ) -> tuple[Order, bool]:
        async with self.store.unit_of_work() as uow:
            if idempotency_key is not None:
                replayed = await self._replay(uow, idempotency_key, order_id, target, actor)
                if replayed is not None:
                    return replayed, False

            agg = await self._load(uow, order_id)
            authorize_owner(agg, actor)
            check_version(agg, expected_version)
            edge = find_edge(agg.status, target)
            if edge is None:
                raise InvalidTransition(
                    f"Cannot move order from {agg.status.value} to {target.value}",
                    current_status=agg.status.value,
                    allowed=[status.value for status in next_statuses(agg.status)],
                )
            if actor.role not in edge.roles:
                raise Forbidden(
                    f"Role {actor.role.value} may not move an order from "
                    f"{agg.status.value} to {target.value}"
                )
            self._check_preconditions(agg, target)

            if edge.effect is Effect.RESERVE:
                await self.ledger.reserve_all(uow, agg.items)
            elif edge.effect is Effect.COMMIT:
                await self.ledger.commit_all(uow, agg.items)
            elif edge.effect is Effect.RELEASE and agg.reserved:
                await self.ledger.release_all(uow, agg.items)

            event = OrderStatusChanged(
                order_id=order_id,
                actor_id=actor.id,
                actor_role=actor.role,
                timestamp=utcnow(),
                from_status=agg.status,
                to_status=target,
                note=note,
            )
            order = await self._append(uow, agg, event)
            if idempotency_key is not None:
                await uow.save_idempotency_key(idempotency_key, order_id, target, order.version)
            await uow.commit()
        return order, True

    async def _update(
        self, order_id: UUID, actor: Actor, expected_version: int, roles: set[Role], build
    ) -> Order:
        """Non-status mutations: picking, packing checklist, review."""
        async with self.store.unit_of_work() as uow:
            agg = await self._load(uow, order_id)
            authorize_owner(agg, actor)
            if actor.role not in roles:
                raise Forbidden(f"Role {actor.role.value} may not do this")
            check_version(agg, expected_version)
            event = await build(agg)
            order = await self._append(uow, agg, event)
            await uow.commit()
        return order

    @staticmethod
    def _check_preconditions(agg: OrderAggregate, target: OrderStatus) -> None:
        if target is OrderStatus.PACKING and not agg.all_picked:
            unpicked = [line.name for line in agg.items if not line.picked]
            raise IncompleteFulfillment(
                f"Not all items are picked: {', '.join(unpicked)}", unpicked=unpicked
            )
        if target is OrderStatus.READY and not agg.packing.complete:
            missing = [step for step in PACKING_STEPS if not getattr(agg.packing, step)]
            raise IncompleteFulfillment(
                f"Packing checklist incomplete: {', '.join(missing)}", missing=missing
            )

    # ── Idempotency ──────────────────────────────

    async def _replay(
        self,
        uow: UnitOfWork,
        key: str,
        order_id: UUID,
        target: OrderStatus,
        actor: Actor,
    ) -> Order | None:
        """The order as the first call with `key` left it, or None if `key` is new."""
        record = await uow.find_idempotency_key(key)
        if record is None:
            return None
        if record["order_id"] != order_id or record["target_status"] != target:
            raise IdempotencyConflict(
                f"Idempotency key {key!r} was used for a different request"
            )
        events = await uow.load_events(order_id)
        agg = OrderAggregate.from_events(events[: record["version"]])
        authorize_owner(agg, actor)
        return agg.to_document()

    async def _replay_after_conflict(
        self, key: str, order_id: UUID, target: OrderStatus, actor: Actor
    ) -> Order | None:
        async with self.store.unit_of_work() as uow:
            return await self._replay(uow, key, order_id, target, actor)

    # ── After commit ─────────────────────────────

    async def _after_commit(self, order: Order, notify: bool = True) -> None:
        if notify:
            try:
                self.dispatcher.notify(order)
            except Exception:
                logger.exception("Could not enqueue notifications for order %s", order.id)
        try:
            await self.broker.publish(order)
        except Exception:
            logger.exception("Could not publish live update for order %s", order.id)

    @staticmethod
    def _log_rejection(order_id: UUID, target: OrderStatus, actor: Actor, reason: str) -> None:
        logger.warning(
            "Rejected %s on order %s by %s (%s): %s",
            target.value, order_id, actor.id, actor.role.value, reason,
        )
