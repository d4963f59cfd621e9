"""
Tests for the order state machine.

Verifies:
- the worked scenarios (confirm / cancel / concurrent confirm / deliver /
  skipped state / wrong role)
- optimistic concurrency and idempotent retries
- picking and packing preconditions, ownership, placement validation
- notifications never roll a transition back
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from conftest import ADMIN, CUSTOMER, DISPATCH, OTHER_CUSTOMER, OTHER_SUPPLIER, SUPPLIER
from app.errors import (
    Forbidden,
    IdempotencyConflict,
    IncompleteFulfillment,
    InsufficientInventory,
    InvalidTransition,
    NotFound,
    TransientStorageFailure,
    ValidationFailed,
    VersionConflict,
)
from app.store import MemoryUnitOfWork
from app.transitions import OrderStatus

S = OrderStatus


async def available(services, product_id):
    return (await services.ledger.get(product_id)).available


class TestScenarios:
    async def test_confirm_reserves_ordered_quantity(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 2})

        order = await shop.move(order, S.CONFIRMED)

        stock = await services.ledger.get("P")
        assert order.status is S.CONFIRMED
        assert order.reserved is True
        assert (stock.reserved, stock.available) == (2, 3)

    async def test_cancel_after_confirm_restores_availability(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.move(await shop.place({"P": 2}), S.CONFIRMED)

        order = await shop.move(order, S.CANCELLED, note="Customer called")

        stock = await services.ledger.get("P")
        assert order.status is S.CANCELLED
        assert (stock.reserved, stock.available) == (0, 5)

    async def test_concurrent_confirms_on_scarce_stock_have_one_winner(self, shop, services):
        await shop.stock("Q", on_hand=4)
        first = await shop.place({"Q": 3})
        second = await shop.place({"Q": 3}, customer=OTHER_CUSTOMER)

        results = await asyncio.gather(
            shop.move(first, S.CONFIRMED),
            shop.move(second, S.CONFIRMED),
            return_exceptions=True,
        )

        confirmed = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(confirmed) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientInventory)
        assert failed[0].items == [
            {"product_id": "Q", "name": "Product Q", "requested": 3, "available": 1}
        ]
        stock = await services.ledger.get("Q")
        assert stock.reserved == 3

        loser = second if confirmed[0].id == first.id else first
        assert (await services.queries.get_by_id(loser.id)).status is S.PLACED

    async def test_delivery_commits_stock(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 2})

        order = await shop.advance(order, S.DELIVERED)

        stock = await services.ledger.get("P")
        assert order.status is S.DELIVERED
        assert order.delivered_at is not None
        assert order.reserved is False
        assert (stock.on_hand, stock.reserved) == (3, 0)

    async def test_skipping_states_is_invalid(self, shop):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 1})

        with pytest.raises(InvalidTransition) as excinfo:
            await shop.move(order, S.PACKING)

        assert excinfo.value.details["allowed"] == ["confirmed", "rejected", "cancelled"]

    async def test_customer_cannot_start_picking(self, shop):
        await shop.stock("P", on_hand=5)
        order = await shop.move(await shop.place({"P": 1}), S.CONFIRMED)

        with pytest.raises(Forbidden):
            await shop.move(order, S.PICKING, actor=CUSTOMER)


class TestOptimisticConcurrency:
    async def test_stale_version_fails_without_mutation(self, shop, services):
        await shop.stock("P", on_hand=5)
        placed = await shop.place({"P": 2})
        await shop.move(placed, S.CONFIRMED)
        before = await services.queries.get_by_id(placed.id)

        with pytest.raises(VersionConflict) as excinfo:
            await shop.move(placed, S.CANCELLED)  # still carries version 1

        assert excinfo.value.retryable is True
        after = await services.queries.get_by_id(placed.id)
        assert after == before
        assert (await services.ledger.get("P")).reserved == 2

    async def test_cancel_races_confirm_with_single_winner(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 2})

        results = await asyncio.gather(
            shop.move(order, S.CONFIRMED),
            shop.move(order, S.CANCELLED, actor=CUSTOMER),
            return_exceptions=True,
        )

        assert sum(isinstance(r, VersionConflict) for r in results) == 1
        final = await services.queries.get_by_id(order.id)
        assert final.version == 2
        expected_reserved = 2 if final.status is S.CONFIRMED else 0
        assert (await services.ledger.get("P")).reserved == expected_reserved

    async def test_different_orders_do_not_conflict(self, shop):
        await shop.stock("P", on_hand=10)
        a = await shop.place({"P": 1})
        b = await shop.place({"P": 1}, customer=OTHER_CUSTOMER)

        results = await asyncio.gather(shop.move(a, S.CONFIRMED), shop.move(b, S.CONFIRMED))

        assert [r.status for r in results] == [S.CONFIRMED, S.CONFIRMED]

    async def test_concurrent_confirms_on_ample_stock_all_succeed(self, shop, services):
        await shop.stock("P", on_hand=1000)
        orders = [await shop.place({"P": 1}) for _ in range(12)]

        results = await asyncio.gather(
            *(shop.move(order, S.CONFIRMED) for order in orders),
            return_exceptions=True,
        )

        assert [getattr(r, "status", r) for r in results] == [S.CONFIRMED] * 12
        stock = await services.ledger.get("P")
        assert (stock.reserved, stock.available) == (12, 988)

    async def test_timeout_is_retryable_and_leaves_order_unchanged(self, shop, services, monkeypatch):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 2})
        services.settings = services.machine.settings = type(services.settings)(
            transition_timeout_seconds=0.05
        )

        async def slow_load(self, order_id):
            await asyncio.sleep(1)
            return []

        monkeypatch.setattr(MemoryUnitOfWork, "load_events", slow_load)

        with pytest.raises(TransientStorageFailure) as excinfo:
            await shop.move(order, S.CONFIRMED)

        assert excinfo.value.retryable is True
        assert (await services.queries.get_by_id(order.id)).version == 1
        assert (await services.ledger.get("P")).reserved == 0


class TestIdempotency:
    async def test_retried_delivery_commits_once(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.advance(await shop.place({"P": 2}), S.OUT_FOR_DELIVERY)

        first = await shop.move(order, S.DELIVERED, idempotency_key="deliver-1")
        retry = await shop.move(order, S.DELIVERED, idempotency_key="deliver-1")

        assert retry == first
        stock = await services.ledger.get("P")
        assert (stock.on_hand, stock.reserved) == (3, 0)
        assert len(await services.queries.history(order.id)) == first.version

    async def test_replay_returns_order_as_first_call_left_it(self, shop):
        await shop.stock("P", on_hand=5)
        placed = await shop.place({"P": 1})
        confirmed = await shop.move(placed, S.CONFIRMED, idempotency_key="confirm-1")
        await shop.move(confirmed, S.PICKING)

        replay = await shop.move(placed, S.CONFIRMED, idempotency_key="confirm-1")

        assert replay.status is S.CONFIRMED
        assert replay.version == confirmed.version

    async def test_concurrent_retries_apply_once(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 2})

        results = await asyncio.gather(
            shop.move(order, S.CONFIRMED, idempotency_key="k"),
            shop.move(order, S.CONFIRMED, idempotency_key="k"),
        )

        assert results[0].version == results[1].version == 2
        assert (await services.ledger.get("P")).reserved == 2

    async def test_key_reused_for_another_target_is_rejected(self, shop):
        await shop.stock("P", on_hand=5)
        order = await shop.move(await shop.place({"P": 1}), S.CONFIRMED, idempotency_key="k")

        with pytest.raises(IdempotencyConflict):
            await shop.move(order, S.PICKING, idempotency_key="k")

    async def test_stale_version_with_new_key_reports_current_version(self, shop):
        await shop.stock("P", on_hand=5)
        placed = await shop.place({"P": 1})
        await shop.move(placed, S.CONFIRMED)

        with pytest.raises(VersionConflict) as excinfo:
            await shop.move(placed, S.REJECTED, idempotency_key="reject-1")

        assert excinfo.value.details["current_version"] == 2


class TestTransitionRules:
    async def test_history_is_ordered_and_ends_in_current_status(self, shop):
        await shop.stock("P", on_hand=5)
        order = await shop.advance(await shop.place({"P": 1}), S.DELIVERED)

        statuses = [entry.status for entry in order.status_history]
        timestamps = [entry.timestamp for entry in order.status_history]
        assert statuses == [
            S.PLACED, S.CONFIRMED, S.PICKING, S.PACKING, S.READY, S.OUT_FOR_DELIVERY, S.DELIVERED,
        ]
        assert timestamps == sorted(timestamps)
        assert order.status_history[-1].status is order.status
        assert order.status_history[0].note == "Order placed successfully"

    async def test_terminal_states_are_final(self, shop):
        await shop.stock("P", on_hand=5)
        rejected = await shop.move(await shop.place({"P": 1}), S.REJECTED)

        with pytest.raises(InvalidTransition):
            await shop.move(rejected, S.CANCELLED)

    async def test_same_state_move_is_invalid(self, shop):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 1})

        with pytest.raises(InvalidTransition):
            await shop.move(order, S.PLACED)

    async def test_customer_cancels_only_before_confirmation(self, shop, services):
        await shop.stock("P", on_hand=5)
        placed = await shop.place({"P": 1})
        cancelled = await shop.move(placed, S.CANCELLED, actor=CUSTOMER)
        assert cancelled.status is S.CANCELLED
        assert (await services.ledger.get("P")).reserved == 0

        confirmed = await shop.move(await shop.place({"P": 1}), S.CONFIRMED)
        with pytest.raises(Forbidden):
            await shop.move(confirmed, S.CANCELLED, actor=CUSTOMER)

    async def test_admin_can_cancel_but_not_confirm(self, shop):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 1})

        with pytest.raises(Forbidden):
            await shop.move(order, S.CONFIRMED, actor=ADMIN)
        assert (await shop.move(order, S.CANCELLED, actor=ADMIN)).status is S.CANCELLED

    @pytest.mark.parametrize("status", [S.PICKING, S.PACKING, S.READY, S.OUT_FOR_DELIVERY])
    @pytest.mark.parametrize("actor", [SUPPLIER, ADMIN], ids=["supplier", "admin"])
    async def test_late_cancellation_releases_reservation(self, shop, services, status, actor):
        await shop.stock("P", on_hand=5)
        order = await shop.advance(await shop.place({"P": 2}), status)
        assert (await services.ledger.get("P")).reserved == 2

        order = await shop.move(order, S.CANCELLED, actor=actor)

        stock = await services.ledger.get("P")
        assert order.status is S.CANCELLED
        assert order.reserved is False
        assert (stock.on_hand, stock.reserved, stock.available) == (5, 0, 5)

    async def test_dispatch_handles_last_mile(self, shop):
        await shop.stock("P", on_hand=5)
        ready = await shop.advance(await shop.place({"P": 1}), S.READY)

        out = await shop.move(ready, S.OUT_FOR_DELIVERY, actor=DISPATCH)
        delivered = await shop.move(out, S.DELIVERED, actor=DISPATCH)

        assert delivered.status_history[-1].actor_id == DISPATCH.id

    async def test_other_supplier_is_forbidden(self, shop):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 1})

        with pytest.raises(Forbidden):
            await shop.move(order, S.CONFIRMED, actor=OTHER_SUPPLIER)

    async def test_unknown_order(self, services):
        with pytest.raises(NotFound):
            await services.machine.transition(uuid4(), S.CONFIRMED, SUPPLIER, 1)

    async def test_shortfall_names_every_short_line(self, shop, services):
        await shop.stock("A", on_hand=1, name="Milk")
        await shop.stock("B", on_hand=10, name="Bread")
        await shop.stock("C", on_hand=0, name="Eggs")
        order = await shop.place({"A": 2, "B": 1, "C": 6})

        with pytest.raises(InsufficientInventory) as excinfo:
            await shop.move(order, S.CONFIRMED)

        assert excinfo.value.items == [
            {"product_id": "A", "name": "Milk", "requested": 2, "available": 1},
            {"product_id": "C", "name": "Eggs", "requested": 6, "available": 0},
        ]
        assert "Milk" in str(excinfo.value)
        assert (await services.ledger.get("B")).reserved == 0


class TestFulfillmentSteps:
    async def test_packing_requires_every_line_picked(self, shop):
        await shop.stock("A", on_hand=5)
        await shop.stock("B", on_hand=5)
        order = await shop.advance(await shop.place({"A": 1, "B": 1}), S.PICKING)
        order = await shop.machine.mark_picked(order.id, 0, SUPPLIER, order.version, note="shelf 3")

        with pytest.raises(IncompleteFulfillment) as excinfo:
            await shop.move(order, S.PACKING)

        assert isinstance(excinfo.value, InvalidTransition)
        assert excinfo.value.details["unpicked"] == ["Product B"]
        assert order.items[0].pick_note == "shelf 3"

    async def test_ready_requires_full_checklist(self, shop):
        await shop.stock("A", on_hand=5)
        order = await shop.advance(await shop.place({"A": 1}), S.PACKING)
        order = await shop.machine.update_packing(
            order.id, {"items_verified": True, "quality_checked": True}, SUPPLIER, order.version,
            notes="fragile",
        )

        with pytest.raises(IncompleteFulfillment) as excinfo:
            await shop.move(order, S.READY)

        assert excinfo.value.details["missing"] == ["invoice_included", "package_sealed"]
        assert order.packing.notes == "fragile"

    async def test_picking_outside_picking_state(self, shop):
        await shop.stock("A", on_hand=5)
        order = await shop.place({"A": 1})

        with pytest.raises(InvalidTransition):
            await shop.machine.mark_picked(order.id, 0, SUPPLIER, order.version)

    async def test_unknown_packing_step(self, shop):
        await shop.stock("A", on_hand=5)
        order = await shop.advance(await shop.place({"A": 1}), S.PACKING)

        with pytest.raises(ValidationFailed):
            await shop.machine.update_packing(order.id, {"gift_wrapped": True}, SUPPLIER, order.version)

    async def test_review_once_after_delivery(self, shop):
        await shop.stock("A", on_hand=5)
        order = await shop.place({"A": 1})
        with pytest.raises(InvalidTransition):
            await shop.machine.review(order.id, 5, CUSTOMER, order.version)

        order = await shop.advance(order, S.DELIVERED)
        order = await shop.machine.review(order.id, 4, CUSTOMER, order.version, review="Quick")
        assert (order.rating, order.review) == (4, "Quick")

        with pytest.raises(InvalidTransition):
            await shop.machine.review(order.id, 1, CUSTOMER, order.version)
        with pytest.raises(Forbidden):
            await shop.machine.review(order.id, 1, OTHER_CUSTOMER, order.version)


class TestPlacement:
    async def test_snapshots_catalogue_and_computes_totals(self, shop, services):
        await shop.stock("A", on_hand=5, price="120.00", name="Milk 1L")
        await shop.stock("B", on_hand=5, price="45.50", name="Bread")

        order = await shop.place(
            {"A": 2, "B": 1}, delivery_fee=Decimal("30"), discount=Decimal("10"),
            total=Decimal("305.50"),
        )

        assert [(line.name, line.unit_price) for line in order.items] == [
            ("Milk 1L", Decimal("120.00")), ("Bread", Decimal("45.50")),
        ]
        assert order.subtotal == Decimal("285.50")
        assert order.total == Decimal("305.50")
        assert order.version == 1
        assert order.order_number.startswith("QC-")
        assert order.estimated_delivery == order.created_at + timedelta(minutes=60)

    async def test_total_mismatch_is_rejected(self, shop):
        await shop.stock("A", on_hand=5, price="10.00")

        with pytest.raises(ValidationFailed):
            await shop.place({"A": 1}, total=Decimal("9.00"))

    async def test_products_must_belong_to_supplier(self, shop):
        await shop.stock("A", on_hand=5, supplier=OTHER_SUPPLIER)

        with pytest.raises(ValidationFailed):
            await shop.place({"A": 1})

    async def test_item_rules(self, shop):
        await shop.stock("A", on_hand=5)
        with pytest.raises(ValidationFailed):
            await shop.place({})
        with pytest.raises(ValidationFailed):
            await shop.place({"A": 10001})

    async def test_scheduled_delivery_needs_a_time(self, shop):
        await shop.stock("A", on_hand=5)

        with pytest.raises(ValidationFailed):
            await shop.place({"A": 1}, delivery_type="scheduled")

    async def test_only_customers_place_orders(self, shop):
        await shop.stock("A", on_hand=5)

        with pytest.raises(Forbidden):
            await shop.place({"A": 1}, customer=SUPPLIER)

    async def test_client_order_id_makes_placement_idempotent(self, shop, services, sink):
        await shop.stock("A", on_hand=5)
        order_id = uuid4()

        first = await shop.place({"A": 1}, order_id=order_id)
        again = await shop.place({"A": 1}, order_id=order_id)

        assert again == first
        assert len(await services.queries.list_by_customer(CUSTOMER.id)) == 1
        with pytest.raises(IdempotencyConflict):
            await shop.place({"A": 1}, order_id=order_id, customer=OTHER_CUSTOMER)


class TestNotifications:
    async def test_each_transition_enqueues_notifications(self, shop, services, sink):
        await shop.stock("A", on_hand=5)
        order = await shop.move(await shop.place({"A": 1}), S.CONFIRMED)
        await services.dispatcher.drain()

        assert [(n.recipient_id, n.title) for n in sink.sent] == [
            (CUSTOMER.id, "Order Placed"),
            (SUPPLIER.id, "New Order Received"),
            (CUSTOMER.id, "Order Confirmed"),
        ]
        assert sink.sent[-1].order_id == order.id

    async def test_failing_delivery_does_not_roll_back(self, shop, services):
        failing = AsyncMock()
        failing.send.side_effect = ConnectionError("push gateway down")
        failing.name = "push"
        services.dispatcher.sinks = [failing]
        await shop.stock("A", on_hand=5)

        order = await shop.move(await shop.place({"A": 1}), S.CONFIRMED)
        await services.dispatcher.drain()

        assert order.status is S.CONFIRMED
        assert (await services.queries.get_by_id(order.id)).status is S.CONFIRMED
        # 3 notifications, each tried max_attempts times
        assert failing.send.await_count == 3 * services.dispatcher.max_attempts
