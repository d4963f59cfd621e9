"""
Tests for the query side: listings, the supplier board, invoices and live
tracking.
"""

import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import ADMIN, CUSTOMER, OTHER_CUSTOMER, OTHER_SUPPLIER, SUPPLIER
from app.broker import LocalBroker
from app.errors import Forbidden, NotFound
from app.queries import QueryService
from app.transitions import OrderStatus

S = OrderStatus


async def next_update(updates):
    return await asyncio.wait_for(updates.__anext__(), timeout=1.0)


class TestListings:
    async def test_newest_first_and_filters(self, shop, services):
        await shop.stock("P", on_hand=50)
        first = await shop.place({"P": 1})
        second = await shop.place({"P": 1}, customer=OTHER_CUSTOMER)
        third = await shop.move(await shop.place({"P": 1}), S.CONFIRMED)

        by_supplier = await services.queries.list_by_supplier(SUPPLIER.id)
        assert [o.id for o in by_supplier] == [third.id, second.id, first.id]

        by_customer = await services.queries.list_by_customer(CUSTOMER.id)
        assert [o.id for o in by_customer] == [third.id, first.id]

        confirmed = await services.queries.list_by_supplier(SUPPLIER.id, status=S.CONFIRMED)
        assert [o.id for o in confirmed] == [third.id]

        assert len(await services.queries.list_all(limit=2)) == 2

    async def test_reads_see_latest_commit(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.move(await shop.place({"P": 1}), S.CONFIRMED)

        fetched = await services.queries.get_by_id(order.id)

        assert fetched.version == order.version
        assert fetched.status is S.CONFIRMED

    async def test_supplier_board_columns(self, shop, services):
        await shop.stock("P", on_hand=50)
        placed = await shop.place({"P": 1})
        confirmed = await shop.move(await shop.place({"P": 1}), S.CONFIRMED)
        picking = await shop.advance(await shop.place({"P": 1}), S.PICKING)

        board = await services.queries.supplier_board(SUPPLIER.id)

        assert set(board) == {s.value for s in OrderStatus}
        assert [o.id for o in board["placed"]] == [placed.id]
        assert [o.id for o in board["confirmed"]] == [confirmed.id]
        assert [o.id for o in board["picking"]] == [picking.id]
        assert board["delivered"] == []

    async def test_history_is_the_event_log(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.move(await shop.place({"P": 1}), S.CONFIRMED)

        events = await services.queries.history(order.id)

        assert [e["event_type"] for e in events] == ["OrderPlaced", "OrderStatusChanged"]
        assert [e["version"] for e in events] == [1, 2]

    async def test_unknown_order(self, services):
        with pytest.raises(NotFound):
            await services.queries.get_by_id(uuid4())



class TestInvoice:
    async def test_customer_gets_itemised_invoice(self, shop, services):
        await shop.stock("A", on_hand=5, price="80.00", name="Milk")
        await shop.stock("B", on_hand=5, price="45.50", name="Bread")
        order = await shop.place({"A": 2, "B": 1}, delivery_fee=Decimal("30"))

        invoice = await services.queries.invoice(order.id, CUSTOMER)

        assert invoice.order_number == order.order_number
        assert invoice.date == order.created_at
        assert [(i.name, i.quantity, i.line_total) for i in invoice.items] == [
            ("Milk", 2, Decimal("160.00")), ("Bread", 1, Decimal("45.50")),
        ]
        assert invoice.subtotal == Decimal("205.50")
        assert invoice.total == Decimal("235.50")
        assert invoice.payment_method == "COD"

    async def test_only_the_customer_or_admin(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 1})

        assert (await services.queries.invoice(order.id, ADMIN)).order_id == order.id
        for actor in (OTHER_CUSTOMER, SUPPLIER, OTHER_SUPPLIER):
            with pytest.raises(Forbidden):
                await services.queries.invoice(order.id, actor)
        with pytest.raises(NotFound):
            await services.queries.invoice(uuid4(), CUSTOMER)

class TestSubscribe:
    async def test_yields_current_then_each_new_version(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 1})
        updates = services.queries.subscribe(order.id)
        try:
            current = await next_update(updates)
            assert current.version == 1

            confirmed = await shop.move(order, S.CONFIRMED)
            await shop.move(confirmed, S.PICKING)

            assert (await next_update(updates)).status is S.CONFIRMED
            assert (await next_update(updates)).status is S.PICKING
        finally:
            await updates.aclose()

    async def test_missed_versions_are_rebuilt_and_duplicates_skipped(self, shop, services):
        quiet = LocalBroker()
        queries = QueryService(services.store, quiet)
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 1})
        updates = queries.subscribe(order.id)
        try:
            assert (await next_update(updates)).version == 1

            confirmed = await shop.move(order, S.CONFIRMED)
            picking = await shop.move(confirmed, S.PICKING)
            # only the latest version reaches this broker, and twice
            await quiet.publish(picking)
            await quiet.publish(picking)
            cancelled = await shop.move(picking, S.CANCELLED)
            await quiet.publish(cancelled)

            seen = [await next_update(updates) for _ in range(3)]
            assert [(o.version, o.status) for o in seen] == [
                (2, S.CONFIRMED), (3, S.PICKING), (4, S.CANCELLED),
            ]
        finally:
            await updates.aclose()

    async def test_ends_after_a_final_status(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.place({"P": 1})
        updates = services.queries.subscribe(order.id)
        try:
            assert (await next_update(updates)).version == 1

            await shop.move(order, S.REJECTED)

            assert (await next_update(updates)).status is S.REJECTED
            with pytest.raises(StopAsyncIteration):
                await next_update(updates)
        finally:
            await updates.aclose()
        assert order.id not in services.broker._listeners

    async def test_final_order_yields_once(self, shop, services):
        await shop.stock("P", on_hand=5)
        order = await shop.move(await shop.place({"P": 1}), S.CANCELLED, actor=CUSTOMER)

        seen = [o async for o in services.queries.subscribe(order.id)]

        assert [(o.version, o.status) for o in seen] == [(2, S.CANCELLED)]
