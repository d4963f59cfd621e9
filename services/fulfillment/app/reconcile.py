"""
Fulfillment Service — Reservation reconciliation

Audit job for status/inventory divergence: for every product, the ledger's
`reserved` should equal the sum of the quantities of orders currently holding
a reservation (confirmed .. out_for_delivery).

Stock is read before orders. Every reserve / release / commit bumps the
entry's version, so a repair (a versioned compare-and-swap) cannot overwrite
a reservation that changed after the snapshot.
"""

import logging
from collections import defaultdict

from .errors import StockContention
from .store import Store

logger = logging.getLogger(__name__)


async def find_divergence(store: Store, repair: bool = False) -> list[dict]:
    stock_levels = {stock.product_id: stock for stock in await store.list_stock()}

    expected: dict[str, int] = defaultdict(int)
    for order in await store.list_orders():
        if order.reserved:
            for line in order.items:
                expected[line.product_id] += line.quantity

    report = []
    for product_id in sorted(set(stock_levels) | set(expected)):
        stock = stock_levels.get(product_id)
        want = expected.get(product_id, 0)
        if stock is None:
            report.append({
                "product_id": product_id,
                "name": None,
                "ledger_reserved": None,
                "expected_reserved": want,
                "repaired": False,
            })
            logger.error("Orders hold %d of %s but the product is not in the ledger", want, product_id)
            continue
        if stock.reserved == want:
            continue

        entry = {
            "product_id": product_id,
            "name": stock.name,
            "ledger_reserved": stock.reserved,
            "expected_reserved": want,
            "repaired": False,
        }
        logger.warning(
            "Reservation divergence on %s: ledger %d, orders %d",
            product_id, stock.reserved, want,
        )
        if repair:
            entry["repaired"] = await _repair(store, product_id, min(want, stock.on_hand), stock.version)
        report.append(entry)
    return report


async def _repair(store: Store, product_id: str, reserved: int, version: int) -> bool:
    try:
        async with store.unit_of_work() as uow:
            if not await uow.update_reserved(product_id, reserved, version):
                logger.warning("Skipped repair of %s: entry changed since the audit", product_id)
                return False
            await uow.commit()
    except StockContention:
        logger.warning("Skipped repair of %s: entry changed since the audit", product_id)
        return False
    logger.info("Repaired reservation of %s to %d", product_id, reserved)
    return True
