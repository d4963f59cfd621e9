"""
Business validation for order placement, beyond what the pydantic schemas check.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from . import schemas

MAX_LINES = 100
MAX_QUANTITY = 10000
TOTAL_TOLERANCE = Decimal("0.01")

DELIVERY_WINDOWS = {
    "standard": timedelta(minutes=60),
    "express": timedelta(minutes=30),
}


def validate_order_items(items: list[schemas.PlaceLine]) -> tuple[bool, str]:
    """
    Validate the requested lines.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > MAX_LINES:
        return False, f"Order cannot contain more than {MAX_LINES} items"

    # Check for duplicate products
    product_ids = [item.product_id for item in items]
    if len(product_ids) != len(set(product_ids)):
        return False, "Order contains duplicate products"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > MAX_QUANTITY:
            return False, f"Item {item.product_id}: quantity exceeds maximum ({MAX_QUANTITY})"

    return True, ""


def validate_order_total(calculated_total: Decimal, claimed_total: Decimal | None) -> tuple[bool, str]:
    """A client-sent total must match the computed one (rounding tolerance 0.01)."""
    if calculated_total < 0:
        return False, f"Order total cannot be negative ({calculated_total})"

    if claimed_total is None:
        return True, ""

    if abs(calculated_total - claimed_total) > TOTAL_TOLERANCE:
        return False, f"Order total mismatch: calculated {calculated_total}, claimed {claimed_total}"

    return True, ""


def validate_delivery(request: schemas.PlaceOrderRequest, now: datetime) -> tuple[bool, str]:
    if request.delivery_type == "scheduled":
        if request.scheduled_time is None:
            return False, "scheduled_time is required for scheduled delivery"
        if request.scheduled_time <= now:
            return False, "scheduled_time must be in the future"
    elif request.scheduled_time is not None:
        return False, "scheduled_time is only allowed for scheduled delivery"
    return True, ""


def estimate_delivery(delivery_type: str, placed_at: datetime, scheduled_time: datetime | None) -> datetime:
    if delivery_type == "scheduled":
        return scheduled_time
    return placed_at + DELIVERY_WINDOWS[delivery_type]
