"""
Fulfillment Service — Database schema

    order_events       append-only event log, UNIQUE(order_id, version)
    orders             read model: one JSON document per order + filter columns
    inventory          ledger entries, CHECK 0 <= reserved <= on_hand
    stock_adjustments  append-only adjustment log
    idempotency_keys   client tokens recorded with the transition they produced
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("event_type", String(64), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    # the second writer of a version fails here
    UniqueConstraint("order_id", "version", name="uq_order_events_order_version"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("supplier_id", String(64), nullable=False, index=True),
    Column("status", String(32), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("reserved", Boolean, nullable=False, default=False),
    Column("document", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

inventory = Table(
    "inventory",
    metadata,
    Column("product_id", String(64), primary_key=True),
    Column("supplier_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("on_hand", Integer, nullable=False),
    Column("reserved", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=1),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("reserved >= 0 AND reserved <= on_hand", name="ck_inventory_reserved"),
)

stock_adjustments = Table(
    "stock_adjustments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("mode", String(8), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("previous_on_hand", Integer, nullable=False),
    Column("new_on_hand", Integer, nullable=False),
    Column("reason", Text, nullable=False),
    Column("actor_id", String(64), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("key", String(128), primary_key=True),
    Column("order_id", String(36), nullable=False),
    Column("target_status", String(32), nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
