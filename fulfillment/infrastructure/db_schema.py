from sqlalchemy import (
    Table, Column, String, Integer, Boolean, Enum, DateTime, JSON, Numeric, MetaData, ForeignKey, Text,
)
from sqlalchemy.sql import func

from fulfillment.domain.models import OrderStatus, SubscriptionStatus

metadata = MetaData()


products_tbl = Table(
    "products",
    metadata,
    Column("id", String, primary_key=True),
    Column("store_id", String, nullable=False, index=True),
    Column("name", String, nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("stock", Integer, nullable=False),
    Column("reserved_stock", Integer, nullable=False, default=0),
    Column("tags", JSON, nullable=False, default=list),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


product_collections_tbl = Table(
    "product_collections",
    metadata,
    Column("product_id", String, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
    Column("collection_id", String, primary_key=True)
)


offers_tbl = Table(
    "offers",
    metadata,
    Column("id", String, primary_key=True),
    Column("store_id", String, nullable=False, index=True),
    Column("name", String, nullable=False),
    Column("offer_code", String, nullable=True),
    Column("require_code", Boolean, nullable=False, default=False),
    Column("offer_type", String, nullable=False),
    Column("discount_details", JSON, nullable=False),
    Column("applicable_to", JSON, nullable=False),
    Column("conditions", JSON, nullable=True),
    Column("validity_date_range", JSON, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("store_id", String, nullable=False, index=True),
    Column("customer_id", String, nullable=False),
    Column("status", Enum(OrderStatus), nullable=False, default=OrderStatus.CREATED),
    Column("status_updated_at", DateTime(timezone=True), nullable=False),
    Column("subtotal", Numeric(10, 2), nullable=False),
    Column("discount_total", Numeric(10, 2), nullable=False),
    Column("total", Numeric(10, 2), nullable=False),
    Column("payment_ref", String, nullable=True, index=True),
    Column("payment_id", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False)
)


order_items_tbl = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("product_id", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(10, 2), nullable=False),
    Column("discount_applied", Numeric(10, 2), nullable=False, default=0)
)


# Только вставка, строки не меняются и не удаляются
order_status_history_tbl = Table(
    "order_status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("status", Enum(OrderStatus), nullable=False),
    Column("note", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False)
)


store_subscriptions_tbl = Table(
    "store_subscriptions",
    metadata,
    Column("id", String, primary_key=True),
    Column("store_id", String, nullable=False, index=True),
    Column("plan_id", String, nullable=True),
    Column("status", Enum(SubscriptionStatus), nullable=False),
    Column("current_period_start", DateTime(timezone=True), nullable=True),
    Column("current_period_end", DateTime(timezone=True), nullable=True),
    Column("linked_account_id", String, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False)
)


outbox_events_tbl = Table(
    "outbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=False),
    Column("status", String, default="pending"),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)
