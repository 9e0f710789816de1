"""
Commerce Service — テーブル定義

顧客・商品・注文・Flex プランを保持するストアのスキーマ。
埋め込みドキュメント (商品明細・割引・住所) は JSON 列に入れ、
重複を許さない履歴 (請求書番号) は一意制約付きの子テーブルに分ける。
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

customers = Table(
    "customers",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255)),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("phone", String(40)),
    Column("customer_type", String(40)),
    Column("payment_token", String(255)),
    Column("shipping_address", JSON, nullable=False, default=dict),
    Column("credit", Integer, nullable=False, default=0),
    Column("total_orders", Integer, nullable=False, default=0),
    Column("total_value", Integer, nullable=False, default=0),
    Column("failed_flex", Integer, nullable=False, default=0),
    Column("failed_start", Integer, nullable=False, default=0),
    Column("rushed", Boolean, nullable=False, default=False),
    Column("flex_default", JSON, nullable=False, default=list),
    Column("start_flex", DateTime(timezone=True)),
    Column("flex_followup", DateTime(timezone=True)),
    Column("no_followup", DateTime(timezone=True)),
    Column("converted_flex", DateTime(timezone=True)),
    Column("last_interaction", DateTime(timezone=True)),
)

customer_orders = Table(
    "customer_orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_id", String(36), ForeignKey("customers.id"), nullable=False),
    Column("invoice_number", String(40), nullable=False),
    Column("completion_date", DateTime(timezone=True), nullable=False),
    UniqueConstraint("customer_id", "invoice_number"),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("sku", String(100), nullable=False, unique=True),
    Column("name", String(255), nullable=False, default=""),
    Column("price", JSON, nullable=False),
    Column("free_shipping", Boolean, nullable=False, default=False),
    Column("categories", JSON, nullable=False, default=list),
    Column("fulfillment", JSON, nullable=False, default=list),
    Column("thumbnail", String(500)),
)

invoice_counter = Table(
    "invoice_counter",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("num", Integer, nullable=False),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("invoice_number", String(40), nullable=False, unique=True),
    Column("customer_id", String(36), ForeignKey("customers.id"), nullable=False),
    Column("customer_info", JSON, nullable=False),
    Column("items", JSON, nullable=False),
    Column("order_type", String(40), nullable=False),
    Column("source", String(40)),
    Column("discounts", JSON, nullable=False),
    Column("subtotal", Integer, nullable=False),
    Column("shipping", Integer, nullable=False),
    Column("discount_total", Integer, nullable=False),
    Column("credit_used", Integer, nullable=False),
    Column("total", Integer, nullable=False),
    Column("completion_date", DateTime(timezone=True), nullable=False),
    Column("shipping_type", String(40), nullable=False, default="ground"),
    Column("shipping_status", String(40), nullable=False, default="Pending"),
    Column("ship_date", DateTime(timezone=True), nullable=False),
    Column("charge_id", String(255)),
)

order_refunds = Table(
    "order_refunds",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False),
    Column("amount", Integer, nullable=False),
    Column("reason", String(500)),
    Column("refund_id", String(255)),
    Column("status", String(40), nullable=False),
    Column("refund_date", DateTime(timezone=True), nullable=False),
)

flex_plans = Table(
    "flex_plans",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("customer_id", String(36), ForeignKey("customers.id")),
    Column("email", String(255)),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("phone", String(40)),
    Column("items", JSON, nullable=False, default=list),
    Column("discounts", JSON, nullable=False, default=list),
    Column("shipping_address", JSON, nullable=False, default=dict),
    Column("shipping_price", Integer),
    Column("total_price", Integer, nullable=False, default=0),
    Column("status", String(20), nullable=False, default="active"),
    Column("next_text", DateTime(timezone=True)),
    Column("next_order", DateTime(timezone=True)),
    Column("paused_on", DateTime(timezone=True)),
    Column("resumed_on", DateTime(timezone=True)),
    Column("started", DateTime(timezone=True)),
    Column("source", String(40)),
    Column("rushed", Boolean, nullable=False, default=False),
    Column("total_orders", Integer, nullable=False, default=0),
    Column("total_value", Integer, nullable=False, default=0),
)

flex_plan_orders = Table(
    "flex_plan_orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("plan_id", String(36), ForeignKey("flex_plans.id"), nullable=False),
    Column("invoice_number", String(40), nullable=False),
    Column("completion_date", DateTime(timezone=True), nullable=False),
    UniqueConstraint("plan_id", "invoice_number"),
)


async def create_schema(engine: AsyncEngine, first_invoice: int = 1000) -> None:
    """テーブルを作成し、請求書番号カウンタを初期化する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        existing = (await conn.execute(invoice_counter.select())).first()
        if existing is None:
            await conn.execute(invoice_counter.insert().values(id=1, num=first_invoice))
