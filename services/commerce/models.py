"""
Commerce Service — ドメインモデル

ストアの行をそのまま検証して保持する pydantic モデル。
金額はすべて最小通貨単位 (セント) の整数、日時は UTC。
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _as_utc(value: datetime) -> datetime:
    # SQLite は tzinfo を落として返すので UTC を補う
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDateTime = Annotated[datetime, AfterValidator(_as_utc)]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def days_from(now: datetime, days: int, hour: int | None = None) -> datetime:
    """now から days 日後。hour を指定するとその時刻 (UTC) に丸める。"""
    result = now + timedelta(days=days)
    if hour is not None:
        result = result.replace(hour=hour, minute=0, second=0, microsecond=0)
    return result


# ── 商品・カート ─────────────────────────────────


class Price(BaseModel):
    value: Any
    original: int | None = None
    strikethrough: int | None = None


class Product(BaseModel):
    id: str
    sku: str
    name: str = ""
    price: Price
    free_shipping: bool = False
    categories: list[str] = Field(default_factory=list)
    fulfillment: list[dict] = Field(default_factory=list)
    thumbnail: str | None = None

    @property
    def marked_down(self) -> bool:
        original = self.price.original
        return original is not None and int(self.price.value) < original


class CartItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    sku: str
    product_id: str
    name: str = ""
    quantity: int
    price: int
    total_price: int
    metadata: dict = Field(default_factory=dict)


class Discount(BaseModel):
    """注文に適用される割引。amount は計算後のみ設定される。"""

    code: str | None = None
    discount_type: str
    value: float = 0
    amount: int | None = None
    flex: bool = False


class Paid(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: int
    shipping: int
    discount_total: int
    credit_used: int
    total: int


class Cart(BaseModel):
    """注文ごとに新しく組み立てられる不変の値。"""

    model_config = ConfigDict(frozen=True)

    items: tuple[CartItem, ...]
    order_type: str
    source: str | None = None
    discounts: tuple[Discount, ...]
    paid: Paid


# ── 注文 ─────────────────────────────────────────


class Refund(BaseModel):
    amount: int
    reason: str | None = None
    refund_id: str | None = None
    status: str
    refund_date: UtcDateTime


class Shipping(BaseModel):
    shipping_type: str = "ground"
    status: str = "Pending"
    ship_date: UtcDateTime


class Order(BaseModel):
    id: str
    invoice_number: str
    customer_id: str
    customer_info: dict
    items: list[CartItem]
    order_type: str
    source: str | None = None
    discounts: list[Discount]
    paid: Paid
    completion_date: UtcDateTime
    shipping: Shipping
    charge_id: str | None = None
    refunds: list[Refund] = Field(default_factory=list)


class OrderRecord(BaseModel):
    """顧客・プランの注文履歴エントリ。"""

    invoice_number: str
    completion_date: UtcDateTime


# ── 顧客・Flex プラン ────────────────────────────


class Customer(BaseModel):
    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    customer_type: str | None = None
    payment_token: str | None = None
    shipping_address: dict = Field(default_factory=dict)
    credit: int = 0
    total_orders: int = 0
    total_value: int = 0
    failed_flex: int = 0
    failed_start: int = 0
    rushed: bool = False
    flex_default: list[dict] = Field(default_factory=list)
    start_flex: UtcDateTime | None = None
    flex_followup: UtcDateTime | None = None
    no_followup: UtcDateTime | None = None
    converted_flex: UtcDateTime | None = None
    last_interaction: UtcDateTime | None = None


class FlexPlan(BaseModel):
    id: str
    customer_id: str | None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    items: list[dict] = Field(default_factory=list)
    discounts: list[Discount] = Field(default_factory=list)
    shipping_address: dict = Field(default_factory=dict)
    shipping_price: int | None = None
    total_price: int = 0
    status: str = "active"
    next_text: UtcDateTime | None = None
    next_order: UtcDateTime | None = None
    paused_on: UtcDateTime | None = None
    resumed_on: UtcDateTime | None = None
    started: UtcDateTime | None = None
    source: str | None = None
    rushed: bool = False
    total_orders: int = 0
    total_value: int = 0
    orders: list[OrderRecord] = Field(default_factory=list)
