"""
Commerce Service — ドメインイベント

Redis に publish するイベントの形と、注文イベントの組み立て。
イベントは「type/action」の 2 段で分類する (例: order/placed, flex/paused)。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .models import Order, utc_now


class DomainEvent(BaseModel):
    type: str
    action: str
    customer_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    source: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.type}/{self.action}"


def cents_to_dollars(value: int | None) -> float:
    return round((value or 0) / 100, 2)


def order_placed_event(order: Order, order_context: dict | None = None) -> DomainEvent:
    """注文を分析向けのフラットなプロパティに展開する。"""
    info = order.customer_info
    address = info.get("address") or {}
    paid = order.paid

    properties: dict[str, Any] = {
        **(order_context or {}),
        "typeId": order.id,
        "orderType": order.order_type,
        "invoiceNumber": order.invoice_number,
        "customer_firstName": info.get("first_name"),
        "customer_lastName": info.get("last_name"),
        "customer_phone": info.get("phone"),
        "shipping_firstName": address.get("first_name"),
        "shipping_lastName": address.get("last_name"),
        "shipping_address1": address.get("address1"),
        "shipping_address2": address.get("address2"),
        "shipping_city": address.get("city"),
        "shipping_state": address.get("state"),
        "shipping_zip": address.get("zip"),
        "paid_subtotal": cents_to_dollars(paid.subtotal),
        "paid_shipping": cents_to_dollars(paid.shipping),
        "paid_discountTotal": cents_to_dollars(paid.discount_total),
        "paid_creditUsed": cents_to_dollars(paid.credit_used),
        "paid_total": cents_to_dollars(paid.total),
        "value": cents_to_dollars(paid.total),
    }

    # カテゴリ・出荷 SKU は出現順を保ったまま重複を除く
    categories: dict[str, None] = {}
    fulfillment: dict[str, None] = {}
    for item in order.items:
        for category in item.metadata.get("categories") or []:
            categories[category] = None
        parts = item.metadata.get("fulfillment") or []
        if parts:
            for part in parts:
                fulfillment[part["sku"]] = None
        else:
            fulfillment[item.sku] = None

    properties["itemSkus"] = [item.sku for item in order.items]
    properties["items"] = [
        {
            "sku": item.sku,
            "name": item.name,
            "price": cents_to_dollars(item.price),
            "totalPrice": cents_to_dollars(item.total_price),
            "quantity": item.quantity,
            "savings": cents_to_dollars(item.metadata.get("savings")),
        }
        for item in order.items
    ]
    properties["itemCategories"] = list(categories)
    properties["fulfillmentSkus"] = list(fulfillment)
    properties["discountCodes"] = [d.code for d in order.discounts]
    properties["discounts"] = [
        {"code": d.code, "amount": cents_to_dollars(d.amount), "discountType": d.discount_type}
        for d in order.discounts
    ]

    return DomainEvent(
        type="order",
        action="placed",
        customer_id=order.customer_id,
        timestamp=order.completion_date,
        source=order.source,
        properties=properties,
    )
