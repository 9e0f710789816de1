"""
Commerce Service — カート組み立て

商品・割引・送料・クレジットから Paid を計算する。ストアへの書き込みはしない。

  subtotal      = Σ 明細合計
  full subtotal = subtotal + shipping
  discount      = min(Σ 割引額, full subtotal)
  total         = full subtotal - discount - credit_used
  total < 最低注文額 → 0
"""

import math
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from . import store
from .config import Settings
from .discounts import compute_discounts
from .errors import CustomerNotFound, InvalidQuantity, ProductNotFound
from .models import Cart, CartItem, Customer, Discount, Paid, Product
from .products import resolve_products

FLEX_ORDER_TYPE = "Flex"


def parse_quantity(sku: str, raw) -> int:
    if raw is None or isinstance(raw, bool):
        raise InvalidQuantity(sku, raw)
    try:
        number = float(raw)
    except (TypeError, ValueError):
        raise InvalidQuantity(sku, raw) from None
    if not math.isfinite(number) or number < 0 or number != int(number):
        raise InvalidQuantity(sku, raw)
    return int(number)


def unit_price(product: Product) -> int:
    try:
        return int(product.price.value)
    except (TypeError, ValueError):
        raise ProductNotFound(product.sku, reason="pricing not found") from None


def item_savings(product: Product, price: int) -> int:
    strikethrough = product.price.strikethrough
    original = product.price.original
    if not strikethrough and not product.marked_down:
        return 0
    highest = max(strikethrough or 0, original or 0)
    return max(highest - price, 0)


def make_item(product: Product, quantity: int) -> CartItem:
    price = unit_price(product)
    return CartItem(
        sku=product.sku,
        product_id=product.id,
        name=product.name,
        quantity=quantity,
        price=price,
        total_price=price * quantity,
        metadata={
            "categories": product.categories,
            "fulfillment": product.fulfillment,
            "thumbnail": product.thumbnail,
            "savings": item_savings(product, price),
        },
    )


async def build_cart(
    session: AsyncSession,
    settings: Settings,
    *,
    items: list[dict],
    order_type: str,
    source: str | None = None,
    customer: Customer | None = None,
    customer_id: str | None = None,
    discounts: Sequence[Discount] = (),
    shipping: int | None = None,
) -> Cart:
    if customer is None:
        if not customer_id:
            raise CustomerNotFound(None)
        customer = await store.get_customer(session, customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)

    product_map = await resolve_products(session, items)

    cart_items: list[CartItem] = []
    free_shipping = False
    for requested in items:
        product = product_map[requested["sku"]]
        quantity = parse_quantity(product.sku, requested.get("quantity"))
        cart_items.append(make_item(product, quantity))
        if product.free_shipping and quantity > 0:
            free_shipping = True

    if shipping is not None:
        shipping_price = int(shipping)
    elif order_type == FLEX_ORDER_TYPE or free_shipping:
        shipping_price = 0
    else:
        shipping_price = settings.default_shipping_price

    subtotal = sum(item.total_price for item in cart_items)
    full_subtotal = subtotal + shipping_price

    applied = compute_discounts(cart_items, list(discounts), product_map, settings)
    discount_total = min(sum(d.amount for d in applied), full_subtotal)
    total = full_subtotal - discount_total

    credit_used = 0
    if customer.credit > 0:
        credit_used = min(total, customer.credit)
        total -= credit_used

    if total < settings.minimum_order_total:
        total = 0

    return Cart(
        items=tuple(cart_items),
        order_type=order_type,
        source=source,
        discounts=tuple(applied),
        paid=Paid(
            subtotal=subtotal,
            shipping=shipping_price,
            discount_total=discount_total,
            credit_used=credit_used,
            total=total,
        ),
    )
