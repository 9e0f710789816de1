"""
Commerce Service — 割引ルールエンジン

カートの明細と入力された割引コードから、適用する割引と金額を決める。
評価順は「入力された順の明示コード → 自動キャンペーン」で固定。
金額は最小通貨単位の整数に切り捨てる。
"""

import structlog

from .config import Settings
from .errors import MalformedDiscount
from .models import CartItem, Discount, Product

logger = structlog.get_logger(__name__)

OGVERBFAM_HIGH_THRESHOLD = 5000
OGVERBFAM_MID_THRESHOLD = 3000


def normalize_mult_value(discount: Discount) -> float:
    """
    mult 割引の値を 0〜1 の割合にそろえる。

    1 以下はそのまま割合、1 より大きい整数はパーセントとして 100 で割る。
    2.5 のような 1 より大きい小数や、割っても 1 を超える値は不正。
    """
    value = discount.value
    if value <= 1:
        return value
    if value != int(value):
        raise MalformedDiscount(discount.code, value)
    rate = value / 100
    if rate > 1:
        raise MalformedDiscount(discount.code, value)
    return rate


def discountable_total(items: list[CartItem], product_map: dict[str, Product], settings: Settings) -> int:
    """割引対象外 SKU と値下げ済み商品を除いた明細合計。"""
    total = 0
    for item in items:
        product = product_map[item.sku]
        if item.sku in settings.non_discountable_skus or product.marked_down:
            continue
        total += item.total_price
    return total


def compute_discounts(
    items: list[CartItem],
    discounts: list[Discount],
    product_map: dict[str, Product],
    settings: Settings,
) -> list[Discount]:
    skus = {item.sku for item in items}
    has_trial_starter = settings.trial_starter_sku in skus
    has_starter_kit = settings.starter_kit_sku in skus
    base = discountable_total(items, product_map, settings)

    applied: list[Discount] = []

    def apply(discount: Discount, raw_amount: float) -> None:
        applied.append(discount.model_copy(update={"amount": int(raw_amount)}))

    for discount in discounts:
        if discount.code in settings.auto_discounts:
            continue

        kind = discount.discount_type
        if kind in ("Trial", "Referral"):
            if has_trial_starter:
                apply(discount, discount.value * 100)
        elif kind == "mult":
            apply(discount, base * normalize_mult_value(discount))
        elif kind == "minus":
            apply(discount, discount.value * 100)
        elif kind == "starter":
            if has_starter_kit:
                apply(discount, discount.value * 100)
        elif kind == "ogverbfam":
            if base >= OGVERBFAM_HIGH_THRESHOLD:
                apply(discount, base * 0.15)
            elif base >= OGVERBFAM_MID_THRESHOLD:
                apply(discount, base * 0.10)
        elif kind == "auto-generated":
            # 自動キャンペーンは下で明細から再計算する
            continue
        else:
            logger.warning("unknown_discount_type", discount_type=kind, code=discount.code)

    # ── 自動キャンペーン ─────────────────────────
    for promotion in settings.auto_promotions:
        for item in items:
            if item.sku != promotion.sku:
                continue
            apply(
                Discount(code=promotion.code, discount_type="auto-generated", value=promotion.rate),
                promotion.rate * item.price * item.quantity,
            )
            break

    return applied
