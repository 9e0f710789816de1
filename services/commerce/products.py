"""Commerce Service — 商品解決"""

from sqlalchemy.ext.asyncio import AsyncSession

from . import store
from .errors import ItemsNotFound
from .models import Product


async def resolve_products(session: AsyncSession, items: list[dict]) -> dict[str, Product]:
    """
    リクエストされた SKU を一度のクエリでまとめて引き、{sku: Product} を返す。

    1 つでも見つからなければ、欠けている SKU をすべて並べて失敗する。
    """
    skus = list(dict.fromkeys(item.get("sku") for item in items))
    found = {product.sku: product for product in await store.find_products_by_sku(session, skus)}
    missing = [sku for sku in skus if sku not in found]
    if missing:
        raise ItemsNotFound([str(sku) for sku in missing])
    return found
