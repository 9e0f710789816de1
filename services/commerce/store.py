"""
Commerce Service — データアクセス

ストアに対する読み書きはすべてここを通す。
排他が必要な更新は条件付き UPDATE として書き、rowcount で勝敗を判定する
(プロセス内ロックは使わない)。
関数はセッションを受け取るだけで、トランザクション境界は呼び出し側が決める。
"""

from datetime import datetime

from sqlalchemy import case, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvoiceAllocationFailed
from .models import (
    Customer,
    Discount,
    FlexPlan,
    Order,
    OrderRecord,
    Paid,
    Product,
    Refund,
    Shipping,
)
from .tables import (
    customer_orders,
    customers,
    flex_plan_orders,
    flex_plans,
    invoice_counter,
    order_refunds,
    orders,
    products,
)


def _dump_discounts(discounts) -> list[dict]:
    return [d.model_dump(mode="json") for d in discounts]


# ── 顧客 ─────────────────────────────────────────


async def get_customer(session: AsyncSession, customer_id: str) -> Customer | None:
    row = (await session.execute(select(customers).where(customers.c.id == customer_id))).first()
    if row is None:
        return None
    return Customer.model_validate(dict(row._mapping))


async def insert_customer(session: AsyncSession, customer: Customer) -> None:
    await session.execute(insert(customers).values(**customer.model_dump()))


async def update_customer(session: AsyncSession, customer_id: str, **values) -> bool:
    result = await session.execute(update(customers).where(customers.c.id == customer_id).values(**values))
    return result.rowcount == 1


async def debit_credit(session: AsyncSession, customer_id: str, amount: int) -> bool:
    """残高が足りる場合に限りクレジットを差し引く。"""
    result = await session.execute(
        update(customers)
        .where(customers.c.id == customer_id, customers.c.credit >= amount)
        .values(credit=customers.c.credit - amount)
    )
    return result.rowcount == 1


async def adjust_credit(session: AsyncSession, customer_id: str, delta: int) -> int | None:
    """クレジットを増減する。残高は 0 未満にならない。新しい残高を返す。"""
    new_balance = customers.c.credit + delta
    result = await session.execute(
        update(customers)
        .where(customers.c.id == customer_id)
        .values(credit=case((new_balance < 0, 0), else_=new_balance))
    )
    if result.rowcount != 1:
        return None
    return await session.scalar(select(customers.c.credit).where(customers.c.id == customer_id))


async def increment_counter(session: AsyncSession, customer_id: str, column: str, **values) -> int:
    """failed_flex / failed_start を原子的に +1 し、更新後の値を返す。"""
    counter = customers.c[column]
    await session.execute(
        update(customers).where(customers.c.id == customer_id).values({column: counter + 1, **values})
    )
    return await session.scalar(select(counter).where(customers.c.id == customer_id)) or 0


async def record_customer_order(
    session: AsyncSession,
    customer_id: str,
    invoice_number: str,
    completion_date: datetime,
    total: int,
    now: datetime,
) -> bool:
    """
    注文の集計値を顧客に加算する。

    同じ請求書番号が既に履歴にあれば何もしない (False)。
    集計の UPDATE 自体を「履歴に存在しない」ことを条件にしているので、
    再実行で二重加算されることはない。
    """
    already = (
        select(customer_orders.c.id)
        .where(
            customer_orders.c.customer_id == customer_id,
            customer_orders.c.invoice_number == invoice_number,
        )
        .exists()
    )
    result = await session.execute(
        update(customers)
        .where(customers.c.id == customer_id, ~already)
        .values(
            total_orders=customers.c.total_orders + 1,
            total_value=customers.c.total_value + total,
            last_interaction=now,
        )
    )
    if result.rowcount != 1:
        return False
    await session.execute(
        insert(customer_orders).values(
            customer_id=customer_id,
            invoice_number=invoice_number,
            completion_date=completion_date,
        )
    )
    return True


async def adjust_customer_totals(session: AsyncSession, customer_id: str, value_delta: int, orders_delta: int) -> bool:
    result = await session.execute(
        update(customers)
        .where(customers.c.id == customer_id)
        .values(
            total_value=customers.c.total_value + value_delta,
            total_orders=customers.c.total_orders + orders_delta,
        )
    )
    return result.rowcount == 1


async def find_due_trial_customers(session: AsyncSession, now: datetime, limit: int) -> list[str]:
    result = await session.execute(
        select(customers.c.id)
        .where(customers.c.customer_type == "TrialToFlex", customers.c.start_flex < now)
        .order_by(customers.c.start_flex)
        .limit(limit)
    )
    return [row.id for row in result.fetchall()]


async def claim_trial_conversion(session: AsyncSession, customer_id: str, now: datetime) -> bool:
    result = await session.execute(
        update(customers)
        .where(
            customers.c.id == customer_id,
            customers.c.customer_type == "TrialToFlex",
            customers.c.start_flex < now,
        )
        .values(start_flex=None)
    )
    return result.rowcount == 1


# ── 商品 ─────────────────────────────────────────


async def find_products_by_sku(session: AsyncSession, skus: list[str]) -> list[Product]:
    if not skus:
        return []
    result = await session.execute(select(products).where(products.c.sku.in_(skus)))
    return [Product.model_validate(dict(row._mapping)) for row in result.fetchall()]


async def insert_product(session: AsyncSession, product: Product) -> None:
    await session.execute(insert(products).values(**product.model_dump(mode="json")))


# ── 請求書番号 ───────────────────────────────────


async def allocate_invoice_number(session: AsyncSession) -> str:
    """カウンタ行を原子的に +1 して新しい請求書番号を返す。"""
    result = await session.execute(
        update(invoice_counter).where(invoice_counter.c.id == 1).values(num=invoice_counter.c.num + 1)
    )
    if result.rowcount != 1:
        raise InvoiceAllocationFailed(result.rowcount)
    num = await session.scalar(select(invoice_counter.c.num).where(invoice_counter.c.id == 1))
    return f"VRB{num}"


# ── 注文 ─────────────────────────────────────────


async def insert_order(session: AsyncSession, order: Order) -> None:
    await session.execute(
        insert(orders).values(
            id=order.id,
            invoice_number=order.invoice_number,
            customer_id=order.customer_id,
            customer_info=order.customer_info,
            items=[item.model_dump(mode="json") for item in order.items],
            order_type=order.order_type,
            source=order.source,
            discounts=_dump_discounts(order.discounts),
            subtotal=order.paid.subtotal,
            shipping=order.paid.shipping,
            discount_total=order.paid.discount_total,
            credit_used=order.paid.credit_used,
            total=order.paid.total,
            completion_date=order.completion_date,
            shipping_type=order.shipping.shipping_type,
            shipping_status=order.shipping.status,
            ship_date=order.shipping.ship_date,
            charge_id=order.charge_id,
        )
    )


async def get_order(session: AsyncSession, invoice_number: str) -> Order | None:
    row = (await session.execute(select(orders).where(orders.c.invoice_number == invoice_number))).first()
    if row is None:
        return None
    refund_rows = await session.execute(
        select(order_refunds).where(order_refunds.c.order_id == row.id).order_by(order_refunds.c.id)
    )
    return Order(
        id=row.id,
        invoice_number=row.invoice_number,
        customer_id=row.customer_id,
        customer_info=row.customer_info,
        items=row.items,
        order_type=row.order_type,
        source=row.source,
        discounts=row.discounts,
        paid=Paid(
            subtotal=row.subtotal,
            shipping=row.shipping,
            discount_total=row.discount_total,
            credit_used=row.credit_used,
            total=row.total,
        ),
        completion_date=row.completion_date,
        shipping=Shipping(shipping_type=row.shipping_type, status=row.shipping_status, ship_date=row.ship_date),
        charge_id=row.charge_id,
        refunds=[
            Refund(
                amount=r.amount,
                reason=r.reason,
                refund_id=r.refund_id,
                status=r.status,
                refund_date=r.refund_date,
            )
            for r in refund_rows.fetchall()
        ],
    )


async def set_charge_id(session: AsyncSession, order_id: str, charge_id: str) -> bool:
    result = await session.execute(update(orders).where(orders.c.id == order_id).values(charge_id=charge_id))
    return result.rowcount == 1


async def mark_order_canceled(session: AsyncSession, invoice_number: str) -> bool:
    """発送前 (Pending / On Hold) の注文だけをキャンセル済みにする。"""
    result = await session.execute(
        update(orders)
        .where(
            orders.c.invoice_number == invoice_number,
            orders.c.shipping_status.in_(["Pending", "On Hold"]),
        )
        .values(shipping_status="Canceled")
    )
    return result.rowcount == 1


async def insert_refund(session: AsyncSession, order_id: str, refund: Refund) -> None:
    await session.execute(insert(order_refunds).values(order_id=order_id, **refund.model_dump()))


async def count_orders(session: AsyncSession, invoice_number: str) -> int:
    return await session.scalar(
        select(func.count()).select_from(orders).where(orders.c.invoice_number == invoice_number)
    )


# ── Flex プラン ──────────────────────────────────


async def get_plan(session: AsyncSession, plan_id: str) -> FlexPlan | None:
    row = (await session.execute(select(flex_plans).where(flex_plans.c.id == plan_id))).first()
    if row is None:
        return None
    history = await session.execute(
        select(flex_plan_orders.c.invoice_number, flex_plan_orders.c.completion_date)
        .where(flex_plan_orders.c.plan_id == plan_id)
        .order_by(flex_plan_orders.c.id)
    )
    return FlexPlan.model_validate(
        {
            **row._mapping,
            "orders": [
                {"invoice_number": h.invoice_number, "completion_date": h.completion_date}
                for h in history.fetchall()
            ],
        }
    )


async def insert_plan(session: AsyncSession, plan: FlexPlan) -> None:
    values = plan.model_dump(exclude={"orders", "discounts"})
    await session.execute(insert(flex_plans).values(**values, discounts=_dump_discounts(plan.discounts)))
    for record in plan.orders:
        await session.execute(
            insert(flex_plan_orders).values(
                plan_id=plan.id,
                invoice_number=record.invoice_number,
                completion_date=record.completion_date,
            )
        )


async def update_plan(session: AsyncSession, plan_id: str, **values) -> bool:
    if "discounts" in values:
        values["discounts"] = _dump_discounts(values["discounts"])
    result = await session.execute(update(flex_plans).where(flex_plans.c.id == plan_id).values(**values))
    return result.rowcount == 1


async def reactivate_plan(session: AsyncSession, plan_id: str, **values) -> bool:
    """active でないプランに限り更新する。"""
    result = await session.execute(
        update(flex_plans)
        .where(flex_plans.c.id == plan_id, flex_plans.c.status != "active")
        .values(status="active", **values)
    )
    return result.rowcount == 1


async def record_plan_order(
    session: AsyncSession,
    plan_id: str,
    record: OrderRecord,
    order_total: int,
    price_increase: int,
    discounts: list[Discount],
    next_text: datetime,
) -> bool:
    """
    課金成功後のプラン更新。

    請求書番号が履歴にまだ無い場合だけ適用されるので、同じ注文で
    二度呼ばれても集計は一度しか進まない。
    """
    already = (
        select(flex_plan_orders.c.id)
        .where(
            flex_plan_orders.c.plan_id == plan_id,
            flex_plan_orders.c.invoice_number == record.invoice_number,
        )
        .exists()
    )
    result = await session.execute(
        update(flex_plans)
        .where(flex_plans.c.id == plan_id, ~already)
        .values(
            total_orders=flex_plans.c.total_orders + 1,
            total_value=flex_plans.c.total_value + order_total,
            total_price=flex_plans.c.total_price + price_increase,
            discounts=_dump_discounts(discounts),
            next_text=next_text,
            next_order=None,
            rushed=False,
        )
    )
    if result.rowcount != 1:
        return False
    await session.execute(
        insert(flex_plan_orders).values(
            plan_id=plan_id,
            invoice_number=record.invoice_number,
            completion_date=record.completion_date,
        )
    )
    return True


async def delete_plan(session: AsyncSession, plan_id: str) -> bool:
    await session.execute(delete(flex_plan_orders).where(flex_plan_orders.c.plan_id == plan_id))
    result = await session.execute(delete(flex_plans).where(flex_plans.c.id == plan_id))
    return result.rowcount == 1


async def count_customer_plans(session: AsyncSession, customer_id: str) -> int:
    return await session.scalar(
        select(func.count()).select_from(flex_plans).where(flex_plans.c.customer_id == customer_id)
    )


async def find_due_plans(session: AsyncSession, now: datetime, limit: int) -> list[str]:
    result = await session.execute(
        select(flex_plans.c.id)
        .where(flex_plans.c.status == "active", flex_plans.c.next_order <= now)
        .order_by(flex_plans.c.next_order)
        .limit(limit)
    )
    return [row.id for row in result.fetchall()]


async def claim_plan(session: AsyncSession, plan_id: str, now: datetime) -> bool:
    """
    次回注文日時を消してプランを確保する。

    同時に走るスケジューラのうち、この UPDATE が 1 行に当たった
    1 つだけが処理権を得る。
    """
    result = await session.execute(
        update(flex_plans)
        .where(
            flex_plans.c.id == plan_id,
            flex_plans.c.status == "active",
            flex_plans.c.next_order <= now,
        )
        .values(next_order=None)
    )
    return result.rowcount == 1


async def release_plan_claim(session: AsyncSession, plan_id: str, next_order: datetime) -> bool:
    """確保したまま処理できなかったプランを、次のティックで再び拾えるよう戻す。"""
    result = await session.execute(
        update(flex_plans)
        .where(
            flex_plans.c.id == plan_id,
            flex_plans.c.status == "active",
            flex_plans.c.next_order.is_(None),
            flex_plans.c.next_text.is_(None),
        )
        .values(next_order=next_order)
    )
    return result.rowcount == 1
