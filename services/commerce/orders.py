"""
Commerce Service — 注文トランザクション

注文の作成と課金を 1 つのトランザクションで行う。

  ┌──────────────────────────────────────────────────────┐
  │  BEGIN                                               │
  │   1. 顧客を取得 (決済トークン必須)                    │
  │   2. カートを組み立てる                              │
  │   3. 請求書番号を採番 (カウンタを原子的に +1)         │
  │   4. 注文を INSERT (発送ステータス Pending)           │
  │   5. クレジットを差し引く (残高条件付き UPDATE)        │
  │   6. 決済ゲートウェイで課金  ← 最後の文               │
  │  COMMIT  (課金失敗ならここまで全部ロールバック)        │
  └──────────────────────────────────────────────────────┘

課金は取り消せない外部作用なので、トランザクション内の最後に置く。
課金 ID の紐付け・顧客集計・通知はコミット後に行い、失敗しても
注文そのものは有効なまま残す。
"""

from typing import Literal
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import store
from .cart import build_cart
from .config import Settings
from .errors import ChargeFailed, CreditUnavailable, CustomerNotFound, PaymentProfileMissing
from .events import DomainEvent, cents_to_dollars, order_placed_event
from .gateway import Charge, PaymentGateway
from .models import Customer, Discount, Order, Shipping, days_from, utc_now
from .notifications import Notifier

logger = structlog.get_logger(__name__)


class FulfillmentDelay(BaseModel):
    duration: int
    duration_unit: Literal["day", "days"] = "days"


class OrderRequest(BaseModel):
    customer_id: str
    items: list[dict]
    order_type: str
    source: str | None = None
    discounts: list[Discount] = Field(default_factory=list)
    shipping: int | None = None
    address: dict | None = None
    fulfillment_delay: FulfillmentDelay | None = None
    order_context: dict = Field(default_factory=dict)


def customer_snapshot(customer: Customer, address: dict | None) -> dict:
    """注文時点の顧客情報。配送先の氏名が空なら顧客の氏名で補う。"""
    shipping_address = dict(address or customer.shipping_address or {})
    shipping_address["first_name"] = shipping_address.get("first_name") or customer.first_name
    shipping_address["last_name"] = shipping_address.get("last_name") or customer.last_name
    return {
        "customer_type": customer.customer_type,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "phone": customer.phone,
        "email": customer.email,
        "address": shipping_address,
    }


async def record_placed_order(session_factory: sessionmaker, order: Order) -> bool:
    """
    注文を顧客の集計 (注文数・累計金額・履歴) に反映する。

    同じ請求書番号で二度呼ばれても 2 回目は何もしない。
    """
    async with session_factory() as session, session.begin():
        updated = await store.record_customer_order(
            session,
            order.customer_id,
            order.invoice_number,
            order.completion_date,
            order.paid.total,
            utc_now(),
        )
    if updated:
        logger.info("customer_order_recorded", customer_id=order.customer_id, invoice_number=order.invoice_number)
    else:
        logger.warning(
            "customer_order_not_recorded",
            customer_id=order.customer_id,
            invoice_number=order.invoice_number,
            reason="customer not found or order already recorded",
        )
    return updated


class OrderProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        notifier: Notifier,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings

    async def place_order(self, request: OrderRequest) -> Order:
        customer: Customer | None = None
        charge: Charge | None = None

        async with self.session_factory() as session:
            try:
                async with session.begin():
                    customer = await store.get_customer(session, request.customer_id)
                    if customer is None:
                        raise CustomerNotFound(request.customer_id)
                    if not customer.payment_token:
                        raise PaymentProfileMissing(customer.id)

                    order = await self._create_order(session, customer, request)

                    if order.paid.credit_used > 0:
                        debited = await store.debit_credit(session, customer.id, order.paid.credit_used)
                        if not debited:
                            raise CreditUnavailable(customer.id, order.paid.credit_used)

                    if order.paid.total >= self.settings.minimum_order_total:
                        charge = await self.gateway.charge(
                            customer.payment_token,
                            order.paid.total,
                            description=order.invoice_number,
                            idempotency_key=f"{order.invoice_number}-{order.id}",
                            metadata={"invoiceNumber": order.invoice_number},
                        )
            except ChargeFailed as e:
                # ロールバック済み。失敗決済のワークフローを起動して再送出する
                logger.warning(
                    "order_charge_failed",
                    customer_id=request.customer_id,
                    outcome_unknown=e.outcome_unknown,
                    error=str(e),
                )
                self.notifier.publish(
                    DomainEvent(
                        type="customer",
                        action="failed_payment",
                        customer_id=customer.id,
                        source=request.source,
                        properties={
                            **request.order_context,
                            "wasRushed": customer.rushed,
                            "orderType": request.order_type,
                        },
                    )
                )
                raise
            except SQLAlchemyError:
                # 課金後のコミット失敗は注文のない課金が残る。突き合わせ用に charge_id を残す
                if charge is not None:
                    logger.exception(
                        "order_commit_failed_after_charge",
                        charge_id=charge.charge_id,
                        invoice_number=order.invoice_number,
                        customer_id=request.customer_id,
                        amount=charge.amount,
                    )
                raise

        if charge is not None:
            order = await self._attach_charge(order, charge)

        logger.info(
            "order_placed",
            invoice_number=order.invoice_number,
            customer_id=order.customer_id,
            order_type=order.order_type,
            total=order.paid.total,
        )
        await self._after_placed(customer, order, request)
        return order

    async def _create_order(self, session: AsyncSession, customer: Customer, request: OrderRequest) -> Order:
        cart = await build_cart(
            session,
            self.settings,
            items=request.items,
            customer=customer,
            order_type=request.order_type,
            source=request.source,
            discounts=request.discounts,
            shipping=request.shipping,
        )
        now = utc_now()
        ship_date = days_from(now, request.fulfillment_delay.duration) if request.fulfillment_delay else now
        invoice_number = await store.allocate_invoice_number(session)

        order = Order(
            id=str(uuid4()),
            invoice_number=invoice_number,
            customer_id=customer.id,
            customer_info=customer_snapshot(customer, request.address),
            items=list(cart.items),
            order_type=cart.order_type,
            source=cart.source,
            discounts=list(cart.discounts),
            paid=cart.paid,
            completion_date=now,
            shipping=Shipping(ship_date=ship_date),
        )
        await store.insert_order(session, order)
        return order

    async def _attach_charge(self, order: Order, charge: Charge) -> Order:
        try:
            async with self.session_factory() as session, session.begin():
                await store.set_charge_id(session, order.id, charge.charge_id)
        except SQLAlchemyError:
            logger.exception(
                "charge_attach_failed",
                invoice_number=order.invoice_number,
                charge_id=charge.charge_id,
            )
        return order.model_copy(update={"charge_id": charge.charge_id})

    async def _after_placed(self, customer: Customer, order: Order, request: OrderRequest) -> None:
        try:
            await record_placed_order(self.session_factory, order)
        except Exception:
            logger.exception(
                "customer_order_update_failed",
                customer_id=order.customer_id,
                invoice_number=order.invoice_number,
            )

        event = order_placed_event(order, request.order_context)
        self.notifier.publish(event)

        self.notifier.track(
            customer.email,
            "Placed Order",
            {
                **event.properties,
                "$value": event.properties["paid_total"],
                "$event_id": order.invoice_number,
                "crm": request.source == "CRM",
            },
        )
        self.notifier.collect_order(customer, order)

        channel = self.settings.slack_orders_channel
        if channel:
            info = order.customer_info
            self.notifier.post_chat(
                channel,
                f"Order {order.invoice_number} - {info.get('first_name')} {info.get('last_name')}. "
                f"{order.order_type}. ${cents_to_dollars(order.paid.total):.2f}",
            )
