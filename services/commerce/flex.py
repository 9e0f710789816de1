"""
Commerce Service — Flex プランのライフサイクル

定期購入 (Flex プラン) の状態遷移:

  active ──pause──▶ paused ──resume──▶ active
  active ──skip───▶ active (次回リマインド日を延ばす)
  active/paused ──cancel──▶ (削除)

次回のタイミングは 2 つのマーカーで表す。同時に立つことはない。
  next_text  … リマインド予定日時 (通常のサイクル)
  next_order … 課金予定日時 (スケジューラが拾う)

課金失敗時は顧客の failed_flex を +1 し、しきい値に達したら一時停止、
未満なら数日後の next_order を立てて再試行させる。
"""

from collections.abc import Sequence
from uuid import uuid4

import structlog
from sqlalchemy.orm import sessionmaker

from . import store
from .config import Settings
from .discounts import normalize_mult_value
from .errors import (
    ChargeFailed,
    CustomerNotFound,
    OrderNotCancelable,
    PaymentProfileMissing,
    PlanNotFound,
    PlanNotResumable,
)
from .events import DomainEvent, cents_to_dollars
from .models import Customer, Discount, FlexPlan, Order, OrderRecord, days_from, utc_now
from .notifications import Notifier
from .orders import FulfillmentDelay, OrderProcessor, OrderRequest
from .refunds import OrderReversals

logger = structlog.get_logger(__name__)

FLEX_ORDER_TYPE = "Flex"
TRIAL_TO_FLEX = "TrialToFlex"
CANCEL_REASON = "Canceled Plan"


def klaviyo_order_summary(order: Order) -> dict:
    """Flex 開始メール用の注文サマリー (金額はドル)。"""
    return {
        "invoiceNumber": order.invoice_number,
        "customerInfo": order.customer_info,
        "items": [
            {
                "name": item.name,
                "quantity": item.quantity,
                "price": cents_to_dollars(item.price),
                "totalPrice": cents_to_dollars(item.total_price),
            }
            for item in order.items
        ],
        "discounts": [{"code": d.code, "amount": cents_to_dollars(d.amount)} for d in order.discounts],
        "paid": {
            "subtotal": cents_to_dollars(order.paid.subtotal),
            "shipping": cents_to_dollars(order.paid.shipping),
            "discountTotal": cents_to_dollars(order.paid.discount_total),
            "total": cents_to_dollars(order.paid.total),
        },
    }


def first_fulfillment_delay(customer: Customer) -> FulfillmentDelay | None:
    # 急ぎ指定の顧客は即日発送、それ以外は 1 日置く
    return None if customer.rushed else FulfillmentDelay(duration=1)


class FlexPlanManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        orders: OrderProcessor,
        reversals: OrderReversals,
        notifier: Notifier,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.orders = orders
        self.reversals = reversals
        self.notifier = notifier
        self.settings = settings

    def next_cycle(self, days: int | None = None):
        return days_from(utc_now(), self.settings.flex_cadence_days if days is None else days, self.settings.reminder_hour)

    async def _load(self, plan_id: str) -> FlexPlan:
        async with self.session_factory() as session:
            plan = await store.get_plan(session, plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        if not plan.customer_id:
            raise PlanNotFound(plan_id, reason="no customer set on plan")
        return plan

    # ── 課金サイクル ─────────────────────────────

    async def process(self, plan_id: str, source: str | None = None) -> Order:
        """プランの定期注文を 1 回分処理する。"""
        plan = await self._load(plan_id)
        discounts = [
            d.model_copy(update={"value": normalize_mult_value(d)}) if d.discount_type == "mult" else d
            for d in plan.discounts
        ]
        request = OrderRequest(
            customer_id=plan.customer_id,
            items=plan.items,
            order_type=FLEX_ORDER_TYPE,
            address=plan.shipping_address,
            source=source,
            discounts=discounts,
            shipping=plan.shipping_price,
            order_context={
                "orderPath": "Flex Order",
                "flexOrderCount": len(plan.orders) + 1,
                "flexTotalValue": plan.total_value,
            },
        )

        log = logger.bind(plan_id=plan_id, customer_id=plan.customer_id)
        try:
            order = await self.orders.place_order(request)
        except ChargeFailed:
            log.warning("flex_charge_failed")
            await self._apply_charge_failure(plan)
            raise
        except Exception:
            log.exception("flex_order_failed")
            raise

        await self._record_success(plan, discounts, order)
        log.info("flex_order_processed", invoice_number=order.invoice_number, total=order.paid.total)
        return order

    async def _record_success(self, plan: FlexPlan, discounts: list[Discount], order: Order) -> None:
        # 一度きりの割引はプランから外し、その分を定価に戻す
        one_time_total = sum(
            d.amount or 0 for d in order.discounts if not d.flex and d.discount_type != "auto-generated"
        )
        kept = [d for d in discounts if d.flex]
        record = OrderRecord(invoice_number=order.invoice_number, completion_date=order.completion_date)

        async with self.session_factory() as session, session.begin():
            recorded = await store.record_plan_order(
                session,
                plan.id,
                record,
                order_total=order.paid.total,
                price_increase=one_time_total,
                discounts=kept,
                next_text=self.next_cycle(),
            )
            await store.update_customer(session, plan.customer_id, failed_flex=0)

        if not recorded:
            logger.warning("flex_order_already_recorded", plan_id=plan.id, invoice_number=order.invoice_number)
            return
        self.notifier.track(
            plan.email,
            "Flex Order",
            {"orderNumber": plan.total_orders + 1, "firstName": plan.first_name},
        )

    async def _apply_charge_failure(self, plan: FlexPlan) -> None:
        threshold = self.settings.flex_failure_threshold
        async with self.session_factory() as session, session.begin():
            failures = await store.increment_counter(session, plan.customer_id, "failed_flex")
            if failures < threshold:
                await store.update_plan(
                    session,
                    plan.id,
                    rushed=False,
                    next_order=days_from(utc_now(), self.settings.flex_retry_backoff_days),
                    next_text=None,
                )

        if failures >= threshold:
            logger.warning("flex_auto_pause", plan_id=plan.id, failures=failures)
            await self.pause(plan.id)
        else:
            logger.info("flex_retry_scheduled", plan_id=plan.id, failures=failures)

    # ── 状態遷移 ─────────────────────────────────

    async def pause(self, plan_id: str) -> FlexPlan:
        now = utc_now()
        async with self.session_factory() as session, session.begin():
            updated = await store.update_plan(
                session,
                plan_id,
                status="paused",
                paused_on=now,
                rushed=False,
                next_text=None,
                next_order=None,
            )
            if not updated:
                raise PlanNotFound(plan_id)
            plan = await store.get_plan(session, plan_id)

        logger.info("flex_paused", plan_id=plan_id)
        if plan.customer_id:
            self.notifier.publish(
                DomainEvent(
                    type="flex",
                    action="paused",
                    customer_id=plan.customer_id,
                    timestamp=now,
                    properties={"typeId": plan_id},
                )
            )
            self.notifier.track(plan.email, "Flex Paused")
            self.notifier.identify(plan.email, {"flexStatus": plan.status})
        return plan

    async def resume(self, plan_id: str) -> FlexPlan:
        now = utc_now()
        async with self.session_factory() as session, session.begin():
            resumed = await store.reactivate_plan(
                session,
                plan_id,
                resumed_on=now,
                next_text=self.next_cycle(),
                next_order=None,
            )
            if not resumed:
                raise PlanNotResumable(plan_id)
            plan = await store.get_plan(session, plan_id)
            customer = await store.get_customer(session, plan.customer_id) if plan.customer_id else None
            if customer is None:
                raise CustomerNotFound(plan.customer_id)
            if customer.customer_type == TRIAL_TO_FLEX and customer.converted_flex is None:
                await store.update_customer(
                    session,
                    customer.id,
                    converted_flex=plan.started,
                    no_followup=None,
                    flex_followup=None,
                    start_flex=None,
                )

        logger.info("flex_resumed", plan_id=plan_id)
        self.notifier.publish(
            DomainEvent(
                type="flex",
                action="resumed",
                customer_id=customer.id,
                timestamp=now,
                properties={"typeId": plan_id},
            )
        )
        self.notifier.track(plan.email, "Flex Resumed")
        self.notifier.identify(plan.email, {"flexStatus": plan.status})
        return plan

    async def skip(self, plan_id: str, duration_days: int | None = None) -> FlexPlan:
        days = self.settings.flex_cadence_days if duration_days is None else duration_days
        async with self.session_factory() as session, session.begin():
            updated = await store.update_plan(
                session,
                plan_id,
                next_text=self.next_cycle(days),
                status="active",
                next_order=None,
            )
            if not updated:
                raise PlanNotFound(plan_id)
            plan = await store.get_plan(session, plan_id)

        logger.info("flex_skipped", plan_id=plan_id, days=days)
        self.notifier.publish(
            DomainEvent(
                type="flex",
                action="skipped",
                customer_id=plan.customer_id,
                properties={"typeId": plan_id, "daysSkipped": days},
            )
        )
        return plan

    async def cancel(self, plan_id: str) -> Customer | None:
        """
        プランを解約する。

        直近の注文はキャンセルし、発送済みなどでキャンセルできなければ返金する。
        トライアルから移行した顧客のプランが無くなった場合は、
        移行自体の取り消しとして扱う。
        """
        plan = await self._load(plan_id)

        if plan.orders:
            latest = plan.orders[-1].invoice_number
            try:
                await self.reversals.cancel(latest, reason=CANCEL_REASON)
            except OrderNotCancelable:
                await self.reversals.refund(latest, reason=CANCEL_REASON)

        now = utc_now()
        async with self.session_factory() as session, session.begin():
            await store.delete_plan(session, plan.id)
            customer = await store.get_customer(session, plan.customer_id)
            remaining = await store.count_customer_plans(session, plan.customer_id)
            conversion_canceled = (
                customer is not None and customer.customer_type == TRIAL_TO_FLEX and remaining == 0
            )
            if conversion_canceled:
                await store.update_customer(
                    session,
                    customer.id,
                    no_followup=now,
                    converted_flex=None,
                    flex_followup=None,
                    start_flex=None,
                )
                customer = await store.get_customer(session, customer.id)

        logger.info("flex_canceled", plan_id=plan_id, conversion_canceled=conversion_canceled)
        if conversion_canceled:
            self.notifier.publish(
                DomainEvent(type="trial", action="conversion_canceled", customer_id=customer.id, timestamp=now)
            )
        self.notifier.track(plan.email, "CANCELED Flex Conversion")
        self.notifier.identify(plan.email, {"flexStatus": "canceledConversion"})
        return customer

    # ── 新規作成 ─────────────────────────────────

    async def open_plan(
        self,
        customer: Customer,
        order: Order,
        source: str | None,
        discounts: Sequence[Discount],
        total_price: int,
        **customer_updates,
    ) -> FlexPlan:
        """初回注文からプランを作り、顧客側の更新と同じトランザクションで保存する。"""
        plan = FlexPlan(
            id=str(uuid4()),
            customer_id=customer.id,
            email=customer.email,
            first_name=customer.first_name,
            last_name=customer.last_name,
            phone=customer.phone,
            items=[item.model_dump(mode="json") for item in order.items],
            discounts=list(discounts),
            shipping_address=customer.shipping_address,
            total_price=total_price,
            status="active",
            next_text=self.next_cycle(),
            started=order.completion_date,
            source=source,
            total_orders=1,
            total_value=order.paid.total,
            orders=[OrderRecord(invoice_number=order.invoice_number, completion_date=order.completion_date)],
        )
        async with self.session_factory() as session, session.begin():
            await store.insert_plan(session, plan)
            if customer_updates:
                await store.update_customer(session, customer.id, **customer_updates)
        logger.info("flex_plan_opened", plan_id=plan.id, customer_id=customer.id, invoice_number=order.invoice_number)
        return plan

    async def create(
        self,
        customer_id: str,
        items: list[dict],
        discounts: Sequence[Discount] = (),
        source: str | None = None,
    ) -> FlexPlan:
        """初回の Flex 注文を出してプランを開始する。"""
        async with self.session_factory() as session:
            customer = await store.get_customer(session, customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        if not customer.payment_token:
            raise PaymentProfileMissing(customer_id)

        order = await self.orders.place_order(
            OrderRequest(
                customer_id=customer_id,
                items=items,
                order_type=FLEX_ORDER_TYPE,
                address=customer.shipping_address,
                source=source,
                discounts=list(discounts),
                fulfillment_delay=first_fulfillment_delay(customer),
                order_context={"orderPath": "Flex Order", "flexOrderCount": 1},
            )
        )
        total_price = order.paid.shipping + sum(item.total_price for item in order.items)
        plan = await self.open_plan(
            customer,
            order,
            source,
            order.discounts,
            total_price,
            converted_flex=utc_now(),
            flex_followup=None,
            start_flex=None,
        )

        self.notifier.identify(plan.email, {"flexStatus": plan.status})
        self.notifier.track(plan.email, "Flex Converted", klaviyo_order_summary(order))
        self.notifier.publish(
            DomainEvent(
                type="flex",
                action="created",
                customer_id=customer_id,
                timestamp=plan.started,
                properties={"typeId": plan.id},
            )
        )
        return plan
