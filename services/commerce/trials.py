"""
Commerce Service — トライアルから Flex への移行

トライアル顧客 (customer_type = TrialToFlex) は start_flex の日時に
自動で初回 Flex 注文を出し、プランを開始する。

  課金失敗   … failed_start +1。しきい値に達したらフォローアップ終了、
               未満なら数日後に再試行
  その他失敗 … 数日後に再試行
"""

import structlog
from sqlalchemy.orm import sessionmaker

from . import store
from .config import Settings
from .errors import ChargeFailed, CustomerNotFound, PaymentProfileMissing, TrialConversionError
from .events import DomainEvent
from .flex import FLEX_ORDER_TYPE, FlexPlanManager, first_fulfillment_delay, klaviyo_order_summary
from .models import Customer, FlexPlan, days_from, utc_now
from .notifications import Notifier
from .orders import OrderProcessor, OrderRequest

logger = structlog.get_logger(__name__)

VARIETY_SAMPLER = "Variety Sampler"
VARIETY_SAMPLER_SKUS = ("pb-sampler", "mb-sampler", "sc-sampler", "cc-sampler")


def conversion_items(customer: Customer) -> list[dict]:
    """顧客の flex_default から初回注文の明細を作る。"""
    defaults = customer.flex_default
    if not defaults:
        raise TrialConversionError(f"Flex default not configured for customer {customer.id}", key=customer.id)

    if defaults[0].get("name") == VARIETY_SAMPLER:
        return [{"sku": sku, "quantity": 1} for sku in VARIETY_SAMPLER_SKUS]

    items = []
    for entry in defaults:
        sku = entry.get("sku") or entry.get("id")
        quantity = entry.get("quantity")
        if not sku or not quantity:
            raise TrialConversionError(
                f"Malformed flex default item encountered for customer {customer.id}", key=customer.id
            )
        items.append({"sku": sku, "quantity": quantity})
    return items


class TrialManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        orders: OrderProcessor,
        flex: FlexPlanManager,
        notifier: Notifier,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.orders = orders
        self.flex = flex
        self.notifier = notifier
        self.settings = settings

    def _retry_date(self):
        return days_from(utc_now(), self.settings.trial_retry_days, self.settings.reminder_hour)

    async def convert(self, customer_id: str, source: str | None = None) -> FlexPlan:
        async with self.session_factory() as session:
            customer = await store.get_customer(session, customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        if not customer.payment_token:
            raise PaymentProfileMissing(customer_id)

        request = OrderRequest(
            customer_id=customer_id,
            items=conversion_items(customer),
            order_type=FLEX_ORDER_TYPE,
            address=customer.shipping_address,
            source=source,
            fulfillment_delay=first_fulfillment_delay(customer),
            order_context={"orderPath": "Trial Conversion"},
        )

        try:
            order = await self.orders.place_order(request)
        except ChargeFailed:
            await self._apply_charge_failure(customer)
            raise
        except Exception:
            logger.exception("trial_conversion_failed", customer_id=customer_id)
            async with self.session_factory() as session, session.begin():
                await store.update_customer(session, customer_id, rushed=False, start_flex=self._retry_date())
            raise

        flex_discounts = [d for d in order.discounts if d.flex]
        total_price = order.paid.subtotal + order.paid.shipping - sum(d.amount or 0 for d in flex_discounts)
        plan = await self.flex.open_plan(
            customer,
            order,
            source,
            flex_discounts,
            total_price,
            rushed=False,
            flex_followup=None,
            no_followup=None,
            start_flex=None,
            converted_flex=utc_now(),
        )

        logger.info("trial_converted", customer_id=customer_id, plan_id=plan.id, invoice_number=order.invoice_number)
        self.notifier.publish(
            DomainEvent(type="trial", action="converted", customer_id=customer_id, timestamp=plan.started)
        )
        self.notifier.publish(
            DomainEvent(
                type="flex",
                action="created",
                customer_id=customer_id,
                timestamp=plan.started,
                properties={"typeId": plan.id},
            )
        )
        self.notifier.identify(customer.email, {"flexStatus": plan.status})
        self.notifier.track(customer.email, "Flex Converted", klaviyo_order_summary(order))
        return plan

    async def _apply_charge_failure(self, customer: Customer) -> None:
        async with self.session_factory() as session, session.begin():
            failures = await store.increment_counter(session, customer.id, "failed_start", rushed=False)
            if failures >= self.settings.trial_failure_threshold:
                await store.update_customer(
                    session,
                    customer.id,
                    no_followup=utc_now(),
                    start_flex=None,
                    flex_followup=None,
                )
            else:
                await store.update_customer(session, customer.id, start_flex=self._retry_date())

        if failures >= self.settings.trial_failure_threshold:
            logger.warning("trial_followup_stopped", customer_id=customer.id, failures=failures)
        else:
            logger.info("trial_retry_scheduled", customer_id=customer.id, failures=failures)

    async def skip(self, customer_id: str, duration_days: int = 28) -> Customer:
        async with self.session_factory() as session, session.begin():
            updated = await store.update_customer(
                session,
                customer_id,
                flex_followup=days_from(utc_now(), duration_days, self.settings.reminder_hour),
                start_flex=None,
                no_followup=None,
            )
            if not updated:
                raise CustomerNotFound(customer_id)
            customer = await store.get_customer(session, customer_id)

        self.notifier.publish(
            DomainEvent(
                type="trial",
                action="skipped",
                customer_id=customer_id,
                properties={"daysSkipped": duration_days},
            )
        )
        return customer

    async def cancel(self, customer_id: str) -> Customer:
        now = utc_now()
        async with self.session_factory() as session, session.begin():
            updated = await store.update_customer(
                session,
                customer_id,
                no_followup=now,
                start_flex=None,
                flex_followup=None,
            )
            if not updated:
                raise CustomerNotFound(customer_id)
            customer = await store.get_customer(session, customer_id)

        self.notifier.publish(
            DomainEvent(
                type="trial",
                action="canceled",
                customer_id=customer_id,
                timestamp=now,
                properties={"typeId": customer_id},
            )
        )
        self.notifier.track(customer.email, "Trial Canceled")
        self.notifier.identify(customer.email, {"flexStatus": "canceledTrial"})
        return customer
