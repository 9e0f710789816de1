"""
Commerce Service — 返金・キャンセル

返金額は「支払総額 − 成功済み返金の合計」を超えられない。
超過はゲートウェイを呼ぶ前に拒否する。
"""

import structlog
from sqlalchemy.orm import sessionmaker

from . import store
from .errors import OrderNotCancelable, OrderNotFound, RefundExceedsOrder, RefundFailed
from .events import DomainEvent, cents_to_dollars
from .gateway import PaymentGateway
from .models import Refund, utc_now
from .notifications import Notifier

logger = structlog.get_logger(__name__)


class OrderReversals:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        notifier: Notifier,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier

    async def refund(self, invoice_number: str, reason: str = "", amount: int = 0) -> Refund | None:
        """
        注文を返金する。

        amount を省略 (0) すると残額をすべて返金し、顧客の注文数も 1 減らす。
        部分返金では累計金額だけを減らす。返金する残額が無ければ None。
        """
        async with self.session_factory() as session:
            order = await store.get_order(session, invoice_number)
        if order is None:
            raise OrderNotFound(invoice_number)

        prior = sum(r.amount for r in order.refunds if r.status == "succeeded")
        refundable = order.paid.total - prior
        to_refund = amount if amount > 0 else refundable
        if to_refund > refundable:
            raise RefundExceedsOrder(invoice_number, to_refund, refundable)
        if to_refund <= 0:
            logger.info("refund_nothing_to_refund", invoice_number=invoice_number, prior=prior)
            return None
        if not order.charge_id:
            raise RefundFailed(f"Order {invoice_number} has no charge to refund", key=invoice_number)

        receipt = await self.gateway.refund(order.charge_id, to_refund, reason)
        refund = Refund(
            amount=receipt.amount,
            reason=reason,
            refund_id=receipt.refund_id,
            status=receipt.status,
            refund_date=utc_now(),
        )

        async with self.session_factory() as session, session.begin():
            await store.insert_refund(session, order.id, refund)
            await store.adjust_customer_totals(
                session,
                order.customer_id,
                value_delta=-refund.amount,
                orders_delta=0 if amount > 0 else -1,
            )

        logger.info("order_refunded", invoice_number=invoice_number, amount=refund.amount, partial=amount > 0)
        self.notifier.publish(
            DomainEvent(
                type="order",
                action="refunded",
                customer_id=order.customer_id,
                properties={
                    "typeId": order.id,
                    "invoiceNumber": invoice_number,
                    "refundAmount": cents_to_dollars(refund.amount),
                    "refundReason": reason,
                },
            )
        )
        return refund

    async def cancel(self, invoice_number: str, reason: str = "Canceled Order") -> Refund | None:
        """発送前の注文をキャンセルして全額返金する。"""
        async with self.session_factory() as session, session.begin():
            canceled = await store.mark_order_canceled(session, invoice_number)
        if not canceled:
            raise OrderNotCancelable(invoice_number)

        logger.info("order_canceled", invoice_number=invoice_number, reason=reason)
        try:
            return await self.refund(invoice_number, reason)
        except Exception as e:
            raise RefundFailed(
                f"Order {invoice_number} has been canceled but the refund failed: {e}",
                key=invoice_number,
            ) from e
