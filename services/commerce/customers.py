"""Commerce Service — 顧客クレジット"""

import structlog
from sqlalchemy.orm import sessionmaker

from . import store
from .errors import CustomerNotFound
from .events import DomainEvent, cents_to_dollars
from .notifications import Notifier

logger = structlog.get_logger(__name__)


async def credit_customer(
    session_factory: sessionmaker,
    notifier: Notifier,
    customer_id: str,
    credit: int,
    source: str | None = None,
) -> int:
    """
    顧客のクレジット残高を credit (負なら減額) だけ調整し、新しい残高を返す。
    残高は 0 で下げ止まる。
    """
    async with session_factory() as session, session.begin():
        customer = await store.get_customer(session, customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        balance = await store.adjust_credit(session, customer_id, credit)
    if balance is None:
        raise CustomerNotFound(customer_id)

    applied = balance - customer.credit
    if applied == 0:
        logger.warning("credit_unchanged", customer_id=customer_id, credit=credit)
        return balance

    notifier.publish(
        DomainEvent(
            type="customer",
            action="credit" if credit > 0 else "debit",
            customer_id=customer_id,
            source=source,
            properties={"credit": cents_to_dollars(applied)},
        )
    )
    return balance
