"""
Commerce Service — コンポーネントの組み立て

依存関係はすべてコンストラクタ引数で渡す。
HTTP アプリ・テストはここで作ったまとまりを使う。
"""

from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from .config import Settings
from .flex import FlexPlanManager
from .gateway import PaymentGateway
from .notifications import Notifier
from .orders import OrderProcessor
from .refunds import OrderReversals
from .scheduler import Scheduler
from .trials import TrialManager


@dataclass
class Components:
    settings: Settings
    session_factory: sessionmaker
    gateway: PaymentGateway
    notifier: Notifier
    orders: OrderProcessor
    reversals: OrderReversals
    flex: FlexPlanManager
    trials: TrialManager
    scheduler: Scheduler


def build_components(
    settings: Settings,
    session_factory: sessionmaker,
    gateway: PaymentGateway,
    notifier: Notifier,
) -> Components:
    orders = OrderProcessor(session_factory, gateway, notifier, settings)
    reversals = OrderReversals(session_factory, gateway, notifier)
    flex = FlexPlanManager(session_factory, orders, reversals, notifier, settings)
    trials = TrialManager(session_factory, orders, flex, notifier, settings)
    scheduler = Scheduler(session_factory, flex, trials, settings)
    return Components(
        settings=settings,
        session_factory=session_factory,
        gateway=gateway,
        notifier=notifier,
        orders=orders,
        reversals=reversals,
        flex=flex,
        trials=trials,
        scheduler=scheduler,
    )
