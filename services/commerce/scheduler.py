"""
Commerce Service — 定期ディスパッチ

外部の定期トリガー (cron など) から呼ばれる。
同じ時刻に複数のスケジューラが走っても、条件付き UPDATE で
確保できたプロセスだけが処理するので、1 つのプランが二重に課金されることはない。

  1. 期限の来たプランを最大 N 件探す
  2. 1 件ずつ確保 (next_order を消す UPDATE の rowcount == 1 なら自分のもの)
  3. 確保できたものを順に処理 (失敗はログに残して次へ)
  4. 課金前のエラーで終わったプランは next_order を戻し、次のティックで再処理する
"""

from collections.abc import Awaitable, Callable
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import store
from .config import Settings
from .errors import ChargeFailed, CommerceError
from .flex import FlexPlanManager
from .models import utc_now
from .trials import TrialManager

logger = structlog.get_logger(__name__)

SCHEDULER_SOURCE = "CRM"

Claim = Callable[[AsyncSession, str, datetime], Awaitable[bool]]


class Scheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        flex: FlexPlanManager,
        trials: TrialManager,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.flex = flex
        self.trials = trials
        self.settings = settings

    async def _claim_all(self, kind: str, candidates: list[str], claim: Claim, now: datetime) -> list[str]:
        claimed = []
        for key in candidates:
            try:
                async with self.session_factory() as session, session.begin():
                    won = await claim(session, key, now)
            except SQLAlchemyError:
                logger.exception("claim_failed", kind=kind, key=key)
                continue
            if won:
                claimed.append(key)
            else:
                logger.info("claim_lost", kind=kind, key=key)
        return claimed

    async def schedule_flex_orders(self) -> list[str]:
        now = utc_now()
        async with self.session_factory() as session:
            due = await store.find_due_plans(session, now, self.settings.scheduler_batch_size)

        claimed = await self._claim_all("flex_plan", due, store.claim_plan, now)
        logger.info("flex_orders_claimed", due=len(due), claimed=len(claimed))

        for plan_id in claimed:
            try:
                await self.flex.process(plan_id, source=SCHEDULER_SOURCE)
            except ChargeFailed:
                # 失敗回数とリトライ日時は process 側で記録済み
                logger.warning("scheduled_flex_charge_failed", plan_id=plan_id)
            except CommerceError:
                logger.exception("scheduled_flex_order_failed", plan_id=plan_id)
                await self._release_plan(plan_id, now)
            except Exception:
                # 課金済みかどうか分からないので確保は戻さない
                logger.exception("scheduled_flex_order_failed", plan_id=plan_id, released=False)
        return claimed

    async def _release_plan(self, plan_id: str, now: datetime) -> None:
        try:
            async with self.session_factory() as session, session.begin():
                released = await store.release_plan_claim(session, plan_id, now)
        except SQLAlchemyError:
            logger.exception("claim_release_failed", kind="flex_plan", key=plan_id)
            return
        logger.info("claim_released", kind="flex_plan", key=plan_id, released=released)

    async def schedule_trial_conversions(self) -> list[str]:
        now = utc_now()
        async with self.session_factory() as session:
            due = await store.find_due_trial_customers(session, now, self.settings.scheduler_batch_size)

        claimed = await self._claim_all("trial", due, store.claim_trial_conversion, now)
        logger.info("trial_conversions_claimed", due=len(due), claimed=len(claimed))

        for customer_id in claimed:
            try:
                await self.trials.convert(customer_id, source=SCHEDULER_SOURCE)
            except Exception:
                logger.exception("scheduled_trial_conversion_failed", customer_id=customer_id)
        return claimed
