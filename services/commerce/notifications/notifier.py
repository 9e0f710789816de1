"""
Commerce Service — 通知ディスパッチ

イベントバス・Klaviyo・Slack・Google Analytics への送信は
すべて fire-and-forget で行う。送信はバックグラウンドタスクとして走り、
失敗はログに残すだけで呼び出し元には伝えない。
"""

import asyncio
from collections.abc import Awaitable

import structlog

from ..events import DomainEvent
from ..models import Customer, Order
from .port import AnalyticsClient, ChatClient, EventPublisher, MarketingClient

logger = structlog.get_logger(__name__)


class Notifier:
    def __init__(
        self,
        events: EventPublisher,
        marketing: MarketingClient,
        chat: ChatClient,
        analytics: AnalyticsClient,
    ):
        self.events = events
        self.marketing = marketing
        self.chat = chat
        self.analytics = analytics
        self._pending: set[asyncio.Task] = set()

    def _spawn(self, coro: Awaitable, sink: str, **context) -> None:
        async def run() -> None:
            try:
                await coro
            except Exception:
                logger.exception("notification_failed", sink=sink, **context)

        task = asyncio.get_running_loop().create_task(run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def publish(self, event: DomainEvent) -> None:
        self._spawn(self.events.publish(event), "events", event_name=event.name)

    def track(self, email: str | None, name: str, properties: dict | None = None) -> None:
        if not email:
            logger.warning("marketing_track_skipped", event_name=name, reason="no email")
            return
        self._spawn(self.marketing.track_event(email, name, properties or {}), "marketing", event_name=name)

    def identify(self, email: str | None, properties: dict) -> None:
        if not email:
            return
        self._spawn(self.marketing.identify(email, properties), "marketing", event_name="identify")

    def post_chat(self, channel: str, text: str) -> None:
        self._spawn(self.chat.post_message(channel, text), "chat", channel=channel)

    def collect_order(self, customer: Customer, order: Order) -> None:
        self._spawn(
            self.analytics.collect_order(customer, order),
            "analytics",
            invoice_number=order.invoice_number,
        )

    async def drain(self) -> None:
        """未完了の送信タスクをすべて待つ (シャットダウン時・テスト用)。"""
        while self._pending:
            await asyncio.gather(*list(self._pending))
