"""In-memory sink adapters that record calls for test assertions."""

from ..events import DomainEvent
from ..models import Customer, Order
from .port import AnalyticsClient, ChatClient, EventPublisher, MarketingClient


class _Configurable:
    def __init__(self) -> None:
        self.should_succeed = True
        self.failure_reason = "sink unavailable"

    def configure(self, should_succeed: bool = True, failure_reason: str = "sink unavailable") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def _check(self) -> None:
        if not self.should_succeed:
            raise ConnectionError(self.failure_reason)


class FakeEventPublisher(_Configurable, EventPublisher):
    def __init__(self) -> None:
        super().__init__()
        self.published: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self._check()
        self.published.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.published]


class FakeMarketingClient(_Configurable, MarketingClient):
    def __init__(self) -> None:
        super().__init__()
        self.tracked: list[dict] = []
        self.identified: list[dict] = []

    async def track_event(self, email: str, name: str, properties: dict) -> None:
        self._check()
        self.tracked.append({"email": email, "event": name, "properties": properties})

    async def identify(self, email: str, properties: dict) -> None:
        self._check()
        self.identified.append({"email": email, "properties": properties})

    def event_names(self) -> list[str]:
        return [call["event"] for call in self.tracked]


class FakeChatClient(_Configurable, ChatClient):
    def __init__(self) -> None:
        super().__init__()
        self.messages: list[dict] = []

    async def post_message(self, channel: str, text: str) -> None:
        self._check()
        self.messages.append({"channel": channel, "text": text})


class FakeAnalyticsClient(_Configurable, AnalyticsClient):
    def __init__(self) -> None:
        super().__init__()
        self.collected: list[str] = []

    async def collect_order(self, customer: Customer, order: Order) -> None:
        self._check()
        self.collected.append(order.invoice_number)
