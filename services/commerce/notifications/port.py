"""Notification sink ports: event bus, marketing, chat and analytics."""

from abc import ABC, abstractmethod

from ..events import DomainEvent
from ..models import Customer, Order


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event: DomainEvent) -> None: ...


class MarketingClient(ABC):
    @abstractmethod
    async def track_event(self, email: str, name: str, properties: dict) -> None: ...

    @abstractmethod
    async def identify(self, email: str, properties: dict) -> None: ...


class ChatClient(ABC):
    @abstractmethod
    async def post_message(self, channel: str, text: str) -> None: ...


class AnalyticsClient(ABC):
    @abstractmethod
    async def collect_order(self, customer: Customer, order: Order) -> None: ...
