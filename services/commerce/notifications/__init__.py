"""Fire-and-forget notification sinks."""

from .notifier import Notifier
from .port import AnalyticsClient, ChatClient, EventPublisher, MarketingClient

__all__ = ["AnalyticsClient", "ChatClient", "EventPublisher", "MarketingClient", "Notifier"]
