"""Message bus client library for inter-service communication."""

from shared.bus.publisher import EventPublisher
from shared.bus.subscriber import EventSubscriber, MessageHandler
from shared.bus.topics import Topics

__all__ = ["EventPublisher", "EventSubscriber", "MessageHandler", "Topics"]
