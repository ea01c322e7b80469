"""Change bus: durable pub/sub of row-insert events driving the ingestion pipeline."""

from .base import ChangeBus, Delivery, EventPublisher
from .events import ChangeEvent, EventType
from .memory import InMemoryChangeBus

__all__ = ["ChangeBus", "ChangeEvent", "Delivery", "EventPublisher", "EventType", "InMemoryChangeBus"]
