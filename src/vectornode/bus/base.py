from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

from .events import ChangeEvent


@dataclass(slots=True)
class Delivery:
    """One received event plus the bookkeeping needed to ack or nack it."""

    event: ChangeEvent
    attempts: int = 0
    token: Any = None


def encode_envelope(event: ChangeEvent, attempts: int = 0) -> str:
    return json.dumps({"event": event.to_payload(), "attempts": attempts}, ensure_ascii=False)


def decode_envelope(raw: str | bytes) -> tuple[ChangeEvent | None, int]:
    try:
        env = json.loads(raw)
    except (TypeError, ValueError):
        return None, 0
    if not isinstance(env, dict) or not isinstance(env.get("event"), dict):
        return None, 0
    return ChangeEvent.from_payload(env["event"]), int(env.get("attempts") or 0)


class EventPublisher(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...


class ChangeBus(EventPublisher, Protocol):
    """Durable pub/sub of KB_CREATED / CONTEXT_CREATED with at-least-once delivery."""

    max_attempts: int

    async def receive(self, timeout: float = 1.0) -> Delivery | None: ...

    async def ack(self, delivery: Delivery) -> None: ...

    async def nack(self, delivery: Delivery, *, delay: float = 0.0) -> bool:
        """Return the event for redelivery. False means it was dead-lettered."""
        ...

    async def close(self) -> None: ...
