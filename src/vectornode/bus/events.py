from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    KB_CREATED = "KB_CREATED"
    CONTEXT_CREATED = "CONTEXT_CREATED"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A row-insert notification. Self-contained: handlers need no follow-up read.

    Wire format:
      {"type":"KB_CREATED","id":"<kb_id>","content":"<text>"}
      {"type":"CONTEXT_CREATED","id":"<ctx_id>","kb_id":"<kb_id>","text_chunk":"<text>"}
    """

    type: EventType
    id: str
    text: str
    kb_id: str | None = None

    @classmethod
    def kb_created(cls, kb_id: str, content: str) -> "ChangeEvent":
        return cls(type=EventType.KB_CREATED, id=kb_id, text=content, kb_id=kb_id)

    @classmethod
    def context_created(cls, context_id: str, kb_id: str, text: str) -> "ChangeEvent":
        return cls(type=EventType.CONTEXT_CREATED, id=context_id, text=text, kb_id=kb_id)

    def to_payload(self) -> dict[str, Any]:
        if self.type is EventType.KB_CREATED:
            return {"type": self.type.value, "id": self.id, "content": self.text}
        return {"type": self.type.value, "id": self.id, "kb_id": self.kb_id, "text_chunk": self.text}

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent | None":
        """Decode a wire payload. Unknown types and malformed payloads yield None."""
        try:
            etype = EventType(payload.get("type"))
        except ValueError:
            logger.warning("Ignoring event with unknown type: %r", payload.get("type"))
            return None
        event_id = payload.get("id")
        if not event_id:
            logger.warning("Ignoring %s event without id", etype.value)
            return None
        if etype is EventType.KB_CREATED:
            return cls.kb_created(str(event_id), str(payload.get("content") or ""))
        kb_id = payload.get("kb_id")
        if not kb_id:
            logger.warning("Ignoring CONTEXT_CREATED %s without kb_id", event_id)
            return None
        return cls.context_created(str(event_id), str(kb_id), str(payload.get("text_chunk") or ""))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ChangeEvent | None":
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-JSON event payload")
            return None
        if not isinstance(payload, dict):
            return None
        return cls.from_payload(payload)
