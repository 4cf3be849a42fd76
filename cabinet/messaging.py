"""Storage event fan-out.

Services publish facts such as ``files.created`` or ``shares.consumed`` after
the metadata change is committed; observers (the activity feed today) react
synchronously on the same loop. Observers must not raise into the publisher,
so delivery failures are logged and counted instead.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, DefaultDict, Dict, List

from .models import utcnow

logger = logging.getLogger(__name__)

Handler = Callable[["MessageEnvelope"], None]


@dataclass
class MessageEnvelope:
    topic: str
    payload: Dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)

    def mentions(self, user_id: str) -> bool:
        return user_id in (
            self.payload.get("owner_id"),
            self.payload.get("creator_id"),
            self.payload.get("user_id"),
        )


class InMemoryBus:
    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self.delivery_failures: Counter = Counter()

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        if handler in self._handlers.get(topic, []):
            self._handlers[topic].remove(handler)

    def emit(self, topic: str, **payload: Any) -> MessageEnvelope:
        envelope = MessageEnvelope(topic=topic, payload=payload)
        for handler in list(self._handlers.get(topic, [])):
            try:
                handler(envelope)
            except Exception:  # noqa: BLE001
                self.delivery_failures[topic] += 1
                logger.exception("Handler for %s failed", topic)
        return envelope


def build_bus(backend: str = "in-memory") -> InMemoryBus:
    if backend != "in-memory":
        raise ValueError(f"Unsupported message bus backend: {backend}")
    return InMemoryBus()
