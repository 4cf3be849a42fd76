"""Recent activity feed fed by the message bus."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from ..messaging import InMemoryBus, MessageEnvelope
from ..telemetry import TelemetryCollector


@dataclass
class ActivityService:
    bus: InMemoryBus
    telemetry: TelemetryCollector
    topics: List[str] = field(default_factory=list)
    events: Deque[MessageEnvelope] = field(default_factory=lambda: deque(maxlen=200))

    def __post_init__(self) -> None:
        for topic in self.topics:
            self.bus.subscribe(topic, self._record)

    def recent(self, *, owner_id: Optional[str] = None, limit: int = 50) -> List[MessageEnvelope]:
        """Newest last; ``owner_id`` keeps only events about that user."""
        events = [e for e in self.events if owner_id is None or e.mentions(owner_id)]
        return events[-limit:] if limit else events

    def close(self) -> None:
        for topic in self.topics:
            self.bus.unsubscribe(topic, self._record)

    def _record(self, envelope: MessageEnvelope) -> None:
        self.events.append(envelope)
        self.telemetry.emit_event(f"activity_{envelope.topic}", {k: str(v) for k, v in envelope.payload.items()})
