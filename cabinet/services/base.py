"""Shared plumbing for Cabinet services."""

from __future__ import annotations

from dataclasses import dataclass

from ..config import CabinetConfig
from ..telemetry import TelemetryCollector


@dataclass
class BaseService:
    config: CabinetConfig
    telemetry: TelemetryCollector

    @property
    def service_name(self) -> str:
        return type(self).__name__

    def emit_metric(self, name: str, value: float, **labels: object) -> None:
        tagged = {key: str(label) for key, label in labels.items()}
        tagged.setdefault("service", self.service_name)
        self.telemetry.emit_metric(name, value, tagged)

    def emit_event(self, message: str, **attrs: object) -> None:
        tagged = {key: str(attr) for key, attr in attrs.items()}
        tagged.setdefault("service", self.service_name)
        self.telemetry.emit_event(message, tagged)
