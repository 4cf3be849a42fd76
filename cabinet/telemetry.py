"""Logging setup and in-process telemetry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from .config import ObservabilityConfig
from .models import ObservabilityEvent

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def configure_logging(config: ObservabilityConfig, storage_root: Optional[Path] = None) -> Optional[Path]:
    """Install console logging and, when a storage root is given, a rotating log file."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    if not any(isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler)
               for handler in root_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(console)
    if storage_root is None or not config.log_file:
        return None
    log_path = Path(storage_root) / config.log_file
    for handler in list(root_logger.handlers):
        if not isinstance(handler, RotatingFileHandler):
            continue
        if Path(handler.baseFilename) == log_path.resolve():
            return log_path
        if getattr(handler, "cabinet_managed", False):
            # One storage root per process; drop the handler of a previous root.
            root_logger.removeHandler(handler)
            handler.close()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.cabinet_managed = True
    root_logger.addHandler(file_handler)
    return log_path


@dataclass
class TelemetryCollector:
    config: ObservabilityConfig
    metrics: List[Dict[str, object]] = field(default_factory=list)
    events: List[ObservabilityEvent] = field(default_factory=list)
    max_samples: int = 1000

    def emit_metric(self, name: str, value: float, labels: Dict[str, str] | None = None) -> None:
        payload = {
            "name": name,
            "value": value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **(labels or {}),
        }
        self.metrics.append(payload)
        del self.metrics[:-self.max_samples]

    def emit_event(self, message: str, attributes: Dict[str, str] | None = None) -> None:
        self.events.append(ObservabilityEvent(event_type="custom", message=message, attributes=attributes))
        del self.events[:-self.max_samples]

    def counter(self, name: str) -> float:
        return sum(float(metric["value"]) for metric in self.metrics if metric["name"] == name)

    def flush(self) -> None:
        self.metrics.clear()
        self.events.clear()
