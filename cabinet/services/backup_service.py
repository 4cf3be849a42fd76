"""Admin export of the record store."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from .base import BaseService
from .metadata_service import MetadataStore

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1


@dataclass
class BackupSnapshot:
    snapshot_id: str
    taken_at: datetime
    record_counts: Dict[str, int]


@dataclass
class BackupManager(BaseService):
    store: MetadataStore
    snapshots: List[BackupSnapshot] = field(default_factory=list)
    max_history: int = 20

    def export(self) -> Dict[str, Any]:
        """JSON-ready dump of users, folders, files and shares.

        Password hashes and on-disk locations are left out.
        """
        payload = {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "users": [self._user(user) for user in self.store.users.values()],
            "folders": [_jsonable(asdict(folder)) for folder in self.store.folders.values()],
            "files": [self._file(record) for record in self.store.files.values() if record.is_live],
            "shares": [self._share(share) for share in self.store.shares.values()],
        }
        snapshot = BackupSnapshot(
            snapshot_id=f"snap-{len(self.snapshots) + 1}",
            taken_at=datetime.now(timezone.utc),
            record_counts={key: len(payload[key]) for key in ("users", "folders", "files", "shares")},
        )
        self.snapshots.append(snapshot)
        del self.snapshots[:-self.max_history]
        self.telemetry.emit_event("backup_completed", {
            "snapshot_id": snapshot.snapshot_id,
            **{key: str(count) for key, count in snapshot.record_counts.items()},
        })
        logger.info("Exported metadata snapshot %s: %s", snapshot.snapshot_id, snapshot.record_counts)
        return payload

    def latest(self) -> BackupSnapshot | None:
        return self.snapshots[-1] if self.snapshots else None

    @staticmethod
    def _user(user) -> Dict[str, Any]:
        data = _jsonable(asdict(user))
        data.pop("password_hash", None)
        return data

    @staticmethod
    def _file(record) -> Dict[str, Any]:
        data = _jsonable(asdict(record))
        data.pop("storage_location", None)
        data.pop("derivative_ref", None)
        data["has_thumbnail"] = bool(record.derivative_ref)
        return data

    @staticmethod
    def _share(share) -> Dict[str, Any]:
        data = _jsonable(asdict(share))
        data["password_protected"] = data.pop("password_hash") is not None
        return data


def _jsonable(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in data.items()}
