"""Record store for users, folders, files and shares."""

from __future__ import annotations

import asyncio
import logging
import pickle
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from ..models import FileRecord, Folder, Share, User
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass
class MetadataStore(BaseService):
    """In-memory record collections with single-writer transactions.

    Mutations happen inside ``async with store.transaction()``. The body must
    validate before it mutates and must not await while mutating; the write
    lock then makes each transaction atomic with respect to every other one.
    Snapshots are flushed after the lock is released, always writing the
    newest state.
    """

    state_path: Optional[str] = None
    users: Dict[str, User] = field(default_factory=dict)
    folders: Dict[str, Folder] = field(default_factory=dict)
    files: Dict[str, FileRecord] = field(default_factory=dict)
    shares: Dict[str, Share] = field(default_factory=dict)
    _state_file: Optional[Path] = field(default=None, init=False, repr=False)
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _flush_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _version: int = field(default=0, init=False, repr=False)
    _flushed_version: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.state_path:
            self._state_file = Path(self.state_path).expanduser()
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MetadataStore"]:
        async with self._write_lock:
            yield self
            self._version += 1
        await self.flush()

    # Queries ---------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def find_user_by_name(self, username: str) -> Optional[User]:
        lowered = username.lower()
        return next((user for user in self.users.values() if user.username.lower() == lowered), None)

    def get_file(self, file_id: str, *, include_deleted: bool = False) -> Optional[FileRecord]:
        record = self.files.get(file_id)
        if record is None:
            return None
        if not record.is_live and not include_deleted:
            return None
        return record

    def files_for_owner(self, owner_id: str, *, include_deleted: bool = False) -> List[FileRecord]:
        return [
            record for record in self.files.values()
            if record.owner_id == owner_id and (include_deleted or record.is_live)
        ]

    def folders_for_owner(self, owner_id: str) -> List[Folder]:
        return [folder for folder in self.folders.values() if folder.owner_id == owner_id]

    def tombstoned_files(self) -> List[FileRecord]:
        return [record for record in self.files.values() if not record.is_live]

    def snapshot_stats(self) -> Dict[str, int]:
        return {
            "users": len(self.users),
            "folders": len(self.folders),
            "files": len(self.files),
            "shares": len(self.shares),
        }

    # Persistence helpers --------------------------------------------------

    async def flush(self) -> None:
        if not self._state_file:
            return
        async with self._flush_lock:
            if self._version == self._flushed_version:
                return
            # Writers wait while the snapshot is pickled off the loop; readers do not.
            async with self._write_lock:
                version = self._version
                payload = await asyncio.to_thread(pickle.dumps, self._snapshot())
            try:
                await asyncio.to_thread(self._write_snapshot, payload)
            except OSError as exc:
                logger.error("Unable to persist metadata snapshot to %s: %s", self._state_file, exc)
                self.emit_metric("metadata.flush_failures", 1)
                return
            self._flushed_version = version

    def _snapshot(self) -> Dict[str, dict]:
        return {
            "users": self.users,
            "folders": self.folders,
            "files": self.files,
            "shares": self.shares,
        }

    def _write_snapshot(self, payload: bytes) -> None:
        temp_path = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
        temp_path.write_bytes(payload)
        temp_path.replace(self._state_file)

    def _load_state(self) -> None:
        if not self._state_file or not self._state_file.exists():
            return
        try:
            with self._state_file.open("rb") as handle:
                snapshot = pickle.load(handle)
        except (OSError, pickle.PickleError, EOFError) as exc:
            logger.error("Ignoring unreadable metadata snapshot %s: %s", self._state_file, exc)
            return
        self.users = snapshot.get("users", self.users)
        self.folders = snapshot.get("folders", self.folders)
        self.files = snapshot.get("files", self.files)
        self.shares = snapshot.get("shares", self.shares)
        logger.info("Loaded metadata snapshot: %s", self.snapshot_stats())
