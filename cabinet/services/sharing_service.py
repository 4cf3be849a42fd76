"""Public share links with expiry, download caps and optional passwords."""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from ..errors import (
    FileNotFound,
    InvalidRequest,
    ShareExhausted,
    ShareExpired,
    ShareNotFound,
    SharePasswordInvalid,
    SharePasswordRequired,
)
from ..messaging import InMemoryBus
from ..models import Share, ShareState, utcnow
from .base import BaseService
from .file_service import FileContent, FileRegistry
from .metadata_service import MetadataStore

logger = logging.getLogger(__name__)

SHARE_ID_BYTES = 6  # token_urlsafe(6) yields 8 characters
MAX_ID_ATTEMPTS = 5


@dataclass
class ShareLinkManager(BaseService):
    store: MetadataStore
    files: FileRegistry
    bus: InMemoryBus

    async def create(
        self,
        file_id: str,
        creator_id: str,
        *,
        password: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        max_downloads: Optional[int] = None,
    ) -> Share:
        self.files.get_file(file_id, creator_id)
        if max_downloads is not None and max_downloads < 1:
            raise InvalidRequest("max_downloads must be at least 1")
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        password_hash = None
        if password:
            password_hash = await asyncio.to_thread(generate_password_hash, password)

        async with self.store.transaction():
            # The file may have been deleted while the password was hashed.
            self.files.get_file(file_id, creator_id)
            share = Share(
                id=self._new_share_id(),
                file_id=file_id,
                creator_id=creator_id,
                password_hash=password_hash,
                expires_at=expires_at,
                max_downloads=max_downloads,
            )
            self.store.shares[share.id] = share
        self.bus.emit("shares.created", share_id=share.id, file_id=file_id, creator_id=creator_id)
        logger.info("Created share %s for file %s", share.id, file_id)
        return share

    def get(self, share_id: str) -> Share:
        share = self.store.shares.get(share_id)
        if share is None:
            raise ShareNotFound(f"Share {share_id} not found")
        return share

    @staticmethod
    def state(share: Share, now: Optional[datetime] = None) -> ShareState:
        now = now or utcnow()
        if not share.active:
            return ShareState.DEACTIVATED
        if share.max_downloads is not None and share.current_downloads >= share.max_downloads:
            return ShareState.EXHAUSTED
        if share.expires_at is not None and now > share.expires_at:
            return ShareState.EXPIRED
        return ShareState.ACTIVE

    async def resolve_for_download(
        self,
        share_id: str,
        password: Optional[str] = None,
    ) -> Tuple[Share, FileContent]:
        share = self.store.shares.get(share_id)
        self._check_gates(share, share_id)
        if share.is_password_protected:
            if not password:
                raise SharePasswordRequired("This share requires a password")
            matches = await asyncio.to_thread(check_password_hash, share.password_hash, password)
            if not matches:
                self.emit_metric("shares.password_failures", 1, share_id=share_id)
                raise SharePasswordInvalid("Incorrect share password")

        async with self.store.transaction():
            # Concurrent consumers may have used up the last download.
            share = self.store.shares.get(share_id)
            self._check_gates(share, share_id)
            record = self.store.get_file(share.file_id)
            if record is None:
                raise FileNotFound("The shared file no longer exists")
            share.current_downloads += 1

        content = await self.files.open_record(record)
        self.bus.emit(
            "shares.consumed",
            share_id=share_id,
            file_id=record.id,
            downloads=share.current_downloads,
        )
        return share, content

    def list_for_file(self, file_id: str, owner_id: str) -> List[Share]:
        self.files.get_file(file_id, owner_id)
        return [share for share in self.store.shares.values() if share.file_id == file_id]

    async def deactivate(self, share_id: str, creator_id: str) -> Share:
        async with self.store.transaction():
            share = self.store.shares.get(share_id)
            if share is None or share.creator_id != creator_id:
                raise ShareNotFound(f"Share {share_id} not found")
            if share.active:
                share.active = False
                share.deactivated_at = utcnow()
        self.bus.emit("shares.deactivated", share_id=share_id, creator_id=creator_id)
        return share

    async def purge_for_owner(self, owner_id: str) -> int:
        async with self.store.transaction():
            owned_files = {record.id for record in self.store.files_for_owner(owner_id, include_deleted=True)}
            doomed = [
                share.id for share in self.store.shares.values()
                if share.creator_id == owner_id or share.file_id in owned_files
            ]
            for share_id in doomed:
                del self.store.shares[share_id]
        return len(doomed)

    def _check_gates(self, share: Optional[Share], share_id: str) -> None:
        if share is None or not share.active:
            raise ShareNotFound(f"Share {share_id} not found")
        state = self.state(share)
        if state is ShareState.EXHAUSTED:
            raise ShareExhausted("Download limit reached")
        if state is ShareState.EXPIRED:
            raise ShareExpired("Share link has expired")

    def _new_share_id(self) -> str:
        nbytes = SHARE_ID_BYTES
        for attempt in range(1, MAX_ID_ATTEMPTS * 3 + 1):
            candidate = secrets.token_urlsafe(nbytes)
            if candidate not in self.store.shares:
                return candidate
            if attempt % MAX_ID_ATTEMPTS == 0:
                nbytes += 3
        raise RuntimeError("Unable to allocate a unique share id")
