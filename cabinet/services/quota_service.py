"""Per-user capacity accounting."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..errors import InvalidRequest, QuotaExceeded, UserNotFound
from ..models import QuotaUsage, User
from .base import BaseService
from .metadata_service import MetadataStore

logger = logging.getLogger(__name__)


@dataclass
class QuotaLedger(BaseService):
    """Admission control for size-changing operations.

    Each user has one ``asyncio.Lock``; the check and the commit of a
    reservation both happen while it is held, so concurrent uploads for the
    same user can never be admitted against the same headroom.
    """

    store: MetadataStore
    _locks: Dict[str, asyncio.Lock] = field(default_factory=dict, init=False, repr=False)

    async def reserve(self, user_id: str, delta_bytes: int) -> QuotaUsage:
        if delta_bytes < 0:
            raise InvalidRequest("Reservation size must not be negative")
        async with self._lock_for(user_id):
            async with self.store.transaction():
                user = self._require_user(user_id)
                if user.used_bytes + delta_bytes > user.quota_bytes:
                    self.emit_metric("quota.rejections", 1, user_id=user_id)
                    logger.info(
                        "Quota exceeded for %s: used=%d incoming=%d quota=%d",
                        user_id, user.used_bytes, delta_bytes, user.quota_bytes,
                    )
                    raise QuotaExceeded(
                        "Storage quota exceeded",
                        used_bytes=user.used_bytes,
                        quota_bytes=user.quota_bytes,
                        requested_bytes=delta_bytes,
                    )
                user.used_bytes += delta_bytes
                usage = self._usage(user)
        self.emit_metric("quota.reserved_bytes", delta_bytes, user_id=user_id)
        return usage

    async def release(
        self,
        user_id: str,
        delta_bytes: int,
        *,
        alongside: Optional[Callable[[], object]] = None,
    ) -> QuotaUsage:
        """Give back capacity; ``alongside`` runs in the same transaction first."""
        async with self._lock_for(user_id):
            async with self.store.transaction():
                user = self._require_user(user_id)
                if alongside is not None:
                    alongside()
                user.used_bytes = max(0, user.used_bytes - max(0, delta_bytes))
                usage = self._usage(user)
        self.emit_metric("quota.released_bytes", delta_bytes, user_id=user_id)
        return usage

    def usage(self, user_id: str) -> QuotaUsage:
        return self._usage(self._require_user(user_id))

    async def set_quota(self, user_id: str, quota_bytes: int) -> QuotaUsage:
        if quota_bytes < 0:
            raise InvalidRequest("Quota must not be negative")
        async with self._lock_for(user_id):
            async with self.store.transaction():
                user = self._require_user(user_id)
                user.quota_bytes = quota_bytes
                usage = self._usage(user)
        self.emit_event("quota_updated", user_id=user_id, quota_bytes=str(quota_bytes))
        return usage

    async def reconcile(self, user_id: str) -> QuotaUsage:
        """Recompute usage from live files.

        Only safe while no upload for this user is between reservation and
        registration, i.e. at startup before requests are served.
        """
        async with self._lock_for(user_id):
            async with self.store.transaction():
                user = self._require_user(user_id)
                actual = sum(record.size_bytes for record in self.store.files_for_owner(user_id))
                if actual != user.used_bytes:
                    logger.warning(
                        "Reconciled usage for %s from %d to %d bytes", user_id, user.used_bytes, actual,
                    )
                    user.used_bytes = actual
                usage = self._usage(user)
        return usage

    def forget(self, user_id: str) -> None:
        self._locks.pop(user_id, None)

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    @staticmethod
    def _usage(user: User) -> QuotaUsage:
        return QuotaUsage(user_id=user.id, quota_bytes=user.quota_bytes, used_bytes=user.used_bytes)
