"""User registration, admin provisioning and cascading removal."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional

from werkzeug.security import generate_password_hash

from ..errors import InvalidRequest, UserNotFound, UsernameTaken
from ..messaging import InMemoryBus
from ..models import User
from ..storage.sandbox import SandboxProvisioner
from .base import BaseService
from .file_service import FileRegistry
from .folder_service import FolderTree
from .metadata_service import MetadataStore
from .quota_service import QuotaLedger
from .sharing_service import ShareLinkManager

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 64


@dataclass
class UserDirectory(BaseService):
    store: MetadataStore
    sandboxes: SandboxProvisioner
    quota: QuotaLedger
    files: FileRegistry
    folders: FolderTree
    shares: ShareLinkManager
    bus: InMemoryBus

    async def create_user(
        self,
        username: str,
        password: str,
        *,
        quota_bytes: Optional[int] = None,
        roles: Iterable[str] = (),
    ) -> User:
        cleaned = (username or "").strip()
        if not cleaned or len(cleaned) > MAX_USERNAME_LENGTH:
            raise InvalidRequest("Username must be between 1 and 64 characters")
        if not password:
            raise InvalidRequest("Password must not be empty")
        if quota_bytes is not None and quota_bytes < 0:
            raise InvalidRequest("Quota must not be negative")
        if self.store.find_user_by_name(cleaned):
            raise UsernameTaken(f"Username {cleaned} is already taken")

        password_hash = await asyncio.to_thread(generate_password_hash, password)
        user = User(
            id=str(uuid.uuid4()),
            username=cleaned,
            password_hash=password_hash,
            quota_bytes=self.config.storage.default_quota_bytes if quota_bytes is None else quota_bytes,
            roles=list(roles),
        )
        await self.sandboxes.ensure_sandbox(user.id)
        async with self.store.transaction():
            if self.store.find_user_by_name(cleaned):
                raise UsernameTaken(f"Username {cleaned} is already taken")
            self.store.users[user.id] = user
        self.bus.emit("users.provisioned", user_id=user.id, username=cleaned)
        logger.info("Provisioned user %s (%s) with quota %d", cleaned, user.id, user.quota_bytes)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    def list_users(self) -> List[User]:
        return list(self.store.users.values())

    async def set_password(self, user_id: str, password: str) -> User:
        if not password:
            raise InvalidRequest("Password must not be empty")
        password_hash = await asyncio.to_thread(generate_password_hash, password)
        async with self.store.transaction():
            user = self.get_user(user_id)
            user.password_hash = password_hash
        logger.info("Password reset for user %s", user_id)
        return user

    async def delete_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        shares = await self.shares.purge_for_owner(user_id)
        files = await self.files.purge_owner(user_id)
        folders = await self.folders.purge_owner(user_id)
        await self.sandboxes.remove_sandbox(user_id)
        async with self.store.transaction():
            self.store.users.pop(user_id, None)
        self.quota.forget(user_id)
        self.bus.emit("users.deleted", user_id=user_id, username=user.username)
        logger.info(
            "Deleted user %s with %d files, %d folders and %d shares", user_id, files, folders, shares,
        )
        return user

    async def ensure_admin(self, username: Optional[str], password: Optional[str]) -> Optional[User]:
        if not username or not password:
            return None
        existing = self.store.find_user_by_name(username)
        if existing is not None:
            return existing
        return await self.create_user(username, password, roles=[self.config.auth.admin_role])
