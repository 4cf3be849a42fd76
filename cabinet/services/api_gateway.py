"""API gateway façade for clients."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterable, Callable, List, Optional, Tuple

from ..models import ANY_PARENT, UNSET, FileRecord, Folder, QuotaUsage, Share, User
from ..storage.content_store import ContentStream
from .activity_service import ActivityService
from .backup_service import BackupManager
from .file_service import FileContent, FileRegistry
from .folder_service import FolderTree
from .quota_service import QuotaLedger
from .sharing_service import ShareLinkManager
from .user_service import UserDirectory


@dataclass
class APIGateway:
    users: UserDirectory
    quota: QuotaLedger
    folders: FolderTree
    files: FileRegistry
    shares: ShareLinkManager
    activity_service: ActivityService
    backup_manager: BackupManager
    log_path_supplier: Callable[[], Optional[Path]] | None = None

    # Users & quota ----------------------------------------------------------

    async def provision_user(
        self,
        username: str,
        password: str,
        *,
        quota_bytes: Optional[int] = None,
        roles: Optional[List[str]] = None,
    ) -> dict:
        user = await self.users.create_user(username, password, quota_bytes=quota_bytes, roles=roles or ())
        return self.serialize_user(user)

    def list_users(self) -> List[dict]:
        return [self.serialize_user(user) for user in self.users.list_users()]

    async def set_quota(self, user_id: str, quota_bytes: int) -> dict:
        usage = await self.quota.set_quota(user_id, quota_bytes)
        return self.serialize_usage(usage)

    async def reset_password(self, user_id: str, password: str) -> dict:
        return self.serialize_user(await self.users.set_password(user_id, password))

    async def delete_user(self, user_id: str) -> dict:
        user = await self.users.delete_user(user_id)
        return {"deleted": True, "user_id": user.id}

    def usage(self, user_id: str) -> dict:
        return self.serialize_usage(self.quota.usage(user_id))

    def export_backup(self) -> dict:
        return self.backup_manager.export()

    def log_path(self) -> Optional[Path]:
        return self.log_path_supplier() if self.log_path_supplier else None

    # Files ------------------------------------------------------------------

    async def upload(
        self,
        owner_id: str,
        name: str,
        mime_type: Optional[str],
        size_bytes: int,
        content: AsyncIterable[bytes],
        parent_id: Optional[str] = None,
    ) -> dict:
        record = await self.files.create_file(owner_id, name, mime_type, size_bytes, content, parent_id)
        return self.serialize_file(record)

    def list_files(self, owner_id: str, parent_id=ANY_PARENT) -> List[dict]:
        self._require_listing_parent(parent_id, owner_id)
        return [self.serialize_file(record) for record in self.files.list_files(owner_id, parent_id)]

    def get_file(self, file_id: str, owner_id: str) -> dict:
        return self.serialize_file(self.files.get_file(file_id, owner_id))

    async def open_content(
        self,
        file_id: str,
        owner_id: str,
        *,
        offset: int = 0,
        length: Optional[int] = None,
    ) -> FileContent:
        return await self.files.get_content(file_id, owner_id, offset=offset, length=length)

    async def open_thumbnail(self, file_id: str, owner_id: str) -> ContentStream:
        return await self.files.get_derivative(file_id, owner_id)

    async def update_file(self, file_id: str, owner_id: str, *, name: Optional[str] = None, parent_id=UNSET) -> dict:
        record = await self.files.rename_or_move(file_id, owner_id, name=name, parent_id=parent_id)
        return self.serialize_file(record)

    async def delete_file(self, file_id: str, owner_id: str) -> dict:
        record = await self.files.delete_file(file_id, owner_id)
        return {"deleted": True, "file_id": record.id}

    async def verify_file(self, file_id: str, owner_id: str) -> dict:
        intact = await self.files.verify_integrity(file_id, owner_id)
        return {"file_id": file_id, "intact": intact}

    # Folders ----------------------------------------------------------------

    def list_folders(self, owner_id: str, parent_id=ANY_PARENT) -> List[dict]:
        self._require_listing_parent(parent_id, owner_id)
        return [self.serialize_folder(folder) for folder in self.folders.list_folders(owner_id, parent_id)]

    async def create_folder(self, owner_id: str, name: str, parent_id: Optional[str] = None) -> dict:
        folder = await self.folders.create(owner_id, name, parent_id)
        return self.serialize_folder(folder)

    async def update_folder(
        self,
        folder_id: str,
        owner_id: str,
        *,
        name: Optional[str] = None,
        parent_id=UNSET,
    ) -> dict:
        folder = await self.folders.rename_or_move(folder_id, owner_id, name=name, parent_id=parent_id)
        return self.serialize_folder(folder)

    async def delete_folder(self, folder_id: str, owner_id: str) -> dict:
        await self.folders.delete(folder_id, owner_id)
        return {"deleted": True, "folder_id": folder_id}

    def breadcrumb(self, folder_id: str, owner_id: str) -> List[dict]:
        return [self.serialize_folder(folder) for folder in self.folders.resolve_breadcrumb(folder_id, owner_id)]

    # Sharing ----------------------------------------------------------------

    async def create_share(
        self,
        file_id: str,
        creator_id: str,
        *,
        password: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        max_downloads: Optional[int] = None,
    ) -> dict:
        share = await self.shares.create(
            file_id,
            creator_id,
            password=password,
            expires_at=expires_at,
            max_downloads=max_downloads,
        )
        return self.serialize_share(share)

    def list_shares(self, file_id: str, owner_id: str) -> List[dict]:
        return [self.serialize_share(share) for share in self.shares.list_for_file(file_id, owner_id)]

    async def deactivate_share(self, share_id: str, creator_id: str) -> dict:
        share = await self.shares.deactivate(share_id, creator_id)
        return self.serialize_share(share)

    async def consume_share(self, share_id: str, password: Optional[str] = None) -> Tuple[Share, FileContent]:
        return await self.shares.resolve_for_download(share_id, password)

    # Activity ---------------------------------------------------------------

    def list_activity(self, owner_id: Optional[str] = None, limit: int = 50) -> List[dict]:
        return [
            {
                "topic": envelope.topic,
                "occurred_at": envelope.occurred_at.isoformat(),
                "payload": envelope.payload,
            }
            for envelope in self.activity_service.recent(owner_id=owner_id, limit=limit)
        ]

    def _require_listing_parent(self, parent_id, owner_id: str) -> None:
        if parent_id is not ANY_PARENT:
            self.folders.require_parent(parent_id, owner_id)

    # Serialization ----------------------------------------------------------

    def serialize_user(self, user: User) -> dict:
        usage = self.quota.usage(user.id)
        return {
            "id": user.id,
            "username": user.username,
            "roles": list(user.roles),
            "created_at": user.created_at.isoformat(),
            **self.serialize_usage(usage),
        }

    @staticmethod
    def serialize_usage(usage: QuotaUsage) -> dict:
        return {
            "user_id": usage.user_id,
            "quota_bytes": usage.quota_bytes,
            "used_bytes": usage.used_bytes,
            "remaining_bytes": usage.remaining_bytes,
        }

    @staticmethod
    def serialize_file(record: FileRecord) -> dict:
        return {
            "id": record.id,
            "name": record.name,
            "extension": record.extension,
            "mime_type": record.mime_type,
            "size_bytes": record.size_bytes,
            "content_hash": record.content_hash,
            "parent_id": record.parent_id,
            "has_thumbnail": bool(record.derivative_ref),
            "created_at": record.created_at.isoformat(),
            "updated_at": record.updated_at.isoformat(),
        }

    @staticmethod
    def serialize_folder(folder: Folder) -> dict:
        return {
            "id": folder.id,
            "name": folder.name,
            "parent_id": folder.parent_id,
            "created_at": folder.created_at.isoformat(),
            "updated_at": folder.updated_at.isoformat(),
        }

    def serialize_share(self, share: Share) -> dict:
        return {
            "share_id": share.id,
            "file_id": share.file_id,
            "link": f"/s/{share.id}",
            "state": self.shares.state(share).value,
            "password_protected": share.is_password_protected,
            "expires_at": share.expires_at.isoformat() if share.expires_at else None,
            "max_downloads": share.max_downloads,
            "current_downloads": share.current_downloads,
            "created_at": share.created_at.isoformat(),
        }
