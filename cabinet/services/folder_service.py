"""Folder hierarchy per owner."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from ..errors import FolderChainBroken, FolderNotEmpty, FolderNotFound, InvalidFolderMove, InvalidRequest
from ..models import ANY_PARENT, UNSET, Folder, utcnow
from .base import BaseService
from .metadata_service import MetadataStore

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255


def validate_name(name: Optional[str], kind: str = "name") -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidRequest(f"{kind} must not be empty")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise InvalidRequest(f"{kind} exceeds {MAX_NAME_LENGTH} characters")
    if "/" in cleaned or "\\" in cleaned or cleaned in {".", ".."} or "\x00" in cleaned:
        raise InvalidRequest(f"{kind} contains forbidden characters")
    return cleaned


@dataclass
class FolderTree(BaseService):
    store: MetadataStore

    async def create(self, owner_id: str, name: str, parent_id: Optional[str] = None) -> Folder:
        cleaned = validate_name(name, "Folder name")
        async with self.store.transaction():
            if parent_id is not None:
                self._check_depth(parent_id, owner_id, 1)
            folder = Folder(id=str(uuid.uuid4()), owner_id=owner_id, name=cleaned, parent_id=parent_id)
            self.store.folders[folder.id] = folder
        self.emit_event("folder_created", folder_id=folder.id, owner_id=owner_id)
        return folder

    def get(self, folder_id: str, owner_id: str) -> Folder:
        return self._require_owned(folder_id, owner_id)

    def require_parent(self, parent_id: Optional[str], owner_id: str) -> None:
        """Raise FolderNotFound unless ``parent_id`` is root or an owned folder."""
        if parent_id is not None:
            self._require_owned(parent_id, owner_id)

    def list_folders(self, owner_id: str, parent_id=ANY_PARENT) -> List[Folder]:
        folders = self.store.folders_for_owner(owner_id)
        if parent_id is ANY_PARENT:
            return folders
        return [folder for folder in folders if folder.parent_id == parent_id]

    async def rename_or_move(
        self,
        folder_id: str,
        owner_id: str,
        *,
        name: Optional[str] = None,
        parent_id=UNSET,
    ) -> Folder:
        cleaned = validate_name(name, "Folder name") if name is not None else None
        async with self.store.transaction():
            folder = self._require_owned(folder_id, owner_id)
            if parent_id is not UNSET and parent_id != folder.parent_id:
                if parent_id is not None:
                    self._require_owned(parent_id, owner_id)
                    if self._is_descendant_or_self(parent_id, folder_id):
                        raise InvalidFolderMove("A folder cannot be moved inside itself or its descendants")
                    self._check_depth(parent_id, owner_id, self._subtree_height(folder_id))
                folder.parent_id = parent_id
            if cleaned is not None:
                folder.name = cleaned
            folder.updated_at = utcnow()
        return folder

    async def delete(self, folder_id: str, owner_id: str) -> None:
        async with self.store.transaction():
            self._require_owned(folder_id, owner_id)
            has_files = any(record.parent_id == folder_id for record in self.store.files.values())
            has_folders = any(child.parent_id == folder_id for child in self.store.folders.values())
            if has_files or has_folders:
                raise FolderNotEmpty("Folder is not empty", folder_id=folder_id)
            del self.store.folders[folder_id]
        self.emit_event("folder_deleted", folder_id=folder_id, owner_id=owner_id)

    def resolve_breadcrumb(self, folder_id: str, owner_id: str) -> List[Folder]:
        max_depth = self.config.storage.max_folder_depth
        chain: List[Folder] = []
        current: Optional[str] = folder_id
        while current is not None:
            if len(chain) >= max_depth:
                logger.error("Folder chain from %s exceeds %d levels", folder_id, max_depth)
                raise FolderChainBroken("Folder chain is too deep or cyclic", folder_id=folder_id)
            folder = self._require_owned(current, owner_id)
            chain.append(folder)
            current = folder.parent_id
        chain.reverse()
        return chain

    async def purge_owner(self, owner_id: str) -> int:
        """Drop every folder of ``owner_id``; callers remove the files first."""
        async with self.store.transaction():
            doomed = [folder.id for folder in self.store.folders_for_owner(owner_id)]
            for folder_id in doomed:
                del self.store.folders[folder_id]
        return len(doomed)

    def _check_depth(self, parent_id: str, owner_id: str, added_levels: int) -> None:
        """Keep every legitimate chain within ``max_folder_depth``."""
        max_depth = self.config.storage.max_folder_depth
        depth = len(self.resolve_breadcrumb(parent_id, owner_id)) + added_levels
        if depth > max_depth:
            raise InvalidRequest(
                f"Folders cannot be nested more than {max_depth} levels deep",
                max_folder_depth=max_depth,
            )

    def _subtree_height(self, folder_id: str) -> int:
        height = 1
        frontier = {folder_id}
        while height <= self.config.storage.max_folder_depth:
            frontier = {child.id for child in self.store.folders.values() if child.parent_id in frontier}
            if not frontier:
                break
            height += 1
        return height

    def _is_descendant_or_self(self, candidate_id: str, ancestor_id: str) -> bool:
        current: Optional[str] = candidate_id
        for _ in range(self.config.storage.max_folder_depth + 1):
            if current is None:
                return False
            if current == ancestor_id:
                return True
            folder = self.store.folders.get(current)
            current = folder.parent_id if folder else None
        # Chains past the depth bound are treated as descendants.
        return True

    def _require_owned(self, folder_id: str, owner_id: str) -> Folder:
        folder = self.store.folders.get(folder_id)
        if folder is None or folder.owner_id != owner_id:
            raise FolderNotFound(f"Folder {folder_id} not found")
        return folder
