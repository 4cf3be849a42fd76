"""Authoritative file metadata and content lifecycle."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterable, List, Optional

from ..errors import FileNotFound, InvalidRequest, UploadTooLarge, UserNotFound
from ..messaging import InMemoryBus
from ..models import ANY_PARENT, UNSET, FileRecord, utcnow
from ..storage.content_store import ContentStore, ContentStream
from ..storage.sandbox import SandboxProvisioner
from .base import BaseService
from .folder_service import FolderTree, validate_name
from .metadata_service import MetadataStore
from .quota_service import QuotaLedger

if TYPE_CHECKING:  # pragma: no cover
    from .derivative_service import DerivativePipeline

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class FileContent:
    record: FileRecord
    stream: ContentStream
    offset: int = 0

    @property
    def length(self) -> int:
        return self.stream.length


@dataclass
class FileRegistry(BaseService):
    store: MetadataStore
    quota: QuotaLedger
    folders: FolderTree
    sandboxes: SandboxProvisioner
    content_store: ContentStore
    bus: InMemoryBus
    derivatives: Optional["DerivativePipeline"] = None

    # Upload ------------------------------------------------------------------

    async def create_file(
        self,
        owner_id: str,
        name: str,
        mime_type: Optional[str],
        size_bytes: int,
        content: AsyncIterable[bytes],
        parent_id: Optional[str] = None,
    ) -> FileRecord:
        cleaned = validate_name(name, "File name")
        if size_bytes < 0:
            raise InvalidRequest("size_bytes must not be negative")
        max_upload = self.config.storage.max_upload_bytes
        if max_upload and size_bytes > max_upload:
            raise UploadTooLarge(
                f"Upload of {size_bytes} bytes exceeds the {max_upload} byte limit",
                max_upload_bytes=max_upload,
            )
        if self.store.get_user(owner_id) is None:
            raise UserNotFound(f"User {owner_id} not found")
        self.folders.require_parent(parent_id, owner_id)

        started = time.monotonic()
        sandbox = await self.sandboxes.ensure_sandbox(owner_id)
        await self.quota.reserve(owner_id, size_bytes)

        file_id = str(uuid.uuid4())
        extension = Path(cleaned).suffix.lstrip(".").lower()
        target = sandbox.data_area / (f"{file_id}.{extension}" if extension else file_id)
        committed = False
        try:
            blob = await self.content_store.write_stream(target, content, size_bytes)
            record = FileRecord(
                id=file_id,
                owner_id=owner_id,
                name=cleaned,
                extension=extension,
                mime_type=mime_type or mimetypes.guess_type(cleaned)[0] or DEFAULT_MIME_TYPE,
                size_bytes=blob.size_bytes,
                content_hash=blob.content_hash,
                storage_location=str(blob.path),
                parent_id=parent_id,
            )
            async with self.store.transaction():
                # The owner or parent may have been removed while bytes were streaming.
                if self.store.get_user(owner_id) is None:
                    raise UserNotFound(f"User {owner_id} not found")
                self.folders.require_parent(parent_id, owner_id)
                self.store.files[record.id] = record
                committed = True
        except BaseException:
            # Once committed the record owns the bytes and the reservation.
            if not committed:
                await asyncio.shield(self._unwind_upload(owner_id, size_bytes, target))
            raise

        latency_ms = (time.monotonic() - started) * 1000
        self.emit_metric("upload.bytes", size_bytes, owner_id=owner_id)
        self.emit_metric("upload.latency_ms", latency_ms, owner_id=owner_id)
        self.bus.emit("files.created", file_id=record.id, owner_id=owner_id, size_bytes=size_bytes)
        logger.info("Stored %s (%d bytes) for %s as %s", cleaned, size_bytes, owner_id, record.id)
        if self.derivatives is not None:
            self.derivatives.schedule(record)
        return record

    async def _unwind_upload(self, owner_id: str, size_bytes: int, target: Path) -> None:
        await self.content_store.remove(target)
        try:
            await self.quota.release(owner_id, size_bytes)
        except UserNotFound:
            logger.info("Owner %s vanished during upload; nothing to release", owner_id)
        self.emit_metric("upload.aborted", 1, owner_id=owner_id)

    # Reads -------------------------------------------------------------------

    def get_file(self, file_id: str, owner_id: str) -> FileRecord:
        return self._require_owned(file_id, owner_id)

    def list_files(self, owner_id: str, parent_id=ANY_PARENT) -> List[FileRecord]:
        records = self.store.files_for_owner(owner_id)
        if parent_id is ANY_PARENT:
            return records
        return [record for record in records if record.parent_id == parent_id]

    async def get_content(
        self,
        file_id: str,
        owner_id: str,
        *,
        offset: int = 0,
        length: Optional[int] = None,
    ) -> FileContent:
        record = self._require_owned(file_id, owner_id)
        return await self.open_record(record, offset=offset, length=length)

    async def open_record(self, record: FileRecord, *, offset: int = 0, length: Optional[int] = None) -> FileContent:
        if offset < 0 or (length is not None and length < 0):
            raise InvalidRequest("offset and length must not be negative")
        try:
            stream = await self.content_store.open_range(Path(record.storage_location), offset, length)
        except FileNotFoundError as exc:
            logger.warning("Content for %s is missing from disk", record.id)
            raise FileNotFound(f"Content for file {record.id} not found") from exc
        return FileContent(record=record, stream=stream, offset=offset)

    async def get_derivative(self, file_id: str, owner_id: str) -> ContentStream:
        record = self._require_owned(file_id, owner_id)
        if not record.derivative_ref:
            raise FileNotFound(f"No thumbnail for file {file_id}")
        try:
            return await self.content_store.open_range(Path(record.derivative_ref))
        except FileNotFoundError as exc:
            raise FileNotFound(f"Thumbnail for file {file_id} not found") from exc

    async def verify_integrity(self, file_id: str, owner_id: str) -> bool:
        record = self._require_owned(file_id, owner_id)
        try:
            actual = await self.content_store.digest(Path(record.storage_location))
        except FileNotFoundError as exc:
            raise FileNotFound(f"Content for file {file_id} not found") from exc
        if actual != record.content_hash:
            logger.error("Integrity mismatch for %s: recorded %s, found %s", file_id, record.content_hash, actual)
            self.emit_metric("integrity.mismatches", 1, file_id=file_id)
            return False
        return True

    # Mutations ---------------------------------------------------------------

    async def rename_or_move(
        self,
        file_id: str,
        owner_id: str,
        *,
        name: Optional[str] = None,
        parent_id=UNSET,
    ) -> FileRecord:
        cleaned = validate_name(name, "File name") if name is not None else None
        async with self.store.transaction():
            record = self._require_owned(file_id, owner_id)
            if parent_id is not UNSET:
                self.folders.require_parent(parent_id, owner_id)
                record.parent_id = parent_id
            if cleaned is not None:
                record.name = cleaned
                record.extension = Path(cleaned).suffix.lstrip(".").lower()
            record.updated_at = utcnow()
        return record

    async def set_derivative(self, file_id: str, derivative_ref: str) -> bool:
        """Attach a generated preview; False when the file is gone or going."""
        async with self.store.transaction():
            record = self.store.get_file(file_id)
            if record is None:
                return False
            record.derivative_ref = derivative_ref
        return True

    async def delete_file(self, file_id: str, owner_id: str) -> FileRecord:
        record = self._require_owned(file_id, owner_id)

        def _tombstone() -> None:
            # Re-check under the transaction: a concurrent delete may have won.
            current = self._require_owned(file_id, owner_id)
            current.deleted_at = utcnow()

        await self.quota.release(owner_id, record.size_bytes, alongside=_tombstone)
        await self._reclaim(record)
        self.bus.emit("files.deleted", file_id=file_id, owner_id=owner_id, size_bytes=record.size_bytes)
        logger.info("Deleted file %s for %s", file_id, owner_id)
        return record

    async def purge_owner(self, owner_id: str) -> int:
        records = self.store.files_for_owner(owner_id)
        for record in records:
            try:
                await self.delete_file(record.id, owner_id)
            except FileNotFound:
                continue
        return len(records)

    async def recover(self) -> List[str]:
        """Finish deletions interrupted between tombstone and record removal."""
        finished: List[str] = []
        for record in self.store.tombstoned_files():
            await self._reclaim(record)
            finished.append(record.id)
        if finished:
            logger.warning("Recovered %d interrupted deletions", len(finished))
        return finished

    async def _reclaim(self, record: FileRecord) -> None:
        await self.content_store.remove(record.storage_location)
        if self.derivatives is not None:
            await self.derivatives.remove_derivative(record)
        elif record.derivative_ref:
            await self.content_store.remove(record.derivative_ref)
        async with self.store.transaction():
            self.store.files.pop(record.id, None)

    def _require_owned(self, file_id: str, owner_id: str) -> FileRecord:
        record = self.store.get_file(file_id)
        if record is None or record.owner_id != owner_id:
            raise FileNotFound(f"File {file_id} not found")
        return record
