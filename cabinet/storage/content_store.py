"""Streaming blob storage with incremental hashing."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, BinaryIO, Iterable, List, Optional, Set

from ..errors import StorageIOFailure, UploadSizeMismatch

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


@dataclass
class StoredBlob:
    path: Path
    size_bytes: int
    content_hash: str


class ContentStream:
    """An opened, possibly ranged, view over a stored blob.

    The handle is opened eagerly so that a blob unlinked after the open is
    still readable to completion.
    """

    def __init__(self, handle: BinaryIO, length: int, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._handle = handle
        self.length = length
        self.chunk_size = chunk_size

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        remaining = self.length
        try:
            while remaining > 0:
                chunk = await asyncio.to_thread(self._handle.read, min(self.chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk
        finally:
            self.close()

    async def read_all(self) -> bytes:
        parts = [chunk async for chunk in self.iter_chunks()]
        return b"".join(parts)

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()


class ContentStore:
    """Disk-backed blob writer/reader for sandbox data and derivative areas."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size

    async def write_stream(
        self,
        target: Path,
        chunks: AsyncIterable[bytes],
        expected_size: int,
    ) -> StoredBlob:
        digest = hashlib.sha256()
        written = 0
        try:
            handle = await asyncio.to_thread(target.open, "xb")
        except OSError as exc:
            raise StorageIOFailure(f"Unable to open {target.name} for writing: {exc}") from exc
        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                written += len(chunk)
                if written > expected_size:
                    raise UploadSizeMismatch(
                        f"Upload stream exceeded declared size of {expected_size} bytes",
                        expected=expected_size,
                    )
                await asyncio.to_thread(self._write_chunk, handle, digest, chunk)
            if written != expected_size:
                raise UploadSizeMismatch(
                    f"Upload stream ended after {written} of {expected_size} bytes",
                    expected=expected_size,
                    received=written,
                )
            await asyncio.to_thread(handle.flush)
        except OSError as exc:
            self._discard(handle, target)
            raise StorageIOFailure(f"Unable to write {target.name}: {exc}") from exc
        except BaseException:
            # Covers cancellation from an aborted client as well.
            self._discard(handle, target)
            raise
        handle.close()
        return StoredBlob(path=target, size_bytes=written, content_hash=digest.hexdigest())

    async def open_range(self, path: Path, offset: int = 0, length: Optional[int] = None) -> ContentStream:
        try:
            handle = await asyncio.to_thread(Path(path).open, "rb")
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise StorageIOFailure(f"Unable to open stored content: {exc}") from exc
        size = os.fstat(handle.fileno()).st_size
        if offset > size:
            offset = size
        if offset:
            await asyncio.to_thread(handle.seek, offset)
        available = size - offset
        span = available if length is None else max(0, min(length, available))
        return ContentStream(handle, span, self.chunk_size)

    async def digest(self, path: Path) -> str:
        def _hash() -> str:
            hasher = hashlib.sha256()
            with Path(path).open("rb") as handle:
                for chunk in iter(lambda: handle.read(self.chunk_size), b""):
                    hasher.update(chunk)
            return hasher.hexdigest()

        try:
            return await asyncio.to_thread(_hash)
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise StorageIOFailure(f"Unable to hash stored content: {exc}") from exc

    async def remove(self, path: Optional[str | Path]) -> bool:
        if not path:
            return False
        target = Path(path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Unable to remove %s: %s", target, exc)
            return False
        return True

    async def sweep_orphans(self, area: Path, known_paths: Iterable[str | Path]) -> List[Path]:
        known: Set[Path] = {Path(p).resolve() for p in known_paths}

        def _sweep() -> List[Path]:
            removed: List[Path] = []
            if not area.exists():
                return removed
            for path in area.glob("*"):
                if path.is_file() and path.resolve() not in known:
                    try:
                        path.unlink()
                    except OSError:
                        continue
                    removed.append(path)
            return removed

        return await asyncio.to_thread(_sweep)

    @staticmethod
    def _write_chunk(handle: BinaryIO, digest, chunk: bytes) -> None:
        handle.write(chunk)
        digest.update(chunk)

    @staticmethod
    def _discard(handle: BinaryIO, target: Path) -> None:
        try:
            handle.close()
        finally:
            try:
                target.unlink()
            except OSError:
                pass


async def iter_binary(stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Adapt a blocking file object (e.g. a spooled upload) to an async chunk iterator."""
    while True:
        chunk = await asyncio.to_thread(stream.read, chunk_size)
        if not chunk:
            break
        yield chunk


async def iter_bytes(data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    for start in range(0, len(data), chunk_size):
        yield data[start:start + chunk_size]
