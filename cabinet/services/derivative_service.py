"""Background preview generation for uploaded media."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Set

from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import DerivativeGenerationFailed, InvalidRequest
from ..messaging import InMemoryBus
from ..models import FileRecord
from ..storage.content_store import ContentStore
from ..storage.sandbox import SandboxProvisioner
from .base import BaseService

if TYPE_CHECKING:  # pragma: no cover
    from .file_service import FileRegistry

logger = logging.getLogger(__name__)

DERIVATIVE_SUFFIX = ".webp"
RENDER_ERRORS = (
    DerivativeGenerationFailed,
    OSError,
    ValueError,
    UnidentifiedImageError,
    Image.DecompressionBombError,
)


@dataclass
class DerivativePipeline(BaseService):
    """Produces square WEBP thumbnails for image and video uploads.

    Work runs as fire-and-forget tasks; a failed or cancelled job never
    affects the upload that scheduled it. Before attaching a result the
    pipeline checks that the source file is still live, and discards the
    output otherwise.
    """

    sandboxes: SandboxProvisioner
    content_store: ContentStore
    registry: Optional["FileRegistry"] = None
    bus: Optional[InMemoryBus] = None
    _tasks: Set[asyncio.Task] = field(default_factory=set, init=False, repr=False)

    def schedule(self, record: FileRecord) -> Optional[asyncio.Task]:
        if not self.config.derivatives.enabled:
            return None
        if record.media_category not in {"image", "video"}:
            return None
        task = asyncio.get_running_loop().create_task(self._run(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled jobs; used by tests and at shutdown."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    def derivative_path(self, record: FileRecord) -> Path:
        sandbox = self.sandboxes.sandbox_for(record.owner_id)
        return sandbox.derivative_area / f"{record.id}{DERIVATIVE_SUFFIX}"

    async def generate(self, record: FileRecord) -> Path:
        source = Path(record.storage_location)
        target = self.derivative_path(record)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        if record.media_category == "image":
            await asyncio.to_thread(self._render_image, source, target, self.config.derivatives.thumbnail_size)
        elif record.media_category == "video":
            await self._render_video(source, target)
        else:
            raise DerivativeGenerationFailed(f"No preview renderer for {record.mime_type}")
        return target

    async def remove_derivative(self, record: FileRecord) -> None:
        if record.derivative_ref:
            await self.content_store.remove(record.derivative_ref)
        await self.content_store.remove(self._safe_path(record))

    async def _run(self, record: FileRecord) -> None:
        try:
            target = await self.generate(record)
        except asyncio.CancelledError:
            await self.content_store.remove(self._safe_path(record))
            raise
        except RENDER_ERRORS as exc:
            logger.warning("Thumbnail generation failed for %s: %s", record.id, exc)
            self.emit_metric("derivatives.failures", 1, mime_type=record.mime_type)
            await self.content_store.remove(self._safe_path(record))
            return

        attached = False
        if self.registry is not None:
            attached = await self.registry.set_derivative(record.id, str(target))
        if not attached:
            logger.info("File %s was deleted before its thumbnail finished; discarding", record.id)
            await self.content_store.remove(target)
            return
        self.emit_metric("derivatives.generated", 1, mime_type=record.mime_type)
        if self.bus is not None:
            self.bus.emit("derivatives.ready", file_id=record.id, owner_id=record.owner_id)

    def _safe_path(self, record: FileRecord) -> Optional[Path]:
        try:
            return self.derivative_path(record)
        except InvalidRequest:
            return None

    @staticmethod
    def _render_image(source: Path, target: Path, size: int) -> None:
        with Image.open(source) as image:
            image = ImageOps.exif_transpose(image)
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
            thumb = ImageOps.fit(image, (size, size), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
            thumb.save(target, format="WEBP")

    async def _render_video(self, source: Path, target: Path) -> None:
        cfg = self.config.derivatives
        duration = await self._probe_duration(source)
        offset = max(0.0, duration * cfg.video_frame_ratio)
        size = cfg.thumbnail_size
        scale = f"scale={size}:{size}:force_original_aspect_ratio=increase,crop={size}:{size}"
        await self._exec(
            cfg.ffmpeg_binary,
            "-y",
            "-loglevel", "error",
            "-ss", f"{offset:.3f}",
            "-i", str(source),
            "-frames:v", "1",
            "-vf", scale,
            str(target),
        )
        if not target.exists():
            raise DerivativeGenerationFailed("ffmpeg produced no frame")

    async def _probe_duration(self, source: Path) -> float:
        output = await self._exec(
            self.config.derivatives.ffprobe_binary,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(source),
        )
        try:
            return float(output.strip() or 0.0)
        except ValueError:
            return 0.0

    async def _exec(self, binary: str, *args: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise DerivativeGenerationFailed(f"{binary} is not installed") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.derivatives.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise DerivativeGenerationFailed(f"{binary} timed out") from exc
        except asyncio.CancelledError:
            process.kill()
            raise
        if process.returncode != 0:
            message = stderr.decode("utf-8", "replace").strip()
            raise DerivativeGenerationFailed(f"{binary} exited with {process.returncode}: {message}")
        return stdout.decode("utf-8", "replace")
