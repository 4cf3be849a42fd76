"""Per-user storage sandboxes under the configured storage root."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path

from ..errors import InvalidRequest, StorageIOFailure
from ..models import Sandbox

logger = logging.getLogger(__name__)

DATA_AREA = "user_data"
DERIVATIVE_AREA = "thumbnails"

_SAFE_COMPONENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class SandboxProvisioner:
    """Creates the ``<root>/<user_id>/{user_data,thumbnails}`` layout."""

    def __init__(self, storage_root: str | Path):
        self.storage_root = Path(storage_root).expanduser().resolve()

    def sandbox_for(self, user_id: str) -> Sandbox:
        if not user_id or not _SAFE_COMPONENT.match(user_id) or user_id in {".", ".."}:
            raise InvalidRequest(f"Unsafe user id for sandbox: {user_id!r}")
        root = self.storage_root / user_id
        return Sandbox(root=root, data_area=root / DATA_AREA, derivative_area=root / DERIVATIVE_AREA)

    async def ensure_sandbox(self, user_id: str) -> Sandbox:
        sandbox = self.sandbox_for(user_id)
        try:
            await asyncio.to_thread(self._create_dirs, sandbox)
        except OSError as exc:
            logger.error("Unable to provision sandbox for %s: %s", user_id, exc)
            raise StorageIOFailure(f"Unable to provision sandbox: {exc}", user_id=user_id) from exc
        return sandbox

    async def remove_sandbox(self, user_id: str) -> bool:
        sandbox = self.sandbox_for(user_id)
        if not sandbox.root.exists():
            return False
        try:
            await asyncio.to_thread(shutil.rmtree, sandbox.root)
        except OSError as exc:
            raise StorageIOFailure(f"Unable to remove sandbox: {exc}", user_id=user_id) from exc
        logger.info("Removed sandbox for user %s", user_id)
        return True

    @staticmethod
    def _create_dirs(sandbox: Sandbox) -> None:
        sandbox.data_area.mkdir(parents=True, exist_ok=True)
        sandbox.derivative_area.mkdir(parents=True, exist_ok=True)
