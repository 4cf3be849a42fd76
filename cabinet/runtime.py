"""Runtime wiring for the Cabinet storage engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .config import CabinetConfig
from .messaging import InMemoryBus, build_bus
from .services.activity_service import ActivityService
from .services.api_gateway import APIGateway
from .services.backup_service import BackupManager
from .services.derivative_service import DerivativePipeline
from .services.file_service import FileRegistry
from .services.folder_service import FolderTree
from .services.metadata_service import MetadataStore
from .services.quota_service import QuotaLedger
from .services.sharing_service import ShareLinkManager
from .services.user_service import UserDirectory
from .storage.content_store import ContentStore
from .storage.sandbox import SandboxProvisioner
from .telemetry import TelemetryCollector, configure_logging

logger = logging.getLogger(__name__)


@dataclass
class CabinetRuntime:
    config: CabinetConfig
    bus: InMemoryBus
    telemetry: TelemetryCollector
    store: MetadataStore
    sandboxes: SandboxProvisioner
    content_store: ContentStore
    quota: QuotaLedger
    folders: FolderTree
    files: FileRegistry
    derivatives: DerivativePipeline
    shares: ShareLinkManager
    users: UserDirectory
    activity_service: ActivityService
    backup_manager: BackupManager
    api_gateway: APIGateway
    log_path: Optional[Path] = None
    recovered: bool = field(default=False, init=False)

    @classmethod
    def bootstrap(cls, config: Optional[CabinetConfig] = None) -> "CabinetRuntime":
        cfg = config or CabinetConfig.default()
        bus = build_bus(cfg.message_bus.backend)
        telemetry = TelemetryCollector(cfg.observability)

        state_path = cfg.storage.state_path
        store = MetadataStore(
            config=cfg,
            telemetry=telemetry,
            state_path=str(state_path) if state_path else None,
        )
        sandboxes = SandboxProvisioner(cfg.storage.root_path)
        content_store = ContentStore(cfg.storage.chunk_size)
        quota = QuotaLedger(config=cfg, telemetry=telemetry, store=store)
        folders = FolderTree(config=cfg, telemetry=telemetry, store=store)
        derivatives = DerivativePipeline(
            config=cfg,
            telemetry=telemetry,
            sandboxes=sandboxes,
            content_store=content_store,
            bus=bus,
        )
        files = FileRegistry(
            config=cfg,
            telemetry=telemetry,
            store=store,
            quota=quota,
            folders=folders,
            sandboxes=sandboxes,
            content_store=content_store,
            bus=bus,
            derivatives=derivatives,
        )
        derivatives.registry = files
        shares = ShareLinkManager(config=cfg, telemetry=telemetry, store=store, files=files, bus=bus)
        users = UserDirectory(
            config=cfg,
            telemetry=telemetry,
            store=store,
            sandboxes=sandboxes,
            quota=quota,
            files=files,
            folders=folders,
            shares=shares,
            bus=bus,
        )
        activity_service = ActivityService(bus=bus, telemetry=telemetry, topics=list(cfg.message_bus.topics))
        backup_manager = BackupManager(config=cfg, telemetry=telemetry, store=store)

        api_gateway = APIGateway(
            users=users,
            quota=quota,
            folders=folders,
            files=files,
            shares=shares,
            activity_service=activity_service,
            backup_manager=backup_manager,
        )

        runtime = cls(
            config=cfg,
            bus=bus,
            telemetry=telemetry,
            store=store,
            sandboxes=sandboxes,
            content_store=content_store,
            quota=quota,
            folders=folders,
            files=files,
            derivatives=derivatives,
            shares=shares,
            users=users,
            activity_service=activity_service,
            backup_manager=backup_manager,
            api_gateway=api_gateway,
        )
        runtime.api_gateway.log_path_supplier = lambda: runtime.log_path
        return runtime

    def configure_logging(self) -> Optional[Path]:
        self.log_path = configure_logging(self.config.observability, self.config.storage.root_path)
        return self.log_path

    async def recover(self) -> Dict[str, List[str]]:
        """Startup pass: finish interrupted deletions, fix usage, sweep orphan blobs."""
        finished = await self.files.recover()
        reconciled: List[str] = []
        for user_id in list(self.store.users):
            before = self.store.users[user_id].used_bytes
            usage = await self.quota.reconcile(user_id)
            if usage.used_bytes != before:
                reconciled.append(user_id)
        swept: List[str] = []
        for user_id in list(self.store.users):
            sandbox = self.sandboxes.sandbox_for(user_id)
            records = self.store.files_for_owner(user_id, include_deleted=True)
            removed = await self.content_store.sweep_orphans(
                sandbox.data_area, [record.storage_location for record in records],
            )
            removed += await self.content_store.sweep_orphans(
                sandbox.derivative_area, [record.derivative_ref for record in records if record.derivative_ref],
            )
            swept.extend(str(path) for path in removed)
        if swept:
            logger.warning("Removed %d orphaned blobs", len(swept))
        await self.users.ensure_admin(
            self.config.auth.bootstrap_admin_username,
            self.config.auth.bootstrap_admin_password,
        )
        self.recovered = True
        return {"deletions": finished, "reconciled": reconciled, "orphans": swept}

    async def shutdown(self) -> None:
        await self.derivatives.drain()
        await self.store.flush()

    def get_metrics_snapshot(self) -> Dict[str, float]:
        return {
            "upload.bytes": self.telemetry.counter("upload.bytes"),
            "upload.aborted": self.telemetry.counter("upload.aborted"),
            "quota.rejections": self.telemetry.counter("quota.rejections"),
            "derivatives.generated": self.telemetry.counter("derivatives.generated"),
            "derivatives.failures": self.telemetry.counter("derivatives.failures"),
            "bus.delivery_failures": float(sum(self.bus.delivery_failures.values())),
            **{f"records.{key}": float(value) for key, value in self.store.snapshot_stats().items()},
        }
