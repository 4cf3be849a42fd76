"""Configuration primitives for the Cabinet storage engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

GiB = 1024 * 1024 * 1024
MiB = 1024 * 1024


@dataclass
class StorageConfig:
    root: str = field(default_factory=lambda: str(Path.cwd() / "user_data"))
    default_quota_bytes: int = 50 * GiB
    max_upload_bytes: int = 500 * MiB
    chunk_size: int = 1 * MiB
    max_folder_depth: int = 64
    state_file: Optional[str] = "database.pickle"

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser().resolve()

    @property
    def state_path(self) -> Optional[Path]:
        if not self.state_file:
            return None
        return self.root_path / self.state_file


@dataclass
class DerivativeConfig:
    enabled: bool = True
    thumbnail_size: int = 300
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    video_frame_ratio: float = 0.1
    timeout_seconds: float = 60.0


@dataclass
class AuthConfig:
    admin_role: str = "admin"
    bootstrap_admin_username: Optional[str] = None
    bootstrap_admin_password: Optional[str] = None


@dataclass
class MessageBusConfig:
    backend: str = "in-memory"
    topics: List[str] = field(default_factory=lambda: [
        "files.created",
        "files.deleted",
        "derivatives.ready",
        "shares.created",
        "shares.consumed",
        "shares.deactivated",
        "users.provisioned",
        "users.deleted",
    ])


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"
    log_file: Optional[str] = "cabinet.log"
    log_max_bytes: int = 5 * MiB
    log_backup_count: int = 3


@dataclass
class CabinetConfig:
    storage: StorageConfig
    derivatives: DerivativeConfig
    auth: AuthConfig
    message_bus: MessageBusConfig
    observability: ObservabilityConfig
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @staticmethod
    def default() -> "CabinetConfig":
        return CabinetConfig(
            storage=StorageConfig(),
            derivatives=DerivativeConfig(),
            auth=AuthConfig(),
            message_bus=MessageBusConfig(),
            observability=ObservabilityConfig(),
        )

    @staticmethod
    def for_root(root: str | Path, **storage_overrides) -> "CabinetConfig":
        cfg = CabinetConfig.default()
        cfg.storage = StorageConfig(root=str(root), **storage_overrides)
        return cfg

    @staticmethod
    def from_env(environ: Optional[dict] = None) -> "CabinetConfig":
        env = os.environ if environ is None else environ
        cfg = CabinetConfig.default()
        if env.get("CABINET_STORAGE_ROOT"):
            cfg.storage.root = env["CABINET_STORAGE_ROOT"]
        if env.get("CABINET_DEFAULT_QUOTA"):
            cfg.storage.default_quota_bytes = int(env["CABINET_DEFAULT_QUOTA"])
        if env.get("CABINET_MAX_UPLOAD_SIZE"):
            cfg.storage.max_upload_bytes = int(env["CABINET_MAX_UPLOAD_SIZE"])
        if env.get("CABINET_THUMBNAIL_SIZE"):
            cfg.derivatives.thumbnail_size = int(env["CABINET_THUMBNAIL_SIZE"])
        if env.get("CABINET_DERIVATIVES", "").strip().lower() in {"0", "off", "false", "disable"}:
            cfg.derivatives.enabled = False
        if env.get("CABINET_LOG_LEVEL"):
            cfg.observability.log_level = env["CABINET_LOG_LEVEL"].upper()
        cfg.auth.bootstrap_admin_username = env.get("CABINET_ADMIN_USERNAME") or None
        cfg.auth.bootstrap_admin_password = env.get("CABINET_ADMIN_PASSWORD") or None
        origins = [origin.strip() for origin in env.get("CABINET_CORS_ORIGINS", "*").split(",") if origin.strip()]
        cfg.cors_origins = origins or ["*"]
        return cfg
