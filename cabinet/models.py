"""Data models shared across storage services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    quota_bytes: int
    used_bytes: int = 0
    roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Folder:
    id: str
    owner_id: str
    name: str
    parent_id: Optional[str]
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class FileRecord:
    id: str
    owner_id: str
    name: str
    extension: str
    mime_type: str
    size_bytes: int
    content_hash: str
    storage_location: str
    parent_id: Optional[str] = None
    derivative_ref: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

    @property
    def media_category(self) -> str:
        return (self.mime_type or "").split("/", 1)[0].lower()


class ShareState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    DEACTIVATED = "deactivated"


@dataclass
class Share:
    id: str
    file_id: str
    creator_id: str
    created_at: datetime = field(default_factory=utcnow)
    active: bool = True
    password_hash: Optional[str] = None
    expires_at: Optional[datetime] = None
    max_downloads: Optional[int] = None
    current_downloads: int = 0
    deactivated_at: Optional[datetime] = None

    @property
    def is_password_protected(self) -> bool:
        return self.password_hash is not None


@dataclass
class Sandbox:
    root: Path
    data_area: Path
    derivative_area: Path


@dataclass
class QuotaUsage:
    user_id: str
    quota_bytes: int
    used_bytes: int

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.quota_bytes - self.used_bytes)


@dataclass
class ObservabilityEvent:
    event_type: str
    message: str
    attributes: Optional[dict] = None
    timestamp: datetime = field(default_factory=utcnow)


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


# Distinguishes "leave parent unchanged" from "move to root" (None).
UNSET = _Sentinel("UNSET")
# Listing filter meaning "any parent".
ANY_PARENT = _Sentinel("ANY_PARENT")
