"""Multi-tenant file storage and sharing engine."""

from .config import CabinetConfig  # noqa: F401
from .runtime import CabinetRuntime  # noqa: F401
