from __future__ import annotations

import pytest

from cabinet.config import CabinetConfig
from cabinet.runtime import CabinetRuntime


@pytest.fixture
def cabinet_config(tmp_path) -> CabinetConfig:
    cfg = CabinetConfig.for_root(tmp_path / "storage")
    cfg.observability.log_file = None
    return cfg


@pytest.fixture
def runtime(cabinet_config) -> CabinetRuntime:
    return CabinetRuntime.bootstrap(cabinet_config)
