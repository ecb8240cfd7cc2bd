from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeProcesses

from core_bridge import availability, executor, probe, sandbox
from core_bridge.config import BridgeConfig


@pytest.fixture
def fake_processes(monkeypatch: pytest.MonkeyPatch) -> FakeProcesses:
    fake = FakeProcesses()
    for module in (availability, executor, probe, sandbox):
        monkeypatch.setattr(module, "run_process", fake)
    return fake


@pytest.fixture
def bridge_config(tmp_path: Path) -> BridgeConfig:
    return BridgeConfig(
        cache_root=tmp_path / "cache",
        search_path="",
        is_windows=False,
        environ={"PATH": "", "HOME": str(tmp_path / "home")},
        retry_base_delay_ms=10,
    )
