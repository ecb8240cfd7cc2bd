from __future__ import annotations

import random
from dataclasses import replace
from pathlib import Path

import pytest
from fakes import FakeProcesses, has, make_venv_python, starts

from core_bridge import sandbox as sandbox_mod
from core_bridge.config import BridgeConfig
from core_bridge.errors import BridgeError, BridgeErrorKind
from core_bridge.sandbox import SandboxProvisioner, SandboxState, sandbox_for


def _is_find_spec(argv: tuple[str, ...]) -> bool:
    return len(argv) == 3 and argv[1] == "-c" and "find_spec" in argv[2]


def _is_install(argv: tuple[str, ...]) -> bool:
    return "pip" in argv and "install" in argv and argv[-1] != "pip"


def _is_pip_upgrade(argv: tuple[str, ...]) -> bool:
    return "install" in argv and argv[-1] == "pip"


def _create_venv(argv: tuple[str, ...]) -> None:
    make_venv_python(Path(argv[3]))


def _healthy_bootstrap(fake: FakeProcesses, *, pip_present: bool = True) -> None:
    fake.on(starts("python3", "-m", "venv"), effect=_create_venv)
    fake.on(_is_find_spec, stdout="1")
    fake.on(has("-m", "pip", "--version"), exit_code=0 if pip_present else 1)
    fake.on(has("-m", "ensurepip"))
    fake.on(_is_pip_upgrade, stdout="Successfully installed pip")
    fake.on(_is_install, stdout="Successfully installed rapidkit-core-1.0.0")


def _bootstrap_calls(fake: FakeProcesses) -> list[tuple[str, ...]]:
    return [
        call
        for call in fake.calls
        if "venv" in call or "pip" in call or "ensurepip" in call
    ]


def test_first_ensure_walks_every_state_and_keeps_stdout_captured(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    _healthy_bootstrap(fake_processes)
    provisioner = SandboxProvisioner(bridge_config, sleep=lambda _s: None)

    python = provisioner.ensure("python3")

    expected = sandbox_for(bridge_config)
    assert python == expected.python
    assert python.is_file()
    assert provisioner.transitions == [
        SandboxState.CREATING,
        SandboxState.PIP_BOOTSTRAPPING,
        SandboxState.ENGINE_INSTALLING,
        SandboxState.READY,
    ]
    install = [call for call in fake_processes.calls if _is_install(call)]
    assert install == [(str(python), "-m", "pip", "install", "-U", "rapidkit-core")]

    for call, kwargs in zip(fake_processes.calls, fake_processes.kwargs):
        if call in _bootstrap_calls(fake_processes):
            assert kwargs["capture_stdout"] is True
            assert kwargs["capture_stderr"] is False
            assert kwargs["env"]["PIP_DISABLE_PIP_VERSION_CHECK"] == "1"
            assert kwargs["env"]["PIP_NO_PYTHON_VERSION_WARNING"] == "1"


def test_second_ensure_performs_no_install_or_creation(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    _healthy_bootstrap(fake_processes)
    first = SandboxProvisioner(bridge_config).ensure("python3")
    before = len(fake_processes.calls)

    again = SandboxProvisioner(bridge_config)
    second = again.ensure("python3")

    new_calls = fake_processes.calls[before:]
    assert second == first
    assert again.transitions == [SandboxState.READY]
    assert len(new_calls) == 1
    assert _is_find_spec(new_calls[0])
    assert new_calls[0][0] == str(first)


def test_partial_sandbox_is_deleted_and_rebuilt(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    target = sandbox_for(bridge_config)
    target.root.mkdir(parents=True)
    (target.root / "half-written").write_text("x", encoding="utf-8")
    _healthy_bootstrap(fake_processes)

    python = SandboxProvisioner(bridge_config).ensure("python3")

    assert python == target.python
    assert not (target.root / "half-written").exists()


def test_sandbox_failing_capability_check_is_discarded(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    target = sandbox_for(bridge_config)
    make_venv_python(target.root)
    (target.root / "stale").write_text("x", encoding="utf-8")
    fake_processes.on(_is_find_spec, stdout="0")

    provisioner = SandboxProvisioner(bridge_config)
    assert provisioner.find_valid() is None
    assert not target.root.exists()


def test_legacy_sandbox_is_adopted_for_unpinned_target(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    legacy_python = make_venv_python(bridge_config.legacy_sandbox_dir)
    _healthy_bootstrap(fake_processes)

    python = SandboxProvisioner(bridge_config).ensure("python3")

    assert python == legacy_python
    assert _bootstrap_calls(fake_processes) == []


def test_legacy_sandbox_is_ignored_for_pinned_target(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    make_venv_python(bridge_config.legacy_sandbox_dir)
    config = replace(bridge_config, install_target="rapidkit-core==1.0.0")
    _healthy_bootstrap(fake_processes)

    python = SandboxProvisioner(config).ensure("python3")

    assert python == sandbox_for(config).python
    assert python != sandbox_for(bridge_config).python
    assert bridge_config.legacy_sandbox_dir.exists()
    assert fake_processes.matching(starts("python3", "-m", "venv"))


def test_venv_failure_is_reported_as_sandbox_create_failed(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(
        starts("python3", "-m", "venv"),
        exit_code=1,
        stdout="The virtual environment was not created successfully",
    )

    with pytest.raises(BridgeError) as excinfo:
        SandboxProvisioner(bridge_config).ensure("python3")

    err = excinfo.value
    assert err.kind is BridgeErrorKind.SANDBOX_CREATE_FAILED
    assert "python3-venv" in err.hint
    assert err.log_path is not None
    log_text = err.log_path.read_text(encoding="utf-8")
    assert "$ python3 -m venv" in log_text
    assert "exit_code=1" in log_text
    assert not fake_processes.matching(_is_install)


def test_venv_without_interpreter_is_sandbox_create_failed(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(starts("python3", "-m", "venv"))

    with pytest.raises(BridgeError) as excinfo:
        SandboxProvisioner(bridge_config).ensure("python3")

    assert excinfo.value.kind is BridgeErrorKind.SANDBOX_CREATE_FAILED


def test_missing_pip_is_bootstrapped_with_ensurepip(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    _healthy_bootstrap(fake_processes, pip_present=False)

    SandboxProvisioner(bridge_config).ensure("python3")

    ensurepip = fake_processes.matching(has("-m", "ensurepip"))
    assert len(ensurepip) == 1
    assert fake_processes.matching(_is_install)


def test_ensurepip_failure_is_pip_bootstrap_failed(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(starts("python3", "-m", "venv"), effect=_create_venv)
    fake_processes.on(has("-m", "pip", "--version"), exit_code=1)
    fake_processes.on(has("-m", "ensurepip"), exit_code=1)

    with pytest.raises(BridgeError) as excinfo:
        SandboxProvisioner(bridge_config).ensure("python3")

    assert excinfo.value.kind is BridgeErrorKind.PIP_BOOTSTRAP_FAILED


def test_install_retries_with_backoff_then_fails(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(starts("python3", "-m", "venv"), effect=_create_venv)
    fake_processes.on(has("-m", "pip", "--version"))
    fake_processes.on(_is_install, exit_code=1, stdout="Could not find a version")
    sleeps: list[float] = []
    config = replace(bridge_config, install_retries=2)

    with pytest.raises(BridgeError) as excinfo:
        SandboxProvisioner(config, sleep=sleeps.append, rng=random.Random(7)).ensure("python3")

    assert excinfo.value.kind is BridgeErrorKind.ENGINE_INSTALL_FAILED
    assert "Could not find a version" in excinfo.value.detail
    assert len(fake_processes.matching(_is_install)) == 3
    assert len(sleeps) == 2
    assert 0.01 <= sleeps[0] <= 0.02
    assert 0.02 <= sleeps[1] <= 0.03


@pytest.mark.parametrize("retries", [0, -1])
def test_install_without_retries_fails_after_one_attempt(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses, retries: int
) -> None:
    fake_processes.on(starts("python3", "-m", "venv"), effect=_create_venv)
    fake_processes.on(has("-m", "pip", "--version"))
    fake_processes.on(_is_install, exit_code=1, stdout="No matching distribution")
    sleeps: list[float] = []
    config = replace(bridge_config, install_retries=retries)

    with pytest.raises(BridgeError) as excinfo:
        SandboxProvisioner(config, sleep=sleeps.append).ensure("python3")

    assert excinfo.value.kind is BridgeErrorKind.ENGINE_INSTALL_FAILED
    assert "No matching distribution" in excinfo.value.detail
    assert len(fake_processes.matching(_is_install)) == 1
    assert sleeps == []


def test_transient_install_failure_recovers(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(starts("python3", "-m", "venv"), effect=_create_venv)
    fake_processes.on(has("-m", "pip", "--version"))
    fake_processes.sequence(_is_install, 1, 0)
    sleeps: list[float] = []

    python = SandboxProvisioner(bridge_config, sleep=sleeps.append).ensure("python3")

    assert python.is_file()
    assert len(fake_processes.matching(_is_install)) == 2
    assert len(sleeps) == 1


def test_pip_upgrade_runs_only_when_opted_in(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    _healthy_bootstrap(fake_processes)
    SandboxProvisioner(bridge_config).ensure("python3")
    assert fake_processes.matching(_is_pip_upgrade) == []

    opted_in = replace(bridge_config, upgrade_pip=True, install_id="upgrade")
    provisioner = SandboxProvisioner(opted_in)
    provisioner.ensure("python3")
    assert len(fake_processes.matching(_is_pip_upgrade)) == 1
    assert SandboxState.PIP_UPGRADING in provisioner.transitions


def test_pip_upgrade_failure_is_typed_and_stops_install(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(starts("python3", "-m", "venv"), effect=_create_venv)
    fake_processes.on(has("-m", "pip", "--version"))
    fake_processes.on(_is_pip_upgrade, exit_code=1)
    fake_processes.on(_is_install)
    config = replace(bridge_config, upgrade_pip=True, install_retries=0)

    with pytest.raises(BridgeError) as excinfo:
        SandboxProvisioner(config).ensure("python3")

    assert excinfo.value.kind is BridgeErrorKind.PIP_UPGRADE_FAILED
    assert fake_processes.matching(_is_install) == []


def test_unexpected_errors_become_generic_bootstrap_failure(
    bridge_config: BridgeConfig,
    fake_processes: FakeProcesses,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    target = sandbox_for(bridge_config)
    target.root.mkdir(parents=True)

    def _boom(path: Path) -> None:
        raise PermissionError(f"cannot remove {path}")

    monkeypatch.setattr(sandbox_mod.shutil, "rmtree", _boom)

    with pytest.raises(BridgeError) as excinfo:
        SandboxProvisioner(bridge_config).ensure("python3")

    assert excinfo.value.kind is BridgeErrorKind.BOOTSTRAP_FAILED
    assert "PermissionError" in excinfo.value.detail
    assert isinstance(excinfo.value.__cause__, PermissionError)
    assert fake_processes.calls == []


def test_retry_delay_is_capped(bridge_config: BridgeConfig) -> None:
    config = replace(bridge_config, retry_base_delay_ms=20_000)
    provisioner = SandboxProvisioner(config, rng=random.Random(1))

    assert provisioner.retry_delay_seconds(0) <= 30.0
    assert provisioner.retry_delay_seconds(6) == 30.0
