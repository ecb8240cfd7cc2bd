from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

import pytest
from fakes import FakeProcesses, has, starts

from core_bridge.config import BridgeConfig
from core_bridge.probe import EngineProber, is_core_json_version, parse_version_payload


@pytest.mark.parametrize(
    "text",
    [
        '{"version": "1.2.3"}',
        '{"schema_version": 1, "version": "0.9.0"}\n',
        '  {"version": null}  ',
    ],
)
def test_version_validator_accepts_json_with_version(text: str) -> None:
    assert is_core_json_version(text) is True


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   \n",
        "rapidkit 1.2.3",
        '{"name": "rapidkit"}',
        '["version"]',
        '"version"',
        "{version: 1}",
        'Installing rapidkit...\n{"version": "1.0.0"}',
        'DeprecationWarning: something\n{"version": "2.0.0"}',
    ],
)
def test_version_validator_rejects_other_output(text: str) -> None:
    assert is_core_json_version(text) is False


def test_parse_version_payload_returns_object() -> None:
    payload = parse_version_payload('{"schema_version": 1, "version": "1.0.0"}')
    assert payload == {"schema_version": 1, "version": "1.0.0"}
    assert parse_version_payload(None) is None


def test_probe_accepts_interpreter_specific_console_script(
    tmp_path: Path,
    bridge_config: BridgeConfig,
    fake_processes: FakeProcesses,
) -> None:
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    script = scripts / "rapidkit"
    script.write_text("", encoding="utf-8")

    fake_processes.on(starts("python3", "-c"), stdout=f"{scripts}\n")
    fake_processes.on(starts(str(script), "--version"), stdout='{"version": "1.0.0"}')

    assert EngineProber(bridge_config).probe("python3") is True
    assert not fake_processes.matching(has("-m", "rapidkit"))


def test_probe_short_circuits_on_capability_check(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(
        lambda argv: argv[:2] == ("python3", "-c") and "find_spec" in argv[2], stdout="1"
    )

    assert EngineProber(bridge_config).probe("python3") is True
    # No module invocation and no PATH scan after the cheap check succeeded.
    assert not fake_processes.matching(has("--version", "--json"))


def test_probe_falls_back_to_module_invocation(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(
        lambda argv: argv[:2] == ("python3", "-c") and "find_spec" in argv[2], stdout="0"
    )
    fake_processes.on(starts("python3", "-m", "rapidkit"), stdout='{"version": "1.0.0"}')

    assert EngineProber(bridge_config).probe("python3") is True
    timeouts = [
        kwargs["timeout_ms"]
        for argv, kwargs in zip(fake_processes.calls, fake_processes.kwargs)
        if "-m" in argv
    ]
    assert timeouts == [8000]


def test_probe_scans_path_past_wrapper_shim(
    tmp_path: Path,
    bridge_config: BridgeConfig,
    fake_processes: FakeProcesses,
) -> None:
    shim_dir = tmp_path / "node_bin"
    real_dir = tmp_path / "py_bin"
    for directory in (shim_dir, real_dir):
        directory.mkdir()
        exe = directory / "rapidkit"
        exe.write_text("#!/bin/sh\n", encoding="utf-8")
        exe.chmod(0o755)
    config = replace(
        bridge_config,
        search_path=os.pathsep.join([str(shim_dir), str(shim_dir), "", str(real_dir)]),
    )

    fake_processes.on(starts(str(shim_dir / "rapidkit")), stdout="RapidKit wrapper 0.1.0")
    fake_processes.on(starts(str(real_dir / "rapidkit")), stdout='{"version": "3.1.0"}')

    prober = EngineProber(config)
    assert prober.path_candidates() == [shim_dir / "rapidkit", real_dir / "rapidkit"]
    assert prober.probe("python3") is True
    assert prober.find_on_path() == real_dir / "rapidkit"


def test_probe_returns_false_when_every_step_fails(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(has("-c"), exit_code=1)
    fake_processes.on(has("-m"), exit_code=1, stderr="No module named rapidkit")

    assert EngineProber(bridge_config).probe("python3") is False


def test_probe_treats_timeouts_as_not_available(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(has("python3"), exit_code=124)

    assert EngineProber(bridge_config).probe("python3") is False


def test_pick_system_python_prefers_python3(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    fake_processes.on(starts("python3", "--version"), stdout="Python 3.12.1")
    fake_processes.on(starts("python", "--version"), stdout="Python 3.11.0")

    assert EngineProber(bridge_config).pick_system_python() == "python3"


def test_pick_system_python_falls_back_then_gives_up(
    bridge_config: BridgeConfig, fake_processes: FakeProcesses
) -> None:
    prober = EngineProber(bridge_config)
    assert prober.pick_system_python() is None

    fake_processes.on(starts("python", "--version"), stdout="Python 3.11.0")
    assert prober.pick_system_python() == "python"
