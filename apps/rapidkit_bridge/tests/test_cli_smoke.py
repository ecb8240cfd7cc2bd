from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
import yaml

from core_bridge import BridgeConfig, CaptureResult, ExecOptions, RunnerDescriptor
from core_bridge.bootstrap_commands import BOOTSTRAP_CORE_COMMANDS
from rapidkit_bridge import cli


class _RecordingExecutor:
    def __init__(self, *, exit_code: int = 0, stdout: str = "") -> None:
        self.exit_code = exit_code
        self.stdout = stdout
        self.calls: list[tuple[str, list[str], ExecOptions | None]] = []

    def run_streamed(self, args: Sequence[str], options: ExecOptions | None = None) -> int:
        self.calls.append(("stream", list(args), options))
        return self.exit_code

    def run_inherit(self, args: Sequence[str], options: ExecOptions | None = None) -> int:
        self.calls.append(("inherit", list(args), options))
        return self.exit_code

    def run_capture(
        self, args: Sequence[str], options: ExecOptions | None = None
    ) -> CaptureResult:
        self.calls.append(("capture", list(args), options))
        return CaptureResult(exit_code=self.exit_code, stdout=self.stdout, stderr="")


class _StaticResolver:
    def resolve(self, cwd: Path | None = None) -> RunnerDescriptor:
        del cwd
        return RunnerDescriptor("/opt/py/bin/python", ("-m", "rapidkit"), kind="system")


@pytest.fixture
def config(tmp_path: Path) -> BridgeConfig:
    return BridgeConfig(
        cache_root=tmp_path / "cache",
        is_windows=False,
        environ={"PATH": "", "HOME": str(tmp_path / "home")},
    )


@pytest.fixture
def fake_session(monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    session = SimpleNamespace(
        config=None,
        executor=_RecordingExecutor(),
        resolver=_StaticResolver(),
        commands=object(),
        opened_with=[],
    )

    def _open(cfg: BridgeConfig, *, cwd: Path | None = None) -> Any:
        session.config = cfg
        session.opened_with.append(cwd)
        return session

    monkeypatch.setattr(cli, "open_session", _open)
    return session


def test_help_lists_wrapper_commands(capsys: pytest.CaptureFixture[str]) -> None:
    parser = cli.build_parser()
    with pytest.raises(SystemExit) as excinfo:
        parser.parse_args(["--help"])
    assert excinfo.value.code == 0

    out = capsys.readouterr().out
    for name in ("resolve", "ensure", "surface", "catalog", "exec"):
        assert name in out


def test_config_command_prints_yaml(
    config: BridgeConfig, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["config"], config=config) == 0

    printed = yaml.safe_load(capsys.readouterr().out)
    assert printed["install_target"] == "rapidkit-core"
    assert printed["bridge_dir"] == str(config.bridge_dir)
    assert printed["install_retries"] == 2


def test_invalid_environment_exits_with_usage_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.delenv("RAPIDKIT_BRIDGE_CONFIG", raising=False)
    monkeypatch.setenv("RAPIDKIT_BRIDGE_FORCE_VENV", "sometimes")

    assert cli.main(["config"]) == 2
    assert "RAPIDKIT_BRIDGE_FORCE_VENV" in capsys.readouterr().err


def test_unknown_top_level_command_is_forwarded_to_engine(
    config: BridgeConfig, fake_session: SimpleNamespace, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[str] = []

    def _forward(command: str, cache: Any, *, wrapper_commands: Any = ()) -> bool:
        seen.append(command)
        assert "exec" in wrapper_commands
        return True

    monkeypatch.setattr(cli, "should_forward_to_core", _forward)
    fake_session.executor.exit_code = 5

    code = cli.main(["--debug", "create", "project", "fastapi.standard", "api"], config=config)

    assert code == 5
    assert seen == ["create"]
    mode, args, _options = fake_session.executor.calls[0]
    assert mode == "stream"
    assert args == ["create", "project", "fastapi.standard", "api"]
    assert fake_session.config.debug is True


def test_command_the_engine_does_not_know_exits_2(
    config: BridgeConfig,
    fake_session: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cli, "should_forward_to_core", lambda *_a, **_k: False)

    assert cli.main(["frobnicate"], config=config) == 2
    assert "Unknown command: frobnicate" in capsys.readouterr().err
    assert fake_session.executor.calls == []


def test_exec_capture_prints_result_json(
    config: BridgeConfig,
    fake_session: SimpleNamespace,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    fake_session.executor.stdout = '{"version": "1.4.0"}'

    code = cli.main(
        ["exec", "--mode", "capture", "--cwd", str(tmp_path), "version", "--json"], config=config
    )

    assert code == 0
    printed = json.loads(capsys.readouterr().out)
    assert printed == {"exit_code": 0, "stdout": '{"version": "1.4.0"}', "stderr": ""}
    _mode, args, options = fake_session.executor.calls[0]
    assert args == ["version", "--json"]
    assert options is not None and options.cwd == tmp_path


def test_resolve_json_describes_runner(
    config: BridgeConfig, fake_session: SimpleNamespace, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["resolve", "--json"], config=config) == 0

    assert json.loads(capsys.readouterr().out) == {
        "executable": "/opt/py/bin/python",
        "argument_prefix": ["-m", "rapidkit"],
        "kind": "system",
    }


def test_wrapper_commands_never_shadow_engine_commands() -> None:
    assert cli.WRAPPER_COMMANDS.isdisjoint(BOOTSTRAP_CORE_COMMANDS)


@pytest.mark.parametrize(
    "argv", [["modules", "add", "auth"], ["commands", "--json"]], ids=["modules", "commands"]
)
def test_engine_subcommands_sharing_a_wrapper_topic_are_forwarded(
    config: BridgeConfig, fake_session: SimpleNamespace, argv: list[str]
) -> None:
    assert cli.main(argv, config=config) == 0

    mode, args, _options = fake_session.executor.calls[0]
    assert mode == "stream"
    assert args == argv
