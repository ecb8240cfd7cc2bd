from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from core_bridge.config import BridgeConfig
from core_bridge.errors import BridgeError, BridgeErrorKind
from core_bridge.probe import (
    ENGINE_MODULE,
    SYSTEM_PYTHON_COMMANDS,
    EngineProber,
    venv_console_script,
    venv_python,
)
from core_bridge.sandbox import SandboxProvisioner

logger = logging.getLogger(__name__)

WORKSPACE_MAX_LEVELS = 25
WORKSPACE_PROBE_TIMEOUT_MS = 1500
SYSTEM_MODULE_VERIFY_TIMEOUT_MS = 4000

MODULE_PREFIX: tuple[str, ...] = ("-m", ENGINE_MODULE)


@dataclass(frozen=True)
class RunnerDescriptor:
    executable: str
    argument_prefix: tuple[str, ...] = ()
    kind: str = "system"

    def argv(self, args: Sequence[str]) -> list[str]:
        return [self.executable, *self.argument_prefix, *args]

    def to_dict(self) -> dict[str, Any]:
        return {
            "executable": self.executable,
            "argument_prefix": list(self.argument_prefix),
            "kind": self.kind,
        }


class RunnerResolver:
    """
    Pick how the engine gets invoked, highest precedence first:

    1. a `.venv` engine in the working directory or one of its parents,
    2. an engine already usable from the system interpreter,
    3. the cached bridge sandbox (provisioned on demand).

    With `force_sandbox` set, steps 1 and 2 are skipped.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        prober: EngineProber | None = None,
        provisioner: SandboxProvisioner | None = None,
    ) -> None:
        self._config = config
        self._prober = prober or EngineProber(config)
        self._provisioner = provisioner or SandboxProvisioner(config, prober=self._prober)

    def resolve(self, cwd: Path | None = None) -> RunnerDescriptor:
        if self._config.force_sandbox:
            logger.debug("force_sandbox set; skipping workspace and system runners")
            return self.sandbox_runner()

        if cwd is not None:
            local = self.find_workspace_runner(Path(cwd))
            if local is not None:
                return local

        fallback_python: str | None = None
        for cmd in SYSTEM_PYTHON_COMMANDS:
            if not self._prober.probe(cmd):
                continue
            runner = self.system_runner(cmd)
            if runner is not None:
                return runner
            fallback_python = cmd
            break
        return self.sandbox_runner(fallback_python)

    def find_workspace_runner(self, start: Path) -> RunnerDescriptor | None:
        is_windows = self._config.is_windows
        level = start.resolve()
        for _ in range(WORKSPACE_MAX_LEVELS):
            venv_root = level / ".venv"
            cli = venv_console_script(venv_root, is_windows=is_windows)
            if cli.is_file() and self._prober.version_ok(
                str(cli), timeout_ms=WORKSPACE_PROBE_TIMEOUT_MS, cwd=level
            ):
                logger.debug("workspace engine: %s", cli)
                return RunnerDescriptor(str(cli), (), kind="workspace")
            py = venv_python(venv_root, is_windows=is_windows)
            if py.is_file() and self._prober.module_version_ok(
                str(py), timeout_ms=WORKSPACE_PROBE_TIMEOUT_MS, cwd=level
            ):
                logger.debug("workspace interpreter: %s", py)
                return RunnerDescriptor(str(py), MODULE_PREFIX, kind="workspace")
            if level.parent == level:
                break
            level = level.parent
        return None

    def system_runner(self, python_cmd: str) -> RunnerDescriptor | None:
        # The capability check can report false positives; re-verify with a real invocation.
        if self._prober.module_version_ok(python_cmd, timeout_ms=SYSTEM_MODULE_VERIFY_TIMEOUT_MS):
            return RunnerDescriptor(python_cmd, MODULE_PREFIX, kind="system")
        script = self._prober.console_script_for(python_cmd)
        if script is not None:
            return RunnerDescriptor(str(script), (), kind="system-script")
        logger.debug("%s: probe passed but verification failed; using sandbox", python_cmd)
        return None

    def sandbox_runner(self, python_cmd: str | None = None) -> RunnerDescriptor:
        base = python_cmd or self._prober.pick_system_python()
        if base is None:
            raise BridgeError(
                BridgeErrorKind.PYTHON_NOT_FOUND,
                "No Python interpreter found (python3/python).",
            )
        env = self._provisioner.ensure_environment(base)
        if env.console_script.is_file():
            return RunnerDescriptor(str(env.console_script), (), kind="sandbox")
        return RunnerDescriptor(str(env.python), MODULE_PREFIX, kind="sandbox")
