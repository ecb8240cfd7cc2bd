from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from core_bridge.config import BridgeConfig
from core_bridge.proc import run_process

logger = logging.getLogger(__name__)

ENGINE_NAME = "rapidkit"
ENGINE_MODULE = "rapidkit"
VERSION_QUERY_ARGS: tuple[str, ...] = ("--version", "--json")
SYSTEM_PYTHON_COMMANDS: tuple[str, ...] = ("python3", "python")

SCRIPTS_DIR_TIMEOUT_MS = 2000
CONSOLE_SCRIPT_TIMEOUT_MS = 4000
FIND_SPEC_TIMEOUT_MS = 2000
MODULE_VERSION_TIMEOUT_MS = 8000
PATH_CANDIDATE_TIMEOUT_MS = 4000
PYTHON_VERSION_TIMEOUT_MS = 2000

_SCRIPTS_DIR_QUERY = "import sysconfig; print(sysconfig.get_path('scripts'))"
_FIND_SPEC_QUERY = (
    "import importlib.util, sys; "
    f"sys.stdout.write('1' if importlib.util.find_spec({ENGINE_MODULE!r}) else '0')"
)


def parse_version_payload(text: str | None) -> dict[str, Any] | None:
    """Return the decoded `--version --json` object, or None if it lacks a `version` field."""
    if not isinstance(text, str):
        return None
    stripped = text.strip()
    if not stripped:
        return None
    # The whole of stdout must be the payload; anything printed around it is a leak.
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict) and "version" in parsed:
        return parsed
    return None


def is_core_json_version(text: str | None) -> bool:
    return parse_version_payload(text) is not None


def console_script_name(*, is_windows: bool) -> str:
    return f"{ENGINE_NAME}.exe" if is_windows else ENGINE_NAME


def venv_bin_dir(root: Path, *, is_windows: bool) -> Path:
    return root / ("Scripts" if is_windows else "bin")


def venv_python(root: Path, *, is_windows: bool) -> Path:
    return venv_bin_dir(root, is_windows=is_windows) / ("python.exe" if is_windows else "python")


def venv_console_script(root: Path, *, is_windows: bool) -> Path:
    return venv_bin_dir(root, is_windows=is_windows) / console_script_name(is_windows=is_windows)


def _is_executable_file(path: Path, *, is_windows: bool) -> bool:
    if not path.is_file():
        return False
    return is_windows or os.access(path, os.X_OK)


class EngineProber:
    """Read-only checks answering "is the engine already usable from this interpreter?"."""

    def __init__(self, config: BridgeConfig) -> None:
        self._config = config

    def probe(self, python_cmd: str) -> bool:
        if self.console_script_for(python_cmd) is not None:
            logger.debug("%s: interpreter-specific console script validated", python_cmd)
            return True
        if self.module_resolvable(python_cmd):
            logger.debug("%s: engine module is resolvable", python_cmd)
            return True
        if self.module_version_ok(python_cmd, timeout_ms=MODULE_VERSION_TIMEOUT_MS):
            logger.debug("%s: module invocation validated", python_cmd)
            return True
        if self.find_on_path() is not None:
            return True
        logger.debug("%s: engine not available", python_cmd)
        return False

    def scripts_dir(self, python_cmd: str) -> Path | None:
        result = run_process(
            [python_cmd, "-c", _SCRIPTS_DIR_QUERY],
            timeout_ms=SCRIPTS_DIR_TIMEOUT_MS,
            env=self._config.child_env(),
        )
        if not result.ok:
            return None
        text = result.stdout.strip()
        return Path(text) if text else None

    def console_script_for(
        self, python_cmd: str, *, timeout_ms: int = CONSOLE_SCRIPT_TIMEOUT_MS
    ) -> Path | None:
        scripts = self.scripts_dir(python_cmd)
        if scripts is None:
            return None
        candidate = scripts / console_script_name(is_windows=self._config.is_windows)
        if not candidate.is_file():
            return None
        if self.version_ok(str(candidate), timeout_ms=timeout_ms):
            return candidate
        return None

    def module_resolvable(self, python_cmd: str) -> bool:
        result = run_process(
            [python_cmd, "-c", _FIND_SPEC_QUERY],
            timeout_ms=FIND_SPEC_TIMEOUT_MS,
            env=self._config.child_env(),
        )
        return result.ok and result.stdout.strip() == "1"

    def module_version_ok(
        self, python_cmd: str, *, timeout_ms: int, cwd: Path | None = None
    ) -> bool:
        return self.version_ok(
            python_cmd, prefix=("-m", ENGINE_MODULE), timeout_ms=timeout_ms, cwd=cwd
        )

    def version_ok(
        self,
        executable: str,
        *,
        timeout_ms: int,
        prefix: tuple[str, ...] = (),
        cwd: Path | None = None,
    ) -> bool:
        result = run_process(
            [executable, *prefix, *VERSION_QUERY_ARGS],
            timeout_ms=timeout_ms,
            cwd=cwd,
            env=self._config.child_env(),
        )
        return result.ok and is_core_json_version(result.stdout)

    def path_candidates(self) -> list[Path]:
        name = console_script_name(is_windows=self._config.is_windows)
        seen_dirs: set[str] = set()
        out: list[Path] = []
        for entry in self._config.search_path.split(os.pathsep):
            directory = entry.strip()
            if not directory or directory in seen_dirs:
                continue
            seen_dirs.add(directory)
            candidate = Path(directory) / name
            if _is_executable_file(candidate, is_windows=self._config.is_windows):
                out.append(candidate)
        return out

    def find_on_path(self) -> Path | None:
        # The first `rapidkit` on PATH may be a wrapper shim rather than the engine.
        for candidate in self.path_candidates():
            if self.version_ok(str(candidate), timeout_ms=PATH_CANDIDATE_TIMEOUT_MS):
                logger.debug("engine found on PATH: %s", candidate)
                return candidate
        return None

    def pick_system_python(self) -> str | None:
        for cmd in SYSTEM_PYTHON_COMMANDS:
            result = run_process(
                [cmd, "--version"],
                timeout_ms=PYTHON_VERSION_TIMEOUT_MS,
                env=self._config.child_env(),
            )
            if result.ok:
                return cmd
        return None
