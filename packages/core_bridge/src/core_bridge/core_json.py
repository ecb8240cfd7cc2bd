from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from core_bridge.command_surface import VERSION_QUERY_TIMEOUT_MS, CaptureRunner
from core_bridge.executor import ExecOptions
from core_bridge.schemas import CORE_VERSION_SCHEMA, PROJECT_DETECT_SCHEMA, is_valid

CORE_JSON_TIMEOUT_MS = 15000


@dataclass(frozen=True)
class CoreJsonResult:
    ok: bool
    exit_code: int
    stdout: str
    stderr: str
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "data": self.data,
        }


def _parse_object(text: str) -> dict[str, Any] | None:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def run_core_json(
    executor: CaptureRunner,
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout_ms: int = CORE_JSON_TIMEOUT_MS,
) -> CoreJsonResult:
    result = executor.run_capture(list(args), ExecOptions(cwd=cwd, timeout_ms=timeout_ms))
    data = _parse_object(result.stdout) if result.exit_code == 0 else None
    return CoreJsonResult(
        ok=data is not None,
        exit_code=result.exit_code,
        stdout=result.stdout,
        stderr=result.stderr,
        data=data,
    )


def get_core_version(executor: CaptureRunner, *, cwd: Path | None = None) -> CoreJsonResult:
    result = run_core_json(
        executor, ["--version", "--json"], cwd=cwd, timeout_ms=VERSION_QUERY_TIMEOUT_MS
    )
    if result.data is not None and not is_valid(result.data, CORE_VERSION_SCHEMA):
        return CoreJsonResult(False, result.exit_code, result.stdout, result.stderr, None)
    return result


def detect_project(executor: CaptureRunner, path: Path) -> CoreJsonResult:
    result = run_core_json(executor, ["project", "detect", "--path", str(path), "--json"])
    if result.data is not None and not is_valid(result.data, PROJECT_DETECT_SCHEMA):
        return CoreJsonResult(False, result.exit_code, result.stdout, result.stderr, None)
    return result
