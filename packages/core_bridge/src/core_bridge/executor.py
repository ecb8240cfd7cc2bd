from __future__ import annotations

import logging
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from core_bridge.config import BridgeConfig
from core_bridge.error_rewrites import DEFAULT_RULES, RewriteRule, rewrite_stderr
from core_bridge.errors import format_bridge_error
from core_bridge.proc import ProcessResult, run_process
from core_bridge.resolver import RunnerResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecOptions:
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class CaptureResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {"exit_code": self.exit_code, "stdout": self.stdout, "stderr": self.stderr}


class _SpawnFailed(RuntimeError):
    pass


class CoreExecutor:
    """
    Run engine commands through the resolved runner.

    None of the modes lets an exception escape: inherited and streamed calls report
    failures on stderr with exit code 1, captured calls return a synthetic result.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        resolver: RunnerResolver | None = None,
        rules: Sequence[RewriteRule] = DEFAULT_RULES,
        stderr: TextIO | None = None,
    ) -> None:
        self._config = config
        self._resolver = resolver or RunnerResolver(config)
        self._rules = tuple(rules)
        self._stderr = stderr

    @property
    def config(self) -> BridgeConfig:
        return self._config

    def _err(self) -> TextIO:
        return self._stderr if self._stderr is not None else sys.stderr

    def _launch(
        self,
        args: Sequence[str],
        options: ExecOptions,
        *,
        capture_stdout: bool,
        capture_stderr: bool,
    ) -> ProcessResult:
        runner = self._resolver.resolve(options.cwd)
        result = run_process(
            runner.argv(args),
            timeout_ms=options.timeout_ms,
            cwd=options.cwd,
            env=self._config.child_env(options.env),
            capture_stdout=capture_stdout,
            capture_stderr=capture_stderr,
            stdin=subprocess.DEVNULL if capture_stdout else None,
        )
        if result.error is not None:
            raise _SpawnFailed(f"could not start {runner.executable}: {result.error}")
        return result

    def run_inherit(self, args: Sequence[str], options: ExecOptions | None = None) -> int:
        opts = options or ExecOptions()
        try:
            result = self._launch(args, opts, capture_stdout=False, capture_stderr=False)
        except Exception as exc:
            logger.debug("inherited run failed", exc_info=True)
            self._err().write(f"{format_bridge_error(exc)}\n")
            return 1
        return result.exit_code

    def run_capture(self, args: Sequence[str], options: ExecOptions | None = None) -> CaptureResult:
        opts = options or ExecOptions()
        try:
            result = self._launch(args, opts, capture_stdout=True, capture_stderr=True)
        except Exception as exc:
            logger.debug("captured run failed", exc_info=True)
            return CaptureResult(exit_code=1, stdout="", stderr=f"{format_bridge_error(exc)}\n")
        return CaptureResult(
            exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr
        )

    def run_streamed(self, args: Sequence[str], options: ExecOptions | None = None) -> int:
        opts = options or ExecOptions()
        try:
            result = self._launch(args, opts, capture_stdout=False, capture_stderr=True)
        except Exception as exc:
            logger.debug("streamed run failed", exc_info=True)
            self._err().write(f"{format_bridge_error(exc)}\n")
            return 1

        if result.exit_code == 0:
            if result.stderr:
                self._err().write(result.stderr)
            return 0

        friendly = rewrite_stderr(result.stderr, self._rules)
        if friendly is not None:
            self._err().write(f"{friendly}\n")
        elif result.stderr:
            self._err().write(result.stderr)
        return result.exit_code
