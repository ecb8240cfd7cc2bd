from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127


@dataclass(frozen=True)
class ProcessResult:
    argv: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "argv": list(self.argv),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "timed_out": self.timed_out,
            "error": self.error,
        }


def _coerce_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run_process(
    argv: Sequence[str],
    *,
    timeout_ms: int | None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    capture_stdout: bool = True,
    capture_stderr: bool = True,
    stdin: int | IO[Any] | None = subprocess.DEVNULL,
) -> ProcessResult:
    """
    Run a child process and never raise for spawn failures or timeouts.

    A timeout maps to exit code 124 and a spawn failure to 127; both are reported the
    same way as any other non-zero exit so callers can fall through to the next step.
    Streams that are not captured are inherited from the current process.
    """

    args = tuple(str(part) for part in argv)
    logger.debug("exec %s (timeout_ms=%s, cwd=%s)", " ".join(args), timeout_ms, cwd)
    try:
        proc = subprocess.run(
            list(args),
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            stdin=stdin,
            stdout=subprocess.PIPE if capture_stdout else None,
            stderr=subprocess.PIPE if capture_stderr else None,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=(timeout_ms / 1000.0) if timeout_ms is not None else None,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        logger.debug("timeout after %sms: %s", timeout_ms, args[0] if args else "")
        return ProcessResult(
            argv=args,
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=_coerce_text(exc.stdout),
            stderr=_coerce_text(exc.stderr),
            timed_out=True,
        )
    except OSError as exc:
        logger.debug("spawn failed for %s: %s", args[0] if args else "", exc)
        return ProcessResult(argv=args, exit_code=SPAWN_FAILURE_EXIT_CODE, error=str(exc))
    logger.debug("exit_code=%s", proc.returncode)
    return ProcessResult(
        argv=args,
        exit_code=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )
