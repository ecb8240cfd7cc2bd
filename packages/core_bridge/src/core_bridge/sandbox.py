from __future__ import annotations

import logging
import random
import shutil
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from core_bridge.config import BridgeConfig
from core_bridge.errors import BridgeError, BridgeErrorKind
from core_bridge.install_target import InstallTarget
from core_bridge.probe import EngineProber, venv_console_script, venv_python
from core_bridge.proc import ProcessResult, run_process

logger = logging.getLogger(__name__)

VENV_CREATE_TIMEOUT_MS = 60_000
PIP_CHECK_TIMEOUT_MS = 15_000
ENSUREPIP_TIMEOUT_MS = 120_000
MAX_RETRY_DELAY_SECONDS = 30.0

# Keeps pip chatter off the streams that JSON consumers read.
BOOTSTRAP_ENV: dict[str, str] = {
    "PIP_DISABLE_PIP_VERSION_CHECK": "1",
    "PIP_NO_PYTHON_VERSION_WARNING": "1",
    "PIP_NO_INPUT": "1",
}


class SandboxState(str, Enum):
    NO_SANDBOX = "no_sandbox"
    CREATING = "creating"
    PIP_BOOTSTRAPPING = "pip_bootstrapping"
    PIP_UPGRADING = "pip_upgrading"
    ENGINE_INSTALLING = "engine_installing"
    READY = "ready"


@dataclass(frozen=True)
class SandboxEnvironment:
    root: Path
    python: Path
    console_script: Path

    @classmethod
    def at(cls, root: Path, *, is_windows: bool) -> SandboxEnvironment:
        return cls(
            root=root,
            python=venv_python(root, is_windows=is_windows),
            console_script=venv_console_script(root, is_windows=is_windows),
        )

    @property
    def log_path(self) -> Path:
        return self.root.with_name(f"{self.root.name}.bootstrap.log")

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": str(self.root),
            "python": str(self.python),
            "console_script": str(self.console_script),
        }


def install_target_for(config: BridgeConfig) -> InstallTarget:
    return InstallTarget(spec=config.install_target, install_id=config.install_id)


def sandbox_for(config: BridgeConfig) -> SandboxEnvironment:
    dirname = install_target_for(config).sandbox_dirname()
    return SandboxEnvironment.at(config.bridge_dir / dirname, is_windows=config.is_windows)


def legacy_sandbox_for(config: BridgeConfig) -> SandboxEnvironment:
    return SandboxEnvironment.at(config.legacy_sandbox_dir, is_windows=config.is_windows)


def _tail(text: str, *, max_lines: int = 20) -> str:
    lines = text.rstrip().splitlines()
    return "\n".join(lines[-max_lines:])


def _describe_failure(result: ProcessResult) -> str:
    parts = [" ".join(result.argv)]
    if result.timed_out:
        parts.append("(timed out)")
    elif result.error:
        parts.append(f"(could not start: {result.error})")
    else:
        parts.append(f"(exit code {result.exit_code})")
    detail = " ".join(parts)
    output = _tail(result.stdout)
    return f"{detail}\n{output}" if output else detail


class SandboxProvisioner:
    """
    Create, validate and reuse the cached bridge virtual environment.

    A sandbox is trusted only after its interpreter exists and reports the engine module
    as resolvable. Anything else found at a candidate path is deleted and rebuilt from
    scratch. Child-process stdout is always captured here; stderr is inherited so users
    see pip progress live.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        prober: EngineProber | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._prober = prober or EngineProber(config)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.state = SandboxState.NO_SANDBOX
        self.transitions: list[SandboxState] = []

    def _enter(self, state: SandboxState) -> None:
        logger.debug("sandbox state: %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    def candidates(self) -> list[SandboxEnvironment]:
        out = [sandbox_for(self._config)]
        if install_target_for(self._config).may_adopt_legacy_sandbox:
            out.append(legacy_sandbox_for(self._config))
        return out

    def is_valid(self, env: SandboxEnvironment) -> bool:
        return env.python.is_file() and self._prober.module_resolvable(str(env.python))

    def find_valid(self) -> SandboxEnvironment | None:
        for candidate in self.candidates():
            if not candidate.root.exists():
                continue
            if self.is_valid(candidate):
                logger.debug("reusing sandbox at %s", candidate.root)
                return candidate
            logger.debug("discarding invalid sandbox at %s", candidate.root)
            shutil.rmtree(candidate.root)
        return None

    def ensure(self, python_cmd: str) -> Path:
        return self.ensure_environment(python_cmd).python

    def ensure_environment(self, python_cmd: str) -> SandboxEnvironment:
        target = sandbox_for(self._config)
        log: list[str] = []
        try:
            existing = self.find_valid()
            if existing is not None:
                self._enter(SandboxState.READY)
                return existing
            self._build(python_cmd, target, log)
        except BridgeError as exc:
            exc.log_path = self._write_log(target, log)
            raise
        except Exception as exc:
            raise BridgeError(
                BridgeErrorKind.BOOTSTRAP_FAILED,
                f"{type(exc).__name__}: {exc}",
                log_path=self._write_log(target, log),
            ) from exc
        self._enter(SandboxState.READY)
        return target

    def _build(self, python_cmd: str, target: SandboxEnvironment, log: list[str]) -> None:
        self._enter(SandboxState.CREATING)
        target.root.parent.mkdir(parents=True, exist_ok=True)
        created = self._run_bootstrap(
            [python_cmd, "-m", "venv", str(target.root)],
            timeout_ms=VENV_CREATE_TIMEOUT_MS,
            log=log,
        )
        if not created.ok or not target.python.is_file():
            raise BridgeError(BridgeErrorKind.SANDBOX_CREATE_FAILED, _describe_failure(created))

        vpy = str(target.python)
        self._enter(SandboxState.PIP_BOOTSTRAPPING)
        pip_check = self._run_bootstrap(
            [vpy, "-m", "pip", "--version"], timeout_ms=PIP_CHECK_TIMEOUT_MS, log=log
        )
        if not pip_check.ok:
            ensured = self._run_bootstrap(
                [vpy, "-m", "ensurepip", "--upgrade", "--default-pip"],
                timeout_ms=ENSUREPIP_TIMEOUT_MS,
                log=log,
            )
            if not ensured.ok:
                raise BridgeError(
                    BridgeErrorKind.PIP_BOOTSTRAP_FAILED, _describe_failure(ensured)
                )

        if self._config.upgrade_pip:
            self._enter(SandboxState.PIP_UPGRADING)
            self._run_with_retries(
                [vpy, "-m", "pip", "install", "-U", "pip"],
                kind=BridgeErrorKind.PIP_UPGRADE_FAILED,
                log=log,
            )

        self._enter(SandboxState.ENGINE_INSTALLING)
        self._run_with_retries(
            [vpy, "-m", "pip", "install", "-U", self._config.install_target],
            kind=BridgeErrorKind.ENGINE_INSTALL_FAILED,
            log=log,
        )

    def retry_delay_seconds(self, attempt: int) -> float:
        base = max(0.0, self._config.retry_base_delay_ms / 1000.0)
        raw = base * (2**attempt)
        jitter = self._rng.uniform(0.0, base) if base > 0 else 0.0
        return min(raw + jitter, MAX_RETRY_DELAY_SECONDS)

    def _run_with_retries(
        self, argv: Sequence[str], *, kind: BridgeErrorKind, log: list[str]
    ) -> ProcessResult:
        attempts = max(0, self._config.install_retries) + 1
        attempt = 0
        while True:
            result = self._run_bootstrap(
                argv, timeout_ms=self._config.install_timeout_ms, log=log
            )
            if result.ok:
                return result
            attempt += 1
            if attempt >= attempts:
                raise BridgeError(kind, _describe_failure(result))
            delay = self.retry_delay_seconds(attempt - 1)
            logger.debug("attempt %d/%d failed; retrying in %.2fs", attempt, attempts, delay)
            log.append(f"retry_in_seconds={delay:.2f}")
            self._sleep(delay)

    def _run_bootstrap(
        self, argv: Sequence[str], *, timeout_ms: int, log: list[str]
    ) -> ProcessResult:
        log.append("$ " + " ".join(argv))
        result = run_process(
            argv,
            timeout_ms=timeout_ms,
            env=self._config.child_env(BOOTSTRAP_ENV),
            capture_stdout=True,
            capture_stderr=False,
        )
        log.append(f"exit_code={result.exit_code}")
        if result.timed_out:
            log.append(f"timed_out_after_ms={timeout_ms}")
        if result.error:
            log.append(f"error={result.error}")
        if result.stdout.strip():
            log.append("stdout:")
            log.append(result.stdout.rstrip())
        log.append("")
        return result

    def _write_log(self, target: SandboxEnvironment, lines: list[str]) -> Path | None:
        if not lines:
            return None
        path = target.log_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("\n".join(lines).rstrip() + "\n", encoding="utf-8")
        except OSError as exc:
            logger.debug("could not write bootstrap log %s: %s", path, exc)
            return None
        return path
