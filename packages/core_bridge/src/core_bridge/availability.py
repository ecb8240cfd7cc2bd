from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from core_bridge.config import BridgeConfig
from core_bridge.probe import EngineProber, venv_python
from core_bridge.proc import ProcessResult, run_process

logger = logging.getLogger(__name__)

CORE_DISTRIBUTION = "rapidkit-core"
CORE_IMPORT_NAMES: tuple[str, ...] = ("rapidkit_core", "rapidkit")
CANDIDATE_PYTHONS: tuple[str, ...] = (
    "python3",
    "python",
    "python3.10",
    "python3.11",
    "python3.12",
    "python3.13",
)
CHECK_TIMEOUT_MS = 5000


@dataclass(frozen=True)
class AvailabilityReport:
    found: bool
    method: str | None = None
    detail: str | None = None
    checked: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "method": self.method,
            "detail": self.detail,
            "checked": list(self.checked),
        }


class AvailabilityChecker:
    """
    Broad, read-only search for an installed core engine, used for diagnostics.

    Unlike runner resolution this never provisions anything; it reports the first
    method that found the engine and which methods were tried.
    """

    def __init__(self, config: BridgeConfig, *, prober: EngineProber | None = None) -> None:
        self._config = config
        self._prober = prober or EngineProber(config)

    def _run(self, argv: list[str]) -> ProcessResult:
        return run_process(argv, timeout_ms=CHECK_TIMEOUT_MS, env=self._config.child_env())

    def check(self) -> AvailabilityReport:
        methods: list[tuple[str, Callable[[], str | None]]] = [
            ("import", self._check_import),
            ("python-pip-show", self._check_python_pip_show),
            ("pip-show", self._check_pip_show),
            ("pyenv", self._check_pyenv),
            ("user-site", self._check_user_site),
            ("pipx", self._check_pipx),
            ("poetry", self._check_poetry),
            ("conda", self._check_conda),
        ]
        checked: list[str] = []
        for name, method in methods:
            checked.append(name)
            detail = method()
            if detail is not None:
                logger.debug("core engine found via %s: %s", name, detail)
                return AvailabilityReport(True, name, detail, tuple(checked))
        return AvailabilityReport(False, None, None, tuple(checked))

    def _check_import(self) -> str | None:
        for cmd in CANDIDATE_PYTHONS:
            if self._prober.module_resolvable(cmd):
                return cmd
        return None

    def _check_python_pip_show(self) -> str | None:
        for cmd in CANDIDATE_PYTHONS:
            if self._run([cmd, "-m", "pip", "show", CORE_DISTRIBUTION]).ok:
                return f"{cmd} -m pip show {CORE_DISTRIBUTION}"
        return None

    def _check_pip_show(self) -> str | None:
        for pip in ("pip", "pip3"):
            if self._run([pip, "show", CORE_DISTRIBUTION]).ok:
                return f"{pip} show {CORE_DISTRIBUTION}"
        return None

    def _check_pyenv(self) -> str | None:
        root = self._config.environ.get("PYENV_ROOT") or str(Path.home() / ".pyenv")
        versions_dir = Path(root) / "versions"
        if not versions_dir.is_dir():
            return None
        for version_dir in sorted(versions_dir.iterdir()):
            python = venv_python(version_dir, is_windows=self._config.is_windows)
            if python.is_file() and self._prober.module_resolvable(str(python)):
                return str(python)
        return None

    def _check_user_site(self) -> str | None:
        for cmd in ("python3", "python"):
            result = self._run([cmd, "-m", "site", "--user-site"])
            # Exit status reports whether user site is enabled; the path is printed either way.
            if result.error is not None or result.timed_out or not result.stdout.strip():
                continue
            site_dir = Path(result.stdout.strip())
            for name in CORE_IMPORT_NAMES:
                if (site_dir / name).is_dir():
                    return str(site_dir / name)
        return None

    def _check_pipx(self) -> str | None:
        result = self._run(["pipx", "list", "--short"])
        if result.ok and any(
            line.split()[0] == CORE_DISTRIBUTION
            for line in result.stdout.splitlines()
            if line.strip()
        ):
            return "pipx"
        return None

    def _check_poetry(self) -> str | None:
        if self._run(["poetry", "show", CORE_DISTRIBUTION]).ok:
            return "poetry show"
        return None

    def _check_conda(self) -> str | None:
        result = self._run(["conda", "list", CORE_DISTRIBUTION])
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            if line.startswith("#") or not line.strip():
                continue
            if line.split()[0] == CORE_DISTRIBUTION:
                return "conda list"
        return None


def check_core_available(config: BridgeConfig) -> AvailabilityReport:
    return AvailabilityChecker(config).check()
