from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any


class BridgeErrorKind(str, Enum):
    PYTHON_NOT_FOUND = "python_not_found"
    SANDBOX_CREATE_FAILED = "sandbox_create_failed"
    PIP_BOOTSTRAP_FAILED = "pip_bootstrap_failed"
    PIP_UPGRADE_FAILED = "pip_upgrade_failed"
    ENGINE_INSTALL_FAILED = "engine_install_failed"
    BOOTSTRAP_FAILED = "bootstrap_failed"


# User-facing remediation text lives here and nowhere else.
_HINTS: dict[BridgeErrorKind, str] = {
    BridgeErrorKind.PYTHON_NOT_FOUND: (
        "Install Python 3.10+ and ensure `python3` is available, then retry.\n"
        "Tip: if you are inside a RapidKit project, use the local ./rapidkit launcher."
    ),
    BridgeErrorKind.SANDBOX_CREATE_FAILED: (
        "Python could not create a virtual environment. Install the venv module for your "
        "interpreter (Debian/Ubuntu: `sudo apt install python3-venv`) and retry."
    ),
    BridgeErrorKind.PIP_BOOTSTRAP_FAILED: (
        "pip is missing from the bridge environment and `ensurepip` could not install it. "
        "Install pip for your interpreter (`python3 -m ensurepip --upgrade`) and retry."
    ),
    BridgeErrorKind.PIP_UPGRADE_FAILED: (
        "Upgrading pip failed. Check your network/proxy settings, or unset "
        "RAPIDKIT_BRIDGE_UPGRADE_PIP to skip the upgrade."
    ),
    BridgeErrorKind.ENGINE_INSTALL_FAILED: (
        "Installing the core engine failed. Check your network/proxy settings, or point "
        "RAPIDKIT_CORE_PYTHON_PACKAGE at a local path or wheel and retry."
    ),
    BridgeErrorKind.BOOTSTRAP_FAILED: (
        "Remove the bridge cache directory and retry, or set RAPIDKIT_DEBUG=1 for details."
    ),
}

_HEADLINES: dict[BridgeErrorKind, str] = {
    BridgeErrorKind.PYTHON_NOT_FOUND: (
        "RapidKit could not find Python (python3/python) on your PATH."
    ),
    BridgeErrorKind.SANDBOX_CREATE_FAILED: "could not create the bridge virtual environment",
    BridgeErrorKind.PIP_BOOTSTRAP_FAILED: "could not bootstrap pip in the bridge environment",
    BridgeErrorKind.PIP_UPGRADE_FAILED: "could not upgrade pip in the bridge environment",
    BridgeErrorKind.ENGINE_INSTALL_FAILED: "could not install the core engine",
    BridgeErrorKind.BOOTSTRAP_FAILED: "could not prepare the bridge environment",
}


class BridgeError(Exception):
    """Typed failure raised once the sandbox bootstrap boundary has been crossed."""

    def __init__(
        self,
        kind: BridgeErrorKind,
        detail: str,
        *,
        hint: str | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail.strip()
        self.hint = hint.strip() if isinstance(hint, str) and hint.strip() else _HINTS[kind]
        self.log_path = log_path

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "detail": self.detail,
            "hint": self.hint,
            "log_path": str(self.log_path) if self.log_path is not None else None,
        }


class ConfigError(ValueError):
    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


def format_bridge_error(exc: BaseException) -> str:
    if isinstance(exc, BridgeError):
        if exc.kind is BridgeErrorKind.PYTHON_NOT_FOUND:
            return f"{_HEADLINES[exc.kind]}\n{exc.hint}"
        lines = [f"RapidKit bridge error: {_HEADLINES[exc.kind]}."]
        if exc.detail:
            lines.append(exc.detail)
        lines.append(exc.hint)
        if exc.log_path is not None:
            lines.append(f"Bootstrap log: {exc.log_path}")
        return "\n".join(lines)
    if isinstance(exc, ConfigError):
        where = f" ({exc.source})" if exc.source else ""
        return f"RapidKit bridge configuration error{where}: {exc}"
    return f"RapidKit: failed to run the Python core engine: {exc}"
