from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from core_bridge.errors import ConfigError
from core_bridge.schemas import CONFIG_FILE_SCHEMA, validate_document

DEFAULT_INSTALL_TARGET = "rapidkit-core"
DEFAULT_INSTALL_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY_MS = 800
DEFAULT_INSTALL_TIMEOUT_MS = 600_000

CONFIG_FILE_ENV = "RAPIDKIT_BRIDGE_CONFIG"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"", "0", "false", "no", "off"}


def _is_windows() -> bool:
    return os.name == "nt"


def _parse_flag(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigError(f"{name} must be one of 1/0/true/false/yes/no/on/off, got {raw!r}.")


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}.") from exc


def _nonempty(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def default_cache_root(environ: Mapping[str, str], *, is_windows: bool | None = None) -> Path:
    windows = _is_windows() if is_windows is None else is_windows
    override = _nonempty(environ, "RAPIDKIT_BRIDGE_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    xdg = _nonempty(environ, "XDG_CACHE_HOME")
    if xdg:
        return Path(xdg).expanduser()
    if windows:
        local_app_data = _nonempty(environ, "LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data)
    home = _nonempty(environ, "HOME")
    return (Path(home) if home else Path.home()) / ".cache"


def default_config_path(environ: Mapping[str, str]) -> Path:
    xdg = _nonempty(environ, "XDG_CONFIG_HOME")
    if xdg:
        base = Path(xdg).expanduser()
    else:
        home = _nonempty(environ, "HOME")
        base = (Path(home) if home else Path.home()) / ".config"
    return base / "rapidkit" / "bridge.yaml"


@dataclass(frozen=True)
class BridgeConfig:
    install_target: str = DEFAULT_INSTALL_TARGET
    install_id: str | None = None
    cache_root: Path = field(default_factory=lambda: Path.home() / ".cache")
    force_sandbox: bool = False
    upgrade_pip: bool = False
    install_retries: int = DEFAULT_INSTALL_RETRIES
    retry_base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS
    install_timeout_ms: int = DEFAULT_INSTALL_TIMEOUT_MS
    debug: bool = False
    search_path: str = ""
    is_windows: bool = field(default_factory=_is_windows)
    environ: Mapping[str, str] = field(default_factory=dict, repr=False, compare=False)
    config_file: Path | None = None

    @property
    def bridge_dir(self) -> Path:
        return self.cache_root / "rapidkit" / "bridge"

    @property
    def commands_cache_path(self) -> Path:
        return self.bridge_dir / "core-commands.json"

    @property
    def legacy_sandbox_dir(self) -> Path:
        return self.bridge_dir / "venv"

    def child_env(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(self.environ) if self.environ else dict(os.environ)
        if extra:
            env.update(extra)
        return env

    def to_dict(self) -> dict[str, Any]:
        return {
            "install_target": self.install_target,
            "install_id": self.install_id,
            "cache_root": str(self.cache_root),
            "bridge_dir": str(self.bridge_dir),
            "force_sandbox": self.force_sandbox,
            "upgrade_pip": self.upgrade_pip,
            "install_retries": self.install_retries,
            "retry_base_delay_ms": self.retry_base_delay_ms,
            "install_timeout_ms": self.install_timeout_ms,
            "debug": self.debug,
            "config_file": str(self.config_file) if self.config_file is not None else None,
        }


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigError(f"Config file not found: {path}", source=str(path))
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML: {exc}", source=str(path)) from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("Config file must contain a YAML mapping.", source=str(path))
    problems = validate_document(raw, CONFIG_FILE_SCHEMA)
    if problems:
        raise ConfigError("; ".join(problems), source=str(path))
    return raw


def load_bridge_config(
    environ: Mapping[str, str] | None = None,
    *,
    config_path: Path | None = None,
    is_windows: bool | None = None,
) -> BridgeConfig:
    """
    Build the process-wide bridge configuration.

    Precedence (lowest first): built-in defaults, the optional YAML config file,
    then the recognized environment variables.
    """

    env = dict(os.environ if environ is None else environ)
    windows = _is_windows() if is_windows is None else is_windows

    explicit_file = config_path
    if explicit_file is None and _nonempty(env, CONFIG_FILE_ENV):
        explicit_file = Path(env[CONFIG_FILE_ENV].strip()).expanduser()
    file_path = explicit_file if explicit_file is not None else default_config_path(env)
    file_values = _load_config_file(file_path, required=explicit_file is not None)

    install_target = str(file_values.get("install_target") or DEFAULT_INSTALL_TARGET)
    install_id = file_values.get("install_id")
    cache_root = (
        Path(str(file_values["cache_root"])).expanduser()
        if file_values.get("cache_root")
        else default_cache_root(env, is_windows=windows)
    )
    force_sandbox = bool(file_values.get("force_sandbox", False))
    upgrade_pip = bool(file_values.get("upgrade_pip", False))
    install_retries = int(file_values.get("install_retries", DEFAULT_INSTALL_RETRIES))
    retry_base_delay_ms = int(
        file_values.get("retry_base_delay_ms", DEFAULT_RETRY_BASE_DELAY_MS)
    )
    install_timeout_ms = int(file_values.get("install_timeout_ms", DEFAULT_INSTALL_TIMEOUT_MS))
    debug = bool(file_values.get("debug", False))

    target_override = _nonempty(env, "RAPIDKIT_CORE_PYTHON_PACKAGE")
    if target_override:
        install_target = target_override
    id_override = _nonempty(env, "RAPIDKIT_CORE_PYTHON_PACKAGE_ID")
    if id_override:
        install_id = id_override
    if _nonempty(env, "RAPIDKIT_BRIDGE_CACHE_DIR") or _nonempty(env, "XDG_CACHE_HOME"):
        cache_root = default_cache_root(env, is_windows=windows)

    if "RAPIDKIT_BRIDGE_FORCE_VENV" in env:
        force_sandbox = _parse_flag("RAPIDKIT_BRIDGE_FORCE_VENV", env["RAPIDKIT_BRIDGE_FORCE_VENV"])
    if "RAPIDKIT_BRIDGE_UPGRADE_PIP" in env:
        upgrade_pip = _parse_flag("RAPIDKIT_BRIDGE_UPGRADE_PIP", env["RAPIDKIT_BRIDGE_UPGRADE_PIP"])
    if "RAPIDKIT_DEBUG" in env:
        debug = _parse_flag("RAPIDKIT_DEBUG", env["RAPIDKIT_DEBUG"])
    if _nonempty(env, "RAPIDKIT_BRIDGE_PIP_RETRY"):
        install_retries = _parse_int("RAPIDKIT_BRIDGE_PIP_RETRY", env["RAPIDKIT_BRIDGE_PIP_RETRY"])
    if _nonempty(env, "RAPIDKIT_BRIDGE_PIP_RETRY_DELAY_MS"):
        retry_base_delay_ms = _parse_int(
            "RAPIDKIT_BRIDGE_PIP_RETRY_DELAY_MS", env["RAPIDKIT_BRIDGE_PIP_RETRY_DELAY_MS"]
        )
    if _nonempty(env, "RAPIDKIT_BRIDGE_PIP_TIMEOUT_MS"):
        install_timeout_ms = _parse_int(
            "RAPIDKIT_BRIDGE_PIP_TIMEOUT_MS", env["RAPIDKIT_BRIDGE_PIP_TIMEOUT_MS"]
        )
        if install_timeout_ms <= 0:
            raise ConfigError("RAPIDKIT_BRIDGE_PIP_TIMEOUT_MS must be positive.")

    return BridgeConfig(
        install_target=install_target,
        install_id=str(install_id).strip() if install_id else None,
        cache_root=cache_root,
        force_sandbox=force_sandbox,
        upgrade_pip=upgrade_pip,
        install_retries=max(0, install_retries),
        retry_base_delay_ms=max(0, retry_base_delay_ms),
        install_timeout_ms=install_timeout_ms,
        debug=debug,
        search_path=env.get("PATH", ""),
        is_windows=windows,
        environ=env,
        config_file=file_path if file_path.is_file() else None,
    )
