from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from core_bridge.bootstrap_commands import BOOTSTRAP_CORE_COMMANDS
from core_bridge.config import BridgeConfig
from core_bridge.executor import CaptureResult, ExecOptions
from core_bridge.probe import parse_version_payload
from core_bridge.schemas import (
    COMMANDS_CACHE_SCHEMA,
    COMMANDS_PAYLOAD_SCHEMA,
    finite_timestamp,
    is_valid,
)

logger = logging.getLogger(__name__)

COMMANDS_CACHE_SCHEMA_VERSION = 1
COMMANDS_CACHE_TTL_SECONDS = 24 * 60 * 60
VERSION_QUERY_TIMEOUT_MS = 8000
DISCOVERY_TIMEOUT_MS = 15000

_COMMANDS_HEADER_RE = re.compile(r"^\s*Commands:\s*$", re.IGNORECASE)
_SECTION_HEADER_RE = re.compile(r"^\s*(Options|Arguments|Usage|Commands)\s*:", re.IGNORECASE)
_COMMAND_ROW_RE = re.compile(r"^\s*([a-z0-9][a-z0-9_-]*)\b", re.IGNORECASE)
_EXPLICIT_INVOCATION_RE = re.compile(r"^\s*rapidkit\s+([a-z0-9_-]+)\b")


class CaptureRunner(Protocol):
    def run_capture(
        self, args: Sequence[str], options: ExecOptions | None = None
    ) -> CaptureResult: ...


def parse_help_commands(help_text: str) -> set[str]:
    """
    Extract top-level command names from `--help` output.

    Rows are read from the `Commands:` section until the first blank line. Lines such as
    `rapidkit <name>` appearing before that section count as well.
    """

    commands: set[str] = set()
    in_section = False
    for raw in help_text.split("\n"):
        line = raw.rstrip("\r")
        if not in_section:
            if _COMMANDS_HEADER_RE.match(line):
                in_section = True
            explicit = _EXPLICIT_INVOCATION_RE.match(line)
            if explicit and not explicit.group(1).startswith("-"):
                commands.add(explicit.group(1))
            continue
        if not line.strip():
            break
        if _SECTION_HEADER_RE.match(line):
            continue
        row = _COMMAND_ROW_RE.match(line)
        if row and not row.group(1).startswith("-"):
            commands.add(row.group(1))
    return commands


def parse_commands_payload(text: str) -> set[str]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return set()
    if not is_valid(payload, COMMANDS_PAYLOAD_SCHEMA):
        return set()
    names: set[str] = set()
    for item in payload["commands"]:
        name = item if isinstance(item, str) else item["name"]
        name = name.strip()
        if name and not name.startswith("-"):
            names.add(name)
    return names


@dataclass(frozen=True)
class CommandSurfaceEntry:
    commands: frozenset[str]
    fetched_at_ms: int
    rapidkit_version: str | None = None
    schema_version: int = COMMANDS_CACHE_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "schema_version": self.schema_version,
            "fetched_at": self.fetched_at_ms,
        }
        if self.rapidkit_version:
            out["rapidkit_version"] = self.rapidkit_version
        out["commands"] = sorted(self.commands)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> CommandSurfaceEntry | None:
        if not is_valid(data, COMMANDS_CACHE_SCHEMA):
            return None
        fetched_at = finite_timestamp(data["fetched_at"])
        if fetched_at is None:
            return None
        version = data.get("rapidkit_version")
        return cls(
            commands=frozenset(data["commands"]),
            fetched_at_ms=fetched_at,
            rapidkit_version=version if isinstance(version, str) and version else None,
        )


class CommandSurfaceCache:
    """Disk-backed, version-keyed snapshot of the engine's top-level commands."""

    def __init__(
        self,
        path: Path,
        executor: CaptureRunner,
        *,
        clock: Callable[[], float] = time.time,
        ttl_seconds: float = COMMANDS_CACHE_TTL_SECONDS,
        cwd: Path | None = None,
    ) -> None:
        self.path = path
        self._executor = executor
        self._clock = clock
        self._ttl_ms = int(ttl_seconds * 1000)
        self._cwd = cwd

    @classmethod
    def for_config(
        cls, config: BridgeConfig, executor: CaptureRunner, **kwargs: Any
    ) -> CommandSurfaceCache:
        return cls(config.commands_cache_path, executor, **kwargs)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _capture(self, args: list[str], *, timeout_ms: int) -> CaptureResult:
        return self._executor.run_capture(args, ExecOptions(cwd=self._cwd, timeout_ms=timeout_ms))

    def read_entry(self) -> CommandSurfaceEntry | None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug("ignoring unreadable commands cache %s: %s", self.path, exc)
            return None
        return CommandSurfaceEntry.from_dict(raw)

    def write_entry(self, entry: CommandSurfaceEntry) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(entry.to_dict(), handle, indent=2)
                handle.write("\n")
            os.replace(tmp_name, self.path)
        except OSError as exc:
            logger.debug("could not persist commands cache %s: %s", self.path, exc)

    def is_fresh(self, entry: CommandSurfaceEntry, *, now_ms: int | None = None) -> bool:
        now = self._now_ms() if now_ms is None else now_ms
        return bool(entry.commands) and (now - entry.fetched_at_ms) < self._ttl_ms

    def current_version(self) -> str | None:
        for args in (["version", "--json"], ["--version", "--json"]):
            result = self._capture(args, timeout_ms=VERSION_QUERY_TIMEOUT_MS)
            if result.exit_code != 0:
                continue
            payload = parse_version_payload(result.stdout)
            if payload is not None and isinstance(payload.get("version"), str):
                return payload["version"]
        return None

    def get_top_level_commands(self) -> set[str]:
        now = self._now_ms()
        cached = self.read_entry()
        version = self.current_version()
        if cached is not None and self.is_fresh(cached, now_ms=now):
            if version is None or cached.rapidkit_version is None:
                return set(cached.commands)
            if cached.rapidkit_version == version:
                return set(cached.commands)
            logger.debug(
                "commands cache is for %s, engine reports %s", cached.rapidkit_version, version
            )
        return self._discover(now_ms=now, version=version)

    def refresh(self) -> set[str]:
        return self._discover(now_ms=self._now_ms(), version=self.current_version())

    def get_cached_top_level_commands(self) -> set[str] | None:
        cached = self.read_entry()
        if cached is None or not self.is_fresh(cached):
            return None
        return set(cached.commands)

    def discover_structured(self) -> set[str]:
        result = self._capture(["commands", "--json"], timeout_ms=DISCOVERY_TIMEOUT_MS)
        if result.exit_code != 0:
            return set()
        return parse_commands_payload(result.stdout)

    def discover_from_help(self) -> set[str]:
        result = self._capture(["--help"], timeout_ms=DISCOVERY_TIMEOUT_MS)
        if result.exit_code != 0:
            return set()
        return parse_help_commands(result.stdout)

    def _discover(self, *, now_ms: int, version: str | None) -> set[str]:
        commands = self.discover_structured() or self.discover_from_help()
        if commands:
            self.write_entry(
                CommandSurfaceEntry(
                    commands=frozenset(commands), fetched_at_ms=now_ms, rapidkit_version=version
                )
            )
            return commands
        # A failed discovery must not be persisted as if it were fresh.
        logger.debug("command discovery failed; using bootstrap command list")
        return set(BOOTSTRAP_CORE_COMMANDS)


def should_forward_to_core(
    command: str,
    cache: CommandSurfaceCache,
    *,
    wrapper_commands: Iterable[str] = (),
) -> bool:
    name = command.strip()
    if not name or name.startswith("-") or name in set(wrapper_commands):
        return False
    if name in BOOTSTRAP_CORE_COMMANDS:
        return True
    cached = cache.get_cached_top_level_commands()
    if cached is not None and name in cached:
        return True
    return name in cache.get_top_level_commands()
