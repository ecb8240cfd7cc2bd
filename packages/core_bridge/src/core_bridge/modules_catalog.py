from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from core_bridge.command_surface import CaptureRunner
from core_bridge.config import BridgeConfig
from core_bridge.executor import ExecOptions
from core_bridge.schemas import MODULES_CATALOG_SCHEMA, finite_timestamp, is_valid

logger = logging.getLogger(__name__)

MODULES_CATALOG_TTL_SECONDS = 30 * 60
CATALOG_FETCH_TIMEOUT_MS = 15000


@dataclass(frozen=True)
class CatalogFilters:
    category: str | None = None
    tag: str | None = None
    detailed: bool = False

    def cache_key(self) -> str:
        material = f"{self.category or ''}|{self.tag or ''}|{int(self.detailed)}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:12]

    def to_args(self) -> list[str]:
        args = ["modules", "list", "--json-schema", "1"]
        if self.category:
            args.extend(["--category", self.category])
        if self.tag:
            args.extend(["--tag", self.tag])
        if self.detailed:
            args.append("--detailed")
        return args


@dataclass(frozen=True)
class CatalogSnapshot:
    modules: list[Any]
    fetched_at_ms: int
    source: str = "json-schema"
    schema_version: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        out.update(
            {
                "schema_version": self.schema_version,
                "source": self.source,
                "fetched_at": self.fetched_at_ms,
                "modules": list(self.modules),
            }
        )
        return out

    @classmethod
    def from_dict(cls, data: Any) -> CatalogSnapshot | None:
        if not is_valid(data, MODULES_CATALOG_SCHEMA) or "fetched_at" not in data:
            return None
        fetched_at = finite_timestamp(data["fetched_at"])
        if fetched_at is None:
            return None
        extra = {
            key: value
            for key, value in data.items()
            if key not in {"schema_version", "source", "fetched_at", "modules"}
        }
        return cls(
            modules=list(data["modules"]),
            fetched_at_ms=fetched_at,
            source=str(data.get("source") or "json-schema"),
            extra=extra,
        )


class ModulesCatalog:
    """Per-filter cache of `modules list` output, held in memory and on disk."""

    def __init__(
        self,
        cache_dir: Path,
        executor: CaptureRunner,
        *,
        clock: Callable[[], float] = time.time,
        ttl_seconds: float = MODULES_CATALOG_TTL_SECONDS,
        cwd: Path | None = None,
    ) -> None:
        self._cache_dir = cache_dir
        self._executor = executor
        self._clock = clock
        self._ttl_seconds = ttl_seconds
        self._cwd = cwd
        self._memory: dict[str, CatalogSnapshot] = {}

    @classmethod
    def for_config(
        cls, config: BridgeConfig, executor: CaptureRunner, **kwargs: Any
    ) -> ModulesCatalog:
        return cls(config.bridge_dir, executor, **kwargs)

    def cache_path(self, filters: CatalogFilters) -> Path:
        return self._cache_dir / f"modules-catalog-{filters.cache_key()}.json"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get(
        self,
        *,
        category: str | None = None,
        tag: str | None = None,
        detailed: bool = False,
        ttl_seconds: float | None = None,
    ) -> CatalogSnapshot | None:
        filters = CatalogFilters(category=category, tag=tag, detailed=detailed)
        ttl_ms = int((self._ttl_seconds if ttl_seconds is None else ttl_seconds) * 1000)
        now = self._now_ms()
        key = filters.cache_key()

        cached = self._memory.get(key) or self._read(filters)
        if cached is not None and (now - cached.fetched_at_ms) < ttl_ms:
            self._memory[key] = cached
            return cached

        fresh = self._fetch(filters, now_ms=now)
        if fresh is not None:
            self._memory[key] = fresh
            self._write(filters, fresh)
            return fresh
        if cached is not None:
            logger.debug("modules catalog fetch failed; serving stale snapshot")
        return cached

    def _fetch(self, filters: CatalogFilters, *, now_ms: int) -> CatalogSnapshot | None:
        options = ExecOptions(cwd=self._cwd, timeout_ms=CATALOG_FETCH_TIMEOUT_MS)
        result = self._executor.run_capture(filters.to_args(), options)
        if result.exit_code == 0:
            payload = _load_json(result.stdout)
            if isinstance(payload, dict) and is_valid(payload, MODULES_CATALOG_SCHEMA):
                extra = {
                    key: value
                    for key, value in payload.items()
                    if key not in {"schema_version", "modules", "fetched_at", "source"}
                }
                return CatalogSnapshot(
                    modules=list(payload["modules"]), fetched_at_ms=now_ms, extra=extra
                )

        legacy = self._executor.run_capture(["modules", "list", "--json"], options)
        if legacy.exit_code == 0:
            payload = _load_json(legacy.stdout)
            if isinstance(payload, list):
                return CatalogSnapshot(
                    modules=payload, fetched_at_ms=now_ms, source="legacy-json"
                )
        return None

    def _read(self, filters: CatalogFilters) -> CatalogSnapshot | None:
        path = self.cache_path(filters)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug("ignoring unreadable modules catalog %s: %s", path, exc)
            return None
        return CatalogSnapshot.from_dict(raw)

    def _write(self, filters: CatalogFilters, snapshot: CatalogSnapshot) -> None:
        path = self.cache_path(filters)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(snapshot.to_dict(), handle, indent=2)
                handle.write("\n")
            os.replace(tmp_name, path)
        except OSError as exc:
            logger.debug("could not persist modules catalog %s: %s", path, exc)


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None
