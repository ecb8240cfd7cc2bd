from __future__ import annotations

import math
from typing import Any

from jsonschema import Draft202012Validator

COMMANDS_CACHE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["schema_version", "fetched_at", "commands"],
    "properties": {
        "schema_version": {"const": 1},
        "fetched_at": {"type": "number", "minimum": 0},
        "rapidkit_version": {"type": ["string", "null"]},
        "commands": {"type": "array", "items": {"type": "string"}},
    },
}

COMMANDS_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["schema_version", "commands"],
    "properties": {
        "schema_version": {"const": 1},
        "commands": {
            "type": "array",
            "items": {
                "anyOf": [
                    {"type": "string"},
                    {
                        "type": "object",
                        "required": ["name"],
                        "properties": {"name": {"type": "string"}},
                    },
                ]
            },
        },
    },
}

CORE_VERSION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["schema_version", "version"],
    "properties": {
        "schema_version": {"const": 1},
        "version": {"type": "string", "minLength": 1},
    },
}

PROJECT_DETECT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["schema_version"],
    "properties": {"schema_version": {"const": 1}},
}

MODULES_CATALOG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["schema_version", "modules"],
    "properties": {
        "schema_version": {"const": 1},
        "modules": {"type": "array"},
        "fetched_at": {"type": "number", "minimum": 0},
        "source": {"type": "string"},
    },
}

CONFIG_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "install_target": {"type": "string", "minLength": 1},
        "install_id": {"type": ["string", "null"]},
        "cache_root": {"type": "string", "minLength": 1},
        "force_sandbox": {"type": "boolean"},
        "upgrade_pip": {"type": "boolean"},
        "install_retries": {"type": "integer", "minimum": 0},
        "retry_base_delay_ms": {"type": "integer", "minimum": 0},
        "install_timeout_ms": {"type": "integer", "minimum": 1},
        "debug": {"type": "boolean"},
    },
}


def validate_document(document: Any, schema: dict[str, Any]) -> list[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(document), key=lambda e: str(e.path))
    formatted: list[str] = []
    for error in errors:
        path = "$"
        for part in error.path:
            path += f"[{part!r}]" if isinstance(part, int) else f".{part}"
        formatted.append(f"{path}: {error.message}")
    return formatted


def is_valid(document: Any, schema: dict[str, Any]) -> bool:
    return Draft202012Validator(schema).is_valid(document)


def finite_timestamp(value: Any) -> int | None:
    """`fetched_at` as integer milliseconds, or None for NaN/Infinity and non-numbers."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(value)
