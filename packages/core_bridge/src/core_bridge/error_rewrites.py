from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import PurePath, PurePosixPath, PureWindowsPath


@dataclass(frozen=True)
class RewriteRule:
    name: str
    pattern: re.Pattern[str]
    render: Callable[[re.Match[str]], str]


def _basename(raw: str) -> str:
    text = raw.strip().rstrip("/\\")
    path: PurePath = PureWindowsPath(text) if "\\" in text else PurePosixPath(text)
    return path.name or text


def _directory_exists(match: re.Match[str]) -> str:
    name = _basename(match.group("path"))
    return (
        f"Directory '{name}' already exists. Choose a different name, remove it, "
        f"or re-run with `--force` to overwrite it."
    )


def _kit_not_found(match: re.Match[str]) -> str:
    return f"Kit '{match.group('name')}' was not found. Run `rapidkit list` to see available kits."


def _module_not_found(match: re.Match[str]) -> str:
    return (
        f"Module '{match.group('name')}' was not found. "
        "Run `rapidkit modules list` to see available modules."
    )


def _no_such_command(match: re.Match[str]) -> str:
    return (
        f"Unknown command '{match.group('name')}'. "
        "Run `rapidkit --help` to see available commands."
    )


def _not_a_project(_match: re.Match[str]) -> str:
    return (
        "This directory is not a RapidKit project. `cd` into a project, "
        "or create one with `rapidkit create project`."
    )


def _engine_not_importable(_match: re.Match[str]) -> str:
    return (
        "The RapidKit core engine is not importable from the selected Python. "
        "Reinstall it, or re-run with RAPIDKIT_BRIDGE_FORCE_VENV=1 to use the bridge environment."
    )


def _permission_denied(match: re.Match[str]) -> str:
    return (
        f"Permission denied for '{match.group('path')}'. "
        "Check the file permissions or choose a writable location."
    )


DEFAULT_RULES: tuple[RewriteRule, ...] = (
    RewriteRule(
        "directory_exists",
        re.compile(r"EngineError:\s*Directory\s+'(?P<path>[^']+)'\s+exists and force is not set"),
        _directory_exists,
    ),
    RewriteRule(
        "kit_not_found", re.compile(r"Kit\s+'(?P<name>[^']+)'\s+not found", re.I), _kit_not_found
    ),
    RewriteRule(
        "module_not_found",
        re.compile(r"(?<!No )Module\s+'(?P<name>[^']+)'\s+not found"),
        _module_not_found,
    ),
    RewriteRule(
        "no_such_command",
        re.compile(r"No such command\s+['\"](?P<name>[^'\"]+)['\"]"),
        _no_such_command,
    ),
    RewriteRule("not_a_project", re.compile(r"Not a RapidKit project", re.I), _not_a_project),
    RewriteRule(
        "engine_not_importable",
        re.compile(r"No module named ['\"]?rapidkit['\"]?"),
        _engine_not_importable,
    ),
    RewriteRule(
        "permission_denied",
        re.compile(r"Permission denied:\s*'(?P<path>[^']+)'"),
        _permission_denied,
    ),
)


def rewrite_stderr(
    stderr_text: str, rules: Sequence[RewriteRule] = DEFAULT_RULES
) -> str | None:
    """Return the friendly message for the first matching rule, or None when nothing matches."""
    for rule in rules:
        match = rule.pattern.search(stderr_text)
        if match is not None:
            return rule.render(match)
    return None
