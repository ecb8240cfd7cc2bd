#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from core_bridge import (
    BridgeConfig,
    BridgeError,
    BridgeErrorKind,
    BridgeSession,
    ConfigError,
    ExecOptions,
    format_bridge_error,
    load_bridge_config,
    open_session,
    should_forward_to_core,
)
from core_bridge.availability import AvailabilityChecker
from core_bridge.core_json import CoreJsonResult, detect_project, get_core_version

WRAPPER_COMMANDS: frozenset[str] = frozenset(
    {
        "availability",
        "catalog",
        "config",
        "core-version",
        "detect",
        "ensure",
        "exec",
        "resolve",
        "surface",
    }
)


def _print_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=False) + "\n")


def _report_error(exc: BaseException) -> int:
    sys.stderr.write(format_bridge_error(exc) + "\n")
    return 1


def _cwd(args: argparse.Namespace) -> Path:
    raw = getattr(args, "cwd", None)
    return raw if raw is not None else Path.cwd()


def _cmd_resolve(args: argparse.Namespace, session: BridgeSession) -> int:
    try:
        runner = session.resolver.resolve(_cwd(args))
    except BridgeError as exc:
        return _report_error(exc)
    if args.json:
        _print_json(runner.to_dict())
    else:
        sys.stdout.write(" ".join(runner.argv([])) + "\n")
    return 0


def _cmd_ensure(args: argparse.Namespace, session: BridgeSession) -> int:
    del args
    base = session.prober.pick_system_python()
    try:
        if base is None:
            raise BridgeError(
                BridgeErrorKind.PYTHON_NOT_FOUND, "No Python interpreter found (python3/python)."
            )
        python = session.provisioner.ensure(base)
    except BridgeError as exc:
        return _report_error(exc)
    sys.stdout.write(f"{python}\n")
    return 0


def _cmd_surface(args: argparse.Namespace, session: BridgeSession) -> int:
    if args.cached:
        commands = session.commands.get_cached_top_level_commands()
        if commands is None:
            sys.stderr.write("No fresh command cache is available.\n")
            return 1
    elif args.refresh:
        commands = session.commands.refresh()
    else:
        commands = session.commands.get_top_level_commands()

    ordered = sorted(commands)
    if args.json:
        _print_json(ordered)
    else:
        for name in ordered:
            sys.stdout.write(f"{name}\n")
    return 0


def _cmd_catalog(args: argparse.Namespace, session: BridgeSession) -> int:
    snapshot = session.catalog.get(
        category=args.category,
        tag=args.tag,
        detailed=args.detailed,
        ttl_seconds=args.ttl_seconds,
    )
    if snapshot is None:
        sys.stderr.write("Modules catalog is unavailable (engine did not return a catalog).\n")
        return 1
    _print_json(snapshot.to_dict())
    return 0


def _emit_core_json(result: CoreJsonResult) -> int:
    if result.ok:
        _print_json(result.data)
        return 0
    if result.stderr:
        sys.stderr.write(result.stderr)
    else:
        sys.stderr.write("The core engine did not return a valid JSON payload.\n")
    return result.exit_code or 1


def _cmd_core_version(args: argparse.Namespace, session: BridgeSession) -> int:
    return _emit_core_json(get_core_version(session.executor, cwd=_cwd(args)))


def _cmd_detect(args: argparse.Namespace, session: BridgeSession) -> int:
    return _emit_core_json(detect_project(session.executor, args.path))


def _cmd_availability(args: argparse.Namespace, session: BridgeSession) -> int:
    report = AvailabilityChecker(session.config, prober=session.prober).check()
    if args.json:
        _print_json(report.to_dict())
    elif report.found:
        sys.stdout.write(f"found via {report.method}: {report.detail}\n")
    else:
        sys.stdout.write(f"not found (checked: {', '.join(report.checked)})\n")
    return 0 if report.found else 1


def _cmd_config(args: argparse.Namespace, session: BridgeSession) -> int:
    del args
    sys.stdout.write(yaml.safe_dump(session.config.to_dict(), sort_keys=False))
    return 0


def _cmd_exec(args: argparse.Namespace, session: BridgeSession) -> int:
    core_args = list(args.core_args)
    if core_args and core_args[0] == "--":
        core_args = core_args[1:]
    options = ExecOptions(cwd=_cwd(args))
    if args.mode == "inherit":
        return session.executor.run_inherit(core_args, options)
    if args.mode == "capture":
        result = session.executor.run_capture(core_args, options)
        _print_json(result.to_dict())
        return result.exit_code
    return session.executor.run_streamed(core_args, options)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rapidkit-bridge",
        description=(
            "Locate, bootstrap and invoke the RapidKit core engine. Any engine command "
            "(e.g. `rapidkit-bridge list`) is forwarded to the resolved engine."
        ),
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Trace resolution to stderr (same as RAPIDKIT_DEBUG=1).",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    resolve_p = sub.add_parser("resolve", help="Show which engine runner would be used.")
    resolve_p.add_argument("--cwd", type=Path, default=None)
    resolve_p.add_argument("--json", action="store_true")
    resolve_p.set_defaults(func=_cmd_resolve)

    ensure_p = sub.add_parser("ensure", help="Create or validate the cached bridge environment.")
    ensure_p.set_defaults(func=_cmd_ensure)

    surface_p = sub.add_parser("surface", help="List the engine's top-level commands.")
    surface_mode = surface_p.add_mutually_exclusive_group()
    surface_mode.add_argument("--refresh", action="store_true", help="Ignore the cache.")
    surface_mode.add_argument(
        "--cached", action="store_true", help="Only read the cache; never run the engine."
    )
    surface_p.add_argument("--json", action="store_true")
    surface_p.set_defaults(func=_cmd_surface)

    catalog_p = sub.add_parser("catalog", help="Print the engine's modules catalog as JSON.")
    catalog_p.add_argument("--category", default=None)
    catalog_p.add_argument("--tag", default=None)
    catalog_p.add_argument("--detailed", action="store_true")
    catalog_p.add_argument("--ttl-seconds", type=float, default=None)
    catalog_p.set_defaults(func=_cmd_catalog)

    version_p = sub.add_parser("core-version", help="Print the engine's version payload.")
    version_p.add_argument("--cwd", type=Path, default=None)
    version_p.set_defaults(func=_cmd_core_version)

    detect_p = sub.add_parser("detect", help="Ask the engine to detect a project at PATH.")
    detect_p.add_argument("path", type=Path)
    detect_p.set_defaults(func=_cmd_detect)

    availability_p = sub.add_parser(
        "availability", help="Search common install locations for the engine."
    )
    availability_p.add_argument("--json", action="store_true")
    availability_p.set_defaults(func=_cmd_availability)

    config_p = sub.add_parser("config", help="Print the effective bridge configuration.")
    config_p.set_defaults(func=_cmd_config)

    exec_p = sub.add_parser("exec", help="Run an engine command explicitly.")
    exec_p.add_argument(
        "--mode",
        choices=["inherit", "capture", "stream"],
        default="stream",
        help="capture prints a JSON object with exit_code/stdout/stderr.",
    )
    exec_p.add_argument("--cwd", type=Path, default=None)
    exec_p.add_argument("core_args", nargs=argparse.REMAINDER)
    exec_p.set_defaults(func=_cmd_exec)

    return parser


def _split_global_flags(argv: list[str]) -> tuple[bool, list[str]]:
    debug = False
    rest = list(argv)
    while rest and rest[0] == "--debug":
        debug = True
        rest = rest[1:]
    return debug, rest


def main(argv: list[str] | None = None, *, config: BridgeConfig | None = None) -> int:
    raw = list(sys.argv[1:] if argv is None else argv)
    debug, rest = _split_global_flags(raw)

    try:
        cfg = config if config is not None else load_bridge_config()
    except ConfigError as exc:
        sys.stderr.write(format_bridge_error(exc) + "\n")
        return 2
    if debug:
        cfg = replace(cfg, debug=True)

    head = rest[0] if rest else ""
    if head and not head.startswith("-") and head not in WRAPPER_COMMANDS:
        cwd = Path.cwd()
        session = open_session(cfg, cwd=cwd)
        if should_forward_to_core(head, session.commands, wrapper_commands=WRAPPER_COMMANDS):
            return session.executor.run_streamed(rest, ExecOptions(cwd=cwd))
        sys.stderr.write(
            f"Unknown command: {head}\nRun `rapidkit-bridge --help` for wrapper commands.\n"
        )
        return 2

    parser = build_parser()
    args = parser.parse_args(raw)
    session = open_session(cfg, cwd=_cwd(args))
    return int(args.func(args, session))


if __name__ == "__main__":
    raise SystemExit(main())
