from __future__ import annotations

# Public engine commands forwarded even when discovery is impossible
# (first run, broken install, network-isolated CI).
BOOTSTRAP_CORE_COMMANDS: frozenset[str] = frozenset(
    {
        "version",
        "project",
        "create",
        "init",
        "dev",
        "start",
        "build",
        "test",
        "lint",
        "format",
        "add",
        "list",
        "info",
        "upgrade",
        "diff",
        "doctor",
        "license",
        "commands",
        "reconcile",
        "rollback",
        "uninstall",
        "checkpoint",
        "optimize",
        "snapshot",
        "frameworks",
        "modules",
        "merge",
    }
)
