from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from core_bridge.command_surface import CommandSurfaceCache
from core_bridge.config import BridgeConfig, load_bridge_config
from core_bridge.debug import configure_debug_logging
from core_bridge.executor import CoreExecutor
from core_bridge.modules_catalog import ModulesCatalog
from core_bridge.probe import EngineProber
from core_bridge.resolver import RunnerResolver
from core_bridge.sandbox import SandboxProvisioner


@dataclass(frozen=True)
class BridgeSession:
    """Everything one wrapper process needs, wired once from a single config."""

    config: BridgeConfig
    prober: EngineProber
    provisioner: SandboxProvisioner
    resolver: RunnerResolver
    executor: CoreExecutor
    commands: CommandSurfaceCache
    catalog: ModulesCatalog


def open_session(config: BridgeConfig | None = None, *, cwd: Path | None = None) -> BridgeSession:
    cfg = config if config is not None else load_bridge_config()
    configure_debug_logging(cfg)
    prober = EngineProber(cfg)
    provisioner = SandboxProvisioner(cfg, prober=prober)
    resolver = RunnerResolver(cfg, prober=prober, provisioner=provisioner)
    executor = CoreExecutor(cfg, resolver=resolver)
    return BridgeSession(
        config=cfg,
        prober=prober,
        provisioner=provisioner,
        resolver=resolver,
        executor=executor,
        commands=CommandSurfaceCache.for_config(cfg, executor, cwd=cwd),
        catalog=ModulesCatalog.for_config(cfg, executor, cwd=cwd),
    )
