from core_bridge.command_surface import CommandSurfaceCache, should_forward_to_core
from core_bridge.config import BridgeConfig, load_bridge_config
from core_bridge.errors import BridgeError, BridgeErrorKind, ConfigError, format_bridge_error
from core_bridge.executor import CaptureResult, CoreExecutor, ExecOptions
from core_bridge.resolver import RunnerDescriptor, RunnerResolver
from core_bridge.sandbox import SandboxEnvironment, SandboxProvisioner
from core_bridge.session import BridgeSession, open_session

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "BridgeErrorKind",
    "BridgeSession",
    "CaptureResult",
    "CommandSurfaceCache",
    "ConfigError",
    "CoreExecutor",
    "ExecOptions",
    "RunnerDescriptor",
    "RunnerResolver",
    "SandboxEnvironment",
    "SandboxProvisioner",
    "format_bridge_error",
    "load_bridge_config",
    "open_session",
    "should_forward_to_core",
]
