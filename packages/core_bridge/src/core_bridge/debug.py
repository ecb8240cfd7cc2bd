from __future__ import annotations

import logging
import sys

from core_bridge.config import BridgeConfig

LOG_FORMAT = "[%(name)s] %(levelname)s: %(message)s"

_HANDLER_NAME = "core_bridge.debug"


def configure_debug_logging(config: BridgeConfig) -> None:
    """Route bridge diagnostics to stderr when debugging is enabled; stdout is never touched."""
    root = logging.getLogger("core_bridge")
    if not config.debug:
        return
    if any(handler.get_name() == _HANDLER_NAME for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)
