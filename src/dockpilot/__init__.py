"""DockPilot streaming service.

Public API:
    Settings, load_settings: runtime configuration

Internal:
    engine: Docker engine adapter
    streaming: log hub, shell bridge and operation controller
    server: WebSocket and SSE transport
"""

from __future__ import annotations

from dockpilot.config import Settings, load_settings

__version__ = "0.1.0"

__all__ = ["Settings", "__version__", "load_settings"]
