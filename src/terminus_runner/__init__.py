"""
Terminus runner - plugin screens for TRMNL e-ink devices served by Terminus.

Architecture:
    - Core: Kernel, TerminusClient, Sandbox, ScreenPublisher, RefreshCoordinator
    - Plugins: directories with a config.json and a plugin.py defining ``Plugin``

Plugins render in a sandbox shortly before the device is predicted to fetch its
next image, so every fetch picks up fresh screens.

Example:
    from terminus_runner.core import Kernel, SystemConfig

    kernel = Kernel(SystemConfig.from_env())
    kernel.run()
"""

__version__ = "1.0.0"
__author__ = "Terminus Runner Team"

from .core import (
    Kernel,
    RefreshCoordinator,
    Sandbox,
    ScreenPublisher,
    SystemConfig,
    TerminusClient,
)
from .plugins import BasePlugin, PluginRegistry, RenderResult

__all__ = [
    # Core
    "Kernel",
    "RefreshCoordinator",
    "Sandbox",
    "ScreenPublisher",
    "SystemConfig",
    "TerminusClient",
    # Plugins
    "BasePlugin",
    "PluginRegistry",
    "RenderResult",
]
