"""
Terminus runner core - kernel, Terminus client, sandboxing, publishing and
refresh coordination.
"""

from .config import (
    ClientConfig,
    CoordinatorConfig,
    EnvSettings,
    SandboxConfig,
    SystemConfig,
)
from .coordinator import BeliefState, RefreshCoordinator, SyncState
from .errors import CoordinatorError, PluginError, RunnerError, StartupError, TerminusError
from .kernel import Kernel
from .publisher import ScreenPublisher
from .sandbox import ExecutionMode, Sandbox
from .terminus import DeviceInfo, TerminusClient

__all__ = [
    "Kernel",
    "TerminusClient",
    "DeviceInfo",
    "Sandbox",
    "ExecutionMode",
    "ScreenPublisher",
    "RefreshCoordinator",
    "SyncState",
    "BeliefState",
    "SystemConfig",
    "EnvSettings",
    "ClientConfig",
    "SandboxConfig",
    "CoordinatorConfig",
    "RunnerError",
    "StartupError",
    "PluginError",
    "TerminusError",
    "CoordinatorError",
]
