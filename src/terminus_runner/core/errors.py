"""
Exception hierarchy for the Terminus runner.

Startup errors abort the process before any plugin runs. Per-plugin render
failures never surface here; they become fallback images at the render
boundary.
"""

from typing import Any, Dict, Optional


class RunnerError(Exception):
    """Base class for all runner errors."""


class StartupError(RunnerError):
    """Fatal misconfiguration detected while starting up."""


class PluginError(StartupError):
    """A plugin directory, config file or entry point is invalid."""

    def __init__(
        self,
        message: str,
        plugin_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.plugin_name = plugin_name
        self.context = context or {}


class TerminusError(RunnerError):
    """A call to the Terminus server failed or returned an unusable response."""


class CoordinatorError(RunnerError):
    """The refresh coordinator cannot run safely (bad config or device state)."""
