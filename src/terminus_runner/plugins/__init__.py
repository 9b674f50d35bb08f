"""
Terminus runner plugins

Each plugin lives in its own folder with a config.json and a plugin.py file
containing the implementation.
"""

from .base import BasePlugin, RenderResult
from .registry import PluginDescriptor, PluginRegistry, StartFailurePolicy

__all__ = [
    "BasePlugin",
    "RenderResult",
    "PluginDescriptor",
    "PluginRegistry",
    "StartFailurePolicy",
]
