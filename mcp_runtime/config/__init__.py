"""Configuration: runtime settings and the three-scope server store."""

from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.config.store import ConfigStore

__all__ = ["ConfigStore", "RuntimeSettings"]
