"""Runtime settings using Pydantic for type-safe configuration.

Settings come from ``MCP_RUNTIME_*`` environment variables, or from an
optional YAML file with ``${VAR}`` / ``${VAR:-default}`` interpolation.
They are distinct from the per-scope ``mcp.json`` files managed by
``ConfigStore``; these only tune the runtime itself.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_runtime.exceptions import ConfigError

USER_CONFIG_FILE = "mcp.json"
LOCAL_CONFIG_FILE = "mcp-local.json"
PROJECT_CONFIG_FILE = "mcp.json"
REGISTRY_CACHE_FILE = "registry-cache.json"


class RuntimeSettings(BaseSettings):
    """Settings for the MCP client runtime."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_RUNTIME_",
        case_sensitive=False,
    )

    config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".config" / "codex",
        description="Directory holding the user and local scope files",
    )
    cache_dir: Path = Field(
        default_factory=lambda: Path.home() / ".cache" / "codex" / "mcp",
        description="Directory holding the registry cache",
    )

    request_timeout: float = Field(default=30.0, gt=0, description="Per-request deadline in seconds")
    protocol_version: str = Field(default="2024-11-05", description="MCP protocol version sent on initialize")
    client_name: str = Field(default="codex-linux", description="clientInfo.name sent on initialize")
    client_version: str = Field(default="1.0.0", description="clientInfo.version sent on initialize")

    registry_url: str = Field(
        default="https://api.anthropic.com/mcp-registry/v0",
        description="Base URL of the remote server catalog",
    )
    registry_ttl: float = Field(default=24 * 60 * 60, gt=0, description="Registry cache TTL in seconds")
    search_cache_ttl: float = Field(default=5 * 60, gt=0, description="Tool search cache TTL in seconds")

    oauth_callback_port: int = Field(default=3118, ge=0, le=65535, description="Local OAuth callback port")
    oauth_timeout: float = Field(default=5 * 60, gt=0, description="OAuth callback wait in seconds")

    relevant_tools_fallback: int = Field(
        default=10, ge=0, description="Tools returned when nothing matches a context"
    )
    log_level: str = Field(default="INFO", description="Minimum log level")

    @property
    def user_config_path(self) -> Path:
        return self.config_dir / USER_CONFIG_FILE

    @property
    def local_config_path(self) -> Path:
        return self.config_dir / LOCAL_CONFIG_FILE

    @property
    def registry_cache_path(self) -> Path:
        return self.cache_dir / REGISTRY_CACHE_FILE

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> RuntimeSettings:
        """Load settings from YAML file with environment variable interpolation.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            RuntimeSettings instance

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            content = config_file.read_text()
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file: {config_path}") from e

        try:
            content = cls._interpolate_env_vars(content)
        except ValueError as e:
            raise ConfigError(f"Invalid environment variable reference in config: {e}") from e

        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Replace ``${VAR}`` and ``${VAR:-default}`` placeholders.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        lines = content.split("\n")
        return "\n".join(
            line if line.lstrip().startswith("#") else pattern.sub(replace_var, line) for line in lines
        )
