"""Three-scope MCP server configuration store.

Server definitions live in three JSON files:

- ``user``: ``~/.config/codex/mcp.json``, shared by every project
- ``project``: ``<project>/mcp.json``, committed with the project
- ``local``: ``~/.config/codex/mcp-local.json``, machine-local and uncommitted

File Structure::

    {
        "mcpServers": {
            "github": {"id": "github", "transport": "stdio", "command": "npx", ...}
        },
        "settings": {"timeout": 30}
    }

Reads merge the scopes with precedence ``user < project < local``. Every
mutation writes the owning scope's file atomically (temporary file, then
rename). A missing or malformed file is treated as an empty configuration.

Example:
    >>> store = ConfigStore(RuntimeSettings())
    >>> await store.load(Path.cwd())
    >>> await store.add_server(ServerDefinition(id="git", command="uvx", args=["mcp-server-git"]))
    >>> store.get_server("git").scope
    <Scope.LOCAL: 'local'>
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from pydantic import ValidationError

from mcp_runtime.config.settings import PROJECT_CONFIG_FILE, RuntimeSettings
from mcp_runtime.exceptions import ConfigError, NotFoundError
from mcp_runtime.models import (
    SCOPE_LOOKUP_ORDER,
    SCOPE_MERGE_ORDER,
    MCPConfiguration,
    MCPSettings,
    Scope,
    ServerDefinition,
    TransportType,
)

log = structlog.get_logger(__name__)


def default_claude_desktop_config() -> Path:
    return Path.home() / "Library" / "Application Support" / "Claude" / "settings.json"


class ConfigStore:
    """Loads, merges and persists the three configuration scopes.

    Attributes:
        settings: Runtime settings providing the user/local file locations.
    """

    def __init__(self, settings: RuntimeSettings | None = None) -> None:
        self.settings = settings or RuntimeSettings()
        self._paths: dict[Scope, Path | None] = {
            Scope.USER: self.settings.user_config_path,
            Scope.PROJECT: None,
            Scope.LOCAL: self.settings.local_config_path,
        }
        self._configs: dict[Scope, MCPConfiguration] = {scope: MCPConfiguration() for scope in Scope}
        self._lock = asyncio.Lock()

    # === Loading ===

    async def load(self, project_path: str | Path | None = None) -> None:
        """(Re)load every scope from disk.

        Args:
            project_path: Project directory; without it the project scope
                stays empty and cannot be written.
        """
        if project_path is not None:
            self._paths[Scope.PROJECT] = Path(project_path) / PROJECT_CONFIG_FILE

        async with self._lock:
            for scope in SCOPE_MERGE_ORDER:
                path = self._paths[scope]
                self._configs[scope] = await self._read_config(path, scope) if path else MCPConfiguration()

        log.info(
            "mcp_config_loaded",
            user=len(self._configs[Scope.USER].mcp_servers),
            project=len(self._configs[Scope.PROJECT].mcp_servers),
            local=len(self._configs[Scope.LOCAL].mcp_servers),
        )

    async def _read_config(self, path: Path, scope: Scope) -> MCPConfiguration:
        if not path.exists():
            return MCPConfiguration()

        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
            data = json.loads(content)
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            # Ids come from the mapping keys; the file decides the scope.
            servers = data.get("mcpServers") or {}
            if not isinstance(servers, dict):
                raise ValueError("mcpServers is not an object")
            for server_id, raw in servers.items():
                if isinstance(raw, dict):
                    raw.setdefault("id", server_id)
                    raw["scope"] = scope.value
            config = MCPConfiguration.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            log.warning("mcp_config_unreadable", path=str(path), error=str(e))
            return MCPConfiguration()

        return config

    async def _write_config(self, scope: Scope) -> None:
        """Write one scope file atomically.

        Raises:
            ConfigError: If the scope has no file (project without a path).
            OSError: If the directory or file cannot be written.
        """
        path = self._path_for(scope)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")

        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(self._configs[scope].to_json_dict(), indent=2))
            tmp_path.replace(path)
        except OSError as e:
            log.error("mcp_config_write_failed", path=str(path), error=str(e))
            raise

    def _path_for(self, scope: Scope) -> Path:
        path = self._paths[scope]
        if path is None:
            raise ConfigError("Project config path not set; call load() with a project path")
        return path

    # === Mutation ===

    async def add_server(self, definition: ServerDefinition) -> None:
        """Add or replace a definition in the file for ``definition.scope``."""
        async with self._lock:
            self._path_for(definition.scope)
            self._configs[definition.scope].mcp_servers[definition.id] = definition.model_copy(deep=True)
            await self._write_config(definition.scope)

        log.info("mcp_server_added", server=definition.id, scope=definition.scope.value)

    async def remove_server(self, server_id: str, scope: Scope | None = None) -> Scope:
        """Remove a definition.

        Without ``scope`` the scopes are searched local, project, user and the
        first one holding the id loses it; the others are left untouched.

        Returns:
            The scope the definition was removed from.

        Raises:
            NotFoundError: If no searched scope defines the id.
        """
        scopes = (scope,) if scope is not None else SCOPE_LOOKUP_ORDER

        async with self._lock:
            for candidate in scopes:
                if self._paths[candidate] is None:
                    continue
                servers = self._configs[candidate].mcp_servers
                if server_id in servers:
                    del servers[server_id]
                    await self._write_config(candidate)
                    log.info("mcp_server_removed", server=server_id, scope=candidate.value)
                    return candidate

        raise NotFoundError(server_id, f"Server {server_id} not found in any config")

    async def set_enabled(self, server_id: str, enabled: bool) -> None:
        """Flip the ``disabled`` flag in the scope that defines the id."""
        await self._update(server_id, lambda d: d.model_copy(update={"disabled": not enabled}))

    async def update_env(self, server_id: str, patch: dict[str, str]) -> None:
        """Merge ``patch`` into the definition's environment."""
        await self._update(server_id, lambda d: d.model_copy(update={"env": {**d.env, **patch}}))

    async def _update(self, server_id: str, change: Any) -> None:
        async with self._lock:
            owner = self._owning_scope(server_id)
            if owner is None:
                raise NotFoundError(server_id, f"Server {server_id} not found")

            current = self._configs[owner].mcp_servers[server_id]
            updated = change(current)
            updated.scope = owner
            self._configs[owner].mcp_servers[server_id] = updated
            await self._write_config(owner)

        log.info("mcp_server_updated", server=server_id, scope=owner.value)

    def _owning_scope(self, server_id: str) -> Scope | None:
        for scope in SCOPE_LOOKUP_ORDER:
            if server_id in self._configs[scope].mcp_servers:
                return scope
        return None

    # === Reads ===

    def get_server(self, server_id: str) -> ServerDefinition | None:
        """Return the winning definition (local, then project, then user)."""
        owner = self._owning_scope(server_id)
        if owner is None:
            return None
        return self._configs[owner].mcp_servers[server_id].model_copy(deep=True)

    def get_all_servers(self) -> dict[str, ServerDefinition]:
        """Merge all scopes; local overrides project overrides user."""
        merged: dict[str, ServerDefinition] = {}
        for scope in SCOPE_MERGE_ORDER:
            for server_id, definition in self._configs[scope].mcp_servers.items():
                merged[server_id] = definition.model_copy(deep=True)
        return merged

    def get_enabled_servers(self) -> list[ServerDefinition]:
        return [d for d in self.get_all_servers().values() if not d.disabled]

    def get_config(self, scope: Scope) -> MCPConfiguration:
        return self._configs[scope].model_copy(deep=True)

    def get_config_paths(self) -> dict[str, Path | None]:
        return {scope.value: self._paths[scope] for scope in Scope}

    # === Settings ===

    def get_settings(self) -> dict[str, Any]:
        """Merge the ``settings`` blocks with the same precedence as servers."""
        merged: dict[str, Any] = {}
        for scope in SCOPE_MERGE_ORDER:
            block = self._configs[scope].settings
            if block is not None:
                merged.update(block.model_dump(mode="json", by_alias=True, exclude_none=True))
        return merged

    async def set_setting(self, key: str, value: Any, scope: Scope = Scope.LOCAL) -> None:
        async with self._lock:
            self._path_for(scope)
            config = self._configs[scope]
            current = config.settings.to_json_dict() if config.settings else {}
            current[key] = value
            config.settings = MCPSettings.model_validate(current)
            await self._write_config(scope)

    # === Import ===

    async def import_from_claude_desktop(self, path: str | Path | None = None) -> int:
        """Copy Claude Desktop's server list into the user scope.

        Returns:
            Number of imported servers; 0 when the file is absent or invalid.
        """
        source = Path(path) if path else default_claude_desktop_config()

        try:
            async with aiofiles.open(source) as f:
                data = json.loads(await f.read())
        except (OSError, ValueError) as e:
            log.warning("claude_desktop_import_failed", path=str(source), error=str(e))
            return 0

        servers = data.get("mcpServers") if isinstance(data, dict) else None
        if not servers:
            return 0

        imported = 0
        for server_id, raw in servers.items():
            try:
                definition = ServerDefinition(
                    id=server_id,
                    name=server_id,
                    transport=raw.get("type") or TransportType.STDIO,
                    command=raw.get("command"),
                    args=raw.get("args") or [],
                    env=raw.get("env") or {},
                    url=raw.get("url"),
                    scope=Scope.USER,
                )
            except (AttributeError, ValidationError) as e:
                log.warning("claude_desktop_entry_skipped", server=server_id, error=str(e))
                continue

            await self.add_server(definition)
            imported += 1

        log.info("claude_desktop_imported", count=imported)
        return imported
