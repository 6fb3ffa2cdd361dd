"""MCP server lifecycle management.

``MCPManager`` owns the in-memory map of configured servers and drives each
one through its state machine::

    stopped ──start──▶ starting ──initialize ok──▶ running
       ▲                  │                          │
       └──────stop────────┴───────clean exit─────────┘
    any state ──transport failure──▶ error ──start (retry)──▶ starting

Starting a server opens its transport, performs the ``initialize`` handshake,
sends ``notifications/initialized`` and then discovers capabilities. A
failure on the way leaves that one server in ``error`` with ``last_error``
set; it never propagates to other servers or out of ``start``.

Example:
    Using MCPManager as an async context manager::

        async with MCPManager(RuntimeSettings()) as manager:
            await manager.initialize(project_path=Path.cwd())
            for tool in manager.get_all_tools():
                print(tool.server_id, tool.name)
            result = await manager.call_tool("git", "git_status", {"repo_path": "."})
        # Servers automatically stopped
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

import structlog

from mcp_runtime.capabilities import CapabilityIndex, CapabilityKind
from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.config.store import ConfigStore
from mcp_runtime.correlator import MessageCorrelator
from mcp_runtime.events import EventChannel, EventKind, ServerEvent
from mcp_runtime.exceptions import (
    ConfigError,
    MCPError,
    NotFoundError,
    NotRunningError,
    TransportError,
)
from mcp_runtime.models import (
    Prompt,
    Resource,
    Scope,
    SearchResult,
    ServerDefinition,
    ServerStatus,
    Tool,
)
from mcp_runtime.oauth import OAuthFlow
from mcp_runtime.registry import RegistryClient
from mcp_runtime.transport import Transport, create_transport

log = structlog.get_logger(__name__)

LIST_CHANGED_NOTIFICATIONS: dict[str, CapabilityKind] = {
    "notifications/tools/list_changed": CapabilityKind.TOOLS,
    "notifications/resources/list_changed": CapabilityKind.RESOURCES,
    "notifications/prompts/list_changed": CapabilityKind.PROMPTS,
}

_CHANGE_EVENTS: dict[CapabilityKind, EventKind] = {
    CapabilityKind.TOOLS: EventKind.TOOLS_CHANGED,
    CapabilityKind.RESOURCES: EventKind.RESOURCES_CHANGED,
    CapabilityKind.PROMPTS: EventKind.PROMPTS_CHANGED,
}

TransportFactory = Callable[..., Transport]


@dataclass
class ServerInstance:
    """Runtime state of one registered server. Never persisted.

    Attributes:
        definition: The winning definition from the merged configuration.
        status: Current lifecycle state.
        transport: Live channel; None unless starting or running.
        last_error: Message of the most recent failure, if any.
        server_info: ``serverInfo`` returned by ``initialize``.
    """

    definition: ServerDefinition
    status: ServerStatus = ServerStatus.STOPPED
    transport: Transport | None = None
    last_error: str | None = None
    server_info: dict[str, Any] | None = None
    server_capabilities: dict[str, Any] | None = None

    @property
    def id(self) -> str:
        return self.definition.id


class MCPManager:
    """Composes configuration, transports, correlation and capability caches.

    Attributes:
        settings: Runtime settings.
        config_store: Three-scope configuration store.
        registry: Remote catalog client.
        events: Typed lifecycle event channel for UI consumers.
        correlator: Request/response correlator shared by all servers.
        capabilities: Capability cache and tool search.
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        config_store: ConfigStore | None = None,
        registry: RegistryClient | None = None,
        oauth: OAuthFlow | None = None,
        transport_factory: TransportFactory = create_transport,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.config_store = config_store or ConfigStore(self.settings)
        self.registry = registry or RegistryClient(self.settings)
        self.oauth = oauth or OAuthFlow(self.settings)
        self.events = EventChannel()
        self._transport_factory = transport_factory

        self.correlator = MessageCorrelator(
            timeout=self.settings.request_timeout,
            on_notification=self._on_notification,
        )
        index_options: dict[str, Any] = {}
        if clock is not None:
            index_options["clock"] = clock
        self.capabilities = CapabilityIndex(
            self.correlator,
            search_ttl=self.settings.search_cache_ttl,
            fallback_limit=self.settings.relevant_tools_fallback,
            is_running=self._is_running,
            on_change=self._on_capabilities_changed,
            **index_options,
        )

        self._servers: dict[str, ServerInstance] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> MCPManager:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.cleanup()

    # === Registration ===

    async def initialize(self, project_path: str | Path | None = None, *, autostart: bool = True) -> None:
        """Load configuration, register every server and start enabled ones."""
        await self.config_store.load(project_path)
        for definition in self.config_store.get_all_servers().values():
            self.register_server(definition)

        log.info("mcp_manager_initialized", servers=len(self._servers))

        if autostart:
            enabled = [s.id for s in self._servers.values() if not s.definition.disabled]
            await asyncio.gather(*(self.start(server_id) for server_id in enabled))

    def register_server(self, definition: ServerDefinition) -> ServerInstance:
        """Register (or re-point) an in-memory server.

        A running server keeps its live connection; the new definition is
        used from its next start.
        """
        instance = self._servers.get(definition.id)
        if instance is None:
            instance = ServerInstance(definition=definition)
            self._servers[definition.id] = instance
            log.info("mcp_server_registered", server=definition.id, transport=definition.transport.value)
        else:
            instance.definition = definition
        return instance

    async def unregister_server(self, server_id: str) -> None:
        await self.stop(server_id)
        self._servers.pop(server_id, None)
        self._locks.pop(server_id, None)

    async def add_server(self, definition: ServerDefinition) -> ServerInstance:
        """Persist a definition to its scope and register the merged winner."""
        await self.config_store.add_server(definition)
        winner = self.config_store.get_server(definition.id) or definition
        return self.register_server(winner)

    async def remove_server(self, server_id: str, scope: Scope | None = None) -> None:
        """Remove a definition from configuration.

        If another scope still defines the id, that definition takes over;
        otherwise the server is stopped and unregistered.
        """
        await self.config_store.remove_server(server_id, scope)
        remaining = self.config_store.get_server(server_id)
        if remaining is None:
            await self.unregister_server(server_id)
        else:
            self.register_server(remaining)

    async def set_enabled(self, server_id: str, enabled: bool) -> None:
        await self.config_store.set_enabled(server_id, enabled)
        definition = self.config_store.get_server(server_id)
        if definition is not None:
            self.register_server(definition)
        if not enabled:
            await self.stop(server_id)

    async def update_env(self, server_id: str, patch: dict[str, str]) -> None:
        await self.config_store.update_env(server_id, patch)
        definition = self.config_store.get_server(server_id)
        if definition is not None:
            self.register_server(definition)

    async def install_from_registry(
        self,
        entry_id: str,
        *,
        scope: Scope = Scope.LOCAL,
        env_vars: dict[str, str] | None = None,
        custom_url: str | None = None,
        start: bool = False,
    ) -> ServerDefinition:
        """Turn a registry entry into a configured (and optionally started) server.

        Raises:
            NotFoundError: If the entry is unknown or cannot be installed.
        """
        definition = self.registry.generate_server_config(
            entry_id, scope=scope, env_vars=env_vars, custom_url=custom_url
        )
        if definition is None:
            raise NotFoundError(entry_id, f"Registry entry '{entry_id}' not found or not installable")

        await self.add_server(definition)
        if start:
            await self.start(definition.id)
        return definition

    # === Lifecycle ===

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        if server_id not in self._locks:
            self._locks[server_id] = asyncio.Lock()
        return self._locks[server_id]

    def _require(self, server_id: str) -> ServerInstance:
        instance = self._servers.get(server_id)
        if instance is None:
            raise NotFoundError(server_id, f"Server {server_id} not found")
        return instance

    def _is_running(self, server_id: str) -> bool:
        instance = self._servers.get(server_id)
        return instance is not None and instance.status is ServerStatus.RUNNING

    def _set_status(self, instance: ServerInstance, status: ServerStatus, **payload: Any) -> None:
        instance.status = status
        kind = {
            ServerStatus.STARTING: EventKind.STARTING,
            ServerStatus.RUNNING: EventKind.STARTED,
            ServerStatus.STOPPED: EventKind.STOPPED,
            ServerStatus.ERROR: EventKind.ERROR,
        }[status]
        self.events.emit(ServerEvent(instance.id, kind, payload))

    async def start(self, server_id: str) -> bool:
        """Start a server; no-op if it is already running.

        A disabled server is refused: ``last_error`` explains why and the
        status is left untouched.

        Returns:
            True if the server is running afterwards, False if it was refused
            or failed (status ``error``, ``last_error`` populated).

        Raises:
            NotFoundError: If the id is not registered.
        """
        instance = self._require(server_id)
        if instance.definition.disabled:
            instance.last_error = f"Server {server_id} is disabled"
            log.warning("mcp_server_disabled", server=server_id)
            return False

        async with self._lock_for(server_id):
            if instance.status is ServerStatus.RUNNING:
                return True

            self._set_status(instance, ServerStatus.STARTING)
            try:
                await self._connect(instance)
            except (MCPError, OSError) as e:
                await self._release(instance, reason="start failed")
                instance.last_error = str(e)
                log.error("mcp_server_start_failed", server=server_id, error=str(e))
                self._set_status(instance, ServerStatus.ERROR, error=str(e))
                return False

            instance.last_error = None
            self._set_status(instance, ServerStatus.RUNNING, server_info=instance.server_info or {})
            log.info("mcp_server_started", server=server_id, name=instance.definition.name)

        await self.capabilities.discover(server_id)
        return self._is_running(server_id)

    async def _connect(self, instance: ServerInstance) -> None:
        definition = instance.definition

        if definition.oauth is not None:
            authorized = await self.oauth.authenticate(definition.id, port=definition.oauth.callback_port)
            if not authorized:
                raise TransportError(definition.id, "OAuth authorization was not granted")

        transport = self._transport_factory(definition, timeout=self.settings.request_timeout)
        instance.transport = transport
        self.correlator.attach(definition.id, transport, on_close=partial(self._on_transport_closed, definition.id, transport))
        await transport.open()

        result = await self.correlator.call(
            definition.id,
            "initialize",
            {
                "protocolVersion": self.settings.protocol_version,
                "capabilities": {},
                "clientInfo": {
                    "name": self.settings.client_name,
                    "version": self.settings.client_version,
                },
            },
        )
        result = result if isinstance(result, dict) else {}
        instance.server_info = result.get("serverInfo")
        instance.server_capabilities = result.get("capabilities")

        await self.correlator.notify(definition.id, "notifications/initialized")

    async def _release(self, instance: ServerInstance, *, reason: str) -> None:
        """Cancel pending requests, drop capabilities and close the transport."""
        self.correlator.detach(instance.id, reason=reason)
        self.capabilities.clear(instance.id)
        transport, instance.transport = instance.transport, None
        if transport is not None:
            await transport.close()

    async def stop(self, server_id: str) -> None:
        """Stop a server. Idempotent; unknown ids are ignored."""
        instance = self._servers.get(server_id)
        if instance is None:
            return

        async with self._lock_for(server_id):
            was_active = instance.transport is not None or instance.status is not ServerStatus.STOPPED
            await self._release(instance, reason="server stopped")
            if was_active:
                self._set_status(instance, ServerStatus.STOPPED)
                log.info("mcp_server_stopped", server=server_id)

    async def restart(self, server_id: str) -> bool:
        await self.stop(server_id)
        return await self.start(server_id)

    async def cleanup(self) -> None:
        """Stop every server and wait for background refreshes."""
        await asyncio.gather(*(self.stop(server_id) for server_id in list(self._servers)))
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def authenticate(self, server_id: str) -> bool:
        """Run the OAuth callback flow declared by a server's definition."""
        definition = self._require(server_id).definition
        if definition.oauth is None:
            raise ConfigError(f"Server {server_id} does not declare OAuth")
        return await self.oauth.authenticate(server_id, port=definition.oauth.callback_port)

    # === Transport callbacks ===

    def _on_transport_closed(
        self, server_id: str, transport: Transport, exit_code: int | None, error: str | None
    ) -> None:
        instance = self._servers.get(server_id)
        if instance is None or instance.transport is not transport:
            return

        clean = exit_code == 0 and error is None
        reason = error or f"server exited with code {exit_code}"
        instance.transport = None
        self.correlator.detach(server_id, reason=reason)
        self.capabilities.clear(server_id)
        self._spawn(transport.close())

        if instance.status is ServerStatus.STARTING:
            # start() sees the cancelled handshake and records the failure
            return
        if clean:
            self._set_status(instance, ServerStatus.STOPPED, code=exit_code)
        else:
            instance.last_error = error or f"Server exited with code {exit_code}"
            self._set_status(instance, ServerStatus.ERROR, code=exit_code, error=instance.last_error)
        log.info("mcp_server_connection_lost", server=server_id, code=exit_code, error=error)

    def _on_notification(self, server_id: str, method: str, params: dict[str, Any]) -> None:
        kind = LIST_CHANGED_NOTIFICATIONS.get(method)
        if kind is not None:
            self._spawn(self._refresh(server_id, kind))
        elif method == "notifications/message":
            log.info("mcp_server_message", server=server_id, level=params.get("level"), data=params.get("data"))
            self.events.emit(ServerEvent(server_id, EventKind.MESSAGE, dict(params)))
        else:
            log.debug("mcp_notification_unhandled", server=server_id, method=method)

    async def _refresh(self, server_id: str, kind: CapabilityKind) -> None:
        if not self._is_running(server_id):
            return
        await self.capabilities.discover(server_id, (kind,))

    def _on_capabilities_changed(self, server_id: str, kind: CapabilityKind) -> None:
        self.events.emit(ServerEvent(server_id, _CHANGE_EVENTS[kind], {}))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # === Invocation ===

    def _require_running(self, server_id: str) -> ServerInstance:
        instance = self._require(server_id)
        if instance.status is not ServerStatus.RUNNING:
            raise NotRunningError(server_id, instance.status.value)
        return instance

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Invoke a tool.

        Raises:
            NotFoundError: Unknown server.
            NotRunningError: Server is not running.
            ProtocolError: The server answered with a JSON-RPC error.
            RequestTimeoutError: No answer before the deadline.
        """
        self._require_running(server_id)
        return await self.correlator.call(
            server_id,
            "tools/call",
            {"name": tool_name, "arguments": arguments or {}},
            timeout=timeout,
        )

    async def read_resource(self, server_id: str, uri: str, *, timeout: float | None = None) -> Any:
        self._require_running(server_id)
        return await self.correlator.call(server_id, "resources/read", {"uri": uri}, timeout=timeout)

    async def get_prompt(
        self,
        server_id: str,
        name: str,
        arguments: dict[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        self._require_running(server_id)
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return await self.correlator.call(server_id, "prompts/get", params, timeout=timeout)

    # === Read-only snapshots ===

    def list_servers(self) -> list[dict[str, Any]]:
        """Snapshot of every registered server, safe to poll."""
        snapshot = []
        for instance in self._servers.values():
            definition = instance.definition
            caps = self.capabilities.get(instance.id)
            snapshot.append(
                {
                    "id": instance.id,
                    "name": definition.name,
                    "scope": definition.scope.value,
                    "transport": definition.transport.value,
                    "status": instance.status.value,
                    "disabled": definition.disabled,
                    "last_error": instance.last_error,
                    "tools": [tool.name for tool in caps.tools],
                    "resources": [resource.uri for resource in caps.resources],
                    "prompts": [prompt.name for prompt in caps.prompts],
                    "categories": self.capabilities.get_categories(instance.id),
                }
            )
        return snapshot

    get_servers = list_servers

    def get_server_status(self, server_id: str) -> ServerStatus:
        instance = self._servers.get(server_id)
        return instance.status if instance else ServerStatus.STOPPED

    def get_last_error(self, server_id: str) -> str | None:
        instance = self._servers.get(server_id)
        return instance.last_error if instance else None

    def get_all_tools(self) -> list[Tool]:
        return self.capabilities.all_tools()

    def get_all_resources(self) -> list[Resource]:
        return self.capabilities.all_resources()

    def get_all_prompts(self) -> list[Prompt]:
        return self.capabilities.all_prompts()

    def search_tools(self, query: str) -> SearchResult:
        return self.capabilities.search_tools(query)

    def search_tools_cached(self, query: str) -> SearchResult:
        return self.capabilities.search_tools_cached(query)

    def get_relevant_tools(self, server_id: str, context: str, limit: int | None = None) -> list[Tool]:
        return self.capabilities.get_relevant_tools(server_id, context, limit)

    def get_tool_categories(self, server_id: str) -> dict[str, int]:
        return self.capabilities.get_categories(server_id)

    def get_tools_by_category(self, server_id: str, category: str) -> list[Tool]:
        return self.capabilities.get_tools_by_category(server_id, category)
