"""Tests for MCPManager lifecycle, invocation and read models."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.events import EventKind, ServerEvent
from mcp_runtime.exceptions import NotFoundError, NotRunningError, ProtocolError, RequestCancelledError
from mcp_runtime.manager import MCPManager
from mcp_runtime.models import Scope, ServerDefinition, ServerStatus, TransportType
from mcp_runtime.oauth import OAuthFlow

READ_FILE = {"name": "read_file", "description": "Read a file", "inputSchema": {"type": "object"}}


def stdio(server_id: str, **kwargs) -> ServerDefinition:
    return ServerDefinition(id=server_id, command="fake-server", **kwargs)


def make_manager(settings: RuntimeSettings, transport_factory, **kwargs) -> MCPManager:
    return MCPManager(settings, transport_factory=transport_factory, **kwargs)


async def started(manager: MCPManager, *definitions: ServerDefinition) -> MCPManager:
    for definition in definitions:
        manager.register_server(definition)
        await manager.start(definition.id)
    return manager


class TestInitialize:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_running_and_error_servers(
        self, settings: RuntimeSettings, project_dir: Path, transport_factory
    ) -> None:
        """An error server is excluded from the cross-server tool list."""
        transport_factory.handlers["fs"] = {"tools/list": {"tools": [READ_FILE]}}
        transport_factory.fail_open["git"] = "Command not found: mcp-server-git"
        manager = make_manager(settings, transport_factory)
        await manager.config_store.load(project_dir)
        await manager.config_store.add_server(stdio("fs"))
        await manager.config_store.add_server(stdio("git", scope=Scope.PROJECT))
        await manager.config_store.add_server(stdio("off", scope=Scope.USER, disabled=True))

        await manager.initialize(project_dir)

        assert [t.name for t in manager.get_all_tools()] == ["read_file"]
        assert manager.get_server_status("fs") is ServerStatus.RUNNING
        assert manager.get_server_status("git") is ServerStatus.ERROR
        assert "Command not found" in manager.get_last_error("git")
        assert manager.get_server_status("off") is ServerStatus.STOPPED
        assert "off" not in transport_factory.created

        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_without_autostart(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = make_manager(settings, transport_factory)
        await manager.config_store.load()
        await manager.config_store.add_server(stdio("fs"))

        await manager.initialize(autostart=False)

        assert [s["id"] for s in manager.list_servers()] == ["fs"]
        assert transport_factory.created == {}


class TestStart:
    """Tests for start()."""

    @pytest.mark.asyncio
    async def test_handshake_then_discovery(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))
        transport = transport_factory.created["fs"]

        methods = transport.methods()
        assert methods[:2] == ["initialize", "notifications/initialized"]
        assert sorted(methods[2:]) == ["prompts/list", "resources/list", "tools/list"]

        params = transport.sent[0]["params"]
        assert params["protocolVersion"] == settings.protocol_version
        assert params["clientInfo"] == {"name": settings.client_name, "version": settings.client_version}
        assert "capabilities" in params
        assert "id" not in transport.sent[1]

        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_start_is_noop_when_running(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))
        first = transport_factory.created["fs"]

        assert await manager.start("fs") is True
        assert transport_factory.created["fs"] is first

        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_failed_initialize_enters_error(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.handlers["bad"] = {"initialize": RuntimeError("unsupported protocol version")}
        manager = make_manager(settings, transport_factory)
        manager.register_server(stdio("bad"))

        assert await manager.start("bad") is False

        assert manager.get_server_status("bad") is ServerStatus.ERROR
        assert "unsupported protocol version" in manager.get_last_error("bad")
        assert transport_factory.created["bad"].closed
        assert not manager.correlator.is_attached("bad")

    @pytest.mark.asyncio
    async def test_exit_during_handshake(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.silent["dies"] = {"initialize"}
        manager = make_manager(settings, transport_factory)
        manager.register_server(stdio("dies"))

        task = asyncio.create_task(manager.start("dies"))
        await asyncio.sleep(0.01)
        transport_factory.created["dies"].crash(1, "Server exited with code 1")

        assert await task is False
        assert manager.get_server_status("dies") is ServerStatus.ERROR
        assert "Server exited with code 1" in manager.get_last_error("dies")

    @pytest.mark.asyncio
    async def test_retry_after_error(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.fail_open["flaky"] = "connection refused"
        manager = make_manager(settings, transport_factory)
        manager.register_server(stdio("flaky"))
        assert await manager.start("flaky") is False

        del transport_factory.fail_open["flaky"]

        assert await manager.start("flaky") is True
        assert manager.get_server_status("flaky") is ServerStatus.RUNNING
        assert manager.get_last_error("flaky") is None

        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_disabled_server_is_refused(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = make_manager(settings, transport_factory)
        manager.register_server(stdio("off", disabled=True))

        assert await manager.start("off") is False

        assert manager.get_server_status("off") is ServerStatus.STOPPED
        assert "disabled" in manager.get_last_error("off")
        assert transport_factory.created == {}

    @pytest.mark.asyncio
    async def test_unknown_server(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = make_manager(settings, transport_factory)

        with pytest.raises(NotFoundError):
            await manager.start("ghost")

    @pytest.mark.asyncio
    async def test_websocket_enters_error(self, settings: RuntimeSettings) -> None:
        manager = MCPManager(settings)
        manager.register_server(ServerDefinition(id="ws", transport=TransportType.WEBSOCKET, url="wss://x"))

        assert await manager.start("ws") is False

        assert manager.get_server_status("ws") is ServerStatus.ERROR
        assert "unsupported transport" in manager.get_last_error("ws")

    @pytest.mark.asyncio
    async def test_oauth_runs_before_connecting(self, settings: RuntimeSettings, transport_factory) -> None:
        oauth = MagicMock(spec=OAuthFlow)
        oauth.authenticate = AsyncMock(return_value=False)
        manager = make_manager(settings, transport_factory, oauth=oauth)
        manager.register_server(stdio("linear", oauth={"callbackPort": 4455}))

        assert await manager.start("linear") is False

        oauth.authenticate.assert_awaited_once_with("linear", port=4455)
        assert "OAuth" in manager.get_last_error("linear")
        assert "linear" not in transport_factory.created

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, settings: RuntimeSettings, transport_factory) -> None:
        events: list[ServerEvent] = []
        manager = make_manager(settings, transport_factory)
        manager.events.subscribe(events.append, server_id="fs")
        manager.register_server(stdio("other"))
        manager.register_server(stdio("fs"))

        await manager.start("other")
        await manager.start("fs")
        await manager.stop("fs")

        kinds = [e.kind for e in events]
        assert kinds[:2] == [EventKind.STARTING, EventKind.STARTED]
        assert kinds[-1] is EventKind.STOPPED
        assert EventKind.TOOLS_CHANGED in kinds
        assert events[1].payload["server_info"]["name"] == "fs"

        await manager.cleanup()


class TestStop:
    """Tests for stop() and transport loss."""

    @pytest.mark.asyncio
    async def test_stop_clears_capabilities(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.handlers["fs"] = {"tools/list": {"tools": [READ_FILE]}}
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))

        await manager.stop("fs")

        assert manager.get_server_status("fs") is ServerStatus.STOPPED
        assert manager.get_all_tools() == []
        assert manager.capabilities.get_tools("fs") == []
        assert transport_factory.created["fs"].closed

        await manager.stop("fs")
        await manager.stop("never-registered")

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_calls(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.silent["fs"] = {"tools/call"}
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))

        call = asyncio.create_task(manager.call_tool("fs", "slow"))
        await asyncio.sleep(0.01)
        await manager.stop("fs")

        with pytest.raises(RequestCancelledError):
            await call
        assert manager.correlator.pending_count() == 0

    @pytest.mark.asyncio
    async def test_crash_while_running(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.handlers["fs"] = {"tools/list": {"tools": [READ_FILE]}}
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))

        transport_factory.created["fs"].crash(2, "Server exited with code 2")
        await asyncio.sleep(0)

        assert manager.get_server_status("fs") is ServerStatus.ERROR
        assert manager.get_last_error("fs") == "Server exited with code 2"
        assert manager.get_all_tools() == []

        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_clean_exit_is_stopped(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))

        transport_factory.created["fs"].crash(0, None)

        assert manager.get_server_status("fs") is ServerStatus.STOPPED
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_restart(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))
        first = transport_factory.created["fs"]

        assert await manager.restart("fs") is True

        assert first.closed
        assert transport_factory.created["fs"] is not first
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_context_manager_stops_everything(self, settings: RuntimeSettings, transport_factory) -> None:
        async with make_manager(settings, transport_factory) as manager:
            await started(manager, stdio("a"), stdio("b"))

        assert all(t.closed for t in transport_factory.created.values())
        assert {s["status"] for s in manager.list_servers()} == {"stopped"}


class TestInvocation:
    """Tests for call_tool, read_resource and get_prompt."""

    @pytest.mark.asyncio
    async def test_call_tool(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.handlers["fs"] = {
            "tools/call": lambda params: {"content": [{"type": "text", "text": params["arguments"]["path"]}]}
        }
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))

        result = await manager.call_tool("fs", "read_file", {"path": "/tmp/a"})

        assert result == {"content": [{"type": "text", "text": "/tmp/a"}]}
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_read_resource_and_get_prompt(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.handlers["fs"] = {
            "resources/read": lambda params: {"contents": [{"uri": params["uri"]}]},
            "prompts/get": lambda params: {"messages": [], "echo": params},
        }
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))

        assert await manager.read_resource("fs", "file:///a") == {"contents": [{"uri": "file:///a"}]}
        prompt = await manager.get_prompt("fs", "summarize", {"style": "short"})
        assert prompt["echo"] == {"name": "summarize", "arguments": {"style": "short"}}
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_protocol_error_keeps_server_running(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.handlers["fs"] = {"tools/call": RuntimeError("no such file")}
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))

        with pytest.raises(ProtocolError, match="no such file"):
            await manager.call_tool("fs", "read_file", {"path": "/missing"})

        assert manager.get_server_status("fs") is ServerStatus.RUNNING
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_not_running(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = make_manager(settings, transport_factory)
        manager.register_server(stdio("fs"))

        with pytest.raises(NotRunningError) as exc_info:
            await manager.call_tool("fs", "read_file")
        assert exc_info.value.status == "stopped"

        with pytest.raises(NotFoundError):
            await manager.read_resource("ghost", "file:///a")


class TestNotifications:
    """Tests for server notifications."""

    @pytest.mark.asyncio
    async def test_rediscovery_waits_for_running_discovery(
        self, settings: RuntimeSettings, transport_factory
    ) -> None:
        """A list_changed arriving mid-discovery queues a second pass instead of overlapping."""
        passes: list[int] = []

        def tools_list(params: dict) -> dict:
            passes.append(len(passes) + 1)
            return {"tools": [{"name": f"pass_{len(passes)}"}]}

        transport_factory.handlers["fs"] = {"tools/list": tools_list}
        transport_factory.delays["fs"] = {"tools/list": 0.05}
        manager = make_manager(settings, transport_factory)
        manager.register_server(stdio("fs"))

        def on_started(event: ServerEvent) -> None:
            if event.kind is EventKind.STARTED:
                transport_factory.created["fs"].push(
                    {"jsonrpc": "2.0", "method": "notifications/tools/list_changed"}
                )

        manager.events.subscribe(on_started, server_id="fs")

        assert await manager.start("fs") is True
        await asyncio.sleep(0.2)

        transport = transport_factory.created["fs"]
        assert transport.methods().count("tools/list") == 2
        assert transport.max_in_flight["tools/list"] == 1
        assert [t.name for t in manager.get_all_tools()] == ["pass_2"]
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_list_changed_triggers_rediscovery(self, settings: RuntimeSettings, transport_factory) -> None:
        tools = [READ_FILE]
        transport_factory.handlers["fs"] = {"tools/list": lambda params: {"tools": list(tools)}}
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))
        changes: list[ServerEvent] = []
        manager.events.subscribe(changes.append)

        tools.append({"name": "write_file"})
        transport_factory.created["fs"].push({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
        await asyncio.sleep(0.05)

        assert [t.name for t in manager.get_all_tools()] == ["read_file", "write_file"]
        assert [e.kind for e in changes] == [EventKind.TOOLS_CHANGED]
        assert transport_factory.created["fs"].methods().count("resources/list") == 1
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_log_message_event(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))
        messages: list[ServerEvent] = []
        manager.events.subscribe(messages.append, server_id="fs")

        transport_factory.created["fs"].push(
            {"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info", "data": "hello"}}
        )

        assert messages == [ServerEvent("fs", EventKind.MESSAGE, {"level": "info", "data": "hello"})]
        await manager.cleanup()


class TestConfiguration:
    """Tests for configuration-backed operations."""

    @pytest.mark.asyncio
    async def test_remove_reveals_lower_scope(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = make_manager(settings, transport_factory)
        await manager.initialize(autostart=False)
        await manager.add_server(stdio("x", scope=Scope.USER, args=["user"]))
        await manager.add_server(stdio("x", scope=Scope.LOCAL, args=["local"]))

        await manager.remove_server("x")
        assert manager.list_servers()[0]["scope"] == "user"

        await manager.remove_server("x")
        assert manager.list_servers() == []

        with pytest.raises(NotFoundError):
            await manager.remove_server("x")

    @pytest.mark.asyncio
    async def test_disable_stops_server(self, settings: RuntimeSettings, transport_factory) -> None:
        manager = make_manager(settings, transport_factory)
        await manager.initialize(autostart=False)
        await manager.add_server(stdio("fs"))
        await manager.start("fs")

        await manager.set_enabled("fs", False)

        assert manager.get_server_status("fs") is ServerStatus.STOPPED
        assert manager.list_servers()[0]["disabled"] is True

    @pytest.mark.asyncio
    async def test_install_from_registry(self, settings: RuntimeSettings, transport_factory) -> None:
        registry = MagicMock()
        registry.generate_server_config.side_effect = lambda entry_id, **kwargs: (
            ServerDefinition(id=entry_id, command="uvx", args=[entry_id], scope=kwargs["scope"])
            if entry_id == "known"
            else None
        )
        manager = make_manager(settings, transport_factory, registry=registry)
        await manager.initialize(autostart=False)

        definition = await manager.install_from_registry("known", env_vars={"TOKEN": "t"}, start=True)

        registry.generate_server_config.assert_called_once_with(
            "known", scope=Scope.LOCAL, env_vars={"TOKEN": "t"}, custom_url=None
        )
        assert definition.id == "known"
        assert manager.config_store.get_server("known") is not None
        assert manager.get_server_status("known") is ServerStatus.RUNNING

        with pytest.raises(NotFoundError):
            await manager.install_from_registry("unknown")
        await manager.cleanup()


class TestReadModels:
    """Tests for snapshot accessors."""

    @pytest.mark.asyncio
    async def test_snapshot_and_search(self, settings: RuntimeSettings, transport_factory) -> None:
        transport_factory.handlers["fs"] = {
            "tools/list": {"tools": [READ_FILE, {"name": "git_log"}]},
            "resources/list": {"resources": [{"uri": "file:///readme", "name": "readme"}]},
        }
        manager = await started(make_manager(settings, transport_factory), stdio("fs"))

        (snapshot,) = manager.get_servers()
        assert snapshot["status"] == "running"
        assert snapshot["tools"] == ["read_file", "git_log"]
        assert snapshot["categories"] == {"filesystem": 1, "git": 1}
        assert [t.name for t in manager.get_tools_by_category("fs", "git")] == ["git_log"]

        result = manager.search_tools_cached("read")
        assert manager.search_tools_cached("read") is result
        assert [r.uri for r in result.resources] == ["file:///readme"]
        assert [t.name for t in manager.get_relevant_tools("fs", "show the commit history")] == ["git_log"]

        assert manager.get_server_status("ghost") is ServerStatus.STOPPED
        assert manager.get_last_error("ghost") is None
        await manager.cleanup()
