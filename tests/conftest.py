"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.exceptions import TransportError
from mcp_runtime.models import ServerDefinition
from mcp_runtime.transport import Transport


def default_handlers(server_id: str) -> dict[str, Any]:
    """Replies of a minimal MCP server with no capabilities."""
    return {
        "initialize": {
            "protocolVersion": "2024-11-05",
            "capabilities": {"tools": {}},
            "serverInfo": {"name": server_id, "version": "1.0.0"},
        },
        "tools/list": {"tools": []},
        "resources/list": {"resources": []},
        "prompts/list": {"prompts": []},
    }


class FakeTransport(Transport):
    """In-process scripted MCP server.

    ``handlers`` maps a method to its result. A callable is invoked with the
    request params, an ``Exception`` instance becomes a JSON-RPC error reply,
    and a method missing from the map gets -32601. Methods listed in
    ``silent`` are never answered; methods in ``delays`` are answered after
    that many seconds. ``max_in_flight`` records the peak number of
    unanswered requests per method.
    """

    def __init__(
        self,
        definition: ServerDefinition,
        *,
        handlers: dict[str, Any] | None = None,
        silent: set[str] | None = None,
        delays: dict[str, float] | None = None,
        fail_open: str | None = None,
    ) -> None:
        super().__init__(definition)
        self.handlers = {**default_handlers(definition.id), **(handlers or {})}
        self.silent = silent or set()
        self.delays = delays or {}
        self.in_flight: dict[str, int] = {}
        self.max_in_flight: dict[str, int] = {}
        self.fail_open = fail_open
        self.sent: list[dict[str, Any]] = []
        self.opened = False
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    async def open(self) -> None:
        if self.fail_open:
            raise TransportError(self.server_id, self.fail_open)
        self.opened = True

    async def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise TransportError(self.server_id, "transport closed")
        self.sent.append(message)
        method = message.get("method")
        if message.get("id") is None or method is None or method in self.silent:
            return
        self.in_flight[method] = self.in_flight.get(method, 0) + 1
        self.max_in_flight[method] = max(self.max_in_flight.get(method, 0), self.in_flight[method])
        loop = asyncio.get_running_loop()
        if method in self.delays:
            loop.call_later(self.delays[method], self._respond, message)
        else:
            loop.call_soon(self._respond, message)

    async def close(self) -> None:
        self.closed = True

    def methods(self) -> list[str]:
        return [m["method"] for m in self.sent if "method" in m]

    def push(self, message: dict[str, Any]) -> None:
        """Deliver a server-initiated message."""
        self._deliver(message)

    def crash(self, exit_code: int | None = 1, error: str | None = "Server exited with code 1") -> None:
        self._report_closed(exit_code, error)

    def _respond(self, request: dict[str, Any]) -> None:
        method = request["method"]
        self.in_flight[method] -= 1
        if self.closed:
            return
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": request["id"]}
        if method not in self.handlers:
            reply["error"] = {"code": -32601, "message": f"Method not found: {method}"}
        else:
            handler = self.handlers[method]
            if callable(handler):
                handler = handler(request.get("params") or {})
            if isinstance(handler, Exception):
                reply["error"] = {"code": -32603, "message": str(handler)}
            else:
                reply["result"] = handler
        self._deliver(reply)


class FakeTransportFactory:
    """Stand-in for ``create_transport`` recording every transport it builds."""

    def __init__(self) -> None:
        self.handlers: dict[str, dict[str, Any]] = {}
        self.silent: dict[str, set[str]] = {}
        self.delays: dict[str, dict[str, float]] = {}
        self.fail_open: dict[str, str] = {}
        self.created: dict[str, FakeTransport] = {}

    def __call__(self, definition: ServerDefinition, *, timeout: float = 30.0) -> FakeTransport:
        transport = FakeTransport(
            definition,
            handlers=self.handlers.get(definition.id),
            silent=self.silent.get(definition.id),
            delays=self.delays.get(definition.id),
            fail_open=self.fail_open.get(definition.id),
        )
        self.created[definition.id] = transport
        return transport


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    """Settings pointing every file under a temporary directory."""
    return RuntimeSettings(
        config_dir=tmp_path / "config",
        cache_dir=tmp_path / "cache",
        request_timeout=2.0,
        oauth_timeout=2.0,
    )


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Temporary project directory."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def make_transport():
    """Build a ``FakeTransport`` for an ad hoc stdio definition."""

    def _make(server_id: str = "test-server", **kwargs: Any) -> FakeTransport:
        return FakeTransport(ServerDefinition(id=server_id, command="fake"), **kwargs)

    return _make


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    """Transport factory for MCPManager tests."""
    return FakeTransportFactory()
