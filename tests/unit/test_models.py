"""Unit tests for data models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from mcp_runtime.models import (
    MCPConfiguration,
    RegistryEntry,
    Scope,
    ServerDefinition,
    Tool,
    TransportType,
)


class TestServerDefinition:
    """Tests for ServerDefinition."""

    def test_defaults(self) -> None:
        definition = ServerDefinition(id="git", command="uvx", args=["mcp-server-git"])

        assert definition.name == "git"
        assert definition.scope is Scope.LOCAL
        assert definition.transport is TransportType.STDIO
        assert definition.env == {}
        assert definition.disabled is False

    def test_explicit_name_is_kept(self) -> None:
        assert ServerDefinition(id="gh", name="GitHub").name == "GitHub"

    def test_streamable_http_alias(self) -> None:
        definition = ServerDefinition(id="remote", transport="streamable-http", url="https://example.com/mcp")

        assert definition.transport is TransportType.HTTP

    def test_unknown_transport_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ServerDefinition(id="bad", transport="carrier-pigeon")

    def test_json_dict_uses_aliases_and_drops_nulls(self) -> None:
        definition = ServerDefinition(id="gh", oauth={"clientId": "abc", "callbackPort": 4000})
        data = definition.to_json_dict()

        assert data["oauth"] == {"clientId": "abc", "callbackPort": 4000}
        assert "url" not in data
        assert data["scope"] == "local"

    def test_round_trip_through_json_dict(self) -> None:
        definition = ServerDefinition(
            id="fs",
            scope=Scope.PROJECT,
            command="npx",
            args=["-y", "@modelcontextprotocol/server-filesystem", "."],
            env={"DEBUG": "1"},
        )

        restored = ServerDefinition.model_validate(definition.to_json_dict())

        assert restored.to_json_dict() == definition.to_json_dict()


class TestMCPConfiguration:
    """Tests for the scope file shape."""

    def test_reads_camel_case_file(self) -> None:
        config = MCPConfiguration.model_validate(
            {
                "mcpServers": {"git": {"id": "git", "command": "uvx"}},
                "settings": {"maxOutputTokens": 2000, "enableToolSearch": True},
                "unrelated": 1,
            }
        )

        assert list(config.mcp_servers) == ["git"]
        assert config.settings is not None
        assert config.settings.max_output_tokens == 2000
        assert config.settings.enable_tool_search is True

    def test_empty_by_default(self) -> None:
        assert MCPConfiguration().to_json_dict() == {"mcpServers": {}}


class TestCapabilityModels:
    """Tests for capability models."""

    def test_tool_accepts_wire_shape(self) -> None:
        tool = Tool.model_validate(
            {"name": "read_file", "inputSchema": {"type": "object"}, "serverId": "fs", "annotations": {}}
        )

        assert tool.server_id == "fs"
        assert tool.input_schema == {"type": "object"}
        assert tool.description == ""


class TestRegistryEntry:
    """Tests for RegistryEntry."""

    def test_popularity_blends_installs_and_rating(self) -> None:
        entry = RegistryEntry(id="a", name="A", installs=100, rating=4.5)

        assert entry.popularity == pytest.approx(100 * 0.7 + 4.5 * 100 * 0.3)

    def test_entries_are_immutable(self) -> None:
        entry = RegistryEntry(id="a", name="A")

        with pytest.raises(ValidationError):
            entry.installs = 5
