"""Data models for server definitions, capabilities and registry entries.

Persisted and wire-level shapes are Pydantic models so that files written by
other MCP clients (camelCase keys, extra members) load without loss of the
fields we care about. Runtime-only records live next to the code that owns
them (``manager.ServerInstance``, ``correlator.PendingRequest``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Scope(str, Enum):
    """Configuration tiers, listed from lowest to highest precedence."""

    USER = "user"
    PROJECT = "project"
    LOCAL = "local"


# Lookup order for reads and scope-less removal: local wins.
SCOPE_LOOKUP_ORDER: tuple[Scope, ...] = (Scope.LOCAL, Scope.PROJECT, Scope.USER)

# Merge order for get_all_servers(): later entries overwrite earlier ones.
SCOPE_MERGE_ORDER: tuple[Scope, ...] = (Scope.USER, Scope.PROJECT, Scope.LOCAL)


class TransportType(str, Enum):
    """Channel used to reach a server."""

    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"
    WEBSOCKET = "websocket"


class ServerStatus(str, Enum):
    """Per-server lifecycle state."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize the way it is stored on disk (camelCase, no nulls)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OAuthConfig(_Model):
    """OAuth requirement declared by a server definition."""

    client_id: str | None = Field(default=None, alias="clientId")
    client_secret: str | None = Field(default=None, alias="clientSecret")
    callback_port: int | None = Field(default=None, alias="callbackPort")


class ServerMetadata(_Model):
    """Free-form descriptive metadata, mostly copied from registry entries."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    category: str | None = None
    tags: list[str] | None = None
    author: str | None = None
    version: str | None = None
    homepage: str | None = None


class ServerDefinition(_Model):
    """A configured MCP server, as stored in one configuration scope.

    Attributes:
        id: Identity, unique within the merged view.
        name: Display name (defaults to the id).
        scope: The scope file that owns this definition.
        transport: Channel type; stdio uses command/args/env, the network
            transports use url/headers.
        disabled: Disabled servers are registered but never started.
    """

    id: str
    name: str = ""
    description: str | None = None
    scope: Scope = Scope.LOCAL
    transport: TransportType = TransportType.STDIO
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    disabled: bool = False
    oauth: OAuthConfig | None = None
    metadata: ServerMetadata | None = None

    @field_validator("transport", mode="before")
    @classmethod
    def _normalize_transport(cls, value: Any) -> Any:
        # Other clients write the streamable HTTP transport under its long name.
        if isinstance(value, str) and value in ("streamable-http", "streamableHttp"):
            return TransportType.HTTP
        return value

    def model_post_init(self, __context: Any) -> None:
        if not self.name:
            self.name = self.id


class MCPSettings(_Model):
    """Optional ``settings`` block of a scope file."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    max_output_tokens: int | None = Field(default=None, alias="maxOutputTokens")
    timeout: float | None = None
    enable_tool_search: bool | str | None = Field(default=None, alias="enableToolSearch")
    allowed_servers: list[str] | None = Field(default=None, alias="allowedServers")
    denied_servers: list[str] | None = Field(default=None, alias="deniedServers")


class MCPConfiguration(_Model):
    """Shape of one scope file: ``{mcpServers: {...}, settings?: {...}}``."""

    mcp_servers: dict[str, ServerDefinition] = Field(default_factory=dict, alias="mcpServers")
    settings: MCPSettings | None = None


# === Capabilities ===


class _Capability(_Model):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    server_id: str | None = Field(default=None, alias="serverId")


class Tool(_Capability):
    """A tool advertised by ``tools/list``."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class Resource(_Capability):
    """A resource advertised by ``resources/list``."""

    uri: str
    name: str = ""
    description: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")


class PromptArgument(_Model):
    name: str
    description: str | None = None
    required: bool | None = None


class Prompt(_Capability):
    """A prompt template advertised by ``prompts/list``."""

    name: str
    description: str | None = None
    arguments: list[PromptArgument] = Field(default_factory=list)


@dataclass
class SearchResult:
    """Matches across all running servers for one query."""

    query: str
    tools: list[Tool] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    prompts: list[Prompt] = field(default_factory=list)


# === Registry ===


class RegistryPackage(_Model):
    registry_type: str = Field(alias="registryType")
    identifier: str


class RegistryRemote(_Model):
    type: str
    url: str


class EnvironmentVariable(_Model):
    name: str
    description: str | None = None
    required: bool | None = None


class RegistryEntry(_Model):
    """Catalog metadata for one installable server. Immutable once fetched."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str
    name: str
    description: str = ""
    publisher: str = "Unknown"
    version: str = "1.0.0"
    transport: list[str] = Field(default_factory=lambda: ["stdio"])
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    installs: int = 0
    rating: float = 0.0
    documentation: str | None = None
    repository: Any = None
    packages: list[RegistryPackage] | None = None
    remotes: list[RegistryRemote] | None = None
    environment_variables: list[EnvironmentVariable] | None = Field(
        default=None, alias="environmentVariables"
    )

    @property
    def popularity(self) -> float:
        """Blended ranking score used by registry search."""
        return self.installs * 0.7 + self.rating * 100 * 0.3
