"""Client-side runtime for MCP (Model Context Protocol) servers.

This package connects to external MCP servers over stdio, HTTP and SSE,
discovers the tools, resources and prompts they expose, and routes calls to
them. Server definitions live in three configuration scopes and can be
installed from a remote registry.

Modules:
    config: Runtime settings and the three-scope configuration store.
    transport: Stdio, HTTP and SSE channels behind one ``Transport`` contract.
    correlator: JSON-RPC request/response correlation with timeouts.
    capabilities: Capability cache, tool categories and tool search.
    registry: Remote server catalog with a disk cache.
    oauth: Local OAuth callback listener.
    manager: Lifecycle management for configured servers.
    exceptions: Exception hierarchy for runtime operations.
"""

from mcp_runtime.capabilities import CapabilityIndex, CapabilityKind, classify_tool
from mcp_runtime.config import ConfigStore, RuntimeSettings
from mcp_runtime.correlator import MessageCorrelator
from mcp_runtime.events import EventChannel, EventKind, ServerEvent
from mcp_runtime.exceptions import (
    ConfigError,
    MCPError,
    NotFoundError,
    NotRunningError,
    OAuthTimeoutError,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerError,
    TransportError,
)
from mcp_runtime.manager import MCPManager, ServerInstance
from mcp_runtime.models import (
    Prompt,
    RegistryEntry,
    Resource,
    Scope,
    SearchResult,
    ServerDefinition,
    ServerStatus,
    Tool,
    TransportType,
)
from mcp_runtime.oauth import OAuthFlow
from mcp_runtime.registry import RegistryClient
from mcp_runtime.transport import create_transport

__version__ = "0.1.0"

__all__ = [
    # Manager
    "MCPManager",
    "ServerInstance",
    # Components
    "ConfigStore",
    "RuntimeSettings",
    "MessageCorrelator",
    "CapabilityIndex",
    "CapabilityKind",
    "classify_tool",
    "RegistryClient",
    "OAuthFlow",
    "create_transport",
    # Events
    "EventChannel",
    "EventKind",
    "ServerEvent",
    # Models
    "ServerDefinition",
    "Scope",
    "TransportType",
    "ServerStatus",
    "Tool",
    "Resource",
    "Prompt",
    "SearchResult",
    "RegistryEntry",
    # Exceptions
    "MCPError",
    "ConfigError",
    "NotFoundError",
    "ServerError",
    "TransportError",
    "ProtocolError",
    "RequestTimeoutError",
    "RequestCancelledError",
    "NotRunningError",
    "OAuthTimeoutError",
]
