"""Transports carrying JSON-RPC envelopes to MCP servers.

``create_transport`` is the only place that branches on the transport kind;
everything downstream talks to the ``Transport`` contract.
"""

from __future__ import annotations

from mcp_runtime.exceptions import TransportError
from mcp_runtime.models import ServerDefinition, TransportType
from mcp_runtime.transport.base import CloseHandler, MessageHandler, Transport
from mcp_runtime.transport.http import HTTPTransport
from mcp_runtime.transport.sse import SSEDecoder, SSEEvent, SSETransport
from mcp_runtime.transport.stdio import StdioTransport


def create_transport(definition: ServerDefinition, *, timeout: float = 30.0) -> Transport:
    """Build the transport for a definition.

    Raises:
        TransportError: For transport kinds without an implementation.
    """
    if definition.transport is TransportType.STDIO:
        return StdioTransport(definition)
    if definition.transport is TransportType.HTTP:
        return HTTPTransport(definition, timeout=timeout)
    if definition.transport is TransportType.SSE:
        return SSETransport(definition, timeout=timeout)
    raise TransportError(definition.id, f"unsupported transport: {definition.transport.value}")


__all__ = [
    "CloseHandler",
    "HTTPTransport",
    "MessageHandler",
    "SSEDecoder",
    "SSEEvent",
    "SSETransport",
    "StdioTransport",
    "Transport",
    "create_transport",
]
