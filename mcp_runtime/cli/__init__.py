"""Command-line interface for the MCP client runtime.

The entry point is ``mcp-runtime`` (``mcp_runtime.cli.main:cli``) with three
areas:

    servers: List, add, remove, enable and disable configured servers.
    registry: Sync, search and install entries from the remote catalog.
    tools: Start enabled servers and print the tools they expose.
"""

from mcp_runtime.cli.main import cli

__all__ = ["cli"]
