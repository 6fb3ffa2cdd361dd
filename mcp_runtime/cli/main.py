"""CLI entry point for the MCP client runtime."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import click
import structlog

from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.config.store import ConfigStore
from mcp_runtime.exceptions import ConfigError, MCPError
from mcp_runtime.manager import MCPManager
from mcp_runtime.models import Scope, ServerDefinition, ServerStatus, TransportType
from mcp_runtime.registry import RegistryClient
from mcp_runtime.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

SCOPE_CHOICE = click.Choice([scope.value for scope in Scope])


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a coroutine, turning runtime errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except MCPError as e:
        click.echo(f"Error: {e}", err=True)
        log.debug("cli_command_failed", exc_info=True)
        sys.exit(1)
    except OSError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _parse_env(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key] = value
    return env


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True), help="YAML settings file")
@click.option("--project", type=click.Path(file_okay=False), default=".", help="Project directory")
@click.option("--log-level", default=None, help="Logging level (default from settings)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, project: str, log_level: str | None) -> None:
    """mcp-runtime: manage and query MCP servers."""
    try:
        settings = RuntimeSettings.from_yaml(config_path) if config_path else RuntimeSettings()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    configure_logging(log_level or settings.log_level)
    ctx.obj = {"settings": settings, "project": Path(project)}


# === servers ===


@cli.group(name="servers")
def servers_group() -> None:
    """Manage configured MCP servers across the user, project and local scopes."""
    pass


async def _load_store(ctx: click.Context) -> ConfigStore:
    store = ConfigStore(ctx.obj["settings"])
    await store.load(ctx.obj["project"])
    return store


@servers_group.command("list")
@click.option("--verbose", "-v", is_flag=True, help="Show command or URL")
@click.pass_context
def list_servers(ctx: click.Context, verbose: bool) -> None:
    """List configured servers after scope merging."""

    async def _list() -> list[ServerDefinition]:
        store = await _load_store(ctx)
        return list(store.get_all_servers().values())

    servers = _run(_list())
    if not servers:
        click.echo("No MCP servers configured.")
        return

    click.echo("Configured MCP Servers\n")
    for server in sorted(servers, key=lambda s: s.id):
        state = "[DISABLED]" if server.disabled else "[ENABLED]"
        click.echo(f"  {server.id:16} {state:10} {server.transport.value:6} ({server.scope.value})")
        if verbose:
            target = server.url or " ".join([server.command or "", *server.args]).strip()
            click.echo(f"                   {target}")


@servers_group.command("add")
@click.argument("server_id")
@click.option("--command", help="Executable for a stdio server")
@click.option("--arg", "args", multiple=True, help="Argument for the command (repeatable)")
@click.option("--url", help="Endpoint for an http or sse server")
@click.option(
    "--transport",
    type=click.Choice([t.value for t in TransportType]),
    default=None,
    help="Transport (default: stdio with --command, http with --url)",
)
@click.option("--env", "env_pairs", multiple=True, help="Environment variable KEY=VALUE (repeatable)")
@click.option("--scope", type=SCOPE_CHOICE, default=Scope.LOCAL.value, show_default=True)
@click.pass_context
def add_server(
    ctx: click.Context,
    server_id: str,
    command: str | None,
    args: tuple[str, ...],
    url: str | None,
    transport: str | None,
    env_pairs: tuple[str, ...],
    scope: str,
) -> None:
    """Add a server definition to a scope."""
    if not command and not url:
        raise click.UsageError("one of --command or --url is required")

    definition = ServerDefinition(
        id=server_id,
        scope=Scope(scope),
        transport=TransportType(transport) if transport else (TransportType.STDIO if command else TransportType.HTTP),
        command=command,
        args=list(args),
        url=url,
        env=_parse_env(env_pairs),
    )

    async def _add() -> None:
        store = await _load_store(ctx)
        await store.add_server(definition)

    _run(_add())
    click.echo(f"Added {server_id} ({definition.transport.value}) to {scope} scope")


@servers_group.command("remove")
@click.argument("server_id")
@click.option("--scope", type=SCOPE_CHOICE, default=None, help="Scope to remove from (default: winning scope)")
@click.pass_context
def remove_server(ctx: click.Context, server_id: str, scope: str | None) -> None:
    """Remove a server definition."""

    async def _remove() -> Scope:
        store = await _load_store(ctx)
        return await store.remove_server(server_id, Scope(scope) if scope else None)

    removed_from = _run(_remove())
    click.echo(f"Removed {server_id} from {removed_from.value} scope")


def _set_enabled(ctx: click.Context, server_id: str, enabled: bool) -> None:
    async def _update() -> None:
        store = await _load_store(ctx)
        await store.set_enabled(server_id, enabled)

    _run(_update())
    click.echo(f"{'Enabled' if enabled else 'Disabled'} {server_id}")


@servers_group.command("enable")
@click.argument("server_id")
@click.pass_context
def enable_server(ctx: click.Context, server_id: str) -> None:
    """Enable a server."""
    _set_enabled(ctx, server_id, True)


@servers_group.command("disable")
@click.argument("server_id")
@click.pass_context
def disable_server(ctx: click.Context, server_id: str) -> None:
    """Disable a server."""
    _set_enabled(ctx, server_id, False)


# === registry ===


@cli.group(name="registry")
def registry_group() -> None:
    """Browse and install servers from the remote registry."""
    pass


@registry_group.command("sync")
@click.pass_context
def sync_registry(ctx: click.Context) -> None:
    """Fetch the full catalog and refresh the local cache."""

    async def _sync() -> tuple[bool, int]:
        registry = RegistryClient(ctx.obj["settings"])
        await registry.initialize()
        ok = await registry.sync()
        return ok, registry.cache_size

    ok, size = _run(_sync())
    if not ok:
        click.echo(f"Registry sync failed; {size} cached entries still available.", err=True)
        sys.exit(1)
    click.echo(f"Registry synced: {size} entries")


@registry_group.command("search")
@click.argument("query", default="")
@click.option("--category", help="Only entries in this category")
@click.option("--transport", help="Only entries offering this transport")
@click.option("--tag", "tags", multiple=True, help="Required tag (repeatable)")
@click.option("--limit", default=20, show_default=True, help="Maximum results")
@click.pass_context
def search_registry(
    ctx: click.Context,
    query: str,
    category: str | None,
    transport: str | None,
    tags: tuple[str, ...],
    limit: int,
) -> None:
    """Search the registry, most popular first."""

    async def _search() -> list[Any]:
        registry = RegistryClient(ctx.obj["settings"])
        await registry.initialize()
        if registry.needs_sync():
            await registry.sync()
        return registry.search(query, category=category, transport=transport, tags=list(tags) or None)

    results = _run(_search())
    if not results:
        click.echo("No matching registry entries.")
        return

    for entry in results[:limit]:
        click.echo(f"  {entry.id:32} - {entry.description} [{', '.join(entry.transport)}]")
        click.echo(f"  {'':32}   installs: {entry.installs}, rating: {entry.rating}")


@registry_group.command("install")
@click.argument("entry_id")
@click.option("--env", "env_pairs", multiple=True, help="Environment variable KEY=VALUE (repeatable)")
@click.option("--scope", type=SCOPE_CHOICE, default=Scope.LOCAL.value, show_default=True)
@click.option("--url", "custom_url", help="Override the remote endpoint")
@click.pass_context
def install_entry(
    ctx: click.Context,
    entry_id: str,
    env_pairs: tuple[str, ...],
    scope: str,
    custom_url: str | None,
) -> None:
    """Generate a server definition from a registry entry and save it."""
    env_vars = _parse_env(env_pairs)

    async def _install() -> ServerDefinition:
        manager = MCPManager(ctx.obj["settings"])
        await manager.registry.initialize()
        if manager.registry.get_entry(entry_id) is None and manager.registry.needs_sync():
            await manager.registry.sync()
        await manager.initialize(ctx.obj["project"], autostart=False)
        return await manager.install_from_registry(
            entry_id, scope=Scope(scope), env_vars=env_vars, custom_url=custom_url
        )

    definition = _run(_install())
    click.echo(f"Installed {definition.id} ({definition.transport.value}) to {scope} scope")
    if definition.env:
        click.echo(f"  Environment: {', '.join(sorted(definition.env))}")


# === tools ===


@cli.command("tools")
@click.argument("query", required=False)
@click.pass_context
def list_tools(ctx: click.Context, query: str | None) -> None:
    """Start enabled servers and print their tools (optionally filtered)."""

    async def _tools() -> tuple[list[Any], list[dict[str, Any]]]:
        async with MCPManager(ctx.obj["settings"]) as manager:
            await manager.initialize(ctx.obj["project"])
            tools = manager.search_tools(query).tools if query else manager.get_all_tools()
            return tools, manager.list_servers()

    tools, servers = _run(_tools())

    for server in servers:
        if server["status"] == ServerStatus.ERROR.value:
            click.echo(f"  {server['id']}: [ERROR] {server['last_error']}", err=True)

    if not tools:
        click.echo("No tools found.")
        return

    for tool in tools:
        click.echo(f"  {tool.server_id:16} {tool.name:32} {tool.description or ''}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
