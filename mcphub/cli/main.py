"""
MCPHub CLI - Inspect and drive local MCP servers.

Every command reads the config files, does its work, stops any servers it
started, and exits.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn, Optional, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from mcphub import __version__
from mcphub.extensions.resolver import ExtensionError
from mcphub.mcp.errors import MCPError
from mcphub.mcp.manager import MCPManager
from mcphub.mcp.schema import ServerConfig
from mcphub.validation.config import Config, ConfigError

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(RichHandler(console=err_console, show_path=False, rich_tracebacks=True))
    root.setLevel(level)


def _fail(message: str) -> NoReturn:
    err_console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def _parse_value(raw: str) -> Any:
    """JSON if it parses, otherwise the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _run_with_manager(config: Config, action: Callable[[MCPManager], Awaitable[T]]) -> T:
    """Load all servers, run ``action``, and always stop the servers afterwards."""

    async def runner() -> T:
        manager = config.build_manager()
        try:
            with err_console.status("[bold blue]Starting MCP servers...[/bold blue]"):
                await manager.load_servers()
            return await action(manager)
        finally:
            await manager.stop_all()

    try:
        return asyncio.run(runner())
    except (MCPError, ConfigError) as e:
        _fail(str(e))


def _print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group(invoke_without_command=True)
@click.option("--version", "-V", is_flag=True, help="Show version")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option(
    "--config-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="MCP server config file (default: claude_desktop_config.json)",
)
@click.pass_context
def cli(ctx: click.Context, version: bool, verbose: bool, config_file: Optional[Path]) -> None:
    """
    MCPHub - manage local MCP tool servers.

    \b
    Examples:
        mcphub servers                          # Start servers, list tools
        mcphub call fs read_file --args '{"path": "/tmp/x"}'
        mcphub config add fs npx -- -y @modelcontextprotocol/server-filesystem /tmp
    """
    if version:
        console.print(f"MCPHub v{__version__}")
        return
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    try:
        config = Config.load()
        if config_file is not None:
            config.set_value("paths.mcp_config", str(config_file))
        level = "DEBUG" if verbose else config.merged.logging.level
    except ConfigError as e:
        _fail(str(e))

    configure_logging(level)
    ctx.obj = config


# ── Servers ───────────────────────────────────────────────────────────────


@cli.command()
@click.pass_obj
def servers(config: Config) -> None:
    """Start every server and list what each one offers."""

    async def action(manager: MCPManager):
        return await manager.list_servers()

    infos = _run_with_manager(config, action)
    if not infos:
        console.print("[dim]No MCP servers running. Check the config with `mcphub config show`.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Server", style="cyan")
    table.add_column("Tools", justify="right")
    table.add_column("Resources", justify="right")
    for info in infos:
        table.add_row(info.name, str(len(info.tools)), str(len(info.resources)))
    console.print(table)


@cli.command()
@click.argument("server", required=False)
@click.pass_obj
def tools(config: Config, server: Optional[str]) -> None:
    """List tools, optionally for one SERVER only."""

    async def action(manager: MCPManager):
        infos = await manager.list_servers()
        if server is not None:
            manager.get_client(server)
            infos = [info for info in infos if info.name == server]
        return infos

    infos = _run_with_manager(config, action)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Tool", style="cyan")
    table.add_column("Description")
    for info in infos:
        for tool in info.tools:
            desc = (tool.description or "").split("\n")[0][:80]
            table.add_row(f"{info.name}.{tool.name}", desc)
    console.print(table)


@cli.command()
@click.argument("server")
@click.argument("tool")
@click.option("--args", "arguments", default="{}", help="Tool arguments as a JSON object")
@click.pass_obj
def call(config: Config, server: str, tool: str, arguments: str) -> None:
    """Call TOOL on SERVER and print the JSON result."""
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        _fail(f"--args is not valid JSON: {e}")
    if not isinstance(parsed, dict):
        _fail("--args must be a JSON object")

    async def action(manager: MCPManager):
        return await manager.call_tool(server, tool, parsed)

    _print_json(_run_with_manager(config, action))


@cli.command()
@click.argument("server")
@click.argument("uri")
@click.pass_obj
def read(config: Config, server: str, uri: str) -> None:
    """Read resource URI from SERVER and print the JSON result."""

    async def action(manager: MCPManager):
        return await manager.read_resource(server, uri)

    _print_json(_run_with_manager(config, action))


# ── Config file ───────────────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Show or edit the MCP server config file."""


@config_group.command("path")
@click.pass_obj
def config_path(config: Config) -> None:
    """Print the config file location."""
    click.echo(str(config.config_store().path))


@config_group.command("show")
@click.pass_obj
def config_show(config: Config) -> None:
    """Print the configured servers as JSON."""
    try:
        _print_json(config.config_store().load().to_dict())
    except ConfigError as e:
        _fail(str(e))


@config_group.command("add")
@click.argument("name")
@click.argument("command")
@click.argument("args", nargs=-1)
@click.option("--env", "-e", multiple=True, help="KEY=VALUE, repeatable")
@click.pass_obj
def config_add(config: Config, name: str, command: str, args: tuple, env: tuple) -> None:
    """Add or replace server NAME launched as COMMAND ARGS..."""
    env_map = {}
    for item in env:
        key, sep, value = item.partition("=")
        if not sep or not key:
            _fail(f"--env expects KEY=VALUE, got {item!r}")
        env_map[key] = value

    store = config.config_store()
    try:
        current = store.load()
        current.servers[name] = ServerConfig(command=command, args=list(args), env=env_map)
        store.save(current)
    except ConfigError as e:
        _fail(str(e))
    console.print(f"[green]Saved server '{name}' to {store.path}[/green]")


@config_group.command("remove")
@click.argument("name")
@click.pass_obj
def config_remove(config: Config, name: str) -> None:
    """Remove server NAME from the config file."""
    store = config.config_store()
    try:
        current = store.load()
        if current.servers.pop(name, None) is None:
            _fail(f"Server '{name}' is not configured")
        store.save(current)
    except ConfigError as e:
        _fail(str(e))
    console.print(f"[green]Removed server '{name}'[/green]")


# ── Extensions ────────────────────────────────────────────────────────────


@cli.group("extensions")
def extensions_group() -> None:
    """Inspect installed extensions and their settings."""


@extensions_group.command("list")
@click.pass_obj
def extensions_list(config: Config) -> None:
    """List installed extensions."""
    resolver = config.extension_resolver()
    installed = resolver.list_extensions()
    if not installed:
        console.print(f"[dim]No extensions in {resolver.extensions_dir}[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version", style="dim")
    table.add_column("Enabled")
    table.add_column("MCP server")
    for ext in installed:
        server = ext.manifest.server
        table.add_row(
            ext.id,
            ext.manifest.title,
            ext.manifest.version,
            "[green]yes[/green]" if ext.enabled else "[red]no[/red]",
            "yes" if server is not None and server.mcp_config is not None else "",
        )
    console.print(table)


@extensions_group.command("servers")
@click.pass_obj
def extensions_servers(config: Config) -> None:
    """Print the resolved launch specs of enabled extensions."""
    servers = config.extension_resolver().get_mcp_servers()
    _print_json([dict(server.model_dump(), server_name=server.server_name) for server in servers])


@extensions_group.command("enable")
@click.argument("extension_id")
@click.pass_obj
def extensions_enable(config: Config, extension_id: str) -> None:
    """Enable an extension."""
    _set_enabled(config, extension_id, True)


@extensions_group.command("disable")
@click.argument("extension_id")
@click.pass_obj
def extensions_disable(config: Config, extension_id: str) -> None:
    """Disable an extension."""
    _set_enabled(config, extension_id, False)


def _set_enabled(config: Config, extension_id: str, enabled: bool) -> None:
    try:
        config.extension_resolver().set_enabled(extension_id, enabled)
    except ExtensionError as e:
        _fail(str(e))
    state = "enabled" if enabled else "disabled"
    console.print(f"[green]Extension '{extension_id}' {state}[/green]")


@extensions_group.command("set")
@click.argument("extension_id")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def extensions_set(config: Config, extension_id: str, key: str, value: str) -> None:
    """Store user_config KEY for an extension. VALUE is parsed as JSON when possible."""
    try:
        config.extension_resolver().set_user_config(extension_id, key, _parse_value(value))
    except ExtensionError as e:
        _fail(str(e))
    console.print(f"[green]Set {key} for '{extension_id}'[/green]")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
