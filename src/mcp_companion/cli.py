"""CLI entry point for mcp-companion."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from mcp.types import (
    BlobResourceContents,
    EmbeddedResource,
    ImageContent,
    TextContent,
    TextResourceContents,
)

from mcp_companion.config_store import JsonConfigStore
from mcp_companion.exceptions import CompanionError, UnknownServerError
from mcp_companion.manager import ConnectionManager
from mcp_companion.models import (
    Server,
    ServerConfiguration,
    SSEConfig,
    StdioConfig,
    StreamableHTTPConfig,
)
from mcp_companion.settings import CONFIG_ENV_VAR, ManagerSettings, default_config_path

logger = logging.getLogger(__name__)

T = TypeVar("T")


@click.group()
@click.version_option(package_name="mcp-companion")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar=CONFIG_ENV_VAR,
    default=None,
    help="Server configuration file (default: ~/.config/mcp-companion/servers.json).",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity.",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, log_level: str) -> None:
    """Connect to, inspect and call any number of MCP servers."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config_path or default_config_path()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _manager(ctx: click.Context, **settings: Any) -> ConnectionManager:
    return ConnectionManager(JsonConfigStore(ctx.obj), ManagerSettings(**settings))


def _run(
    ctx: click.Context,
    action: Callable[[ConnectionManager], Awaitable[T]],
    **settings: Any,
) -> T:
    """Run ``action`` against a fresh manager and translate library errors.

    Args:
        ctx: Click context holding the config file path.
        action: Coroutine function receiving the manager.
        **settings: ManagerSettings overrides.
    """

    async def runner() -> T:
        async with _manager(ctx, **settings) as manager:
            return await action(manager)

    try:
        return asyncio.run(runner())
    except click.ClickException:
        raise
    except CompanionError as exc:
        raise click.ClickException(str(exc)) from exc
    except Exception as exc:
        logger.error("Command failed", exc_info=True)
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc


async def _find(manager: ConnectionManager, key: str) -> Server:
    """Look a server up by name, then by id or id prefix."""
    servers = await manager.get_servers()
    for server in servers:
        if server.name == key:
            return server
    matches = [server for server in servers if server.id.startswith(key)]
    if len(matches) == 1:
        return matches[0]
    raise UnknownServerError(key)


async def _connected(manager: ConnectionManager, key: str) -> Server:
    server = await _find(manager, key)
    await manager.connect(server)
    return server


def _parse_json_args(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.UsageError(f"--args is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise click.UsageError("--args must be a JSON object.")
    return value


def _parse_env(pairs: tuple[str, ...]) -> dict[str, str] | None:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.UsageError(f"--env expects KEY=VALUE, got {pair!r}")
        env[key] = value
    return env or None


def _render_content(item: Any) -> str:
    """Render one content block of a tool result or prompt message."""
    if isinstance(item, TextContent):
        return item.text
    if isinstance(item, ImageContent):
        return f"[image {item.mimeType}, {len(item.data)} base64 chars]"
    if isinstance(item, EmbeddedResource):
        return _render_resource(item.resource)
    return json.dumps(item.model_dump(mode="json", exclude_none=True), indent=2)


def _render_resource(contents: Any) -> str:
    if isinstance(contents, TextResourceContents):
        return contents.text
    if isinstance(contents, BlobResourceContents):
        mime = contents.mimeType or "application/octet-stream"
        return f"[{mime} blob from {contents.uri}, {len(contents.blob)} base64 chars]"
    return json.dumps(contents.model_dump(mode="json", exclude_none=True), indent=2)


# ---------------------------------------------------------------------------
# Registry commands
# ---------------------------------------------------------------------------


@main.command(name="list")
@click.pass_context
def list_servers(ctx: click.Context) -> None:
    """List configured servers."""

    async def action(manager: ConnectionManager) -> list[Server]:
        return await manager.get_servers()

    servers = _run(ctx, action)
    if not servers:
        click.echo(f"No servers configured in {ctx.obj}")
        return
    for server in servers:
        configuration = server.configuration
        click.echo(f"{server.name}  [{configuration.transport_type}]  {server.id[:12]}")
        click.echo(f"    {configuration.display_value}")


@main.command()
@click.argument("name")
@click.option(
    "--transport",
    type=click.Choice(["stdio", "sse", "streamable-http"], case_sensitive=False),
    default="stdio",
    show_default=True,
    help="MCP transport type.",
)
@click.option("--command", "command_", type=str, help="Server command (stdio only).")
@click.option("--arg", "args", multiple=True, help="Server argument (stdio, repeatable).")
@click.option("--env", "env", multiple=True, help="KEY=VALUE environment override (stdio).")
@click.option("--url", type=str, help="Server URL (SSE/HTTP only).")
@click.option("--note", type=str, help="Free-form note (SSE/HTTP only).")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    transport: str,
    command_: str | None,
    args: tuple[str, ...],
    env: tuple[str, ...],
    url: str | None,
    note: str | None,
) -> None:
    """Add a server to the configuration."""
    configuration: ServerConfiguration
    if transport == "stdio":
        if not command_:
            raise click.UsageError("--command is required for stdio transport.")
        configuration = StdioConfig(
            command=command_, args=list(args) or None, env=_parse_env(env)
        )
    else:
        if not url:
            raise click.UsageError("--url is required for SSE/HTTP transport.")
        if transport == "sse":
            configuration = SSEConfig(url=url, note=note)
        else:
            configuration = StreamableHTTPConfig(url=url, note=note)

    server = Server(name=name, configuration=configuration)

    async def action(manager: ConnectionManager) -> None:
        await manager.add_server(server)

    _run(ctx, action)
    click.echo(f"Added {name} ({server.id[:12]})")


@main.command()
@click.argument("name")
@click.pass_context
def remove(ctx: click.Context, name: str) -> None:
    """Remove a server from the configuration."""

    async def action(manager: ConnectionManager) -> Server:
        server = await _find(manager, name)
        await manager.remove_server(server.id)
        return server

    server = _run(ctx, action)
    click.echo(f"Removed {server.name}")


# ---------------------------------------------------------------------------
# Connection commands
# ---------------------------------------------------------------------------


@main.command(name="test")
@click.argument("name")
@click.option(
    "--timeout", type=float, default=30.0, show_default=True, help="Handshake timeout (seconds)."
)
@click.pass_context
def test_server(ctx: click.Context, name: str, timeout: float) -> None:
    """Check that a server accepts a connection."""

    async def action(manager: ConnectionManager) -> Any:
        return await manager.test_connection(await _find(manager, name))

    result = _run(ctx, action, connect_timeout=timeout)
    info = result.serverInfo
    click.echo(f"OK: {info.name} {info.version} (protocol {result.protocolVersion})")


@main.command()
@click.argument("name")
@click.pass_context
def inspect(ctx: click.Context, name: str) -> None:
    """Connect to a server and print its capabilities."""

    async def action(manager: ConnectionManager) -> Server:
        server = await _connected(manager, name)
        snapshot = next(s for s in await manager.get_servers() if s.id == server.id)
        await manager.disconnect(server.id)
        return snapshot

    server = _run(ctx, action)
    if server.server_info is not None:
        click.echo(f"Server: {server.server_info.name} {server.server_info.version}")
    click.echo(f"Protocol: {server.protocol_version}")
    if server.instructions:
        click.echo(f"Instructions: {server.instructions}")
    click.echo("---")
    click.echo(f"Tools ({len(server.available_tools)}):")
    for tool in server.available_tools:
        click.echo(f"  {tool.name}: {tool.description or ''}".rstrip())
    click.echo(f"Prompts ({len(server.available_prompts)}):")
    for prompt in server.available_prompts:
        click.echo(f"  {prompt.name}: {prompt.description or ''}".rstrip())
    click.echo(f"Resources ({len(server.available_resources)}):")
    for resource in server.available_resources:
        click.echo(f"  {resource.uri} ({resource.name})")
    click.echo(f"Resource templates ({len(server.resource_templates)}):")
    for template in server.resource_templates:
        click.echo(f"  {template.uriTemplate} ({template.name})")


@main.command()
@click.argument("name")
@click.argument("tool")
@click.option("--args", "raw_args", type=str, help="Tool arguments as a JSON object.")
@click.pass_context
def call(ctx: click.Context, name: str, tool: str, raw_args: str | None) -> None:
    """Call a tool on a server."""
    arguments = _parse_json_args(raw_args)

    async def action(manager: ConnectionManager) -> Any:
        server = await _connected(manager, name)
        return await manager.call_tool(server.id, tool, arguments)

    result = _run(ctx, action)
    for item in result.content:
        click.echo(_render_content(item))
    if result.isError:
        raise click.ClickException(f"Tool {tool} reported an error")


@main.command()
@click.argument("name")
@click.argument("prompt_name")
@click.option("--args", "raw_args", type=str, help="Prompt arguments as a JSON object.")
@click.pass_context
def prompt(ctx: click.Context, name: str, prompt_name: str, raw_args: str | None) -> None:
    """Render a prompt from a server."""
    arguments = _parse_json_args(raw_args)

    async def action(manager: ConnectionManager) -> Any:
        server = await _connected(manager, name)
        return await manager.get_prompt(server.id, prompt_name, arguments)

    result = _run(ctx, action)
    if result.description:
        click.echo(result.description)
    for message in result.messages:
        click.echo(f"[{message.role}] {_render_content(message.content)}")


@main.command()
@click.argument("name")
@click.argument("uri")
@click.pass_context
def read(ctx: click.Context, name: str, uri: str) -> None:
    """Read a resource from a server."""

    async def action(manager: ConnectionManager) -> Any:
        server = await _connected(manager, name)
        return await manager.read_resource(server.id, uri)

    result = _run(ctx, action)
    for contents in result.contents:
        click.echo(_render_resource(contents))


@main.command()
@click.argument("name")
@click.option(
    "--interval", type=float, default=30.0, show_default=True, help="Seconds between polls."
)
@click.pass_context
def watch(ctx: click.Context, name: str, interval: float) -> None:
    """Print the server's tool list every INTERVAL seconds until interrupted."""

    async def action(manager: ConnectionManager) -> None:
        server = await _connected(manager, name)
        async for tools in manager.poll_tools(server.id, interval):
            click.echo(f"{len(tools)} tools: {', '.join(tool.name for tool in tools)}")

    try:
        _run(ctx, action)
    except KeyboardInterrupt:
        click.echo("Stopped.")
