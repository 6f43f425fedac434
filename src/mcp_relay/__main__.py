"""CLI entry point for MCP Relay."""

import asyncio
import shlex
import sys
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional, TypeVar

import click
from pydantic import ValidationError

from . import __version__
from .auth import TokenManager
from .config import Config
from .mcp_client.dispatcher import Dispatcher
from .mcp_client.exceptions import MCPClientError
from .models.auth import Credential
from .models.mcp import ServerDescriptor
from .output import (
    EXIT_FAILURE,
    HUMAN,
    JSON_FORMAT,
    echo_error,
    echo_json,
    exit_code_for,
    render_ping,
    render_servers,
    render_tool,
    render_tool_result,
    render_tools,
)
from .registry import ServerRegistry
from .utils.logging_config import setup_logging

T = TypeVar("T")


def _parse_pairs(values: tuple[str, ...], option: str) -> dict[str, str]:
    pairs = {}
    for value in values:
        key, sep, item = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"invalid KEY=value: no `=` found in `{value}`", param_hint=option)
        pairs[key] = item
    return pairs


def _run(ctx: click.Context, operation: Callable[[Dispatcher], Awaitable[T]]) -> T:
    """Runs `operation` against a fresh dispatcher and turns client errors into exit codes."""
    config: Config = ctx.obj["config"]
    output_format: str = ctx.obj["format"]

    async def _main() -> T:
        async with Dispatcher(ctx.obj["registry"], config=config, credentials=TokenManager(config)) as dispatcher:
            return await operation(dispatcher)

    try:
        return asyncio.run(_main())
    except MCPClientError as e:
        echo_error(e, output_format)
        ctx.exit(exit_code_for(e))
    except KeyboardInterrupt:
        click.echo("\nInterrupted.", err=True)
        ctx.exit(130)


@click.group()
@click.version_option(__version__, prog_name="mcp-relay")
@click.option(
    "--config-file", "-c",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    help="Path to a JSON configuration file.",
    envvar="MCP_RELAY_CONFIG_FILE",
)
@click.option(
    "--log-level", "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override the logging level (e.g., DEBUG, INFO).",
    envvar="MCP_RELAY_LOGGING_LEVEL",
)
@click.option(
    "--log-format",
    type=click.Choice(["console", "json"], case_sensitive=False),
    default=None,
    help="Override logging format.",
    envvar="MCP_RELAY_LOGGING_FORMAT",
)
@click.option(
    "--format", "output_format",
    type=click.Choice([HUMAN, JSON_FORMAT], case_sensitive=False),
    default=HUMAN,
    show_default=True,
    help="Output format for command results.",
)
@click.option(
    "--registry",
    type=click.Path(dir_okay=False, resolve_path=True),
    default=None,
    help="Path of the server registry file.",
    envvar="MCP_RELAY_REGISTRY_FILE",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str], log_level: Optional[str], log_format: Optional[str],
        output_format: str, registry: Optional[str]) -> None:
    """MCP Relay - register, inspect and invoke tools on MCP servers."""
    try:
        cfg = Config.from_file(Path(config_file)) if config_file else Config()
    except (OSError, ValueError) as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    if log_level:
        cfg.logging.level = log_level.upper()
    if log_format:
        cfg.logging.format = log_format.lower()
    if registry:
        cfg.registry_file = Path(registry)
    setup_logging(cfg.logging)

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg
    ctx.obj["format"] = output_format.lower()
    ctx.obj["registry"] = ServerRegistry(cfg.resolved_registry_file)


@cli.command()
@click.argument("name")
@click.option("--transport", "-t", type=click.Choice(["stdio", "http"]), required=True, help="Transport type.")
@click.option("--cmd", help="Command to spawn (stdio). Split shell-style unless --arg is given.")
@click.option("--arg", "args", multiple=True, help="Argument for the command (repeatable).")
@click.option("--cwd", type=click.Path(file_okay=False), help="Working directory for the command (stdio).")
@click.option("--framing", type=click.Choice(["newline", "content-length"]), default="newline", show_default=True)
@click.option("--url", help="Endpoint URL (http).")
@click.option("--sse", is_flag=True, help="Use a persistent SSE channel (implied by URLs ending in /sse).")
@click.option("--env", "env_pairs", multiple=True, help="Environment variable KEY=value; values may use ${env:VAR}.")
@click.option("--header", "header_pairs", multiple=True, help="HTTP header KEY=value (repeatable).")
@click.option("--auth-required", is_flag=True, help="The server rejects unauthenticated requests.")
@click.option("--default", "make_default", is_flag=True, help="Make this the default server.")
@click.pass_context
def add(ctx: click.Context, name: str, transport: str, cmd: Optional[str], args: tuple[str, ...], cwd: Optional[str],
        framing: str, url: Optional[str], sse: bool, env_pairs: tuple[str, ...], header_pairs: tuple[str, ...],
        auth_required: bool, make_default: bool) -> None:
    """Register a new MCP server."""
    if transport == "stdio" and not cmd:
        raise click.UsageError("--cmd required for stdio transport")
    if transport == "http" and not url:
        raise click.UsageError("--url required for http transport")

    command, command_args = None, list(args)
    if cmd:
        if args:
            command = cmd
        else:
            command, *command_args = shlex.split(cmd)

    try:
        descriptor = ServerDescriptor(
            name=name,
            transport=transport,
            command=command,
            args=command_args,
            cwd=cwd,
            framing=framing,
            env=_parse_pairs(env_pairs, "--env"),
            url=url,
            headers=_parse_pairs(header_pairs, "--header"),
            sse=sse,
            auth_required=auth_required,
        )
    except ValidationError as e:
        raise click.UsageError(f"Invalid server definition: {e.errors()[0]['msg']}") from e

    registry: ServerRegistry = ctx.obj["registry"]
    try:
        registry.add(descriptor, make_default=make_default)
    except MCPClientError as e:
        echo_error(e, ctx.obj["format"])
        ctx.exit(exit_code_for(e))

    if ctx.obj["format"] == JSON_FORMAT:
        echo_json({"added": name})
    else:
        click.echo(f"{click.style('OK', fg='green')} Added server: {click.style(name, fg='cyan')}")


@cli.command(name="list")
@click.pass_context
def list_servers(ctx: click.Context) -> None:
    """List registered servers."""
    registry: ServerRegistry = ctx.obj["registry"]
    try:
        render_servers(registry.list(), registry.default_server, ctx.obj["format"])
    except MCPClientError as e:
        echo_error(e, ctx.obj["format"])
        ctx.exit(exit_code_for(e))


@cli.command()
@click.argument("name")
@click.pass_context
def remove(ctx: click.Context, name: str) -> None:
    """Remove a registered server."""
    registry: ServerRegistry = ctx.obj["registry"]
    try:
        registry.remove(name)
    except MCPClientError as e:
        echo_error(e, ctx.obj["format"])
        ctx.exit(exit_code_for(e))
    if ctx.obj["format"] == JSON_FORMAT:
        echo_json({"removed": name})
    else:
        click.echo(f"{click.style('OK', fg='green')} Removed server: {click.style(name, fg='cyan')}")


@cli.command()
@click.argument("name", required=False)
@click.pass_context
def ping(ctx: click.Context, name: Optional[str]) -> None:
    """Connect to a server and round-trip a ping."""
    result = _run(ctx, lambda dispatcher: dispatcher.ping(name))
    render_ping(result, ctx.obj["format"])


@cli.command()
@click.argument("server", required=False)
@click.pass_context
def tools(ctx: click.Context, server: Optional[str]) -> None:
    """List tools from a server (the default server if none is given)."""

    async def _list(dispatcher: Dispatcher) -> tuple[str, list]:
        session = await dispatcher.session_for(server)
        return session.name, await dispatcher.list_tools(session.name)

    server_name, tool_list = _run(ctx, _list)
    render_tools(server_name, tool_list, ctx.obj["format"])


@cli.command()
@click.argument("tool")
@click.option("--server", "-s", help="Server name (uses default if not specified).")
@click.pass_context
def describe(ctx: click.Context, tool: str, server: Optional[str]) -> None:
    """Describe a tool: its flags and input schema."""
    descriptor = _run(ctx, lambda dispatcher: dispatcher.describe_tool(tool, server))
    render_tool(descriptor, ctx.obj["format"])


@cli.command(context_settings={"ignore_unknown_options": True, "allow_extra_args": True})
@click.argument("tool")
@click.option("--server", "-s", help="Server name (uses default if not specified).")
@click.option("--input-json", help="Tool arguments as a JSON object.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Seconds to wait for the tool result.")
@click.argument("tool_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run(ctx: click.Context, tool: str, server: Optional[str], input_json: Optional[str], timeout: Optional[float],
        tool_args: tuple[str, ...]) -> None:
    """Run a tool. Tool arguments are given as --flag value pairs after the tool name."""
    result = _run(ctx, lambda dispatcher: dispatcher.run_tool(
        tool,
        server=server,
        flag_args=list(tool_args),
        input_json=input_json,
        timeout=timeout,
    ))
    render_tool_result(result, ctx.obj["format"])
    if result.is_error:
        ctx.exit(EXIT_FAILURE)


@cli.command()
@click.argument("name")
@click.option("--token", prompt=True, hide_input=True, help="Access token (prompted when omitted).")
@click.option("--token-type", default="Bearer", show_default=True, help="Authorization scheme for the token.")
@click.option("--refresh-token", help="Refresh token used to renew the access token.")
@click.option("--token-endpoint", help="OAuth token endpoint used for refresh.")
@click.option("--client-id", help="OAuth client id used for refresh.")
@click.option("--expires-in", type=int, help="Seconds until the access token expires.")
@click.pass_context
def auth(ctx: click.Context, name: str, token: str, token_type: str, refresh_token: Optional[str],
         token_endpoint: Optional[str], client_id: Optional[str], expires_in: Optional[int]) -> None:
    """Store a credential for a server in the system keyring."""
    config: Config = ctx.obj["config"]
    try:
        ctx.obj["registry"].get(name)
        credential = Credential(
            access_token=token,
            token_type=token_type,
            refresh_token=refresh_token,
            token_endpoint=token_endpoint,
            client_id=client_id,
            expires_at=time.time() + expires_in if expires_in else None,
        )
        asyncio.run(TokenManager(config).store(name, credential))
    except ValidationError as e:
        raise click.UsageError(f"Invalid credential: {e.errors()[0]['msg']}") from e
    except MCPClientError as e:
        echo_error(e, ctx.obj["format"])
        ctx.exit(exit_code_for(e))

    if ctx.obj["format"] == JSON_FORMAT:
        echo_json({"success": True, "server": name})
    else:
        click.echo(f"{click.style('OK', fg='green')} Token saved for server: {click.style(name, fg='cyan')}")


@cli.command()
@click.argument("name")
@click.pass_context
def logout(ctx: click.Context, name: str) -> None:
    """Forget the stored credential for a server."""
    try:
        removed = asyncio.run(TokenManager(ctx.obj["config"]).clear(name))
    except MCPClientError as e:
        echo_error(e, ctx.obj["format"])
        ctx.exit(exit_code_for(e))
    if ctx.obj["format"] == JSON_FORMAT:
        echo_json({"success": True, "server": name, "removed": removed})
    elif removed:
        click.echo(f"{click.style('OK', fg='green')} Logged out of server: {click.style(name, fg='cyan')}")
    else:
        click.echo(click.style(f"No stored credential for server '{name}'", dim=True))


@cli.command()
@click.pass_context
def update(ctx: click.Context) -> None:
    """Show how to upgrade to the latest release."""
    command = f"{Path(sys.executable).name} -m pip install --upgrade mcp-relay"
    info: dict[str, Any] = {"installed_version": __version__, "upgrade_command": command}
    if ctx.obj["format"] == JSON_FORMAT:
        echo_json(info)
        return
    click.echo(f"MCP Relay v{__version__}")
    click.echo(f"Upgrade with: {click.style(command, bold=True)}")


if __name__ == "__main__":
    cli()
