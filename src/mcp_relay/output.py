"""Rendering of command results and errors for the CLI."""

import json
import textwrap
from typing import Any

import click

from .mcp_client.exceptions import MCPClientError
from .models.mcp import PingResult, ServerDescriptor, ToolCallResult, ToolDescriptor
from .schema.flags import parse_schema

HUMAN = "human"
JSON_FORMAT = "json"

EXIT_OK = 0
EXIT_FAILURE = 1

# Process exit status per error kind.
EXIT_CODES = {
    "not_found": 3,
    "connection_lost": 4,
    "io_failure": 4,
    "spawn": 4,
    "peer_crashed": 4,
    "session_closed": 4,
    "timeout": 5,
    "auth": 6,
    "handshake": 7,
    "protocol": 7,
    "malformed": 7,
    "invalid_argument": 8,
}


def exit_code_for(error: MCPClientError) -> int:
    return EXIT_CODES.get(error.kind, EXIT_FAILURE)


def format_error(error: MCPClientError) -> str:
    where = f" {error.server}" if error.server else ""
    return f"error[{error.kind}]{where}: {error.message}"


def echo_error(error: MCPClientError, output_format: str = HUMAN) -> None:
    if output_format == JSON_FORMAT:
        payload = {"error": {"kind": error.kind, "server": error.server, "message": error.message}}
        click.echo(json.dumps(payload, indent=2), err=True)
        return
    click.echo(click.style(format_error(error), fg="red"), err=True)


def echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def render_servers(servers: list[ServerDescriptor], default_server: str | None, output_format: str) -> None:
    if output_format == JSON_FORMAT:
        echo_json({
            "default_server": default_server,
            "servers": [s.model_dump(mode="json", exclude_defaults=True) for s in servers],
        })
        return
    if not servers:
        click.echo(click.style("No servers registered. Use `mcp-relay add` to add one.", dim=True))
        return
    click.echo(click.style(f"{'NAME':<30} {'TRANSPORT':<10} TARGET", bold=True))
    click.echo(click.style("-" * 60, dim=True))
    for server in servers:
        label = f"{server.name} (default)" if server.name == default_server else server.name
        click.echo(f"{click.style(f'{label:<30}', fg='cyan')} {click.style(f'{server.transport:<10}', fg='yellow')} {server.target}")


def render_tools(server: str, tools: list[ToolDescriptor], output_format: str) -> None:
    if output_format == JSON_FORMAT:
        echo_json({"server": server, "tools": [tool.to_wire() for tool in tools]})
        return
    if not tools:
        click.echo(click.style(f"No tools available from server '{server}'", dim=True))
        return
    click.echo(f"Tools from {click.style(server, fg='cyan')}:\n")
    for tool in tools:
        click.echo(f"  {click.style(tool.name, fg='green', bold=True)}")
        for line in textwrap.wrap(tool.description or "", 56):
            click.echo(f"    {click.style(line, dim=True)}")
        click.echo()
    click.echo(click.style(f"Total: {len(tools)} tool(s)", dim=True))


def render_tool(tool: ToolDescriptor, output_format: str) -> None:
    if output_format == JSON_FORMAT:
        echo_json(tool.to_wire())
        return
    click.echo(f"{click.style('Tool', bold=True)}: {click.style(tool.name, fg='cyan')}\n")
    if tool.description:
        click.echo(f"{click.style('Description', bold=True)}:")
        for line in textwrap.wrap(tool.description, 70):
            click.echo(f"  {line}")
        click.echo()
    if not tool.input_schema:
        click.echo(click.style("No input schema defined", dim=True))
        return
    flags = parse_schema(tool.input_schema)
    if flags:
        click.echo(f"{click.style('Flags', bold=True)}:")
        for flag in flags:
            kind = "|".join(flag.choices) if flag.choices else flag.flag_type.value
            notes = [click.style("required", fg="red")] if flag.required else []
            if flag.has_default:
                notes.append(f"default: {json.dumps(flag.default)}")
            suffix = f" ({', '.join(notes)})" if notes else ""
            click.echo(f"  {click.style(flag.cli_name, fg='green')} <{kind}>{suffix}")
            if flag.description:
                click.echo(f"      {click.style(flag.description, dim=True)}")
        click.echo()
    click.echo(f"{click.style('Input Schema', bold=True)}:")
    click.echo(json.dumps(tool.input_schema, indent=2))


def render_tool_result(result: ToolCallResult, output_format: str) -> None:
    if output_format == JSON_FORMAT:
        echo_json(result.to_wire())
        return
    if result.is_error:
        click.echo(click.style("Error from tool:", fg="red", bold=True), err=True)
    for item in result.content:
        if item.type == "text":
            click.echo(item.text or "")
        elif item.type in ("image", "audio"):
            size = len(item.data or "")
            click.echo(f"{click.style(f'[{item.type.capitalize()}]', fg='magenta')} "
                       f"{click.style(item.mime_type or '', dim=True)} {click.style(f'({size} bytes)', dim=True)}")
        else:
            click.echo(click.style(f"[{item.type.capitalize()}]", fg="magenta"))
            click.echo(json.dumps(item.resource or item.model_dump(by_alias=True, exclude_none=True), indent=2))
    if result.structured_content is not None and not result.content:
        click.echo(json.dumps(result.structured_content, indent=2))


def render_ping(result: PingResult, output_format: str) -> None:
    if output_format == JSON_FORMAT:
        echo_json({"status": "ok", **result.model_dump()})
        return
    version = f"v{result.server_version or '?'}"
    click.echo(
        f"{click.style('OK', fg='green')} Connected to {click.style(result.server_name or result.server, fg='cyan')} "
        f"{click.style(version, dim=True)} (protocol {result.protocol_version}) "
        f"in {click.style(f'{result.elapsed_ms:.2f}ms', fg='yellow')}"
    )
