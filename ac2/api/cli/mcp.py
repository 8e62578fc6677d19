"""ac2 mcp — inspect third-party MCP servers."""

from __future__ import annotations

import asyncio
import json

import typer

from ac2.services.mcp_oauth import McpOAuthClient
from ac2.settings import get_settings

mcp_app = typer.Typer(no_args_is_help=True)


@mcp_app.command("discover")
def discover_command(
    mcp_url: str = typer.Argument(..., help="MCP server URL (any path; only the origin is used)"),
):
    """Fetch a server's OAuth authorization server metadata."""
    settings = get_settings()
    client = McpOAuthClient(
        discovery_timeout=settings.mcp_discovery_timeout,
        token_timeout=settings.mcp_token_timeout,
        refresh_buffer=settings.mcp_refresh_buffer,
    )
    metadata = asyncio.run(client.discover(mcp_url))
    if metadata is None:
        typer.echo(f"No OAuth metadata found for {mcp_url}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(metadata.model_dump(exclude_none=True), indent=2))
