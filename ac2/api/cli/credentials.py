"""ac2 credentials — manage tenant MCP client secrets."""

from __future__ import annotations

import asyncio
import secrets
from typing import Optional

import typer

import ac2.services.bootstrap as _svc
from ac2.services.encryption import generate_key

credentials_app = typer.Typer(no_args_is_help=True)


async def _set(client_id: str, api_key: str) -> str | None:
    async with _svc.bootstrap_services() as services:
        org = await services.credentials.resolve_organization(client_id)
        if org is None:
            return None
        await services.credentials.set_api_key(org.id, api_key)
        return org.id


@credentials_app.command("set")
def set_command(
    client_id: str = typer.Argument(..., help="Organization slug (the OAuth client_id)"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Key to store (default: generate one)"),
):
    """Rotate an organization's MCP API key (the client secret for /token)."""
    api_key = api_key or secrets.token_urlsafe(32)
    org_id = asyncio.run(_set(client_id, api_key))
    if org_id is None:
        typer.echo(f"Error: unknown organization {client_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"  organization: {org_id}")
    typer.echo(f"  api key:      {api_key}")


@credentials_app.command("gen-key")
def gen_key_command():
    """Print a new value for AC2_CREDENTIAL_ENCRYPTION_KEY."""
    typer.echo(generate_key())
