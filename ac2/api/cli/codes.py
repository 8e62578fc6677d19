"""ac2 codes — authorization code store maintenance."""

from __future__ import annotations

import asyncio

import typer

import ac2.services.bootstrap as _svc

codes_app = typer.Typer(no_args_is_help=True)


async def _purge() -> int:
    async with _svc.bootstrap_services() as services:
        return await services.code_store.purge_expired()


@codes_app.command("purge")
def purge_command():
    """Delete expired authorization codes and state claims (postgres store)."""
    removed = asyncio.run(_purge())
    typer.echo(f"Purged {removed} expired row(s)")
