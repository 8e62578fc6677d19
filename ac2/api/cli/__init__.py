"""CLI entry point — Typer app with async service bootstrap.

Service lifecycle delegated to services.bootstrap.bootstrap_services().
Commands that need the database share that context manager; ``mcp
discover`` and ``credentials gen-key`` run without one.
"""

from __future__ import annotations

import logging

import typer

app = typer.Typer(name="ac2", no_args_is_help=True)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    """ac2 — OAuth 2.1 authorization server and MCP OAuth client."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Register subcommands
from ac2.api.cli.codes import codes_app  # noqa: E402
from ac2.api.cli.credentials import credentials_app  # noqa: E402
from ac2.api.cli.mcp import mcp_app  # noqa: E402
from ac2.api.cli.migrate import migrate_app  # noqa: E402
from ac2.api.cli.serve import serve_app  # noqa: E402

app.add_typer(serve_app, name="serve")
app.add_typer(migrate_app, name="migrate")
app.add_typer(mcp_app, name="mcp")
app.add_typer(codes_app, name="codes")
app.add_typer(credentials_app, name="credentials")
