"""ac2 serve — start the API server."""

from __future__ import annotations

import typer

serve_app = typer.Typer(no_args_is_help=False, invoke_without_command=True)


@serve_app.callback()
def serve_command(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload (dev only)"),
    workers: int = typer.Option(1, "--workers", "-w", help="Number of worker processes"),
):
    """Start the ac2 API server (uvicorn).

    With the in-memory code store, run a single worker: a code issued by
    one process cannot be redeemed by another.
    """
    import uvicorn

    from ac2.settings import get_settings

    if workers > 1 and get_settings().code_store == "memory":
        typer.echo(
            "Warning: AC2_CODE_STORE=memory with multiple workers; "
            "use AC2_CODE_STORE=postgres",
            err=True,
        )

    uvicorn.run(
        "ac2.api.main:app",
        host=host,
        port=port,
        reload=reload,
        workers=workers,
    )
