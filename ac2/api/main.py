"""FastAPI application — lifespan, middleware, routers."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from ac2.services.bootstrap import bootstrap_services
from ac2.settings import Settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with bootstrap_services(app.state.settings) as services:
        app.state.services = services
        app.state.db = services.db
        logger.info(
            "ac2 started (code_store=%s, token_mode=%s)",
            services.settings.code_store,
            services.settings.token_mode,
        )
        yield


def create_app(settings: Settings | None = None) -> FastAPI:
    boot_settings = settings or Settings()

    app = FastAPI(title="ac2", version="0.1.0", lifespan=lifespan)
    app.state.settings = boot_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )
    # Trust X-Forwarded-Proto/For from reverse proxy so request.url uses https://
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

    from ac2.api.routers import mcp, mcp_oauth, oauth

    # OAuth authorization server lives at the root (/authorize, /token, /.well-known/...)
    app.include_router(oauth.router, tags=["oauth"])
    app.include_router(mcp_oauth.router, prefix="/api/integrations/mcp-oauth", tags=["mcp-oauth"])
    app.include_router(mcp.router, prefix="/mcp", tags=["mcp"])

    @app.get("/health")
    async def root_health():
        return {
            "status": "ok",
            "auth": {
                "code_store": boot_settings.code_store,
                "token_mode": boot_settings.token_mode,
                "authorization_server": (
                    f"{boot_settings.api_base_url}/.well-known/oauth-authorization-server"
                ),
            },
        }

    return app


app = create_app()
