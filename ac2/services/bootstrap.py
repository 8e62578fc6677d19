"""Shared service bootstrap — Settings, DB, code store, OAuth services.

Used by both the API lifespan (api/main.py) and CLI commands (api/cli/).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from ac2.services.code_store import CodeStore, create_code_store
from ac2.services.connections import ConnectionService
from ac2.services.credentials import ClientCredentialService
from ac2.services.database import Database
from ac2.services.encryption import CredentialCipher
from ac2.services.mcp_oauth import McpOAuthClient
from ac2.services.oauth_server import AuthorizationServer
from ac2.services.oauth_state import OAuthStateService
from ac2.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: Database
    cipher: CredentialCipher
    code_store: CodeStore
    credentials: ClientCredentialService
    oauth_server: AuthorizationServer
    oauth_state: OAuthStateService
    mcp_client: McpOAuthClient
    connections: ConnectionService


def build_services(settings: Settings, db: Database) -> Services:
    """Wire services over an existing (connected or mocked) database."""
    cipher = CredentialCipher(settings.credential_encryption_key or None)
    code_store = create_code_store(settings, db)
    credentials = ClientCredentialService(db, cipher, settings)
    mcp_client = McpOAuthClient(
        discovery_timeout=settings.mcp_discovery_timeout,
        token_timeout=settings.mcp_token_timeout,
        refresh_buffer=settings.mcp_refresh_buffer,
    )
    return Services(
        settings=settings,
        db=db,
        cipher=cipher,
        code_store=code_store,
        credentials=credentials,
        oauth_server=AuthorizationServer(code_store, credentials, settings),
        oauth_state=OAuthStateService(
            settings.auth_secret_key,
            settings.oauth_state_ttl,
            cookie_name=settings.oauth_state_cookie,
            claims=code_store,
        ),
        mcp_client=mcp_client,
        connections=ConnectionService(db, cipher, mcp_client, settings),
    )


@asynccontextmanager
async def bootstrap_services(settings: Settings | None = None):
    """Shared service init for API lifespan and CLI commands. Yields ``Services``."""
    settings = settings or Settings()
    db = Database(settings)
    await db.connect()
    if not settings.credential_encryption_key:
        logger.warning("AC2_CREDENTIAL_ENCRYPTION_KEY is not set; credentials are stored in plaintext")
    try:
        yield build_services(settings, db)
    finally:
        await db.close()
