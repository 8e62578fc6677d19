"""Shared helpers for unit tests — mock database, services, PKCE utilities."""

from __future__ import annotations

import base64
import hashlib
import secrets
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

from fastapi import FastAPI

from ac2.services.bootstrap import Services, build_services
from ac2.services.encryption import CredentialCipher
from ac2.settings import Settings

ACME_ORG_ID = "org-acme"
ACME_SECRET = "acme-mcp-key-0001"


def make_pkce():
    """Generate PKCE code_verifier + code_challenge (S256)."""
    verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def mock_db(
    orgs: dict[str, str] | None = None,
    api_keys: dict[str, str] | None = None,
    cipher: CredentialCipher | None = None,
):
    """MagicMock Database answering the organization / tool_credentials queries.

    ``orgs`` maps slug -> organization id; ``api_keys`` maps organization id ->
    active MCP apiKey (stored through ``cipher`` when given).
    """
    orgs = {"acme": ACME_ORG_ID} if orgs is None else orgs
    api_keys = {ACME_ORG_ID: ACME_SECRET} if api_keys is None else api_keys
    cipher = cipher or CredentialCipher()

    def _stored(org_id: str) -> dict:
        return cipher.encrypt({"apiKey": api_keys[org_id]})

    async def fetchrow(query: str, *args):
        if "FROM organizations" in query:
            ident = args[0]
            for slug, org_id in orgs.items():
                if ident in (slug, org_id):
                    return {"id": org_id, "slug": slug, "name": slug.title()}
            return None
        if "FROM tool_credentials" in query:
            org_id = args[0]
            if org_id in api_keys:
                return {"credentials": _stored(org_id)}
            return None
        return None

    async def fetch(query: str, *args):
        if "FROM tool_credentials" in query:
            return [
                {"organization_id": org_id, "credentials": _stored(org_id)}
                for org_id in api_keys
            ]
        return []

    conn = MagicMock()
    conn.execute = AsyncMock(return_value="OK")

    @asynccontextmanager
    async def transaction():
        yield conn

    db = MagicMock()
    db.connect = AsyncMock()
    db.close = AsyncMock()
    db.fetchrow = AsyncMock(side_effect=fetchrow)
    db.fetch = AsyncMock(side_effect=fetch)
    db.execute = AsyncMock(return_value="OK")
    db.transaction = transaction
    db.conn = conn
    return db


def make_services(settings: Settings, db=None) -> Services:
    return build_services(settings, db or mock_db())


def make_app(services: Services) -> FastAPI:
    """Full app with routers and middleware; lifespan is not run by TestClient(app)."""
    from ac2.api.main import create_app

    app = create_app(services.settings)
    app.state.services = services
    app.state.db = services.db
    return app


class MockAsyncServices:
    """Async context manager that yields the given services (patches bootstrap_services)."""

    def __init__(self, services: Services):
        self.services = services

    async def __aenter__(self):
        return self.services

    async def __aexit__(self, *args):
        pass
