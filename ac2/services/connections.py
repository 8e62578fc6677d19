"""Integration connections — persisted MCP OAuth token sets per (organization, provider, user).

Tokens are stored encrypted in ``integration_connections.credentials``; the
non-secret routing data (``tokenEndpoint``, ``hostedMcpUrl``,
``oauthClientId``) lives in plaintext ``metadata`` so refresh can run
without the original callback context.
"""

from __future__ import annotations

import logging

from ac2.services.database import Database
from ac2.services.encryption import CredentialCipher
from ac2.services.mcp_oauth import (
    McpOAuthClient,
    McpOAuthError,
    McpOAuthTokens,
    is_refresh_permanently_failed,
)
from ac2.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class ConnectionNotFound(LookupError):
    pass


class ConnectionService:
    def __init__(
        self,
        db: Database,
        cipher: CredentialCipher,
        mcp_client: McpOAuthClient,
        settings: Settings | None = None,
    ):
        self.db = db
        self.cipher = cipher
        self.mcp_client = mcp_client
        self.settings = settings or get_settings()

    async def save_mcp_tokens(
        self,
        organization_id: str,
        user_id: str,
        provider_key: str,
        tokens: McpOAuthTokens,
        metadata: dict,
    ) -> str:
        """Upsert the connection and reactivate it. Returns the connection id."""
        credentials = self.cipher.encrypt(tokens.model_dump(exclude_none=True))
        row = await self.db.fetchrow(
            "INSERT INTO integration_connections"
            " (organization_id, user_id, provider_key, credentials, metadata, is_active)"
            " VALUES ($1, $2, $3, $4, $5, true)"
            " ON CONFLICT (organization_id, provider_key, user_id) DO UPDATE SET"
            "  credentials = EXCLUDED.credentials,"
            "  metadata = EXCLUDED.metadata,"
            "  is_active = true,"
            "  error_message = NULL,"
            "  updated_at = now()"
            " RETURNING id",
            organization_id,
            user_id,
            provider_key,
            credentials,
            metadata,
        )
        connection_id = str(row["id"])
        logger.info(
            "Saved MCP OAuth connection %s (%s) for organization %s",
            connection_id, provider_key, organization_id,
        )
        return connection_id

    async def load_tokens(self, connection_id: str) -> tuple[McpOAuthTokens, dict]:
        row = await self.db.fetchrow(
            "SELECT provider_key, credentials, metadata FROM integration_connections"
            " WHERE id = $1 AND is_active = true",
            connection_id,
        )
        if not row:
            raise ConnectionNotFound(f"Connection {connection_id} not found or inactive")
        tokens = McpOAuthTokens.model_validate(self.cipher.decrypt(row["credentials"]))
        metadata = dict(row["metadata"] or {})
        metadata.setdefault("providerKey", row["provider_key"])
        return tokens, metadata

    async def _store_tokens(self, connection_id: str, tokens: McpOAuthTokens) -> None:
        await self.db.execute(
            "UPDATE integration_connections SET credentials = $2, error_message = NULL,"
            " last_used_at = now(), updated_at = now() WHERE id = $1",
            connection_id,
            self.cipher.encrypt(tokens.model_dump(exclude_none=True)),
        )

    async def mark_inactive(self, connection_id: str, error_message: str) -> None:
        await self.db.execute(
            "UPDATE integration_connections SET is_active = false, error_message = $2,"
            " updated_at = now() WHERE id = $1",
            connection_id,
            error_message,
        )
        logger.warning("Deactivated connection %s: %s", connection_id, error_message)

    async def get_valid_tokens(self, connection_id: str) -> McpOAuthTokens:
        """Return usable tokens, refreshing proactively inside the expiry buffer.

        A permanent refresh failure (revoked grant, consent required) marks the
        connection inactive so the UI can prompt a reconnect; transient
        failures propagate without touching the row.
        """
        tokens, metadata = await self.load_tokens(connection_id)
        if not self.mcp_client.token_needs_refresh(tokens):
            return tokens

        token_endpoint = metadata.get("tokenEndpoint")
        client_id = metadata.get("oauthClientId")
        if not tokens.refresh_token or not token_endpoint or not client_id:
            if self.mcp_client.token_is_expired(tokens):
                await self.mark_inactive(connection_id, "Token expired and cannot be refreshed")
                raise ConnectionNotFound(f"Connection {connection_id} token expired")
            return tokens

        client_secret = self.settings.mcp_oauth_client_secrets.get(metadata.get("providerKey", ""))
        try:
            refreshed = await self.mcp_client.refresh(
                token_endpoint,
                refresh_token=tokens.refresh_token,
                client_id=client_id,
                client_secret=client_secret,
            )
        except McpOAuthError as e:
            if is_refresh_permanently_failed(e):
                await self.mark_inactive(
                    connection_id, f"Token refresh failed permanently, reconnect required: {e}"
                )
            raise

        await self._store_tokens(connection_id, refreshed)
        logger.info("Refreshed MCP OAuth tokens for connection %s", connection_id)
        return refreshed
