"""Client credentials — per-tenant MCP API keys used as OAuth client secrets.

An OAuth ``client_id`` is an organization slug.  The matching secret is the
``apiKey`` field of the organization's single active ``tool_credentials`` row
for the MCP credential tool id (``AC2_MCP_CREDENTIAL_TOOL_ID``).  A global
override secret (``AC2_MCP_API_KEY``) is accepted for every tenant.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from ac2.services.database import Database
from ac2.services.encryption import CredentialCipher, CredentialDecryptError
from ac2.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Organization:
    id: str
    slug: str
    name: str = ""


def _secrets_match(candidate: str, expected: str | None) -> bool:
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


class ClientCredentialService:
    def __init__(
        self,
        db: Database,
        cipher: CredentialCipher | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.cipher = cipher or CredentialCipher()
        self.settings = settings or get_settings()

    async def resolve_organization(self, client_id: str) -> Organization | None:
        """Look up the tenant behind an OAuth client_id (slug, or id for legacy clients)."""
        if not client_id:
            return None
        row = await self.db.fetchrow(
            "SELECT id, slug, name FROM organizations WHERE slug = $1 OR id = $1 LIMIT 1",
            client_id,
        )
        if not row:
            return None
        return Organization(id=str(row["id"]), slug=row["slug"], name=row["name"] or "")

    async def get_api_key(self, organization_id: str) -> str | None:
        """Return the apiKey from the active MCP credential row, or None."""
        row = await self.db.fetchrow(
            "SELECT credentials FROM tool_credentials"
            " WHERE organization_id = $1 AND tool_id = $2 AND is_active = true",
            organization_id,
            self.settings.mcp_credential_tool_id,
        )
        if not row:
            return None
        try:
            credentials = self.cipher.decrypt(row["credentials"])
        except CredentialDecryptError:
            logger.warning("Unreadable MCP credential for organization %s", organization_id)
            return None
        api_key = credentials.get("apiKey")
        return api_key if isinstance(api_key, str) and api_key else None

    async def validate_secret(self, client_id: str, client_secret: str) -> Organization | None:
        """Validate a client secret. Returns the organization on success, None otherwise.

        Accepts either the tenant's own key or the global override secret.
        """
        org = await self.resolve_organization(client_id)
        if org is None:
            return None
        if _secrets_match(client_secret, self.settings.mcp_api_key):
            return org
        if _secrets_match(client_secret, await self.get_api_key(org.id)):
            return org
        return None

    async def find_organization_by_key(self, api_key: str) -> str | None:
        """Reverse lookup used by the resource server: which tenant owns this key?

        Encrypted rows cannot be matched in SQL, so active rows for the tool id
        are decrypted and compared in constant time.
        """
        if not api_key:
            return None
        rows = await self.db.fetch(
            "SELECT organization_id, credentials FROM tool_credentials"
            " WHERE tool_id = $1 AND is_active = true",
            self.settings.mcp_credential_tool_id,
        )
        for row in rows:
            try:
                credentials = self.cipher.decrypt(row["credentials"])
            except CredentialDecryptError:
                continue
            if _secrets_match(api_key, credentials.get("apiKey")):
                return str(row["organization_id"])
        return None

    async def set_api_key(self, organization_id: str, api_key: str) -> None:
        """Rotate the tenant's MCP key: deactivate the old row, insert a new active one."""
        credentials = self.cipher.encrypt({"apiKey": api_key})
        async with self.db.transaction() as conn:
            await conn.execute(
                "UPDATE tool_credentials SET is_active = false"
                " WHERE organization_id = $1 AND tool_id = $2 AND is_active = true",
                organization_id,
                self.settings.mcp_credential_tool_id,
            )
            await conn.execute(
                "INSERT INTO tool_credentials (organization_id, tool_id, credentials, is_active)"
                " VALUES ($1, $2, $3, true)",
                organization_id,
                self.settings.mcp_credential_tool_id,
                credentials,
            )
        logger.info("Rotated MCP credential for organization %s", organization_id)
