"""Unit tests for tenant client credentials (MCP API keys)."""

from __future__ import annotations

import pytest

from ac2.services.credentials import ClientCredentialService
from ac2.services.encryption import CredentialCipher, generate_key, is_encrypted

from tests.unit.helpers import ACME_ORG_ID, ACME_SECRET, mock_db


class TestResolveOrganization:
    @pytest.mark.anyio
    async def test_by_slug_and_id(self, settings):
        svc = ClientCredentialService(mock_db(), settings=settings)
        assert (await svc.resolve_organization("acme")).id == ACME_ORG_ID
        assert (await svc.resolve_organization(ACME_ORG_ID)).slug == "acme"

    @pytest.mark.anyio
    async def test_unknown(self, settings):
        svc = ClientCredentialService(mock_db(), settings=settings)
        assert await svc.resolve_organization("nobody") is None
        assert await svc.resolve_organization("") is None


class TestValidateSecret:
    @pytest.mark.anyio
    async def test_tenant_key(self, settings):
        svc = ClientCredentialService(mock_db(), settings=settings)
        assert (await svc.validate_secret("acme", ACME_SECRET)).id == ACME_ORG_ID
        assert await svc.validate_secret("acme", "wrong") is None
        assert await svc.validate_secret("nobody", ACME_SECRET) is None

    @pytest.mark.anyio
    async def test_encrypted_rows(self, settings):
        cipher = CredentialCipher(generate_key())
        svc = ClientCredentialService(mock_db(cipher=cipher), cipher, settings)
        assert await svc.validate_secret("acme", ACME_SECRET) is not None
        assert await svc.find_organization_by_key(ACME_SECRET) == ACME_ORG_ID

    @pytest.mark.anyio
    async def test_unreadable_row_is_no_key(self, settings):
        cipher = CredentialCipher(generate_key())
        svc = ClientCredentialService(mock_db(cipher=cipher), CredentialCipher(generate_key()), settings)
        assert await svc.get_api_key(ACME_ORG_ID) is None
        assert await svc.find_organization_by_key(ACME_SECRET) is None

    @pytest.mark.anyio
    async def test_global_override(self, settings):
        settings.mcp_api_key = "global-key"
        svc = ClientCredentialService(mock_db(api_keys={}), settings=settings)
        assert (await svc.validate_secret("acme", "global-key")).id == ACME_ORG_ID

    @pytest.mark.anyio
    async def test_tenant_without_key(self, settings):
        svc = ClientCredentialService(mock_db(api_keys={}), settings=settings)
        assert await svc.validate_secret("acme", "") is None
        assert await svc.validate_secret("acme", "anything") is None


class TestSetApiKey:
    @pytest.mark.anyio
    async def test_rotation_in_one_transaction(self, settings):
        cipher = CredentialCipher(generate_key())
        db = mock_db()
        svc = ClientCredentialService(db, cipher, settings)

        await svc.set_api_key(ACME_ORG_ID, "new-key")

        deactivate, insert = db.conn.execute.call_args_list
        assert "SET is_active = false" in deactivate.args[0]
        assert "INSERT INTO tool_credentials" in insert.args[0]
        stored = insert.args[3]
        assert is_encrypted(stored)
        assert cipher.decrypt(stored) == {"apiKey": "new-key"}
