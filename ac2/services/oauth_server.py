"""OAuth 2.1 authorization server — authorization code + PKCE, refresh by re-authentication.

Front channel (``authorize``) validates the client and PKCE parameters and
issues a single-use code.  Back channel (``exchange_code`` / ``refresh``)
consumes the code, checks expiry, client and redirect binding, PKCE and the
client secret, then mints a bearer token.

Token shape depends on ``AC2_TOKEN_MODE``:

- ``credential`` (default): the access token *is* the validated client secret
  (or the client id when no secret was sent), so downstream MCP routes can
  validate it as the tenant's MCP credential directly.
- ``jwt``: a distinct HS256 JWT bound to the organization, independently
  expiring.  ``verify_access_token`` accepts both shapes.

There is no refresh-token record: ``grant_type=refresh_token`` re-checks the
client credentials and re-issues.
"""

from __future__ import annotations

import hmac
import logging
import time
from dataclasses import dataclass
from uuid import uuid4

import jwt

from ac2.services.code_store import CodeStore
from ac2.services.credentials import ClientCredentialService
from ac2.services.pkce import SUPPORTED_METHODS, verify_pkce
from ac2.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    """RFC 6749 §5.2 error. ``status_code`` is 401 for invalid_client, 400 otherwise."""

    def __init__(self, error: str, description: str, status_code: int = 400):
        super().__init__(f"{error}: {description}")
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


def invalid_request(description: str) -> OAuthError:
    return OAuthError("invalid_request", description)


def invalid_grant(description: str) -> OAuthError:
    return OAuthError("invalid_grant", description)


def invalid_client(description: str = "Invalid client credentials") -> OAuthError:
    return OAuthError("invalid_client", description, 401)


@dataclass(frozen=True)
class McpGrant:
    """Result of validating a bearer token presented to an MCP route."""

    organization_id: str | None
    via: str  # "credential" | "global" | "jwt"


class AuthorizationServer:
    def __init__(
        self,
        code_store: CodeStore,
        credentials: ClientCredentialService,
        settings: Settings | None = None,
    ):
        self.code_store = code_store
        self.credentials = credentials
        self.settings = settings or get_settings()

    # -----------------------------------------------------------------------
    # Front channel
    # -----------------------------------------------------------------------

    def _check_challenge_method(self, method: str) -> None:
        if method not in SUPPORTED_METHODS:
            raise invalid_request(f"Unsupported code_challenge_method: {method}")
        if method == "plain" and not self.settings.allow_plain_pkce:
            raise invalid_request("code_challenge_method=plain is disabled; use S256")

    async def authorize(
        self,
        response_type: str | None,
        client_id: str | None,
        redirect_uri: str | None,
        code_challenge: str | None,
        code_challenge_method: str | None = None,
        scope: str | None = None,
    ) -> str:
        """Validate an authorization request and issue a one-time code.

        The client is resolved before any other parameter is checked, so an
        ``unauthorized_client`` error always means the redirect URI is untrusted.
        """
        missing = [k for k, v in [("client_id", client_id), ("redirect_uri", redirect_uri)] if not v]
        if missing:
            raise invalid_request(f"Missing required parameters: {', '.join(missing)}")

        org = await self.credentials.resolve_organization(client_id)
        if org is None:
            raise OAuthError("unauthorized_client", f"Unknown client_id: {client_id}")

        if response_type != "code":
            raise invalid_request(f"Unsupported response_type: {response_type or '(missing)'}")
        if not code_challenge:
            raise invalid_request("Missing required parameters: code_challenge")

        method = code_challenge_method or "S256"
        self._check_challenge_method(method)

        code = await self.code_store.issue(
            client_id,
            redirect_uri,
            code_challenge,
            method,
            self.settings.auth_code_ttl,
            scope=scope or self.settings.oauth_scope,
            organization_id=org.id,
        )
        logger.info("Authorization code issued for client %s", client_id)
        return code

    # -----------------------------------------------------------------------
    # Back channel
    # -----------------------------------------------------------------------

    async def exchange_code(
        self,
        code: str | None,
        client_id: str | None,
        *,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
        client_secret: str | None = None,
    ) -> dict:
        """grant_type=authorization_code.

        The code is consumed before any other check, so every outcome after
        lookup (including failures) leaves it permanently unusable.
        """
        missing = [k for k, v in [("code", code), ("client_id", client_id)] if not v]
        if missing:
            raise invalid_request(f"Missing required parameters: {', '.join(missing)}")

        record = await self.code_store.consume(code)
        if record is None:
            raise invalid_grant("Authorization code is invalid or already used")

        if record.is_expired(self.code_store.clock()):
            raise invalid_grant("Authorization code has expired")

        if record.client_id != client_id:
            raise invalid_grant("client_id does not match the authorization code")

        if redirect_uri and redirect_uri != record.redirect_uri:
            raise invalid_grant("redirect_uri does not match the authorization request")

        if code_verifier and not verify_pkce(
            code_verifier, record.code_challenge, record.code_challenge_method
        ):
            raise invalid_grant("PKCE verification failed")

        organization_id = record.organization_id
        if client_secret:
            org = await self.credentials.validate_secret(client_id, client_secret)
            if org is None:
                raise invalid_client()
            organization_id = org.id

        logger.info("Authorization code %s exchanged for client %s", code[:12], client_id)
        return self._issue_token(client_id, client_secret, organization_id)

    async def refresh(self, client_id: str | None, client_secret: str | None) -> dict:
        """grant_type=refresh_token — re-authenticate the client and re-issue."""
        if not client_id or not client_secret:
            raise invalid_request("client_id and client_secret are required for refresh_token")

        org = await self.credentials.validate_secret(client_id, client_secret)
        if org is None:
            raise invalid_client()

        logger.info("Token re-issued for client %s", client_id)
        return self._issue_token(client_id, client_secret, org.id)

    # -----------------------------------------------------------------------
    # Token minting / verification
    # -----------------------------------------------------------------------

    def _issue_token(
        self,
        client_id: str,
        client_secret: str | None,
        organization_id: str | None,
    ) -> dict:
        s = self.settings
        scope = s.oauth_scope
        if s.token_mode == "jwt":
            now = int(time.time())
            payload = {
                "sub": organization_id or client_id,
                "client_id": client_id,
                "scope": scope,
                "jti": str(uuid4()),
                "iat": now,
                "exp": now + s.oauth_token_expiry,
                "type": "mcp",
            }
            access_token = jwt.encode(payload, s.auth_secret_key, algorithm="HS256")
        else:
            access_token = client_secret or client_id
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": s.oauth_token_expiry,
            "scope": scope,
        }

    async def verify_access_token(self, token: str) -> McpGrant | None:
        """Resource-server check: is this bearer token an acceptable MCP credential?"""
        if not token:
            return None

        if token.count(".") == 2:
            try:
                payload = jwt.decode(token, self.settings.auth_secret_key, algorithms=["HS256"])
            except jwt.PyJWTError:
                payload = None
            if payload and payload.get("type") == "mcp":
                return McpGrant(organization_id=payload.get("sub"), via="jwt")

        if self.settings.mcp_api_key and hmac.compare_digest(
            token.encode("utf-8"), self.settings.mcp_api_key.encode("utf-8")
        ):
            return McpGrant(organization_id=None, via="global")

        org_id = await self.credentials.find_organization_by_key(token)
        if org_id:
            return McpGrant(organization_id=org_id, via="credential")
        return None

    def metadata(self) -> dict:
        """RFC 8414 authorization server metadata."""
        base = self.settings.api_base_url.rstrip("/")
        methods = ["S256", "plain"] if self.settings.allow_plain_pkce else ["S256"]
        return {
            "issuer": base,
            "authorization_endpoint": f"{base}/authorize",
            "token_endpoint": f"{base}/token",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": [
                "client_secret_post",
                "client_secret_basic",
                "none",
            ],
            "scopes_supported": [self.settings.oauth_scope],
            "code_challenge_methods_supported": methods,
        }
