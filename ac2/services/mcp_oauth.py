"""MCP OAuth 2.1 client flow — this app connecting to third-party MCP servers.

Flow:
1. Discovery: ``GET {origin}/.well-known/oauth-authorization-server``
2. Authorization URL with PKCE (S256) + CSRF state
3. Callback: exchange the code for tokens at the discovered token endpoint
4. Refresh when inside the expiry buffer

Network calls are time-bounded (discovery 10s, token calls 15s by default)
and never retried here.  Discovery is the only call that swallows failures
(returns None); token exchange and refresh raise ``McpOAuthError`` carrying
the upstream status and body.  A failed exchange may already have consumed
the code at the provider, so callers must not blindly retry it.
"""

from __future__ import annotations

import logging
import math
import secrets
import time
from urllib.parse import urlencode, urlparse

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from ac2.services.pkce import compute_code_challenge, generate_code_verifier

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/oauth-authorization-server"

# Provider error codes that mean the refresh token is dead and the user must reconnect.
PERMANENT_REFRESH_ERRORS = (
    "invalid_grant",
    "interaction_required",
    "consent_required",
    "login_required",
)


class McpOAuthError(Exception):
    """Upstream OAuth failure. ``status_code`` is None for network errors and timeouts."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class McpAuthServerMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] | None = None
    grant_types_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None


class McpOAuthTokens(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None  # epoch milliseconds
    token_type: str = "Bearer"
    scope: str | None = None


class McpOAuthStart(BaseModel):
    authorization_url: str
    state: str
    code_verifier: str
    metadata: McpAuthServerMetadata


def _now_ms() -> int:
    return int(time.time() * 1000)


def discovery_url(mcp_url: str) -> str:
    """``https://mcp.example.com/v1/sse`` → ``https://mcp.example.com/.well-known/...``."""
    try:
        httpx.URL(mcp_url)
    except httpx.InvalidURL as e:
        raise ValueError(f"Invalid URL: {mcp_url!r}") from e
    parsed = urlparse(mcp_url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Not an absolute URL: {mcp_url}")
    return f"{parsed.scheme}://{parsed.netloc}{DISCOVERY_PATH}"


def _token_url(endpoint: McpAuthServerMetadata | str) -> str:
    if isinstance(endpoint, McpAuthServerMetadata):
        return endpoint.token_endpoint
    return endpoint


def is_refresh_permanently_failed(error: BaseException | None) -> bool:
    if error is None:
        return False
    message = str(error).lower()
    return any(code in message for code in PERMANENT_REFRESH_ERRORS)


class McpOAuthClient:
    def __init__(
        self,
        *,
        discovery_timeout: float = 10.0,
        token_timeout: float = 15.0,
        refresh_buffer: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.discovery_timeout = discovery_timeout
        self.token_timeout = token_timeout
        self.refresh_buffer_ms = refresh_buffer * 1000
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    # -----------------------------------------------------------------------
    # Discovery
    # -----------------------------------------------------------------------

    async def discover(self, mcp_url: str) -> McpAuthServerMetadata | None:
        """Fetch RFC 8414 metadata. None when the provider is not OAuth-capable or unreachable."""
        try:
            url = discovery_url(mcp_url)
            async with self._client(self.discovery_timeout) as client:
                resp = await client.get(url, headers={"Accept": "application/json"})
            if resp.status_code != 200:
                logger.warning(
                    "MCP OAuth discovery failed for %s: %s %s",
                    mcp_url, resp.status_code, resp.reason_phrase,
                )
                return None
            return McpAuthServerMetadata.model_validate(resp.json())
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, ValidationError) as e:
            logger.warning("MCP OAuth discovery error for %s: %s", mcp_url, e)
            return None

    # -----------------------------------------------------------------------
    # Authorization URL
    # -----------------------------------------------------------------------

    def build_authorization_url(
        self,
        metadata: McpAuthServerMetadata,
        client_id: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> McpOAuthStart:
        """Build the authorize URL with a fresh PKCE verifier and state.

        The caller persists ``state`` and ``code_verifier`` (via the state
        cookie) until the callback.
        """
        state = secrets.token_hex(16)
        code_verifier = generate_code_verifier()
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "code_challenge": compute_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        if scopes:
            params["scope"] = " ".join(scopes)
        if extra_params:
            params.update(extra_params)

        endpoint = metadata.authorization_endpoint
        separator = "&" if "?" in endpoint else "?"
        return McpOAuthStart(
            authorization_url=f"{endpoint}{separator}{urlencode(params)}",
            state=state,
            code_verifier=code_verifier,
            metadata=metadata,
        )

    # -----------------------------------------------------------------------
    # Token endpoint calls
    # -----------------------------------------------------------------------

    async def _post_token(self, token_endpoint: str, form: dict[str, str], action: str) -> dict:
        try:
            async with self._client(self.token_timeout) as client:
                resp = await client.post(
                    token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise McpOAuthError(f"MCP OAuth {action} timed out after {self.token_timeout}s") from e
        except httpx.HTTPError as e:
            raise McpOAuthError(f"MCP OAuth {action} network error: {e}") from e

        if not resp.is_success:
            body = resp.text or "unknown error"
            logger.warning("MCP OAuth %s failed: %s %s", action, resp.status_code, body[:500])
            raise McpOAuthError(
                f"MCP OAuth {action} failed: {resp.status_code} {resp.reason_phrase} - {body}",
                status_code=resp.status_code,
                body=body,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise McpOAuthError(
                f"MCP OAuth {action} returned non-JSON body", resp.status_code, resp.text
            ) from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise McpOAuthError(
                f"MCP OAuth {action} response has no access_token", resp.status_code, resp.text
            )
        expires_in = data.get("expires_in")
        if expires_in is not None:
            try:
                if not math.isfinite(float(expires_in)):
                    raise ValueError(expires_in)
            except (TypeError, ValueError) as e:
                raise McpOAuthError(
                    f"MCP OAuth {action} returned invalid expires_in: {expires_in!r}",
                    resp.status_code,
                    resp.text,
                ) from e
        return data

    @staticmethod
    def _normalize(data: dict, fallback_refresh: str | None = None) -> McpOAuthTokens:
        expires_in = data.get("expires_in")
        expires_at = None
        if expires_in:
            expires_at = _now_ms() + int(float(expires_in) * 1000)
        return McpOAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_at=expires_at,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
        )

    async def exchange_code(
        self,
        token_endpoint: McpAuthServerMetadata | str,
        *,
        code: str,
        code_verifier: str,
        client_id: str,
        redirect_uri: str,
        client_secret: str | None = None,
    ) -> McpOAuthTokens:
        token_endpoint = _token_url(token_endpoint)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": code_verifier,
        }
        if client_secret:
            form["client_secret"] = client_secret
        data = await self._post_token(token_endpoint, form, "token exchange")
        logger.info("MCP OAuth tokens obtained from %s", token_endpoint)
        return self._normalize(data)

    async def refresh(
        self,
        token_endpoint: McpAuthServerMetadata | str,
        *,
        refresh_token: str,
        client_id: str,
        client_secret: str | None = None,
    ) -> McpOAuthTokens:
        """Refresh tokens. Keeps the old refresh token when the provider does not rotate it."""
        token_endpoint = _token_url(token_endpoint)
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        }
        if client_secret:
            form["client_secret"] = client_secret
        data = await self._post_token(token_endpoint, form, "token refresh")
        logger.info("MCP OAuth tokens refreshed at %s", token_endpoint)
        return self._normalize(data, fallback_refresh=refresh_token)

    # -----------------------------------------------------------------------
    # Expiry policy
    # -----------------------------------------------------------------------

    def token_needs_refresh(self, tokens: McpOAuthTokens, now_ms: int | None = None) -> bool:
        """Proactive check — true inside the refresh buffer before expires_at."""
        if not tokens.expires_at:
            return False
        now_ms = _now_ms() if now_ms is None else now_ms
        return now_ms > tokens.expires_at - self.refresh_buffer_ms

    def token_is_expired(self, tokens: McpOAuthTokens, now_ms: int | None = None) -> bool:
        """Hard deadline, no buffer."""
        if not tokens.expires_at:
            return False
        now_ms = _now_ms() if now_ms is None else now_ms
        return now_ms > tokens.expires_at
