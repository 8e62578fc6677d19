"""OAuth router — OAuth 2.1 Authorization Server for MCP clients.

- ``GET /authorize`` validates the client and PKCE parameters and redirects
  back to the client's ``redirect_uri`` with ``?code=...&state=...``.
- ``POST /token`` exchanges the code (``authorization_code`` grant) or
  re-authenticates the client (``refresh_token`` grant).
- ``GET /.well-known/oauth-authorization-server`` (RFC 8414) for discovery.

Errors raised before the client and redirect URI are known are returned as
JSON; redirecting to an unvalidated URI would make this an open redirector.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from urllib.parse import parse_qs, unquote_plus, urlencode, urlparse

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from ac2.api.deps import get_services
from ac2.services.oauth_server import OAuthError

logger = logging.getLogger(__name__)

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _oauth_error(error: str, description: str, status: int = 400) -> JSONResponse:
    """Return an RFC 6749 §5.2 compliant OAuth error response."""
    return JSONResponse(
        {"error": error, "error_description": description},
        status_code=status,
        headers=_NO_STORE,
    )


def _append_query(url: str, params: dict[str, str]) -> str:
    """Add params to a URL, keeping any query string it already carries."""
    separator = "&" if urlparse(url).query else ("" if url.endswith("?") else "?")
    return f"{url}{separator}{urlencode(params)}"


def _is_absolute_http(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ---------------------------------------------------------------------------
# Front channel
# ---------------------------------------------------------------------------


@router.get("/authorize")
async def oauth_authorize(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    scope: str | None = None,
):
    """Issue an authorization code and redirect back to the client."""
    if not client_id or not redirect_uri:
        return _oauth_error("invalid_request", "client_id and redirect_uri are required")
    if not _is_absolute_http(redirect_uri):
        return _oauth_error("invalid_request", "redirect_uri must be an absolute http(s) URL")
    if urlparse(redirect_uri).fragment:
        return _oauth_error("invalid_request", "redirect_uri must not contain a fragment")

    server = get_services(request).oauth_server
    try:
        code = await server.authorize(
            response_type,
            client_id,
            redirect_uri,
            code_challenge,
            code_challenge_method,
            scope,
        )
    except OAuthError as e:
        logger.warning("Authorize rejected for client %s: %s", client_id, e)
        if e.error == "unauthorized_client":
            # Unknown client: its redirect_uri is not trusted
            return _oauth_error(e.error, e.description, e.status_code)
        params = e.to_dict()
        if state:
            params["state"] = state
        return RedirectResponse(_append_query(redirect_uri, params), status_code=302)

    params = {"code": code}
    if state:
        params["state"] = state
    return RedirectResponse(_append_query(redirect_uri, params), status_code=302)


@router.get("/.well-known/oauth-authorization-server")
async def well_known_oauth(request: Request):
    return get_services(request).oauth_server.metadata()


# ---------------------------------------------------------------------------
# Back channel
# ---------------------------------------------------------------------------


async def _read_token_params(request: Request) -> dict[str, str]:
    """Token requests are form-encoded per OAuth 2.1; JSON bodies are accepted too."""
    content_type = request.headers.get("content-type", "")
    raw_body = (await request.body()).decode("utf-8", errors="replace")
    if "application/json" in content_type:
        try:
            data = json.loads(raw_body) if raw_body else {}
        except ValueError:
            raise OAuthError("invalid_request", "Malformed JSON body")
        if not isinstance(data, dict):
            raise OAuthError("invalid_request", "JSON body must be an object")
        return {k: str(v) for k, v in data.items() if v is not None}
    parsed = parse_qs(raw_body, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


def _basic_credentials(request: Request) -> tuple[str, str] | None:
    """Decode ``Authorization: Basic`` (client_secret_basic). None when absent."""
    auth_header = request.headers.get("authorization", "")
    if auth_header[:6].lower() != "basic ":
        return None
    try:
        decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode("utf-8")
        client_id, client_secret = decoded.split(":", 1)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise OAuthError("invalid_client", "Malformed Basic authorization header", 401)
    # RFC 6749 §2.3.1: both parts are form-urlencoded before base64
    return unquote_plus(client_id), unquote_plus(client_secret)


@router.post("/token")
async def token_endpoint(request: Request):
    """OAuth 2.1 token endpoint — authorization_code and refresh_token grants."""
    server = get_services(request).oauth_server
    try:
        params = await _read_token_params(request)
        client_id = params.get("client_id")
        client_secret = params.get("client_secret")
        basic = _basic_credentials(request)
        if basic is not None:
            client_id, client_secret = basic

        grant_type = params.get("grant_type")
        logger.debug("Token request: grant_type=%s keys=%s", grant_type, sorted(params))

        if not grant_type:
            raise OAuthError("invalid_request", "Missing required parameters: grant_type")
        if grant_type == "authorization_code":
            tokens = await server.exchange_code(
                params.get("code"),
                client_id,
                redirect_uri=params.get("redirect_uri"),
                code_verifier=params.get("code_verifier"),
                client_secret=client_secret,
            )
        elif grant_type == "refresh_token":
            tokens = await server.refresh(client_id, client_secret)
        else:
            raise OAuthError("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")
    except OAuthError as e:
        logger.warning("Token request rejected: %s", e)
        return _oauth_error(e.error, e.description, e.status_code)

    return JSONResponse(tokens, headers=_NO_STORE)
