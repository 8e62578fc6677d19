"""MCP OAuth router — connect this platform to third-party MCP servers.

``/start`` discovers the provider's authorization server, stores the PKCE
verifier and flow metadata in signed cookies, and redirects the browser to
the provider.  ``/callback`` validates the state, exchanges the code,
persists the tokens and redirects to the setup UI with ``?success=true`` or
``?error=``.  Both cookies are deleted on every callback outcome.
"""

from __future__ import annotations

import logging
from urllib.parse import quote, urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from ac2.api.deps import CurrentUser, get_current_user, get_services
from ac2.services.mcp_oauth import McpOAuthError
from ac2.services.oauth_state import OAuthStateError, StateInvalid

logger = logging.getLogger(__name__)

router = APIRouter()

CALLBACK_PATH = "/api/integrations/mcp-oauth/callback"


def _setup_redirect(request: Request, provider_key: str | None, **params: str) -> RedirectResponse:
    base = request.app.state.settings.setup_base_url
    path = f"/mcp/providers/{quote(provider_key, safe='')}" if provider_key else "/mcp/providers"
    return RedirectResponse(f"{base}{path}?{urlencode(params)}", status_code=302)


def _set_flow_cookie(response: RedirectResponse, request: Request, name: str, value: str) -> None:
    settings = request.app.state.settings
    response.set_cookie(
        name,
        value,
        max_age=settings.oauth_state_ttl,
        httponly=True,
        secure=settings.api_base_url.startswith("https"),
        samesite="lax",
        path="/",
    )


def _clear_flow_cookies(response: RedirectResponse, request: Request) -> RedirectResponse:
    settings = request.app.state.settings
    response.delete_cookie(settings.oauth_state_cookie, path="/")
    response.delete_cookie(settings.mcp_oauth_meta_cookie, path="/")
    return response


@router.get("/start")
async def mcp_oauth_start(
    request: Request,
    providerKey: str,
    mcpUrl: str,
    clientId: str,
    scope: str | None = None,
    user: CurrentUser = Depends(get_current_user),
):
    """Begin an MCP OAuth connection for the calling user."""
    services = get_services(request)
    settings = services.settings

    metadata = await services.mcp_client.discover(mcpUrl)
    if metadata is None:
        return _setup_redirect(
            request, providerKey, error="MCP server does not advertise OAuth support"
        )

    start = services.mcp_client.build_authorization_url(
        metadata,
        clientId,
        f"{settings.api_base_url.rstrip('/')}{CALLBACK_PATH}",
        scopes=scope.split() if scope else None,
    )
    _, state_cookie = services.oauth_state.create_state(
        user.organization_id, user.user_id, providerKey, start.code_verifier, state=start.state
    )
    meta_cookie = services.oauth_state.sign_payload({
        "tokenEndpoint": metadata.token_endpoint,
        "hostedMcpUrl": mcpUrl,
        "providerKey": providerKey,
        "oauthClientId": clientId,
    })

    logger.info(
        "Starting MCP OAuth for %s (organization %s)", providerKey, user.organization_id
    )
    response = RedirectResponse(start.authorization_url, status_code=302)
    _set_flow_cookie(response, request, settings.oauth_state_cookie, state_cookie)
    _set_flow_cookie(response, request, settings.mcp_oauth_meta_cookie, meta_cookie)
    return response


@router.get("/callback")
async def mcp_oauth_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
):
    """Provider redirect target. Always ends in a redirect to the setup UI."""
    services = get_services(request)
    settings = services.settings
    provider_key: str | None = None

    try:
        meta = services.oauth_state.read_payload(
            request.cookies.get(settings.mcp_oauth_meta_cookie)
        )
        provider_key = meta.get("providerKey")
    except OAuthStateError:
        meta = None

    if error:
        logger.warning("MCP OAuth provider returned error for %s: %s", provider_key, error)
        return _clear_flow_cookies(
            _setup_redirect(request, provider_key, error=error_description or error), request
        )

    try:
        flow = await services.oauth_state.validate_state(
            request.cookies.get(settings.oauth_state_cookie), state
        )
        if meta is None or meta.get("providerKey") != flow.provider_key:
            raise StateInvalid()
        provider_key = flow.provider_key
        if not code:
            return _clear_flow_cookies(
                _setup_redirect(request, provider_key, error="Missing authorization code"),
                request,
            )

        tokens = await services.mcp_client.exchange_code(
            meta["tokenEndpoint"],
            code=code,
            code_verifier=flow.code_verifier,
            client_id=meta["oauthClientId"],
            redirect_uri=f"{settings.api_base_url.rstrip('/')}{CALLBACK_PATH}",
            client_secret=settings.mcp_oauth_client_secrets.get(provider_key),
        )
        await services.connections.save_mcp_tokens(
            flow.organization_id,
            flow.user_id,
            provider_key,
            tokens,
            {
                "tokenEndpoint": meta["tokenEndpoint"],
                "hostedMcpUrl": meta.get("hostedMcpUrl"),
                "oauthClientId": meta["oauthClientId"],
            },
        )
    except OAuthStateError as e:
        logger.warning("MCP OAuth state rejected: %s", e)
        return _clear_flow_cookies(_setup_redirect(request, provider_key, error=str(e)), request)
    except McpOAuthError as e:
        logger.warning("MCP OAuth token exchange failed for %s: %s", provider_key, e)
        return _clear_flow_cookies(_setup_redirect(request, provider_key, error=str(e)), request)
    except Exception:
        logger.exception("MCP OAuth callback failed for %s", provider_key)
        return _clear_flow_cookies(
            _setup_redirect(request, provider_key, error="Failed to complete MCP OAuth connection"),
            request,
        )

    logger.info("MCP OAuth connected %s for organization %s", provider_key, flow.organization_id)
    return _clear_flow_cookies(
        _setup_redirect(request, provider_key, success="true", provider=provider_key), request
    )
