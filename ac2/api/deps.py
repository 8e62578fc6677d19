"""FastAPI dependency injection — shared service accessors."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from ac2.services.bootstrap import Services
from ac2.services.oauth_server import McpGrant


def get_services(request: Request) -> Services:
    return request.app.state.services


@dataclass
class CurrentUser:
    organization_id: str
    user_id: str


def _extract_bearer(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip() or None
    return None


async def get_current_user(request: Request) -> CurrentUser:
    """Caller context injected by the gateway as x-organization-id / x-user-id headers."""
    organization_id = request.headers.get("x-organization-id")
    user_id = request.headers.get("x-user-id")
    if not organization_id or not user_id:
        raise HTTPException(401, "Not authenticated")
    return CurrentUser(organization_id=organization_id, user_id=user_id)


async def require_mcp_token(request: Request) -> McpGrant:
    """Accept a bearer token issued by /token (or the raw MCP credential itself)."""
    token = _extract_bearer(request)
    if not token:
        raise HTTPException(401, "Missing bearer token", headers={"WWW-Authenticate": "Bearer"})
    grant = await get_services(request).oauth_server.verify_access_token(token)
    if grant is None:
        raise HTTPException(
            401,
            "Invalid or expired token",
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    return grant
