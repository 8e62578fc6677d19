"""MCP resource routes — protected by bearer tokens minted at /token."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ac2.api.deps import require_mcp_token
from ac2.services.oauth_server import McpGrant

router = APIRouter()


@router.get("/whoami")
async def whoami(grant: McpGrant = Depends(require_mcp_token)):
    return {"organization_id": grant.organization_id, "via": grant.via}
