"""PKCE (RFC 7636) helpers shared by the authorization server and the MCP client."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

# S256 first: the advertised default. plain is accepted for older clients.
SUPPORTED_METHODS = ("S256", "plain")


def generate_code_verifier() -> str:
    """High-entropy verifier: base64url of 32 random bytes (43 chars)."""
    return secrets.token_urlsafe(32)


def compute_code_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(code_verifier: str, code_challenge: str, method: str) -> bool:
    if not code_verifier or not code_challenge:
        return False
    if method == "S256":
        try:
            computed = compute_code_challenge(code_verifier)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(computed.encode("ascii"), code_challenge.encode("utf-8"))
    if method == "plain":
        return code_verifier == code_challenge
    return False
