"""Signed state cookies for outbound OAuth flows (this app as the OAuth client).

``create_state`` binds a random CSRF nonce, the PKCE verifier and the
tenant/provider context into one HS256-signed cookie value.  On callback,
``validate_state`` requires the cookie, a valid signature, an unexpired
payload and a ``state`` query parameter equal to the embedded nonce.

Single use is the caller's job: delete the cookie right after a successful
validation.  When constructed with a ``claims`` store (the code store), each
cookie's ``jti`` is also claimed on validation, so a replayed cookie is
rejected even if the deletion never reached the browser.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

import jwt

from ac2.services.code_store import CodeStore

logger = logging.getLogger(__name__)


class OAuthStateError(Exception):
    """Base class — message is safe to show to the user."""


class StateCookieMissing(OAuthStateError):
    def __init__(self):
        super().__init__("OAuth state cookie is missing. Please restart the connection flow.")


class StateInvalid(OAuthStateError):
    def __init__(self):
        super().__init__("OAuth state cookie is invalid or has been tampered with.")


class StateExpired(OAuthStateError):
    def __init__(self):
        super().__init__("OAuth state has expired. Please restart the connection flow.")


class StateMismatch(OAuthStateError):
    def __init__(self):
        super().__init__("OAuth state mismatch. The callback does not belong to this session.")


class StateReplayed(OAuthStateError):
    def __init__(self):
        super().__init__("OAuth state has already been used.")


@dataclass(frozen=True)
class OAuthStateData:
    organization_id: str
    user_id: str
    provider_key: str
    code_verifier: str


class OAuthStateService:
    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 600,
        *,
        cookie_name: str = "ac2_oauth_state",
        claims: CodeStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("OAuth state signing secret is required")
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self.cookie_name = cookie_name
        self.claims = claims
        self.clock = clock

    def create_state(
        self,
        organization_id: str,
        user_id: str,
        provider_key: str,
        code_verifier: str,
        *,
        state: str | None = None,
    ) -> tuple[str, str]:
        """Return ``(state, cookie_value)``. ``state`` goes in the authorize URL.

        Pass ``state`` to bind a nonce that is already in a built authorize URL.
        """
        state = state or secrets.token_hex(16)
        now = int(self.clock())
        payload = {
            "org": organization_id,
            "uid": user_id,
            "prv": provider_key,
            "cv": code_verifier,
            "st": state,
            "jti": str(uuid4()),
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        cookie_value = jwt.encode(payload, self._secret, algorithm="HS256")
        return state, cookie_value

    async def validate_state(self, cookie_value: str | None, state_param: str | None) -> OAuthStateData:
        """Validate a callback against its state cookie. Raises OAuthStateError subclasses."""
        if not cookie_value:
            raise StateCookieMissing()

        try:
            # exp is checked against self.clock below, not the wall clock
            payload = jwt.decode(
                cookie_value,
                self._secret,
                algorithms=["HS256"],
                options={"verify_exp": False, "require": ["exp", "st", "jti"]},
            )
        except jwt.PyJWTError as e:
            logger.warning("Rejected OAuth state cookie: %s", e)
            raise StateInvalid() from e

        if self.clock() > payload["exp"]:
            raise StateExpired()

        expected = str(payload["st"])
        if not state_param or not hmac.compare_digest(
            state_param.encode("utf-8"), expected.encode("utf-8")
        ):
            raise StateMismatch()

        if self.claims is not None:
            if not await self.claims.claim_once(f"oauth_state:{payload['jti']}", float(payload["exp"])):
                raise StateReplayed()

        try:
            return OAuthStateData(
                organization_id=payload["org"],
                user_id=payload["uid"],
                provider_key=payload["prv"],
                code_verifier=payload["cv"],
            )
        except KeyError as e:
            raise StateInvalid() from e

    # -----------------------------------------------------------------------
    # Sibling cookies (flow metadata that must survive the redirect untampered)
    # -----------------------------------------------------------------------

    def sign_payload(self, data: dict) -> str:
        now = int(self.clock())
        return jwt.encode(
            {"data": data, "iat": now, "exp": now + self.ttl_seconds},
            self._secret,
            algorithm="HS256",
        )

    def read_payload(self, cookie_value: str | None) -> dict:
        if not cookie_value:
            raise StateCookieMissing()
        try:
            payload = jwt.decode(
                cookie_value,
                self._secret,
                algorithms=["HS256"],
                options={"verify_exp": False, "require": ["exp"]},
            )
        except jwt.PyJWTError as e:
            raise StateInvalid() from e
        if self.clock() > payload["exp"]:
            raise StateExpired()
        data = payload.get("data")
        if not isinstance(data, dict):
            raise StateInvalid()
        return data
