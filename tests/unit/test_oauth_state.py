"""Unit tests for signed OAuth state cookies (outbound flows)."""

from __future__ import annotations

import pytest

from ac2.services.code_store import InMemoryCodeStore
from ac2.services.oauth_state import (
    OAuthStateService,
    StateCookieMissing,
    StateExpired,
    StateInvalid,
    StateMismatch,
    StateReplayed,
)

SECRET = "state-signing-secret-0123456789abcdef"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _flip(token: str, index: int) -> str:
    chars = list(token)
    chars[index] = "A" if chars[index] != "A" else "B"
    return "".join(chars)


@pytest.fixture
def svc():
    return OAuthStateService(SECRET, 600, clock=FakeClock())


class TestCreateState:
    def test_state_is_hex_nonce(self, svc):
        state, cookie = svc.create_state("org-1", "user-1", "linear", "verifier")
        assert len(state) == 32
        int(state, 16)
        assert cookie.count(".") == 2

    def test_explicit_state_is_bound(self, svc):
        state, _ = svc.create_state("org-1", "user-1", "linear", "v", state="nonce-from-url")
        assert state == "nonce-from-url"

    def test_requires_secret(self):
        with pytest.raises(ValueError):
            OAuthStateService("")


class TestValidateState:
    @pytest.mark.anyio
    async def test_round_trip(self, svc):
        state, cookie = svc.create_state("org-1", "user-1", "linear", "verifier-123")
        data = await svc.validate_state(cookie, state)
        assert data.organization_id == "org-1"
        assert data.user_id == "user-1"
        assert data.provider_key == "linear"
        assert data.code_verifier == "verifier-123"

    @pytest.mark.anyio
    async def test_missing_cookie(self, svc):
        with pytest.raises(StateCookieMissing):
            await svc.validate_state(None, "abc")

    @pytest.mark.anyio
    async def test_state_mismatch(self, svc):
        _, cookie = svc.create_state("org-1", "user-1", "linear", "v")
        with pytest.raises(StateMismatch):
            await svc.validate_state(cookie, "0" * 32)
        with pytest.raises(StateMismatch):
            await svc.validate_state(cookie, None)

    @pytest.mark.anyio
    async def test_expired(self, svc):
        state, cookie = svc.create_state("org-1", "user-1", "linear", "v")
        svc.clock.now += 601
        with pytest.raises(StateExpired):
            await svc.validate_state(cookie, state)

    @pytest.mark.anyio
    @pytest.mark.parametrize("part", [0, 1, 2])
    async def test_tampered_cookie(self, svc, part):
        state, cookie = svc.create_state("org-1", "user-1", "linear", "v")
        segments = cookie.split(".")
        segments[part] = _flip(segments[part], len(segments[part]) // 2)
        with pytest.raises(StateInvalid):
            await svc.validate_state(".".join(segments), state)

    @pytest.mark.anyio
    async def test_other_secret_rejected(self, svc):
        state, cookie = OAuthStateService("x" * 40).create_state("o", "u", "p", "v")
        with pytest.raises(StateInvalid):
            await svc.validate_state(cookie, state)

    @pytest.mark.anyio
    async def test_garbage_cookie(self, svc):
        with pytest.raises(StateInvalid):
            await svc.validate_state("not-a-token", "abc")

    @pytest.mark.anyio
    async def test_replay_rejected_with_claims_store(self):
        svc = OAuthStateService(SECRET, 600, claims=InMemoryCodeStore())
        state, cookie = svc.create_state("org-1", "user-1", "linear", "v")
        await svc.validate_state(cookie, state)
        with pytest.raises(StateReplayed):
            await svc.validate_state(cookie, state)

    @pytest.mark.anyio
    async def test_without_claims_store_cookie_deletion_is_the_guard(self, svc):
        state, cookie = svc.create_state("org-1", "user-1", "linear", "v")
        await svc.validate_state(cookie, state)
        assert (await svc.validate_state(cookie, state)).provider_key == "linear"


class TestSignedPayload:
    def test_round_trip(self, svc):
        cookie = svc.sign_payload({"tokenEndpoint": "https://p.example/token"})
        assert svc.read_payload(cookie) == {"tokenEndpoint": "https://p.example/token"}

    def test_tampered(self, svc):
        cookie = svc.sign_payload({"tokenEndpoint": "https://p.example/token"})
        head, body, sig = cookie.split(".")
        with pytest.raises(StateInvalid):
            svc.read_payload(".".join([head, _flip(body, 5), sig]))

    def test_expired(self, svc):
        cookie = svc.sign_payload({"a": 1})
        svc.clock.now += 601
        with pytest.raises(StateExpired):
            svc.read_payload(cookie)

    def test_missing(self, svc):
        with pytest.raises(StateCookieMissing):
            svc.read_payload("")
