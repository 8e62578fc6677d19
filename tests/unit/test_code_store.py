"""Unit tests for the authorization code store (in-memory and Postgres backends)."""

from __future__ import annotations

import threading
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import anyio
import pytest

from ac2.services.code_store import (
    InMemoryCodeStore,
    PostgresCodeStore,
    create_code_store,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _issue(store, ttl=600, **kw):
    return await store.issue(
        "acme", "https://client.example/cb", "challenge", "S256", ttl, **kw
    )


class TestInMemoryCodeStore:
    @pytest.mark.anyio
    async def test_issue_then_consume_once(self):
        store = InMemoryCodeStore()
        code = await _issue(store, scope="mcp", organization_id="org-1")
        assert len(code) >= 43

        record = await store.consume(code)
        assert record is not None
        assert record.client_id == "acme"
        assert record.organization_id == "org-1"
        assert record.scope == "mcp"
        assert await store.consume(code) is None

    @pytest.mark.anyio
    async def test_unknown_code(self):
        assert await InMemoryCodeStore().consume("nope") is None

    @pytest.mark.anyio
    async def test_codes_are_unique(self):
        store = InMemoryCodeStore()
        codes = {await _issue(store) for _ in range(100)}
        assert len(codes) == 100
        assert len(store) == 100

    @pytest.mark.anyio
    async def test_consume_does_not_enforce_expiry(self):
        clock = FakeClock()
        store = InMemoryCodeStore(clock=clock)
        code = await _issue(store, ttl=1)
        clock.now += 5
        record = await store.consume(code)
        assert record is not None
        assert record.is_expired(clock())

    @pytest.mark.anyio
    async def test_expiry_boundary(self):
        clock = FakeClock()
        store = InMemoryCodeStore(clock=clock)
        record = await store.consume(await _issue(store, ttl=10))
        assert not record.is_expired(clock.now + 10)
        assert record.is_expired(clock.now + 10.001)

    @pytest.mark.anyio
    async def test_purge_expired(self):
        clock = FakeClock()
        store = InMemoryCodeStore(clock=clock)
        old = await _issue(store, ttl=1)
        fresh = await _issue(store, ttl=600)
        await store.claim_once("oauth_state:a", clock.now + 1)
        clock.now += 2

        assert await store.purge_expired() == 2
        assert await store.consume(old) is None
        assert await store.consume(fresh) is not None

    @pytest.mark.anyio
    async def test_claim_once(self):
        store = InMemoryCodeStore()
        assert await store.claim_once("k", 1e12)
        assert not await store.claim_once("k", 1e12)
        assert await store.claim_once("other", 1e12)

    def test_concurrent_consume_single_winner(self):
        store = InMemoryCodeStore()
        code = anyio.run(_issue, store)
        winners = []
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            record = anyio.run(store.consume, code)
            if record is not None:
                winners.append(record)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(winners) == 1


class TestPostgresCodeStore:
    def _db(self):
        db = MagicMock()
        db.execute = AsyncMock(return_value="INSERT 0 1")
        db.fetchrow = AsyncMock(return_value=None)
        db.fetch = AsyncMock(return_value=[])
        return db

    @pytest.mark.anyio
    async def test_issue_inserts_dict_record(self):
        db = self._db()
        store = PostgresCodeStore(db, clock=FakeClock())
        code = await _issue(store, organization_id="org-1")

        sql, arg_code, record, expires_at = db.execute.call_args.args
        assert "INSERT INTO oauth_codes" in sql
        assert arg_code == code
        # jsonb codec does the encoding; a pre-serialized string would double-encode
        assert isinstance(record, dict)
        assert record["client_id"] == "acme"
        assert "code" not in record
        assert isinstance(expires_at, datetime)

    @pytest.mark.anyio
    async def test_consume_uses_delete_returning(self):
        db = self._db()
        db.fetchrow = AsyncMock(return_value={"record": {
            "client_id": "acme",
            "redirect_uri": "https://client.example/cb",
            "code_challenge": "challenge",
            "code_challenge_method": "S256",
            "expires_at": 123.0,
            "scope": "mcp",
            "organization_id": "org-1",
        }})
        store = PostgresCodeStore(db)
        record = await store.consume("abc")

        assert "DELETE FROM oauth_codes" in db.fetchrow.call_args.args[0]
        assert "RETURNING" in db.fetchrow.call_args.args[0]
        assert record.code == "abc"
        assert record.organization_id == "org-1"

    @pytest.mark.anyio
    async def test_consume_accepts_json_text(self):
        db = self._db()
        db.fetchrow = AsyncMock(return_value={"record": (
            '{"client_id": "acme", "redirect_uri": "r", "code_challenge": "c",'
            ' "code_challenge_method": "plain", "expires_at": 1.0}'
        )})
        record = await PostgresCodeStore(db).consume("abc")
        assert record.code_challenge_method == "plain"

    @pytest.mark.anyio
    async def test_consume_missing(self):
        assert await PostgresCodeStore(self._db()).consume("abc") is None

    @pytest.mark.anyio
    async def test_consume_malformed_record(self):
        db = self._db()
        db.fetchrow = AsyncMock(return_value={"record": {"client_id": "acme"}})
        assert await PostgresCodeStore(db).consume("abc") is None

    @pytest.mark.anyio
    async def test_claim_once_on_conflict(self):
        db = self._db()
        db.fetchrow = AsyncMock(side_effect=[{"jti": "k"}, None])
        store = PostgresCodeStore(db)
        assert await store.claim_once("k", 1e9)
        assert not await store.claim_once("k", 1e9)
        assert "ON CONFLICT (jti) DO NOTHING" in db.fetchrow.call_args.args[0]

    @pytest.mark.anyio
    async def test_purge_counts_both_tables(self):
        db = self._db()
        db.fetch = AsyncMock(side_effect=[[{"code": "a"}, {"code": "b"}], [{"jti": "x"}]])
        assert await PostgresCodeStore(db).purge_expired() == 3


class TestCreateCodeStore:
    def test_memory_default(self, settings):
        assert isinstance(create_code_store(settings), InMemoryCodeStore)

    def test_postgres_requires_db(self, settings):
        settings.code_store = "postgres"
        with pytest.raises(ValueError):
            create_code_store(settings)
        assert isinstance(create_code_store(settings, MagicMock()), PostgresCodeStore)

    def test_unknown_backend(self, settings):
        settings.code_store = "redis"
        with pytest.raises(ValueError):
            create_code_store(settings)
