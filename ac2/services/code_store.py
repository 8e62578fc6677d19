"""Authorization code store — single-use, time-bounded OAuth codes.

Two backends behind one interface:

- ``InMemoryCodeStore`` keeps codes in a dict guarded by a lock.  Correct for a
  single process only: a code issued on instance A cannot be redeemed on B,
  and a restart drops every outstanding code.
- ``PostgresCodeStore`` keeps codes in ``oauth_codes`` and consumes them with
  ``DELETE ... RETURNING`` so concurrent redemptions across processes see
  exactly one winner.

The store never enforces expiry on ``consume``.  The token endpoint checks
``expires_at`` after consuming, so an expired code is reported as expired
rather than unknown while still being gone for good.

The same backends also provide ``claim_once`` — an atomic first-writer-wins
marker used to make outbound OAuth state cookies single-use.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from ac2.services.database import Database
from ac2.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationCode:
    """Outstanding authorization code bound to a client, redirect URI and PKCE challenge."""

    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str  # "S256" | "plain"
    expires_at: float  # epoch seconds
    scope: str = ""
    organization_id: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) > self.expires_at


class CodeStore(ABC):
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    async def issue(
        self,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        ttl_seconds: float,
        *,
        scope: str = "",
        organization_id: str | None = None,
    ) -> str:
        """Mint a 256-bit opaque code, record it with ``expires_at = now + ttl``."""
        record = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            expires_at=self.clock() + ttl_seconds,
            scope=scope,
            organization_id=organization_id,
        )
        await self._put(record)
        logger.debug("Issued authorization code %s for client %s", record.code[:12], client_id)
        return record.code

    @abstractmethod
    async def _put(self, record: AuthorizationCode) -> None: ...

    @abstractmethod
    async def consume(self, code: str) -> AuthorizationCode | None:
        """Atomically remove and return the record; None if unknown or already consumed."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop expired codes and claims. Returns the number of rows removed."""

    @abstractmethod
    async def claim_once(self, key: str, expires_at: float) -> bool:
        """Record ``key`` as used. True for the first caller, False for every later one."""


class InMemoryCodeStore(CodeStore):
    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._codes: dict[str, AuthorizationCode] = {}
        self._claims: dict[str, float] = {}
        self._lock = threading.Lock()

    async def _put(self, record: AuthorizationCode) -> None:
        with self._lock:
            self._codes[record.code] = record

    async def consume(self, code: str) -> AuthorizationCode | None:
        with self._lock:
            return self._codes.pop(code, None)

    async def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, v in self._codes.items() if v.expires_at < now]
            for k in expired:
                del self._codes[k]
            stale = [k for k, exp in self._claims.items() if exp < now]
            for k in stale:
                del self._claims[k]
        return len(expired) + len(stale)

    async def claim_once(self, key: str, expires_at: float) -> bool:
        with self._lock:
            if key in self._claims:
                return False
            self._claims[key] = expires_at
            return True

    def __len__(self) -> int:
        return len(self._codes)


def _parse_record(data: object) -> dict:
    """Normalise the ``record`` column: asyncpg returns a dict, text casts return a str."""
    if isinstance(data, str):
        data = json.loads(data)
    if not isinstance(data, dict):
        return {}
    return data


class PostgresCodeStore(CodeStore):
    """Codes in ``oauth_codes``; claims in ``oauth_state_claims``."""

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.db = db

    async def _put(self, record: AuthorizationCode) -> None:
        payload = asdict(record)
        payload.pop("code")
        await self.db.execute(
            "INSERT INTO oauth_codes (code, record, expires_at) VALUES ($1, $2, $3)",
            record.code,
            payload,  # jsonb codec encodes the dict
            datetime.fromtimestamp(record.expires_at, UTC),
        )

    async def consume(self, code: str) -> AuthorizationCode | None:
        row = await self.db.fetchrow(
            "DELETE FROM oauth_codes WHERE code = $1 RETURNING record",
            code,
        )
        if not row:
            return None
        data = _parse_record(row["record"])
        try:
            return AuthorizationCode(code=code, **data)
        except TypeError:
            logger.warning("Discarding malformed authorization code record %s", code[:12])
            return None

    async def purge_expired(self) -> int:
        now = datetime.fromtimestamp(self.clock(), UTC)
        codes = await self.db.fetch(
            "DELETE FROM oauth_codes WHERE expires_at < $1 RETURNING code", now
        )
        claims = await self.db.fetch(
            "DELETE FROM oauth_state_claims WHERE expires_at < $1 RETURNING jti", now
        )
        return len(codes) + len(claims)

    async def claim_once(self, key: str, expires_at: float) -> bool:
        row = await self.db.fetchrow(
            "INSERT INTO oauth_state_claims (jti, expires_at) VALUES ($1, $2)"
            " ON CONFLICT (jti) DO NOTHING RETURNING jti",
            key,
            datetime.fromtimestamp(expires_at, UTC),
        )
        return row is not None


def create_code_store(settings: Settings, db: Database | None = None) -> CodeStore:
    """Select the configured backend (``AC2_CODE_STORE``)."""
    if settings.code_store == "postgres":
        if db is None:
            raise ValueError("code_store=postgres requires a database")
        return PostgresCodeStore(db)
    if settings.code_store != "memory":
        raise ValueError(f"Unknown code_store: {settings.code_store}")
    return InMemoryCodeStore()
