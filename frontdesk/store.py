"""Session state store: the only shared mutable resource.

Holds one :class:`CallSession` per active call, the committed response of
every processed turn (idempotency records), the per-call ordering lease
and the per-tenant daily LLM spend counters.

Two backends implement :class:`SessionStateStore`:

  * ``InMemorySessionStore``: single process, TTL enforced on read.
  * ``RedisSessionStore``: shared between workers; JSON values only,
    TTL reset on every commit.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from frontdesk.faults import LeaseTimeout
from frontdesk.models.session import CallSession

log = logging.getLogger("frontdesk.store")

KEY_PREFIX = "frontdesk:"
SPEND_TTL_S = 2 * 24 * 3600


class SessionStateStore(ABC):
    """Abstract store backend."""

    @abstractmethod
    async def load(self, call_id: str) -> Optional[CallSession]:
        """Return the committed session for a call, or None if absent/expired."""

    @abstractmethod
    async def commit(
        self,
        session: CallSession,
        ttl_s: int,
        turn_index: Optional[int] = None,
        response: Optional[dict] = None,
    ) -> None:
        """Persist a session and (optionally) the turn record in one step."""

    @abstractmethod
    async def delete(self, call_id: str) -> None:
        """Drop a call's session."""

    @abstractmethod
    async def get_turn_record(self, call_id: str, turn_index: int) -> Optional[dict]:
        """Return the committed response for ``(call_id, turn_index)``."""

    @abstractmethod
    async def acquire_lease(self, call_id: str, ttl_ms: int) -> Optional[str]:
        """Try once to take the call's ordering lease. Returns a token or None."""

    @abstractmethod
    async def release_lease(self, call_id: str, token: str) -> bool:
        """Release the lease if ``token`` still owns it."""

    @abstractmethod
    async def get_spend(self, tenant_id: str, day: str) -> float:
        """Cumulative LLM spend for a tenant on a day (``YYYY-MM-DD``)."""

    @abstractmethod
    async def add_spend(
        self, tenant_id: str, day: str, amount: float, charge_key: str,
    ) -> tuple[bool, float]:
        """Add ``amount`` once per ``charge_key``.

        Returns ``(charged, total)``; ``charged`` is False when the key was
        already charged (a replayed turn).
        """


@asynccontextmanager
async def call_lease(
    store: SessionStateStore,
    call_id: str,
    ttl_ms: int,
    wait_ms: int,
    poll_ms: int = 20,
) -> AsyncIterator[str]:
    """Hold a call's ordering lease for the duration of the block.

    Raises:
        LeaseTimeout: if the lease is still held elsewhere after ``wait_ms``.
    """
    deadline = time.monotonic() + wait_ms / 1000
    token = await store.acquire_lease(call_id, ttl_ms)
    while token is None:
        if time.monotonic() >= deadline:
            raise LeaseTimeout(call_id, wait_ms)
        await asyncio.sleep(poll_ms / 1000)
        token = await store.acquire_lease(call_id, ttl_ms)

    try:
        yield token
    finally:
        released = await store.release_lease(call_id, token)
        if not released:
            log.warning("Lease for call %s expired before release", call_id)


# ── In-memory backend ─────────────────────────────────────────────


class InMemorySessionStore(SessionStateStore):
    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_s: float = 60.0,
    ) -> None:
        self._clock = clock
        self._sweep_interval_s = sweep_interval_s
        self._next_sweep = 0.0
        self._sessions: dict[str, tuple[str, float]] = {}        # call_id → (json, expires_at)
        self._turns: dict[tuple[str, int], tuple[dict, float]] = {}
        self._leases: dict[str, tuple[str, float]] = {}
        self._spend: dict[tuple[str, str], float] = {}
        self._spend_keys: dict[tuple[str, str], set[str]] = {}
        self._spend_expiry: dict[tuple[str, str], float] = {}
        self._lock = asyncio.Lock()

    async def load(self, call_id: str) -> Optional[CallSession]:
        item = self._sessions.get(call_id)
        if item is None:
            return None
        raw, expires_at = item
        if self._clock() >= expires_at:
            self._sessions.pop(call_id, None)
            log.info("Session %s expired", call_id)
            return None
        return CallSession.model_validate_json(raw)

    async def commit(
        self,
        session: CallSession,
        ttl_s: int,
        turn_index: Optional[int] = None,
        response: Optional[dict] = None,
    ) -> None:
        now = self._clock()
        self._maybe_sweep(now)
        expires_at = now + ttl_s
        self._sessions[session.call_id] = (session.model_dump_json(), expires_at)
        if turn_index is not None and response is not None:
            self._turns[(session.call_id, turn_index)] = (dict(response), expires_at)

    async def delete(self, call_id: str) -> None:
        self._sessions.pop(call_id, None)
        for key in [k for k in self._turns if k[0] == call_id]:
            del self._turns[key]

    async def get_turn_record(self, call_id: str, turn_index: int) -> Optional[dict]:
        item = self._turns.get((call_id, turn_index))
        if item is None:
            return None
        record, expires_at = item
        if self._clock() >= expires_at:
            self._turns.pop((call_id, turn_index), None)
            return None
        return dict(record)

    async def acquire_lease(self, call_id: str, ttl_ms: int) -> Optional[str]:
        async with self._lock:
            now = self._clock()
            held = self._leases.get(call_id)
            if held is not None and now < held[1]:
                return None
            token = secrets.token_urlsafe(12)
            self._leases[call_id] = (token, now + ttl_ms / 1000)
            return token

    async def release_lease(self, call_id: str, token: str) -> bool:
        async with self._lock:
            held = self._leases.get(call_id)
            if held is None or held[0] != token:
                return False
            del self._leases[call_id]
            return True

    async def get_spend(self, tenant_id: str, day: str) -> float:
        return self._spend.get((tenant_id, day), 0.0)

    async def add_spend(
        self, tenant_id: str, day: str, amount: float, charge_key: str,
    ) -> tuple[bool, float]:
        async with self._lock:
            bucket = (tenant_id, day)
            keys = self._spend_keys.setdefault(bucket, set())
            self._spend_expiry.setdefault(bucket, self._clock() + SPEND_TTL_S)
            if charge_key in keys:
                return False, self._spend.get(bucket, 0.0)
            keys.add(charge_key)
            self._spend[bucket] = self._spend.get(bucket, 0.0) + amount
            return True, self._spend[bucket]

    def _maybe_sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval_s
        self.sweep(now)

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop every expired session, turn record, lease and spend bucket.

        Returns the number of entries removed. Runs from ``commit`` at most
        once per ``sweep_interval_s``.
        """
        now = self._clock() if now is None else now
        removed = 0
        for table in (self._sessions, self._turns, self._leases):
            expired = [key for key, item in table.items() if now >= item[1]]
            for key in expired:
                del table[key]
            removed += len(expired)
        stale = [bucket for bucket, expires_at in self._spend_expiry.items() if now >= expires_at]
        for bucket in stale:
            del self._spend_expiry[bucket]
            self._spend.pop(bucket, None)
            self._spend_keys.pop(bucket, None)
        removed += len(stale)
        if removed:
            log.debug("Store sweep removed %d expired entries", removed)
        return removed


# ── Redis backend ─────────────────────────────────────────────────

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_SPEND_SCRIPT = """
if redis.call("sadd", KEYS[2], ARGV[1]) == 1 then
    local total = redis.call("incrbyfloat", KEYS[1], ARGV[2])
    redis.call("expire", KEYS[1], ARGV[3])
    redis.call("expire", KEYS[2], ARGV[3])
    return {1, total}
end
return {0, redis.call("get", KEYS[1]) or "0"}
"""


def _session_key(call_id: str) -> str:
    return f"{KEY_PREFIX}session:{call_id}"


def _turn_key(call_id: str, turn_index: int) -> str:
    return f"{KEY_PREFIX}turn:{call_id}:{turn_index}"


def _lease_key(call_id: str) -> str:
    return f"{KEY_PREFIX}lease:{call_id}"


def _spend_keys(tenant_id: str, day: str) -> tuple[str, str]:
    base = f"{KEY_PREFIX}spend:{tenant_id}:{day}"
    return base, base + ":charges"


class RedisSessionStore(SessionStateStore):
    """Redis-backed store. ``client`` is a ``redis.asyncio.Redis`` with
    ``decode_responses=True``."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisSessionStore":
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url, decode_responses=True))

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def load(self, call_id: str) -> Optional[CallSession]:
        raw = await self._client.get(_session_key(call_id))
        if not raw:
            return None
        return CallSession.model_validate_json(raw)

    async def commit(
        self,
        session: CallSession,
        ttl_s: int,
        turn_index: Optional[int] = None,
        response: Optional[dict] = None,
    ) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(_session_key(session.call_id), session.model_dump_json(), ex=ttl_s)
            if turn_index is not None and response is not None:
                pipe.set(_turn_key(session.call_id, turn_index), json.dumps(response), ex=ttl_s)
            await pipe.execute()

    async def delete(self, call_id: str) -> None:
        await self._client.delete(_session_key(call_id))

    async def get_turn_record(self, call_id: str, turn_index: int) -> Optional[dict]:
        raw = await self._client.get(_turn_key(call_id, turn_index))
        return json.loads(raw) if raw else None

    async def acquire_lease(self, call_id: str, ttl_ms: int) -> Optional[str]:
        token = secrets.token_urlsafe(12)
        ok = await self._client.set(_lease_key(call_id), token, nx=True, px=ttl_ms)
        return token if ok else None

    async def release_lease(self, call_id: str, token: str) -> bool:
        result = await self._client.eval(_RELEASE_SCRIPT, 1, _lease_key(call_id), token)
        return bool(result)

    async def get_spend(self, tenant_id: str, day: str) -> float:
        total_key, _ = _spend_keys(tenant_id, day)
        raw = await self._client.get(total_key)
        return float(raw) if raw else 0.0

    async def add_spend(
        self, tenant_id: str, day: str, amount: float, charge_key: str,
    ) -> tuple[bool, float]:
        total_key, charges_key = _spend_keys(tenant_id, day)
        charged, total = await self._client.eval(
            _SPEND_SCRIPT, 2, total_key, charges_key, charge_key, str(amount), SPEND_TTL_S,
        )
        return bool(int(charged)), float(total)


def create_store(redis_url: str = "") -> SessionStateStore:
    """Build the configured backend: Redis when a URL is set, else in-memory."""
    if redis_url:
        log.info("Using Redis session store")
        return RedisSessionStore.from_url(redis_url)
    log.info("Using in-memory session store")
    return InMemorySessionStore()
