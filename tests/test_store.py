"""Tests for the session state store backends and the call lease."""

import asyncio
import json
import os
import sys
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from frontdesk.faults import LeaseTimeout
from frontdesk.models.session import CallSession, Lane
from frontdesk.store import (
    SPEND_TTL_S,
    InMemorySessionStore,
    RedisSessionStore,
    call_lease,
    create_store,
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemorySessionStore(clock=clock)


# ── In-memory sessions ────────────────────────────────────────────


class TestInMemorySessions:
    async def test_commit_and_load(self, store):
        session = CallSession.new("call-1", "acme", "+15551234567")
        session.lane = Lane.BOOKING
        await store.commit(session, 60)

        loaded = await store.load("call-1")
        assert loaded == session
        assert loaded is not session

    async def test_load_missing(self, store):
        assert await store.load("nope") is None

    async def test_session_expires(self, store, clock):
        await store.commit(CallSession.new("call-1", "acme"), 60)
        clock.advance(59)
        assert await store.load("call-1") is not None
        clock.advance(1)
        assert await store.load("call-1") is None

    async def test_commit_resets_ttl(self, store, clock):
        session = CallSession.new("call-1", "acme")
        await store.commit(session, 60)
        clock.advance(50)
        await store.commit(session, 60)
        clock.advance(50)
        assert await store.load("call-1") is not None

    async def test_turn_record_written_with_session(self, store):
        response = {"spoken_text": "Hi", "lane": "discovery"}
        await store.commit(CallSession.new("call-1", "acme"), 60, turn_index=0, response=response)
        assert await store.get_turn_record("call-1", 0) == response
        assert await store.get_turn_record("call-1", 1) is None

    async def test_turn_record_is_a_copy(self, store):
        response = {"spoken_text": "Hi", "lane": "discovery"}
        await store.commit(CallSession.new("call-1", "acme"), 60, turn_index=0, response=response)
        response["spoken_text"] = "changed"
        assert (await store.get_turn_record("call-1", 0))["spoken_text"] == "Hi"

    async def test_delete_drops_turn_records(self, store):
        await store.commit(CallSession.new("call-1", "acme"), 60, turn_index=0, response={"a": 1})
        await store.delete("call-1")
        assert await store.load("call-1") is None
        assert await store.get_turn_record("call-1", 0) is None


class TestInMemorySweep:
    async def test_sweep_drops_expired_session_and_turn_record(self, store, clock):
        await store.commit(CallSession.new("call-1", "acme"), 10, turn_index=0, response={"a": 1})
        await store.commit(CallSession.new("call-2", "acme"), 600)
        clock.advance(11)
        assert store.sweep() == 2
        assert store.sweep() == 0
        assert await store.load("call-2") is not None

    async def test_commit_sweeps_calls_that_are_never_read_again(self, clock):
        store = InMemorySessionStore(clock=clock, sweep_interval_s=0)
        for i in range(5):
            await store.commit(CallSession.new(f"old-{i}", "acme"), 10, turn_index=0, response={"a": i})
        clock.advance(11)
        await store.commit(CallSession.new("new", "acme"), 600)
        # Nothing expired is left for an explicit sweep to find.
        assert store.sweep() == 0
        assert await store.load("new") is not None

    async def test_commit_sweep_is_throttled(self, store, clock):
        await store.commit(CallSession.new("call-1", "acme"), 1)
        clock.advance(5)
        await store.commit(CallSession.new("call-2", "acme"), 600)
        assert store.sweep() == 1

    async def test_sweep_drops_expired_lease(self, store, clock):
        await store.acquire_lease("call-1", 1000)
        clock.advance(2)
        assert store.sweep() == 1

    async def test_sweep_drops_old_spend_buckets(self, store, clock):
        await store.add_spend("acme", "2026-01-01", 0.5, "k1")
        clock.advance(SPEND_TTL_S)
        assert store.sweep() == 1
        assert await store.get_spend("acme", "2026-01-01") == 0.0
        # The charge key is forgotten with its bucket.
        assert await store.add_spend("acme", "2026-01-01", 0.5, "k1") == (True, 0.5)


# ── Lease ─────────────────────────────────────────────────────────


class TestLease:
    async def test_lease_is_exclusive(self, store):
        token = await store.acquire_lease("call-1", 1000)
        assert token is not None
        assert await store.acquire_lease("call-1", 1000) is None
        assert await store.acquire_lease("call-2", 1000) is not None

    async def test_release_requires_owner_token(self, store):
        token = await store.acquire_lease("call-1", 1000)
        assert await store.release_lease("call-1", "someone-else") is False
        assert await store.release_lease("call-1", token) is True
        assert await store.acquire_lease("call-1", 1000) is not None

    async def test_expired_lease_can_be_taken(self, store, clock):
        await store.acquire_lease("call-1", 1000)
        clock.advance(1.0)
        assert await store.acquire_lease("call-1", 1000) is not None

    async def test_call_lease_waits_then_times_out(self):
        store = InMemorySessionStore()
        await store.acquire_lease("call-1", 10_000)
        with pytest.raises(LeaseTimeout) as exc_info:
            async with call_lease(store, "call-1", 1000, wait_ms=60, poll_ms=10):
                pass
        assert exc_info.value.call_id == "call-1"

    async def test_call_lease_serializes_turns(self):
        store = InMemorySessionStore()
        order = []

        async def turn(name, hold_s):
            async with call_lease(store, "call-1", 5000, wait_ms=2000, poll_ms=5):
                order.append(f"{name}:start")
                await asyncio.sleep(hold_s)
                order.append(f"{name}:end")

        first = asyncio.create_task(turn("a", 0.05))
        await asyncio.sleep(0.01)
        await asyncio.gather(first, turn("b", 0))
        assert order == ["a:start", "a:end", "b:start", "b:end"]

    async def test_call_lease_releases_on_error(self):
        store = InMemorySessionStore()
        with pytest.raises(RuntimeError):
            async with call_lease(store, "call-1", 5000, wait_ms=100):
                raise RuntimeError("boom")
        assert await store.acquire_lease("call-1", 1000) is not None


# ── Spend ─────────────────────────────────────────────────────────


class TestInMemorySpend:
    async def test_add_once_per_key(self, store):
        assert await store.add_spend("acme", "2026-03-01", 0.01, "c:0:tier3") == (True, 0.01)
        assert await store.add_spend("acme", "2026-03-01", 0.01, "c:0:tier3") == (False, 0.01)
        charged, total = await store.add_spend("acme", "2026-03-01", 0.02, "c:1:tier3")
        assert charged is True
        assert total == pytest.approx(0.03)

    async def test_buckets_by_tenant_and_day(self, store):
        await store.add_spend("acme", "2026-03-01", 0.5, "k")
        await store.add_spend("acme", "2026-03-02", 0.25, "k")
        await store.add_spend("globex", "2026-03-01", 1.0, "k")
        assert await store.get_spend("acme", "2026-03-01") == 0.5
        assert await store.get_spend("acme", "2026-03-02") == 0.25
        assert await store.get_spend("globex", "2026-03-01") == 1.0
        assert await store.get_spend("initech", "2026-03-01") == 0.0


# ── Redis backend (mocked client) ─────────────────────────────────


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.eval = AsyncMock()
    client.ping = AsyncMock(return_value=True)

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, True])
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=pipe)
    ctx.__aexit__ = AsyncMock(return_value=False)
    client.pipeline.return_value = ctx
    client.pipe = pipe
    return client


class TestRedisSessionStore:
    async def test_commit_is_one_transaction(self, redis_client):
        store = RedisSessionStore(redis_client)
        session = CallSession.new("call-1", "acme")
        response = {"spoken_text": "Hi", "lane": "discovery"}

        await store.commit(session, 900, turn_index=3, response=response)

        redis_client.pipeline.assert_called_once_with(transaction=True)
        pipe = redis_client.pipe
        assert pipe.set.call_count == 2
        session_call, turn_call = pipe.set.call_args_list
        assert session_call.args[0] == "frontdesk:session:call-1"
        assert session_call.kwargs == {"ex": 900}
        assert turn_call.args == ("frontdesk:turn:call-1:3", json.dumps(response))
        pipe.execute.assert_awaited_once()

    async def test_commit_without_turn_record(self, redis_client):
        store = RedisSessionStore(redis_client)
        await store.commit(CallSession.new("call-1", "acme"), 900)
        assert redis_client.pipe.set.call_count == 1

    async def test_load(self, redis_client):
        session = CallSession.new("call-1", "acme")
        redis_client.get.return_value = session.model_dump_json()
        store = RedisSessionStore(redis_client)
        assert await store.load("call-1") == session
        redis_client.get.assert_awaited_with("frontdesk:session:call-1")

    async def test_load_missing(self, redis_client):
        assert await RedisSessionStore(redis_client).load("call-1") is None

    async def test_turn_record(self, redis_client):
        redis_client.get.return_value = '{"spoken_text": "Hi", "lane": "discovery"}'
        record = await RedisSessionStore(redis_client).get_turn_record("call-1", 2)
        assert record == {"spoken_text": "Hi", "lane": "discovery"}
        redis_client.get.assert_awaited_with("frontdesk:turn:call-1:2")

    async def test_acquire_lease(self, redis_client):
        token = await RedisSessionStore(redis_client).acquire_lease("call-1", 5000)
        assert token
        redis_client.set.assert_awaited_once_with("frontdesk:lease:call-1", token, nx=True, px=5000)

    async def test_acquire_lease_held(self, redis_client):
        redis_client.set.return_value = None
        assert await RedisSessionStore(redis_client).acquire_lease("call-1", 5000) is None

    async def test_release_lease(self, redis_client):
        redis_client.eval.return_value = 1
        assert await RedisSessionStore(redis_client).release_lease("call-1", "tok") is True
        args = redis_client.eval.await_args.args
        assert args[1:] == (1, "frontdesk:lease:call-1", "tok")

    async def test_add_spend(self, redis_client):
        redis_client.eval.return_value = [1, "0.03"]
        store = RedisSessionStore(redis_client)
        assert await store.add_spend("acme", "2026-03-01", 0.01, "c:0:tier3") == (True, 0.03)
        args = redis_client.eval.await_args.args
        assert args[1:] == (
            2, "frontdesk:spend:acme:2026-03-01", "frontdesk:spend:acme:2026-03-01:charges",
            "c:0:tier3", "0.01", SPEND_TTL_S,
        )

    async def test_add_spend_repeated_key(self, redis_client):
        redis_client.eval.return_value = [0, "0.03"]
        charged, total = await RedisSessionStore(redis_client).add_spend("acme", "d", 0.01, "k")
        assert charged is False
        assert total == 0.03

    async def test_get_spend(self, redis_client):
        redis_client.get.return_value = "1.25"
        assert await RedisSessionStore(redis_client).get_spend("acme", "2026-03-01") == 1.25


class TestCreateStore:
    def test_default_is_in_memory(self):
        assert isinstance(create_store(""), InMemorySessionStore)

    def test_redis_url(self):
        assert isinstance(create_store("redis://localhost:6379/0"), RedisSessionStore)
