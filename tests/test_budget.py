"""Tests for the per-tenant daily LLM spend ledger."""

import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from frontdesk.budget import SpendLedger
from frontdesk.store import InMemorySessionStore


def fixed(dt):
    return lambda: dt


class TestDayKey:
    def test_utc_day(self):
        ledger = SpendLedger(InMemorySessionStore(), now=fixed(datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc)))
        assert ledger.today() == "2026-03-01"

    def test_tenant_timezone_day(self):
        # 03:30 UTC is still the previous evening in Chicago.
        ledger = SpendLedger(
            InMemorySessionStore(), tz_name="America/Chicago",
            now=fixed(datetime(2026, 3, 2, 3, 30, tzinfo=timezone.utc)),
        )
        assert ledger.today() == "2026-03-01"


class TestAllows:
    @pytest.fixture
    def ledger(self):
        return SpendLedger(InMemorySessionStore(), now=fixed(datetime(2026, 3, 1, 12, tzinfo=timezone.utc)))

    async def test_zero_cap_never_allows(self, ledger):
        assert await ledger.allows("acme", 0.0) is False

    async def test_below_cap(self, ledger):
        await ledger.charge("acme", 0.5, "k1")
        assert await ledger.allows("acme", 1.0) is True

    async def test_reaching_cap_blocks(self, ledger):
        await ledger.charge("acme", 0.5, "k1")
        await ledger.charge("acme", 0.5, "k2")
        assert await ledger.allows("acme", 1.0) is False

    async def test_other_tenant_unaffected(self, ledger):
        await ledger.charge("acme", 1.0, "k1")
        assert await ledger.allows("globex", 1.0) is True


class TestCharge:
    async def test_repeated_key_charged_once(self):
        ledger = SpendLedger(InMemorySessionStore())
        assert await ledger.charge("acme", 0.01, "call-1:0:tier3") is True
        assert await ledger.charge("acme", 0.01, "call-1:0:tier3") is False
        assert await ledger.spent_today("acme") == pytest.approx(0.01)

    async def test_new_day_resets_spend(self):
        clock = {"now": datetime(2026, 3, 1, 12, tzinfo=timezone.utc)}
        ledger = SpendLedger(InMemorySessionStore(), now=lambda: clock["now"])
        await ledger.charge("acme", 1.0, "k1")
        assert await ledger.allows("acme", 1.0) is False

        clock["now"] = datetime(2026, 3, 2, 0, 1, tzinfo=timezone.utc)
        assert await ledger.spent_today("acme") == 0.0
        assert await ledger.allows("acme", 1.0) is True
