"""Per-tenant daily LLM spend ledger.

Both the tier-3 router fallback and the LLM slot-extraction helper ask the
ledger before calling out. Once cumulative spend for the tenant's current
day reaches the cap, ``allows`` is False for the rest of that day. Charges
are keyed so that a replayed turn never charges twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from frontdesk.store import SessionStateStore

log = logging.getLogger("frontdesk.budget")


class SpendLedger:
    def __init__(
        self,
        store: SessionStateStore,
        tz_name: str = "UTC",
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._tz = ZoneInfo(tz_name)
        self._now = now or (lambda: datetime.now(tz=timezone.utc))

    def today(self) -> str:
        return self._now().astimezone(self._tz).strftime("%Y-%m-%d")

    async def spent_today(self, tenant_id: str) -> float:
        return await self._store.get_spend(tenant_id, self.today())

    async def allows(self, tenant_id: str, cap_usd: float) -> bool:
        """True while today's spend is strictly below the cap."""
        if cap_usd <= 0:
            return False
        spent = await self.spent_today(tenant_id)
        return spent < cap_usd

    async def charge(self, tenant_id: str, amount_usd: float, charge_key: str) -> bool:
        """Record a charge once per key. Returns False for a repeated key."""
        day = self.today()
        charged, total = await self._store.add_spend(tenant_id, day, amount_usd, charge_key)
        if charged:
            log.info("LLM spend for %s on %s: +%.4f → %.4f", tenant_id, day, amount_usd, total)
        else:
            log.debug("Charge %s already recorded for %s", charge_key, tenant_id)
        return charged
