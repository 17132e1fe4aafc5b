"""Per-call audit event broadcaster.

Every validation rejection, sanity fix, confirmation rewind, step-gate
drop, tier selection, budget skip, speaker collision, delegate fault and
lane transition is emitted here. Events are appended to the call's event
log, mirrored to the ``frontdesk.audit`` logger as one JSON line, and
pushed to every subscriber's asyncio.Queue for delivery over WebSocket.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TypedDict

log = logging.getLogger("frontdesk.audit_events")
audit_log = logging.getLogger("frontdesk.audit")

# Event types
VALIDATION_REJECTED = "validation_rejected"
SANITY_FIX_APPLIED = "sanity_fix_applied"
CONFIRMATION_INVARIANT_VIOLATED = "confirmation_invariant_violated"
STEP_GATE_VIOLATION = "step_gate_violation"
SLOT_ACCEPTED = "slot_accepted"
TIER_SELECTED = "tier_selected"
TIER_MISS = "tier_miss"
BUDGET_EXCEEDED = "budget_exceeded"
SPEAKER_COLLISION = "speaker_collision"
DELEGATE_FAULT = "delegate_fault"
LANE_TRANSITION = "lane_transition"
TURN_REPLAYED = "turn_replayed"
LLM_ABANDONED = "llm_abandoned"

_MAX_EVENT_LOG = 1000


class AuditEvent(TypedDict):
    type: str
    timestamp: float
    call_id: str
    lane: str
    data: dict


class AuditBroadcaster:
    """Per-call event broadcaster using asyncio.Queue per subscriber."""

    def __init__(self, call_id: str) -> None:
        self._call_id = call_id
        self._subscribers: list[asyncio.Queue[AuditEvent]] = []
        self._event_log: list[AuditEvent] = []

    def subscribe(self) -> asyncio.Queue[AuditEvent]:
        """Create a new subscriber queue and return it."""
        q: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=200)
        self._subscribers.append(q)
        log.info("Audit subscriber added for call %s (total: %d)",
                 self._call_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[AuditEvent]) -> None:
        """Remove a subscriber queue."""
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass
        log.info("Audit subscriber removed for call %s (total: %d)",
                 self._call_id, len(self._subscribers))

    def emit(self, event_type: str, lane: str, data: dict) -> AuditEvent:
        """Broadcast an event to all subscribers and append to the event log."""
        event: AuditEvent = {
            "type": event_type,
            "timestamp": time.time(),
            "call_id": self._call_id,
            "lane": lane,
            "data": data,
        }
        self._event_log.append(event)
        if len(self._event_log) > _MAX_EVENT_LOG:
            del self._event_log[: len(self._event_log) - _MAX_EVENT_LOG]

        audit_log.info(json.dumps(event, default=str, sort_keys=True))

        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest event to make room
                try:
                    q.get_nowait()
                    q.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass
        return event

    def events_of(self, event_type: str) -> list[AuditEvent]:
        return [e for e in self._event_log if e["type"] == event_type]

    @property
    def event_log(self) -> list[AuditEvent]:
        """Full event history for this call."""
        return list(self._event_log)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# ── Global broadcaster registry ──────────────────────────────────────

_broadcasters: dict[str, AuditBroadcaster] = {}
_retiring: dict[str, float] = {}   # call_id → monotonic deadline


def get_broadcaster(call_id: str) -> AuditBroadcaster:
    """Get or create a broadcaster for a call."""
    sweep_retired()
    if call_id not in _broadcasters:
        _broadcasters[call_id] = AuditBroadcaster(call_id)
        log.debug("AuditBroadcaster created for call %s", call_id)
    return _broadcasters[call_id]


def find_broadcaster(call_id: str) -> AuditBroadcaster | None:
    return _broadcasters.get(call_id)


def remove_broadcaster(call_id: str) -> None:
    """Remove a broadcaster when the call ends."""
    _retiring.pop(call_id, None)
    if call_id in _broadcasters:
        del _broadcasters[call_id]
        log.debug("AuditBroadcaster removed for call %s", call_id)


def retire_broadcaster(call_id: str, after_s: float, now: float | None = None) -> None:
    """Schedule removal of a finished call's broadcaster.

    The event log stays readable for ``after_s`` seconds; the next registry
    access after that drops it.
    """
    now = time.monotonic() if now is None else now
    if call_id in _broadcasters:
        _retiring[call_id] = now + after_s
    sweep_retired(now)


def sweep_retired(now: float | None = None) -> int:
    """Drop retired broadcasters whose deadline has passed. Returns the count."""
    now = time.monotonic() if now is None else now
    expired = [call_id for call_id, deadline in _retiring.items() if now >= deadline]
    for call_id in expired:
        remove_broadcaster(call_id)
    return len(expired)
