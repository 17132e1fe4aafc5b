"""Speaker ownership arbiter: one author per spoken turn.

The lane state machine opens a :class:`SpeakerTurn` for every turn. The
turn has exactly one owner; text emitted by anyone else is a collision,
discarded and audited. Only the lane state machine may hand ownership
over, and never back to the router once booking is locked.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from frontdesk import audit_events as ev
from frontdesk.audit_events import AuditBroadcaster, get_broadcaster
from frontdesk.flows.schema import ReplyTemplates
from frontdesk.models.decision import Signal
from frontdesk.models.session import CallSession, Lane

log = logging.getLogger("frontdesk.arbiter")


class Speaker(str, Enum):
    ROUTER = "router"
    BOOKING_ENGINE = "booking_engine"
    SAFE_RESPONDER = "safe_responder"


_SAFE_LANES = {Lane.TRANSFER, Lane.ERROR, Lane.TERMINATED}


class SpeakerTurn:
    def __init__(
        self,
        call_id: str,
        turn_index: int,
        owner: Speaker,
        locked: bool,
        audit: AuditBroadcaster,
        lane: Lane,
    ) -> None:
        self.call_id = call_id
        self.turn_index = turn_index
        self.owner = owner
        self.locked = locked
        self.collisions: list[dict] = []
        self._audit = audit
        self._lane = lane
        self._text: Optional[str] = None

    @property
    def text(self) -> Optional[str]:
        return self._text

    def emit(self, speaker: Speaker, text: Optional[str]) -> bool:
        """Offer spoken text. Returns False when the text was discarded."""
        if not text:
            return False
        if speaker != self.owner:
            collision = {
                "turn_index": self.turn_index,
                "speaker": speaker.value,
                "owner": self.owner.value,
                "discarded": text,
            }
            self.collisions.append(collision)
            self._audit.emit(ev.SPEAKER_COLLISION, self._lane.value, collision)
            log.warning("Call %s turn %d: %s tried to speak while %s owns the turn",
                        self.call_id, self.turn_index, speaker.value, self.owner.value)
            return False
        self._text = text
        return True

    def hand_off(self, new_owner: Speaker, reason: str) -> None:
        if new_owner == self.owner:
            return
        if self.locked and new_owner == Speaker.ROUTER:
            raise ValueError(f"call {self.call_id} is booking-locked; router cannot own the turn")
        log.debug("Call %s: ownership %s → %s (%s)",
                  self.call_id, self.owner.value, new_owner.value, reason)
        self.owner = new_owner
        self._text = None

    def resolve(self, last_spoken: dict[str, str], filler: str) -> str:
        """Owner's text, else the owner's last valid text, else the filler."""
        if self._text:
            return self._text
        previous = last_spoken.get(self.owner.value)
        if previous:
            return previous
        return filler


class SpeakerOwnershipArbiter:
    def __init__(self, audit_for: Callable[[str], AuditBroadcaster] = get_broadcaster) -> None:
        self._audit_for = audit_for

    @staticmethod
    def owner_for(session: CallSession, lane: Lane, signals: frozenset = frozenset()) -> Speaker:
        if lane in _SAFE_LANES:
            return Speaker.SAFE_RESPONDER
        if lane == Lane.BOOKING or session.booking_locked:
            return Speaker.BOOKING_ENGINE
        if Signal.DEFER_TO_BOOKING in signals:
            return Speaker.BOOKING_ENGINE
        return Speaker.ROUTER

    def open_turn(
        self,
        session: CallSession,
        lane: Lane,
        turn_index: int,
        signals: frozenset = frozenset(),
    ) -> SpeakerTurn:
        return SpeakerTurn(
            call_id=session.call_id,
            turn_index=turn_index,
            owner=self.owner_for(session, lane, signals),
            locked=session.booking_locked,
            audit=self._audit_for(session.call_id),
            lane=lane,
        )


def safe_response(lane: Lane, replies: ReplyTemplates, signals: set[Signal]) -> str:
    """Fixed text for the safe responder."""
    if lane == Lane.TERMINATED:
        return replies.terminated_reply
    if lane == Lane.ERROR:
        return replies.error_reply
    if Signal.BUDGET_EXCEEDED in signals:
        return replies.budget_exhausted_reply
    return replies.transfer_reply
