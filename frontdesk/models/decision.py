"""The router's per-turn output and the signal vocabulary shared by all delegates."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Signal(str, Enum):
    SCHEDULING_ACCEPTED = "scheduling_accepted"
    DEFER_TO_BOOKING = "defer_to_booking"
    ESCALATE = "escalate"
    BUDGET_EXCEEDED = "budget_exceeded"
    CONFIRMATION_REQUESTED = "confirmation_requested"
    BOOKING_COMPLETED = "booking_completed"
    TRANSFER_TO_HUMAN = "transfer_to_human"
    SPEAKER_COLLISION = "speaker_collision"
    DELEGATE_FAULT = "delegate_fault"
    CALL_TERMINATED = "call_terminated"


@dataclass(frozen=True)
class Decision:
    """Ephemeral routing result, consumed once by the lane state machine."""

    tier: int                          # 0 = tenant default reply, 1/2/3 = cascade tier
    confidence: float = 0.0
    card_id: Optional[str] = None
    response_id: Optional[str] = None
    response_text: Optional[str] = None  # None when the router defers speech
    signals: frozenset[Signal] = field(default_factory=frozenset)
    abandoned: bool = False            # hangup arrived while tier 3 was in flight

    def has(self, signal: Signal) -> bool:
        return signal in self.signals
