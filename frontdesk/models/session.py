"""Pydantic models for the per-call session record."""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Lane(str, Enum):
    DISCOVERY = "discovery"
    BOOKING = "booking"
    TRANSFER = "transfer"
    ERROR = "error"
    TERMINATED = "terminated"


class ValidationStatus(str, Enum):
    VALID = "valid"              # passed type validation, no confirmation needed
    UNCONFIRMED = "unconfirmed"  # passed type validation, caller must confirm
    CONFIRMED = "confirmed"      # caller explicitly confirmed


class SlotValue(BaseModel):
    """One accepted slot value, tagged with the turn it was accepted under."""

    value: str
    turn_index: int
    status: ValidationStatus = ValidationStatus.VALID
    source: str = "caller"  # "caller", "caller_id", "extraction" or "llm"


class CallSession(BaseModel):
    """Durable state for a single active call.

    Only the lane state machine commits changes; every other component
    reads a session and returns a proposed :class:`SessionDelta`.
    """

    call_id: str
    tenant_id: str
    lane: Lane = Lane.DISCOVERY
    booking_locked: bool = False
    scheduling_accepted: bool = False

    turn_count: int = 0
    last_turn_index: int = -1

    # Booking flow position
    flow_id: Optional[str] = None
    current_step: Optional[str] = None
    slots: dict[str, SlotValue] = Field(default_factory=dict)
    pending_confirmation: bool = False
    awaiting_correction: bool = False
    ask_counts: dict[str, int] = Field(default_factory=dict)
    rewind_count: int = 0
    confirmation_rewinds: int = 0

    # Fault accounting
    consecutive_faults: int = 0
    speaker_collisions: int = 0

    # Speaker → last valid text it produced (arbiter fallback)
    last_spoken: dict[str, str] = Field(default_factory=dict)
    last_response: Optional[dict] = None

    caller_id: str = ""
    config_version: int = 0
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @classmethod
    def new(cls, call_id: str, tenant_id: str, caller_id: str = "") -> "CallSession":
        return cls(call_id=call_id, tenant_id=tenant_id, caller_id=caller_id)

    def slot_value(self, name: str) -> Optional[str]:
        entry = self.slots.get(name)
        return entry.value if entry else None

    def stored_values(self) -> dict[str, str]:
        """Plain name → value view used by the validation pipeline."""
        return {name: entry.value for name, entry in self.slots.items()}


class SessionDelta(BaseModel):
    """A proposed change to a :class:`CallSession`.

    ``None`` means "leave as is". ``apply`` never mutates its argument.
    """

    lane: Optional[Lane] = None
    booking_locked: Optional[bool] = None
    scheduling_accepted: Optional[bool] = None
    flow_id: Optional[str] = None
    current_step: Optional[str] = None
    pending_confirmation: Optional[bool] = None
    awaiting_correction: Optional[bool] = None
    slot_writes: dict[str, SlotValue] = Field(default_factory=dict)
    slot_clears: list[str] = Field(default_factory=list)
    ask_counts: Optional[dict[str, int]] = None
    rewinds: int = 0
    confirmation_rewinds: int = 0

    def apply(self, session: CallSession) -> CallSession:
        updated = session.model_copy(deep=True)
        for field in (
            "lane",
            "booking_locked",
            "scheduling_accepted",
            "flow_id",
            "current_step",
            "pending_confirmation",
            "awaiting_correction",
            "ask_counts",
        ):
            value = getattr(self, field)
            if value is not None:
                setattr(updated, field, value)

        for name in self.slot_clears:
            updated.slots.pop(name, None)
        for name, entry in self.slot_writes.items():
            updated.slots[name] = entry

        updated.rewind_count += self.rewinds
        updated.confirmation_rewinds += self.confirmation_rewinds
        return updated
