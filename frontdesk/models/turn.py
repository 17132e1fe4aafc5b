"""Pydantic models for the inbound turn and outbound response contracts."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .session import Lane


class InboundTurn(BaseModel):
    """One caller utterance, delivered once by the telephony/chat gateway.

    ``(call_id, turn_index)`` is the idempotency key.
    """

    call_id: str = Field(min_length=1, max_length=128)
    tenant_id: str = Field(min_length=1, max_length=128)
    turn_index: int = Field(ge=0)
    caller_text: str = ""
    channel_metadata: dict[str, Any] = Field(default_factory=dict)
    # Optional upstream extraction: slot name → proposed raw value
    proposed_slots: dict[str, str] = Field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return f"{self.call_id}:{self.turn_index}"

    @property
    def caller_id(self) -> str:
        return str(self.channel_metadata.get("caller_id", "") or "")

    @property
    def call_ended(self) -> bool:
        return bool(self.channel_metadata.get("call_ended", False))


class TurnResponse(BaseModel):
    """What the gateway synthesizes and plays back."""

    spoken_text: str
    lane: Lane
    signals: list[str] = Field(default_factory=list)
    should_terminate: bool = False
