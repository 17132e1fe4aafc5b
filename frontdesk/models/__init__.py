"""Data models for the turn-processing core."""

from .decision import Decision, Signal
from .session import CallSession, Lane, SessionDelta, SlotValue, ValidationStatus
from .turn import InboundTurn, TurnResponse

__all__ = [
    "CallSession",
    "Decision",
    "InboundTurn",
    "Lane",
    "SessionDelta",
    "Signal",
    "SlotValue",
    "TurnResponse",
    "ValidationStatus",
]
