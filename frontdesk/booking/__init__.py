from .engine import BookingOutcome, BookingSlotEngine
from .extraction import LLMSlotExtractor
from .validation import Accepted, Rejected, Rewind

__all__ = [
    "Accepted",
    "BookingOutcome",
    "BookingSlotEngine",
    "LLMSlotExtractor",
    "Rejected",
    "Rewind",
]
