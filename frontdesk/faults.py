"""Exceptions raised across module boundaries.

Everything else in the error taxonomy (validation rejections, sanity
fixes, confirmation rewinds, step-gate drops, budget skips, speaker
collisions) is an ordinary outcome value plus an audit event.
"""

from __future__ import annotations


class DelegateFault(Exception):
    """A tier or the booking engine raised while handling a turn."""

    def __init__(self, delegate: str, cause: BaseException) -> None:
        super().__init__(f"{delegate} failed: {cause!r}")
        self.delegate = delegate
        self.cause = cause


class LeaseTimeout(Exception):
    """The per-call lease could not be acquired in time."""

    def __init__(self, call_id: str, waited_ms: int) -> None:
        super().__init__(f"lease for call {call_id} not acquired after {waited_ms}ms")
        self.call_id = call_id
        self.waited_ms = waited_ms


class TenantConfigError(Exception):
    """No usable configuration for a tenant."""
