"""Tests for speaker ownership: one author per turn, collisions audited."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from frontdesk import audit_events as ev
from frontdesk.arbiter import Speaker, SpeakerOwnershipArbiter, safe_response
from frontdesk.flows.schema import ReplyTemplates
from frontdesk.models.decision import Signal
from frontdesk.models.session import CallSession, Lane


@pytest.fixture
def arbiter(audit):
    return SpeakerOwnershipArbiter(lambda call_id: audit)


def locked_session():
    session = CallSession.new("call-1", "acme")
    session.booking_locked = True
    return session


class TestOwnership:
    def test_discovery_owned_by_router(self, arbiter):
        assert arbiter.owner_for(CallSession.new("call-1", "acme"), Lane.DISCOVERY) == Speaker.ROUTER

    def test_deferral_owned_by_booking_engine(self, arbiter):
        owner = arbiter.owner_for(
            CallSession.new("call-1", "acme"), Lane.DISCOVERY, frozenset({Signal.DEFER_TO_BOOKING}),
        )
        assert owner == Speaker.BOOKING_ENGINE

    def test_locked_session_owned_by_booking_engine(self, arbiter):
        assert arbiter.owner_for(locked_session(), Lane.DISCOVERY) == Speaker.BOOKING_ENGINE

    @pytest.mark.parametrize("lane", [Lane.TRANSFER, Lane.ERROR, Lane.TERMINATED])
    def test_safe_lanes_owned_by_safe_responder(self, arbiter, lane):
        assert arbiter.owner_for(locked_session(), lane) == Speaker.SAFE_RESPONDER


class TestSpeakerTurn:
    def test_owner_text_wins(self, arbiter):
        turn = arbiter.open_turn(CallSession.new("call-1", "acme"), Lane.DISCOVERY, 0)
        assert turn.emit(Speaker.ROUTER, "We're open 7 to 6.") is True
        assert turn.resolve({}, "One moment.") == "We're open 7 to 6."

    def test_collision_discarded_and_audited(self, arbiter, audit):
        turn = arbiter.open_turn(locked_session(), Lane.BOOKING, 4)
        assert turn.emit(Speaker.ROUTER, "Our visit fee is $89.") is False
        assert turn.emit(Speaker.BOOKING_ENGINE, "What is your address?") is True

        assert turn.resolve({}, "One moment.") == "What is your address?"
        assert len(turn.collisions) == 1
        events = audit.events_of(ev.SPEAKER_COLLISION)
        assert len(events) == 1
        assert events[0]["data"] == {
            "turn_index": 4,
            "speaker": "router",
            "owner": "booking_engine",
            "discarded": "Our visit fee is $89.",
        }

    def test_empty_text_is_not_a_collision(self, arbiter):
        turn = arbiter.open_turn(locked_session(), Lane.BOOKING, 0)
        assert turn.emit(Speaker.ROUTER, "") is False
        assert turn.emit(Speaker.ROUTER, None) is False
        assert turn.collisions == []

    def test_router_cannot_take_locked_turn(self, arbiter):
        turn = arbiter.open_turn(locked_session(), Lane.BOOKING, 0)
        with pytest.raises(ValueError):
            turn.hand_off(Speaker.ROUTER, "test")

    def test_hand_off_clears_text(self, arbiter):
        turn = arbiter.open_turn(CallSession.new("call-1", "acme"), Lane.DISCOVERY, 0)
        turn.emit(Speaker.ROUTER, "We're open 7 to 6.")
        turn.hand_off(Speaker.SAFE_RESPONDER, "escalation")
        assert turn.owner == Speaker.SAFE_RESPONDER
        assert turn.text is None

    def test_falls_back_to_last_valid_text(self, arbiter):
        turn = arbiter.open_turn(locked_session(), Lane.BOOKING, 0)
        last = {"booking_engine": "What is your address?", "router": "Hello!"}
        assert turn.resolve(last, "One moment.") == "What is your address?"

    def test_falls_back_to_filler(self, arbiter):
        turn = arbiter.open_turn(locked_session(), Lane.BOOKING, 0)
        assert turn.resolve({}, "One moment.") == "One moment."


class TestSafeResponse:
    def test_texts(self):
        replies = ReplyTemplates()
        assert safe_response(Lane.TERMINATED, replies, set()) == replies.terminated_reply
        assert safe_response(Lane.ERROR, replies, set()) == replies.error_reply
        assert safe_response(Lane.TRANSFER, replies, set()) == replies.transfer_reply
        assert safe_response(
            Lane.TRANSFER, replies, {Signal.BUDGET_EXCEEDED},
        ) == replies.budget_exhausted_reply
