"""Tests for the session, delta and turn contract models."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from pydantic import ValidationError

from frontdesk.models.session import CallSession, Lane, SessionDelta, SlotValue, ValidationStatus
from frontdesk.models.turn import InboundTurn, TurnResponse


class TestSessionDelta:
    def test_apply_does_not_mutate(self):
        session = CallSession.new("call-1", "acme")
        delta = SessionDelta(
            booking_locked=True,
            current_step="phone",
            slot_writes={"name": SlotValue(value="Jane Doe", turn_index=1)},
        )
        updated = delta.apply(session)

        assert updated.booking_locked is True
        assert updated.current_step == "phone"
        assert updated.slot_value("name") == "Jane Doe"
        assert session.booking_locked is False
        assert session.slots == {}

    def test_none_fields_left_alone(self):
        session = CallSession.new("call-1", "acme")
        session.current_step = "time"
        assert SessionDelta().apply(session).current_step == "time"

    def test_clears_then_writes(self):
        session = CallSession.new("call-1", "acme")
        session.slots["time"] = SlotValue(value="42 Oak Ave", turn_index=3)
        session.slots["address"] = SlotValue(value="42 Oak Ave", turn_index=2)
        delta = SessionDelta(
            slot_clears=["time", "address"],
            slot_writes={"address": SlotValue(value="7 Elm St", turn_index=5)},
            rewinds=1,
        )
        updated = delta.apply(session)
        assert updated.stored_values() == {"address": "7 Elm St"}
        assert updated.rewind_count == 1

    def test_slot_value_defaults(self):
        entry = SlotValue(value="x", turn_index=0)
        assert entry.status == ValidationStatus.VALID
        assert entry.source == "caller"


class TestSessionSerialization:
    def test_json_round_trip_keeps_lane_and_slots(self):
        session = CallSession.new("call-1", "acme", "+15551234567")
        session.lane = Lane.BOOKING
        session.slots["phone"] = SlotValue(
            value="(555) 123-4567", turn_index=0,
            status=ValidationStatus.UNCONFIRMED, source="caller_id",
        )
        restored = CallSession.model_validate_json(session.model_dump_json())
        assert restored == session


class TestInboundTurn:
    def test_metadata_properties(self):
        turn = InboundTurn(
            call_id="call-1", tenant_id="acme", turn_index=2,
            channel_metadata={"caller_id": "+15551234567", "call_ended": True},
        )
        assert turn.idempotency_key == "call-1:2"
        assert turn.caller_id == "+15551234567"
        assert turn.call_ended is True

    def test_defaults(self):
        turn = InboundTurn(call_id="call-1", tenant_id="acme", turn_index=0)
        assert turn.caller_id == ""
        assert turn.call_ended is False
        assert turn.proposed_slots == {}

    def test_negative_index_rejected(self):
        with pytest.raises(ValidationError):
            InboundTurn(call_id="call-1", tenant_id="acme", turn_index=-1)

    def test_response_serializes_lane_value(self):
        response = TurnResponse(spoken_text="Hi", lane=Lane.DISCOVERY)
        assert response.model_dump(mode="json")["lane"] == "discovery"
