"""Shared fixtures: a small service-visit tenant, turn factory and fake LLM."""

import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest

from frontdesk.audit_events import AuditBroadcaster
from frontdesk.flows.schema import (
    BookingFlowDefinition,
    CardResponse,
    ScenarioCard,
    Slot,
    SlotType,
    TenantConfig,
)
from frontdesk.llm import LLMClient
from frontdesk.models.turn import InboundTurn


class FakeLLM(LLMClient):
    """Canned replies; optionally slow enough to be abandoned or time out."""

    name = "fake"

    def __init__(self, reply: str = "", delay_s: float = 0.0, error: Exception | None = None):
        self.reply = reply
        self.delay_s = delay_s
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.cancelled = False

    async def complete(self, system: str, user: str) -> str:
        self.calls.append((system, user))
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.reply


def build_flow() -> BookingFlowDefinition:
    return BookingFlowDefinition(
        flow_id="visit",
        slots=[
            Slot(name="name", type_class=SlotType.FREE_TEXT),
            Slot(name="phone", label="phone number", type_class=SlotType.PHONE),
            Slot(name="address", type_class=SlotType.ADDRESS),
            Slot(name="time", label="preferred time", type_class=SlotType.TEMPORAL),
        ],
    )


def build_cards() -> list[ScenarioCard]:
    return [
        ScenarioCard(
            card_id="hours",
            triggers=["what are your hours", "when are you open"],
            reference_phrases=["are you open today", "what time do you open"],
            responses=[CardResponse(id="hours_1", text="We're open 7 to 6.")],
        ),
        ScenarioCard(
            card_id="pricing",
            triggers=["how much", "service fee"],
            negative_triggers=["cancel"],
            responses=[
                CardResponse(id="pricing_1", text="Our visit fee is $89."),
                CardResponse(id="pricing_2", text="A service call is $89."),
            ],
        ),
        ScenarioCard(
            card_id="schedule",
            triggers=["schedule", "make an appointment"],
            priority=10,
            accepts_scheduling=True,
            responses=[CardResponse(id="schedule_1", text="I can help you schedule a visit.")],
        ),
        ScenarioCard(
            card_id="complaint",
            triggers=["manager", "file a complaint"],
            escalates=True,
        ),
    ]


@pytest.fixture
def make_config():
    def _make(**overrides) -> TenantConfig:
        data = {
            "tenant_id": "acme",
            "version": 1,
            "booking_flows": [build_flow()],
            "default_flow_id": "visit",
            "scenario_cards": build_cards(),
        }
        data.update(overrides)
        return TenantConfig(**data)
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def flow():
    return build_flow()


@pytest.fixture
def make_turn():
    def _make(index: int, text: str = "", call_id: str = "call-1", **kwargs) -> InboundTurn:
        return InboundTurn(
            call_id=call_id, tenant_id=kwargs.pop("tenant_id", "acme"),
            turn_index=index, caller_text=text, **kwargs,
        )
    return _make


@pytest.fixture
def audit():
    return AuditBroadcaster("call-1")


@pytest.fixture
def fake_llm():
    return FakeLLM


@pytest.fixture
def mock_transport(monkeypatch):
    """Route every httpx.AsyncClient through a MockTransport built from ``handler``."""
    real = httpx.AsyncClient

    def install(handler):
        def factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(handler)
            return real(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", factory)

    return install
