"""Lane state machine: the turn core and the only writer of session state.

For each inbound turn:
  1. take the per-call lease (turns of one call never overlap)
  2. replay the committed response if ``(call_id, turn_index)`` was seen
  3. load the session and evaluate the lane precedence table once
  4. delegate: BOOKING → booking engine; DISCOVERY → router (which may
     defer to the booking engine); TRANSFER / TERMINATED → safe responder
  5. every candidate text goes through the speaker arbiter
  6. commit session + turn record in one store call, release the lease
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from frontdesk import audit_events as ev
from frontdesk.arbiter import Speaker, SpeakerOwnershipArbiter, SpeakerTurn, safe_response
from frontdesk.audit_events import AuditBroadcaster, get_broadcaster, retire_broadcaster
from frontdesk.booking.engine import BookingOutcome, BookingSlotEngine
from frontdesk.booking.validation import find_phrase
from frontdesk.config import Settings
from frontdesk.faults import DelegateFault, TenantConfigError
from frontdesk.flows.cache import TenantConfigCache
from frontdesk.flows.schema import ReplyTemplates, TenantConfig
from frontdesk.models.decision import Signal
from frontdesk.models.session import CallSession, Lane, SessionDelta
from frontdesk.models.turn import InboundTurn, TurnResponse
from frontdesk.routing.router import IntelligentResponseRouter, RouteContext
from frontdesk.store import SessionStateStore, call_lease

log = logging.getLogger("frontdesk.lanes")


def redact_pii(value: str) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


# ── Lane precedence table ────────────────────────────────────────

LaneTarget = Union[Lane, Callable[[CallSession, Optional[TenantConfig]], Lane]]


@dataclass(frozen=True)
class PrecedenceRule:
    name: str
    applies: Callable[[CallSession, InboundTurn, Optional[TenantConfig], asyncio.Event], bool]
    lane: LaneTarget


def _recover_from_error(session: CallSession, config: Optional[TenantConfig]) -> Lane:
    max_faults = config.max_consecutive_faults if config else 2
    if session.consecutive_faults >= max_faults:
        return Lane.TRANSFER
    return Lane.BOOKING if session.booking_locked else Lane.DISCOVERY


LANE_PRECEDENCE: tuple[PrecedenceRule, ...] = (
    PrecedenceRule("call_ended", lambda s, t, c, h: t.call_ended or h.is_set(), Lane.TERMINATED),
    PrecedenceRule("terminated", lambda s, t, c, h: s.lane == Lane.TERMINATED, Lane.TERMINATED),
    PrecedenceRule("agent_disabled", lambda s, t, c, h: c is not None and not c.agent_enabled,
                   Lane.TRANSFER),
    PrecedenceRule("transfer", lambda s, t, c, h: s.lane == Lane.TRANSFER, Lane.TRANSFER),
    PrecedenceRule(
        "escalation_phrase",
        lambda s, t, c, h: c is not None and find_phrase(t.caller_text, c.escalation_phrases) is not None,
        Lane.TRANSFER,
    ),
    PrecedenceRule("error_recovery", lambda s, t, c, h: s.lane == Lane.ERROR, _recover_from_error),
    PrecedenceRule("booking_locked", lambda s, t, c, h: s.booking_locked, Lane.BOOKING),
    PrecedenceRule("default", lambda s, t, c, h: True, Lane.DISCOVERY),
)


def evaluate_precedence(
    session: CallSession,
    turn: InboundTurn,
    config: Optional[TenantConfig],
    hangup: asyncio.Event,
) -> tuple[Lane, str]:
    """First matching rule wins. Returns ``(lane, rule_name)``."""
    for rule in LANE_PRECEDENCE:
        if rule.applies(session, turn, config, hangup):
            lane = rule.lane(session, config) if callable(rule.lane) else rule.lane
            return lane, rule.name
    return Lane.DISCOVERY, "default"


_FINISHED_LANES = (Lane.TERMINATED, Lane.TRANSFER)


# ── Per-turn scratch state ───────────────────────────────────────


@dataclass
class _TurnState:
    lane: Lane
    reason: str
    speaker: SpeakerTurn
    delta: SessionDelta
    signals: set[Signal]
    fault: bool = False


class LaneStateMachine:
    def __init__(
        self,
        store: SessionStateStore,
        configs: TenantConfigCache,
        router: IntelligentResponseRouter,
        engine: BookingSlotEngine,
        settings: Settings,
        arbiter: Optional[SpeakerOwnershipArbiter] = None,
        audit_for: Callable[[str], AuditBroadcaster] = get_broadcaster,
        retire_audit: Callable[[str, float], None] = retire_broadcaster,
    ) -> None:
        self._store = store
        self._configs = configs
        self._router = router
        self._engine = engine
        self._settings = settings
        self._arbiter = arbiter or SpeakerOwnershipArbiter(audit_for)
        self._audit_for = audit_for
        self._retire_audit = retire_audit
        self._hangups: dict[str, asyncio.Event] = {}

    @property
    def store(self) -> SessionStateStore:
        return self._store

    def _hangup_event(self, call_id: str) -> asyncio.Event:
        return self._hangups.setdefault(call_id, asyncio.Event())

    def _release_call(self, call_id: str) -> None:
        """Drop per-call state once the call can no longer be routed."""
        self._hangups.pop(call_id, None)
        self._retire_audit(call_id, self._settings.terminated_ttl_s)

    # ── Public operations ─────────────────────────────────────────

    async def handle_turn(self, turn: InboundTurn) -> TurnResponse:
        """Process one inbound turn and return the response to speak.

        Raises:
            LeaseTimeout: if another turn for the same call holds the lease
                for longer than ``lease_wait_ms``.
        """
        hangup = self._hangup_event(turn.call_id)
        async with call_lease(
            self._store, turn.call_id, self._settings.lease_ttl_ms, self._settings.lease_wait_ms,
        ):
            record = await self._store.get_turn_record(turn.call_id, turn.turn_index)
            if record is not None:
                self._audit_for(turn.call_id).emit(
                    ev.TURN_REPLAYED, record.get("lane", ""), {"turn_index": turn.turn_index},
                )
                log.info("Call %s turn %d replayed", turn.call_id, turn.turn_index)
                response = TurnResponse.model_validate(record)
                if response.lane in _FINISHED_LANES:
                    self._release_call(turn.call_id)
                return response

            session = await self._store.load(turn.call_id)
            if session is not None and turn.turn_index <= session.last_turn_index:
                log.info("Call %s: stale turn %d (last %d)",
                         turn.call_id, turn.turn_index, session.last_turn_index)
                if session.lane in _FINISHED_LANES:
                    self._release_call(turn.call_id)
                if session.last_response:
                    return TurnResponse.model_validate(session.last_response)
                return TurnResponse(spoken_text="", lane=session.lane)

            if session is None:
                session = CallSession.new(turn.call_id, turn.tenant_id, turn.caller_id)
                log.info("Call %s started for tenant %s (caller %s)",
                         turn.call_id, turn.tenant_id, redact_pii(turn.caller_id))
            elif session.tenant_id != turn.tenant_id:
                log.warning("Call %s belongs to tenant %s; ignoring tenant %s on turn %d",
                            turn.call_id, session.tenant_id, turn.tenant_id, turn.turn_index)

            try:
                config: Optional[TenantConfig] = await self._configs.get(session.tenant_id)
            except TenantConfigError as e:
                log.error("No configuration for tenant %s: %s", session.tenant_id, e)
                config = None

            response, updated = await self._process(session, turn, config, hangup)

            ttl = (self._settings.terminated_ttl_s if updated.lane == Lane.TERMINATED
                   else self._settings.session_ttl_s)
            await self._store.commit(
                updated, ttl, turn_index=turn.turn_index, response=updated.last_response,
            )

        if updated.lane in _FINISHED_LANES:
            self._release_call(turn.call_id)
        return response

    async def hangup(self, call_id: str) -> None:
        """Caller disconnected. Abandons an in-flight LLM call and marks the
        session TERMINATED once the running turn (if any) has committed."""
        self._hangup_event(call_id).set()
        try:
            async with call_lease(
                self._store, call_id, self._settings.lease_ttl_ms, self._settings.lease_wait_ms,
            ):
                session = await self._store.load(call_id)
                if session is None:
                    log.info("Hangup for unknown call %s", call_id)
                    return
                if session.lane == Lane.TERMINATED:
                    return
                updated = session.model_copy(deep=True)
                updated.lane = Lane.TERMINATED
                updated.updated_at = time.time()
                self._audit_for(call_id).emit(ev.LANE_TRANSITION, Lane.TERMINATED.value, {
                    "from": session.lane.value, "to": Lane.TERMINATED.value, "reason": "hangup",
                })
                await self._store.commit(updated, self._settings.terminated_ttl_s)
                log.info("Call %s terminated by hangup", call_id)
        finally:
            self._release_call(call_id)

    # ── Turn processing ──────────────────────────────────────────

    async def _process(
        self,
        session: CallSession,
        turn: InboundTurn,
        config: Optional[TenantConfig],
        hangup: asyncio.Event,
    ) -> tuple[TurnResponse, CallSession]:
        replies = config.replies if config else ReplyTemplates()
        lane, reason = evaluate_precedence(session, turn, config, hangup)

        state = _TurnState(
            lane=lane,
            reason=reason,
            speaker=self._arbiter.open_turn(session, lane, turn.turn_index),
            delta=SessionDelta(),
            signals=set(),
        )

        if lane == Lane.TERMINATED:
            state.signals.add(Signal.CALL_TERMINATED)
        elif lane == Lane.TRANSFER:
            if reason in ("agent_disabled", "escalation_phrase"):
                state.signals.add(Signal.ESCALATE)
        elif config is None:
            self._fault(session, turn, state, "tenant_config",
                        TenantConfigError(f"no configuration for tenant {session.tenant_id}"), None)
        elif lane == Lane.BOOKING:
            await self._booking_turn(session, turn, config, state)
        else:
            await self._discovery_turn(session, turn, config, state, hangup)

        if state.lane in (Lane.TRANSFER, Lane.TERMINATED, Lane.ERROR):
            if state.lane == Lane.TRANSFER:
                state.signals.add(Signal.TRANSFER_TO_HUMAN)
            if state.speaker.owner == Speaker.SAFE_RESPONDER:
                state.speaker.emit(Speaker.SAFE_RESPONDER, safe_response(state.lane, replies, state.signals))

        collisions = len(state.speaker.collisions)
        total_collisions = session.speaker_collisions + collisions
        if collisions:
            state.signals.add(Signal.SPEAKER_COLLISION)
            max_collisions = config.max_speaker_collisions if config else 2
            if total_collisions >= max_collisions and state.lane not in (Lane.TERMINATED, Lane.TRANSFER):
                state.speaker.hand_off(Speaker.SAFE_RESPONDER, "repeated speaker collisions")
                state.lane = Lane.TRANSFER
                state.reason = "speaker_collisions"
                state.signals.add(Signal.TRANSFER_TO_HUMAN)
                state.speaker.emit(Speaker.SAFE_RESPONDER, safe_response(state.lane, replies, state.signals))

        spoken = state.speaker.resolve(session.last_spoken, replies.filler)

        updated = state.delta.apply(session)
        updated.lane = state.lane
        updated.turn_count += 1
        updated.last_turn_index = turn.turn_index
        updated.consecutive_faults = session.consecutive_faults + 1 if state.fault else 0
        updated.speaker_collisions = total_collisions
        updated.last_spoken[state.speaker.owner.value] = spoken
        updated.updated_at = time.time()
        if config is not None:
            updated.config_version = config.version
        if turn.caller_id and not updated.caller_id:
            updated.caller_id = turn.caller_id

        if updated.lane != session.lane:
            self._audit_for(session.call_id).emit(ev.LANE_TRANSITION, updated.lane.value, {
                "turn_index": turn.turn_index,
                "from": session.lane.value,
                "to": updated.lane.value,
                "reason": state.reason,
            })
            log.info("Call %s: %s → %s (%s)",
                     session.call_id, session.lane.value, updated.lane.value, state.reason)

        response = TurnResponse(
            spoken_text=spoken,
            lane=updated.lane,
            signals=sorted(s.value for s in state.signals),
            should_terminate=updated.lane == Lane.TERMINATED,
        )
        updated.last_response = response.model_dump(mode="json")
        return response, updated

    async def _booking_turn(
        self,
        session: CallSession,
        turn: InboundTurn,
        config: TenantConfig,
        state: _TurnState,
    ) -> None:
        try:
            outcome = await self._engine.handle_turn(session, turn, config)
        except Exception as e:
            self._fault(session, turn, state, "booking_engine", e, config)
            return
        self._apply_booking_outcome(outcome, state)

    async def _discovery_turn(
        self,
        session: CallSession,
        turn: InboundTurn,
        config: TenantConfig,
        state: _TurnState,
        hangup: asyncio.Event,
    ) -> None:
        context = RouteContext(
            call_id=session.call_id,
            turn_index=turn.turn_index,
            lane=state.lane.value,
            scheduling_pending=session.scheduling_accepted and config.booking_enabled,
            hangup=hangup,
        )
        try:
            decision = await self._router.route(turn.caller_text, config, context)
        except Exception as e:
            self._fault(session, turn, state, "router", e, config)
            return

        if decision.abandoned or hangup.is_set():
            # Late or abandoned result: nothing from this turn is applied.
            state.speaker.hand_off(Speaker.SAFE_RESPONDER, "hangup")
            state.lane = Lane.TERMINATED
            state.reason = "hangup"
            state.signals = {Signal.CALL_TERMINATED}
            return

        state.signals |= set(decision.signals)

        if decision.has(Signal.ESCALATE):
            state.speaker.hand_off(Speaker.SAFE_RESPONDER, "escalation")
            state.lane = Lane.TRANSFER
            state.reason = "budget_exceeded" if decision.has(Signal.BUDGET_EXCEEDED) else "escalation"
        elif decision.has(Signal.DEFER_TO_BOOKING) and config.booking_enabled:
            state.speaker.hand_off(Speaker.BOOKING_ENGINE, "defer_to_booking")
            try:
                outcome = await self._engine.handle_turn(session, turn, config)
            except Exception as e:
                self._fault(session, turn, state, "booking_engine", e, config)
                return
            self._apply_booking_outcome(outcome, state)
            if state.lane == Lane.DISCOVERY:
                if outcome.first_write_succeeded:
                    state.delta.booking_locked = True
                    state.delta.scheduling_accepted = False
                    state.lane = Lane.BOOKING
                    state.reason = "booking_locked"
                else:
                    state.delta.scheduling_accepted = True

        state.speaker.emit(Speaker.ROUTER, decision.response_text)

    def _apply_booking_outcome(self, outcome: BookingOutcome, state: _TurnState) -> None:
        state.delta = outcome.delta
        state.signals |= outcome.signals
        state.speaker.emit(Speaker.BOOKING_ENGINE, outcome.spoken_text)
        if outcome.completed:
            state.lane = Lane.TERMINATED
            state.reason = "booking_completed"
        elif outcome.escalate:
            state.speaker.hand_off(Speaker.SAFE_RESPONDER, outcome.escalation_reason)
            state.lane = Lane.TRANSFER
            state.reason = "booking_escalated"

    def _fault(
        self,
        session: CallSession,
        turn: InboundTurn,
        state: _TurnState,
        delegate: str,
        cause: BaseException,
        config: Optional[TenantConfig],
    ) -> None:
        fault = DelegateFault(delegate, cause)
        log.error("Call %s turn %d: %s", session.call_id, turn.turn_index, fault,
                  exc_info=(type(cause), cause, cause.__traceback__))
        self._audit_for(session.call_id).emit(ev.DELEGATE_FAULT, state.lane.value, {
            "turn_index": turn.turn_index,
            "delegate": delegate,
            "error": repr(cause),
        })
        max_faults = config.max_consecutive_faults if config else 2
        state.fault = True
        state.delta = SessionDelta()
        state.signals = {Signal.DELEGATE_FAULT}
        state.speaker.hand_off(Speaker.SAFE_RESPONDER, "delegate_fault")
        if session.consecutive_faults + 1 >= max_faults:
            state.lane = Lane.TRANSFER
            state.reason = "repeated_faults"
        else:
            state.lane = Lane.ERROR
            state.reason = "delegate_fault"
