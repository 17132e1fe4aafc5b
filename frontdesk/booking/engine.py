"""Booking slot engine: collects, validates and confirms booking slots.

The engine never writes the session. ``handle_turn`` reads the committed
``CallSession`` and returns a :class:`BookingOutcome` carrying the proposed
``SessionDelta`` plus the text the engine wants to speak; the lane state
machine decides whether to commit it.

Per turn:
  1. summary read back → yes / no / correction handling
  2. otherwise extract a value for the active step (the caller's words, then
     the upstream ``proposed_slots``, then the budget-gated LLM helper)
  3. Layer 1 on every proposal, Layer 4 on proposals for other steps
  4. confirmation policy decides the stored status
  5. Layer 2 sweep, then pick the next step; Layer 3 before the summary
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from frontdesk import audit_events as ev
from frontdesk.audit_events import AuditBroadcaster, get_broadcaster
from frontdesk.booking.extraction import LLMSlotExtractor, extract_for_slot, strip_lead_ins
from frontdesk.booking.validation import (
    Accepted,
    Rejected,
    Rewind,
    check_confirmation_ready,
    find_phrase,
    gate_step,
    normalize,
    sanity_sweep,
    validate_write,
)
from frontdesk.flows.schema import (
    CONFIRM_STEP,
    BookingFlowDefinition,
    ConfirmationPolicy,
    Slot,
    SlotType,
    TenantConfig,
    ValidationVocabulary,
)
from frontdesk.models.decision import Signal
from frontdesk.models.session import CallSession, SessionDelta, SlotValue, ValidationStatus
from frontdesk.models.turn import InboundTurn

log = logging.getLogger("frontdesk.booking.engine")

_INFERRED_SOURCES = {"caller_id", "llm"}
_CORRECTABLE_TYPES = (SlotType.PHONE, SlotType.ADDRESS, SlotType.TEMPORAL)
_VALUE_CONNECTORS = ["should be", "is", "to", "as", "it's", "it is"]
_YES, _NO = "yes", "no"


@dataclass
class BookingOutcome:
    delta: SessionDelta
    spoken_text: Optional[str] = None
    signals: set[Signal] = field(default_factory=set)
    first_write_succeeded: bool = False   # a new value was stored this turn
    escalate: bool = False
    escalation_reason: str = ""
    completed: bool = False


class _Work:
    """Scratch copy of the booking fields, turned into a delta at the end."""

    def __init__(self, session: CallSession) -> None:
        self.slots: dict[str, SlotValue] = {k: v.model_copy() for k, v in session.slots.items()}
        self.flow_id = session.flow_id
        self.current_step = session.current_step
        self.pending_confirmation = session.pending_confirmation
        self.awaiting_correction = session.awaiting_correction
        self.ask_counts = dict(session.ask_counts)
        self.rewind_count = session.rewind_count
        self.confirmation_rewinds = session.confirmation_rewinds
        self._base_rewinds = session.rewind_count
        self._base_confirmation_rewinds = session.confirmation_rewinds
        self.writes: dict[str, SlotValue] = {}
        self.clears: set[str] = set()
        self.new_values = 0

    def write(self, name: str, entry: SlotValue, new_value: bool = True) -> None:
        self.slots[name] = entry
        self.writes[name] = entry
        self.clears.discard(name)
        if new_value:
            self.new_values += 1

    def clear(self, name: str) -> None:
        if name in self.slots:
            del self.slots[name]
        self.writes.pop(name, None)
        self.clears.add(name)

    def values(self) -> dict[str, str]:
        return {k: v.value for k, v in self.slots.items()}

    def to_delta(self) -> SessionDelta:
        return SessionDelta(
            flow_id=self.flow_id,
            current_step=self.current_step,
            pending_confirmation=self.pending_confirmation,
            awaiting_correction=self.awaiting_correction,
            ask_counts=self.ask_counts,
            slot_writes=self.writes,
            slot_clears=sorted(self.clears),
            rewinds=self.rewind_count - self._base_rewinds,
            confirmation_rewinds=self.confirmation_rewinds - self._base_confirmation_rewinds,
        )


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


class BookingSlotEngine:
    def __init__(
        self,
        llm_extractor: Optional[LLMSlotExtractor] = None,
        audit_for: Callable[[str], AuditBroadcaster] = get_broadcaster,
    ) -> None:
        self._llm_extractor = llm_extractor
        self._audit_for = audit_for

    async def handle_turn(
        self,
        session: CallSession,
        turn: InboundTurn,
        config: TenantConfig,
    ) -> BookingOutcome:
        flow = config.flow(session.flow_id)
        if flow is None:
            raise LookupError(f"Tenant {config.tenant_id} has no booking flow {session.flow_id!r}")

        audit = self._audit_for(session.call_id)
        lane = session.lane.value
        w = _Work(session)
        outcome = BookingOutcome(delta=SessionDelta())

        def emit(event_type: str, data: dict) -> None:
            audit.emit(event_type, lane, {"turn_index": turn.turn_index, **data})

        if w.flow_id is None:
            # Flow starts: nothing in the acceptance utterance is a slot value.
            w.flow_id = flow.flow_id
            self._prefill_caller_id(flow, config, session, turn, w, emit)
            log.info("Call %s: booking flow %s started", session.call_id, flow.flow_id)
            return self._finish(flow, config, w, outcome, emit, rejected_step=None)

        if w.pending_confirmation:
            done = self._handle_summary_answer(flow, config, turn, w, outcome, emit)
            if done:
                return done
            return self._finish(flow, config, w, outcome, emit, rejected_step=None)

        active = self._active_step(flow, w)
        rejected_step: Optional[str] = None

        if active != CONFIRM_STEP:
            slot = flow.slot(active)
            entry = w.slots.get(active)
            if entry is not None and entry.status == ValidationStatus.UNCONFIRMED:
                rejected_step = await self._handle_slot_confirmation(
                    slot, config, session, turn, w, emit,
                )
            else:
                rejected_step = await self._collect_active(slot, config, session, turn, w, emit)

        self._screen_upstream_proposals(flow, config, turn, active, w, emit)
        return self._finish(flow, config, w, outcome, emit, rejected_step=rejected_step,
                            force_confirm=(active == CONFIRM_STEP))

    # ── Collection ────────────────────────────────────────────────

    async def _collect_active(
        self,
        slot: Slot,
        config: TenantConfig,
        session: CallSession,
        turn: InboundTurn,
        w: _Work,
        emit,
    ) -> Optional[str]:
        """Propose and validate a value for the active step.

        Candidates are tried in order: the caller's words, the upstream
        extraction, then the LLM helper. Returns the step name when every
        candidate was rejected.
        """
        vocab = config.vocabulary
        others = {k: v for k, v in w.values().items() if k != slot.name}

        candidates = [
            (extract_for_slot(slot, turn.caller_text, vocab), "caller"),
            (turn.proposed_slots.get(slot.name), "extraction"),
        ]
        result: Optional[Accepted] = None
        source = ""
        for raw, source in candidates:
            if not raw:
                continue
            checked = validate_write(slot, raw, others, vocab)
            if isinstance(checked, Accepted):
                result = checked
                break
            emit(ev.VALIDATION_REJECTED, {
                "slot": slot.name, "reason": checked.reason, "source": source,
            })
            log.info("Call %s: %s rejected (%s)", session.call_id, slot.name, checked.reason)

        if result is None and self._llm_extractor is not None:
            raw = await self._llm_extractor.extract(
                slot, turn.caller_text, config,
                charge_key=f"{turn.call_id}:{turn.turn_index}:extract:{slot.name}",
            )
            source = "llm"
            if raw:
                checked = validate_write(slot, raw, others, vocab)
                if isinstance(checked, Accepted):
                    result = checked
                else:
                    emit(ev.VALIDATION_REJECTED, {
                        "slot": slot.name, "reason": checked.reason, "source": source,
                    })

        if result is None:
            return slot.name

        status = self._status_for(config, slot, source)
        w.write(slot.name, SlotValue(
            value=result.value, turn_index=turn.turn_index, status=status, source=source,
        ))
        emit(ev.SLOT_ACCEPTED, {
            "slot": slot.name, "kind": result.kind, "status": status.value, "source": source,
        })
        return None

    def _screen_upstream_proposals(
        self,
        flow: BookingFlowDefinition,
        config: TenantConfig,
        turn: InboundTurn,
        active: str,
        w: _Work,
        emit,
    ) -> None:
        """Layer 1 then Layer 4 on upstream proposals for every other step.

        Nothing here is ever stored; the outcomes are audited.
        """
        for slot in flow.slots:
            raw = turn.proposed_slots.get(slot.name)
            if raw is None or slot.name == active:
                continue
            others = {k: v for k, v in w.values().items() if k != slot.name}
            result = validate_write(slot, raw, others, config.vocabulary)
            if isinstance(result, Rejected):
                emit(ev.VALIDATION_REJECTED, {
                    "slot": slot.name, "reason": result.reason, "source": "extraction",
                })
                continue
            gated = gate_step(active, slot.name)
            if gated is not None:
                emit(ev.STEP_GATE_VIOLATION, {"slot": slot.name, "reason": gated.reason})

    async def _handle_slot_confirmation(
        self,
        slot: Slot,
        config: TenantConfig,
        session: CallSession,
        turn: InboundTurn,
        w: _Work,
        emit,
    ) -> Optional[str]:
        """The active slot holds an unconfirmed value we read back last turn."""
        vocab = config.vocabulary
        text = turn.caller_text or ""
        kind = _answer_kind(text, vocab)
        if kind == _NO:
            w.clear(slot.name)
            remainder = _strip_leading(text, vocab.denials)
            if remainder:
                turn = turn.model_copy(update={"caller_text": remainder})
                return await self._collect_active(slot, config, session, turn, w, emit)
            return None
        if kind == _YES:
            entry = w.slots[slot.name]
            w.write(slot.name, entry.model_copy(update={"status": ValidationStatus.CONFIRMED}),
                    new_value=False)
            return None
        # Anything else is taken as a replacement value.
        return await self._collect_active(slot, config, session, turn, w, emit)

    def _prefill_caller_id(
        self,
        flow: BookingFlowDefinition,
        config: TenantConfig,
        session: CallSession,
        turn: InboundTurn,
        w: _Work,
        emit,
    ) -> None:
        caller_id = turn.caller_id or session.caller_id
        if not caller_id:
            return
        for slot in flow.slots:
            if slot.type_class != SlotType.PHONE or slot.name in w.slots:
                continue
            result = validate_write(slot, caller_id, w.values(), config.vocabulary)
            if isinstance(result, Accepted):
                status = self._status_for(config, slot, "caller_id")
                w.write(slot.name, SlotValue(
                    value=result.value, turn_index=turn.turn_index,
                    status=status, source="caller_id",
                ), new_value=False)
                emit(ev.SLOT_ACCEPTED, {
                    "slot": slot.name, "kind": result.kind,
                    "status": status.value, "source": "caller_id",
                })
            return

    @staticmethod
    def _status_for(config: TenantConfig, slot: Slot, source: str) -> ValidationStatus:
        policy = config.confirmation_policy(slot)
        if policy == ConfirmationPolicy.NEVER:
            return ValidationStatus.VALID
        if policy == ConfirmationPolicy.ALWAYS:
            return ValidationStatus.UNCONFIRMED
        if source in _INFERRED_SOURCES:
            return ValidationStatus.UNCONFIRMED
        return ValidationStatus.VALID

    # ── Summary confirmation ──────────────────────────────────────

    def _handle_summary_answer(
        self,
        flow: BookingFlowDefinition,
        config: TenantConfig,
        turn: InboundTurn,
        w: _Work,
        outcome: BookingOutcome,
        emit,
    ) -> Optional[BookingOutcome]:
        """Returns a finished outcome on completion or escalation, else None
        and leaves ``w`` positioned for ``_finish``."""
        vocab = config.vocabulary
        text = turn.caller_text or ""

        if w.awaiting_correction:
            if self._apply_correction(flow, config, turn, text, w):
                w.pending_confirmation = False
                w.awaiting_correction = False
                return None
            return self._ask_confirm_again(flow, config, w, outcome, flow.correction_prompt)

        kind = _answer_kind(text, vocab)
        if kind == _NO:
            w.pending_confirmation = False
            remainder = _strip_leading(text, vocab.denials)
            if remainder and self._apply_correction(flow, config, turn, remainder, w):
                return None
            w.pending_confirmation = True
            w.awaiting_correction = True
            w.current_step = CONFIRM_STEP
            outcome.spoken_text = flow.correction_prompt
            outcome.delta = w.to_delta()
            return outcome

        if kind == _YES:
            rewind = check_confirmation_ready(flow, w.values(), vocab)
            if rewind is not None:
                w.pending_confirmation = False
                self._apply_confirmation_rewind(rewind, w, emit)
                if w.confirmation_rewinds > flow.max_confirmation_rewinds:
                    return self._escalate(
                        w, outcome, f"{w.confirmation_rewinds} confirmation rewinds",
                    )
                return None
            for name, entry in list(w.slots.items()):
                if entry.status != ValidationStatus.CONFIRMED:
                    w.write(name, entry.model_copy(update={"status": ValidationStatus.CONFIRMED}),
                            new_value=False)
            w.pending_confirmation = False
            w.awaiting_correction = False
            w.current_step = None
            outcome.completed = True
            outcome.signals.add(Signal.BOOKING_COMPLETED)
            outcome.spoken_text = _render(flow.completion_template, w.values())
            outcome.delta = w.to_delta()
            return outcome

        if self._apply_correction(flow, config, turn, text, w):
            w.pending_confirmation = False
            return None
        return self._ask_confirm_again(flow, config, w, outcome, None)

    def _ask_confirm_again(
        self,
        flow: BookingFlowDefinition,
        config: TenantConfig,
        w: _Work,
        outcome: BookingOutcome,
        text: Optional[str],
    ) -> BookingOutcome:
        count = w.ask_counts.get(CONFIRM_STEP, 0) + 1
        w.ask_counts[CONFIRM_STEP] = count
        if count > flow.max_step_attempts:
            return self._escalate(w, outcome, f"confirmation asked {count} times")
        outcome.spoken_text = text or _summary(flow, w.values())
        outcome.signals.add(Signal.CONFIRMATION_REQUESTED)
        outcome.delta = w.to_delta()
        return outcome

    def _apply_correction(
        self,
        flow: BookingFlowDefinition,
        config: TenantConfig,
        turn: InboundTurn,
        text: str,
        w: _Work,
    ) -> bool:
        """Caller names a field to change, or states a replacement value."""
        vocab = config.vocabulary
        for slot in flow.slots:
            named = find_phrase(text, [slot.display_name, slot.name.replace("_", " ")])
            if named:
                w.clear(slot.name)
                w.current_step = slot.name
                value = _value_after(text, named, vocab)
                if value:
                    self._write_correction(slot, config, turn, value, w)
                return True

        for slot in flow.slots:
            if slot.type_class not in _CORRECTABLE_TYPES:
                continue
            if self._write_correction(slot, config, turn, text, w):
                return True
        return False

    def _write_correction(
        self,
        slot: Slot,
        config: TenantConfig,
        turn: InboundTurn,
        text: str,
        w: _Work,
    ) -> bool:
        vocab = config.vocabulary
        raw = extract_for_slot(slot, strip_lead_ins(text, vocab), vocab)
        if raw is None:
            return False
        others = {k: v for k, v in w.values().items() if k != slot.name}
        result = validate_write(slot, raw, others, vocab)
        if not isinstance(result, Accepted) or result.value == w.values().get(slot.name):
            return False
        w.write(slot.name, SlotValue(
            value=result.value, turn_index=turn.turn_index,
            status=self._status_for(config, slot, "caller"), source="caller",
        ))
        w.current_step = None
        return True

    # ── Step selection ───────────────────────────────────────────

    @staticmethod
    def _needs_value(slot: Slot, w: _Work) -> bool:
        entry = w.slots.get(slot.name)
        if entry is not None:
            return entry.status == ValidationStatus.UNCONFIRMED
        if slot.required:
            return True
        return w.ask_counts.get(slot.name, 0) == 0   # optional slots are asked once

    def _next_step(self, flow: BookingFlowDefinition, w: _Work) -> str:
        for slot in flow.slots:
            if self._needs_value(slot, w):
                return slot.name
        return CONFIRM_STEP

    def _active_step(self, flow: BookingFlowDefinition, w: _Work) -> str:
        if w.current_step == CONFIRM_STEP:
            return CONFIRM_STEP
        if w.current_step:
            slot = flow.slot(w.current_step)
            if slot is not None and (slot.name not in w.slots or self._needs_value(slot, w)):
                return slot.name
        return self._next_step(flow, w)

    def _apply_confirmation_rewind(self, rewind: Rewind, w: _Work, emit) -> None:
        emit(ev.CONFIRMATION_INVARIANT_VIOLATED, {
            "to_step": rewind.to_step, "reason": rewind.reason, "cleared": list(rewind.cleared),
        })
        for name in rewind.cleared:
            w.clear(name)
        w.confirmation_rewinds += 1
        w.current_step = rewind.to_step

    def _finish(
        self,
        flow: BookingFlowDefinition,
        config: TenantConfig,
        w: _Work,
        outcome: BookingOutcome,
        emit,
        rejected_step: Optional[str],
        force_confirm: bool = False,
    ) -> BookingOutcome:
        vocab = config.vocabulary

        # Layer 2
        rewind = sanity_sweep(flow, w.values(), vocab)
        if rewind is not None:
            emit(ev.SANITY_FIX_APPLIED, {
                "to_step": rewind.to_step, "reason": rewind.reason, "cleared": list(rewind.cleared),
            })
            for name in rewind.cleared:
                w.clear(name)
            w.rewind_count += 1
            log.info("Sanity sweep cleared %s (%s)", list(rewind.cleared), rewind.reason)
            if w.rewind_count > flow.max_rewinds:
                return self._escalate(w, outcome, f"{w.rewind_count} sanity rewinds")

        next_step = CONFIRM_STEP if force_confirm and rewind is None else self._next_step(flow, w)

        if next_step == CONFIRM_STEP:
            # Layer 3
            violation = check_confirmation_ready(flow, w.values(), vocab)
            if violation is not None:
                self._apply_confirmation_rewind(violation, w, emit)
                if w.confirmation_rewinds > flow.max_confirmation_rewinds:
                    return self._escalate(
                        w, outcome, f"{w.confirmation_rewinds} confirmation rewinds",
                    )
                next_step = violation.to_step
            else:
                w.current_step = CONFIRM_STEP
                w.pending_confirmation = True
                w.awaiting_correction = False
                outcome.spoken_text = _summary(flow, w.values())
                outcome.signals.add(Signal.CONFIRMATION_REQUESTED)
                outcome.first_write_succeeded = w.new_values > 0
                outcome.delta = w.to_delta()
                return outcome

        slot = flow.slot(next_step)
        count = w.ask_counts.get(next_step, 0) + 1
        w.ask_counts[next_step] = count
        if count > flow.max_step_attempts:
            return self._escalate(w, outcome, f"step {next_step} asked {count} times")

        w.current_step = next_step
        entry = w.slots.get(next_step)
        if entry is not None and entry.status == ValidationStatus.UNCONFIRMED:
            outcome.spoken_text = f"I have your {slot.display_name} as {entry.value}. Is that right?"
        elif rejected_step == next_step:
            outcome.spoken_text = slot.ask_again()
        else:
            outcome.spoken_text = slot.ask()

        outcome.first_write_succeeded = w.new_values > 0
        outcome.delta = w.to_delta()
        return outcome

    def _escalate(self, w: _Work, outcome: BookingOutcome, reason: str) -> BookingOutcome:
        log.warning("Booking escalated to a person: %s", reason)
        outcome.escalate = True
        outcome.escalation_reason = reason
        outcome.spoken_text = None
        outcome.signals.add(Signal.ESCALATE)
        outcome.first_write_succeeded = w.new_values > 0
        outcome.delta = w.to_delta()
        return outcome


def _summary(flow: BookingFlowDefinition, values: dict[str, str]) -> str:
    parts = [f"{slot.display_name} {values[slot.name]}" for slot in flow.slots if slot.name in values]
    return flow.confirmation_template.format_map(_SafeDict(summary=", ".join(parts)))


def _render(template: str, values: dict[str, str]) -> str:
    text = template.format_map(_SafeDict(values))
    return re.sub(r"\s+([.,!?])", r"\1", text).strip()


def _leading_phrase(text: str, phrases: list[str]) -> Optional[str]:
    lowered = text.strip().lower()
    for phrase in sorted(phrases, key=len, reverse=True):
        p = phrase.lower()
        if p and re.match(rf"{re.escape(p)}(?![a-z0-9])", lowered):
            return p
    return None


def _strip_leading(text: str, phrases: list[str]) -> str:
    """Drop one leading yes/no phrase: "no, it's 42 Oak St" → "it's 42 Oak St"."""
    stripped = text.strip()
    lead = _leading_phrase(stripped, phrases)
    if lead is None:
        return ""
    return stripped[len(lead):].strip(" ,.!?")


def _answer_kind(text: str, vocab: ValidationVocabulary) -> Optional[str]:
    """Classify a yes/no answer by its earliest affirmation or denial.

    "yes that's correct, no changes" is a yes; "it's not right" is a no
    because "not right" starts before "right".
    """
    normalized = normalize(text)
    best: Optional[tuple[tuple[int, int], str]] = None
    for kind, phrases in ((_NO, vocab.denials), (_YES, vocab.affirmations)):
        for phrase in phrases:
            p = normalize(phrase)
            if not p:
                continue
            match = re.search(rf"(?<![a-z0-9]){re.escape(p)}(?![a-z0-9])", normalized)
            if match is None:
                continue
            rank = (match.start(), -len(p))
            if best is None or rank < best[0]:
                best = (rank, kind)
    return best[1] if best else None


def _value_after(text: str, field_name: str, vocab: ValidationVocabulary) -> str:
    """What follows a named field: "the time should be Friday" → "Friday"."""
    match = re.search(rf"(?<![a-z0-9]){re.escape(field_name)}(?![a-z0-9])", text, re.IGNORECASE)
    if match is None:
        return ""
    rest = text[match.end():].strip(" ,.:;!?")
    fillers = _VALUE_CONNECTORS + vocab.denials
    lead = _leading_phrase(rest, fillers)
    while lead and rest:
        rest = rest[len(lead):].strip(" ,.:;!?")
        lead = _leading_phrase(rest, fillers)
    return rest
