"""Slot validation pipeline: four layered defenses, all pure functions.

Layer 1  ``validate_write``           type predicate on every proposed write
Layer 2  ``sanity_sweep``             re-validate every stored slot each turn
Layer 3  ``check_confirmation_ready`` all required slots present and valid
                                      before the summary is read back
Layer 4  ``gate_step``                only the active step may be written

Every function returns an outcome value instead of raising, so the booking
engine can turn rejections into re-asks and audit events.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

from frontdesk.flows.schema import BookingFlowDefinition, Slot, SlotType, ValidationVocabulary


@dataclass(frozen=True)
class Accepted:
    value: str          # normalized form to store
    kind: str = ""      # which predicate matched, e.g. "urgency", "clock"


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class Rewind:
    to_step: str
    reason: str
    cleared: tuple[str, ...] = ()


WriteOutcome = Union[Accepted, Rejected]


# ── Text helpers ─────────────────────────────────────────────────

_WS_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"[a-z0-9']+")
_CLOCK_RE = re.compile(
    r"\b(?:[01]?\d|2[0-3])(?::[0-5]\d)?\s*(?:a\.?m\.?|p\.?m\.?)(?=\W|$)"
    r"|\b(?:[01]?\d|2[0-3]):[0-5]\d\b"
    r"|\b(?:[1-9]|1[0-2])\s*o'?clock\b",
)
_DATE_RE = re.compile(
    r"\b(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?"
    r"|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
    r"\.?\s+\d{1,2}(?:st|nd|rd|th)?\b"
    r"|\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"
    r"|\b\d{1,2}(?:st|nd|rd|th)\b",
)
_BARE_NUMBER_RE = re.compile(r"^\d+$")
_HOUSE_NUMBER_RE = re.compile(r"^\d+[a-z]?(?:-\d+)?\s+[a-z]")
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
_LETTER_RE = re.compile(r"[a-z]")


def normalize(text: str) -> str:
    """Lower-case, collapse whitespace, trim surrounding punctuation."""
    return _WS_RE.sub(" ", text.lower()).strip(" \t.,!?;:\"")


def tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def find_phrase(text: str, phrases: list[str]) -> Optional[str]:
    """Return the longest phrase that occurs in ``text`` on word boundaries."""
    normalized = normalize(text)
    for phrase in sorted(phrases, key=len, reverse=True):
        p = normalize(phrase)
        if p and re.search(rf"(?<![a-z0-9]){re.escape(p)}(?![a-z0-9])", normalized):
            return phrase
    return None


def phone_digits(text: str) -> str:
    digits = re.sub(r"\D", "", text)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits


def format_phone(digits: str) -> str:
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def looks_like_phone(text: str, vocab: ValidationVocabulary) -> bool:
    return len(phone_digits(text)) == vocab.phone_digits and len(re.sub(r"\D", "", text)) >= vocab.phone_digits


def has_street_tokens(text: str, vocab: ValidationVocabulary) -> bool:
    suffixes = {s.lower() for s in vocab.street_suffixes}
    return any(tok in suffixes for tok in tokens(text))


def temporal_kind(text: str, vocab: ValidationVocabulary) -> Optional[str]:
    """Classify a phrase as a time expression, or None."""
    normalized = normalize(text)
    if find_phrase(normalized, vocab.urgency_phrases):
        return "urgency"
    if _CLOCK_RE.search(normalized):
        return "clock"
    if find_phrase(normalized, vocab.time_of_day_phrases):
        return "time_of_day"
    if find_phrase(normalized, vocab.relative_day_phrases):
        return "relative_day"
    if _DATE_RE.search(normalized):
        return "date"
    return None


def is_address(text: str, vocab: ValidationVocabulary) -> bool:
    normalized = normalize(text)
    if len(normalized) < vocab.min_address_length:
        return False
    if not _HOUSE_NUMBER_RE.match(normalized):
        return False
    if temporal_kind(normalized, vocab) and not has_street_tokens(normalized, vocab):
        return False
    return True


def _is_yes_no(text: str, vocab: ValidationVocabulary) -> bool:
    normalized = normalize(text)
    words = {normalize(w) for w in vocab.affirmations + vocab.denials}
    return normalized in words


# ── Layer 1 ──────────────────────────────────────────────────────


def _validate_phone(raw: str, vocab: ValidationVocabulary) -> WriteOutcome:
    if _LETTER_RE.search(raw.lower()):
        return Rejected("contains non-numeric text")
    digits = phone_digits(raw)
    if len(digits) != vocab.phone_digits:
        return Rejected(f"expected {vocab.phone_digits} digits, got {len(digits)}")
    return Accepted(format_phone(digits), "phone")


def _validate_address(raw: str, vocab: ValidationVocabulary) -> WriteOutcome:
    normalized = normalize(raw)
    if len(normalized) < vocab.min_address_length:
        return Rejected("too short for an address")
    if not _HOUSE_NUMBER_RE.match(normalized):
        return Rejected("missing house number and street")
    if temporal_kind(normalized, vocab) and not has_street_tokens(normalized, vocab):
        return Rejected("looks like a time, not an address")
    return Accepted(_WS_RE.sub(" ", raw).strip(" .,"), "address")


def _validate_temporal(raw: str, stored: dict[str, str], vocab: ValidationVocabulary) -> WriteOutcome:
    normalized = normalize(raw)
    if not normalized:
        return Rejected("empty")

    if has_street_tokens(normalized, vocab):
        return Rejected("contains address tokens")

    for value in stored.values():
        if not is_address(value, vocab):
            continue
        address = normalize(value)
        if normalized == address or address in normalized:
            return Rejected("contains address value")

    if _BARE_NUMBER_RE.match(normalized):
        if len(normalized) > vocab.max_bare_number_length:
            return Rejected("bare number")
        if 1 <= int(normalized) <= 12:
            return Accepted(normalized, "clock")
        return Rejected("not a recognizable time or urgency phrase")

    kind = temporal_kind(normalized, vocab)
    if kind is None:
        return Rejected("not a recognizable time or urgency phrase")
    return Accepted(_WS_RE.sub(" ", raw).strip(" .,!?"), kind)


def _validate_numeric(slot: Slot, raw: str) -> WriteOutcome:
    cleaned = raw.strip().replace(",", "")
    if not _NUMBER_RE.match(cleaned):
        return Rejected("not a number")
    number = float(cleaned)
    if slot.min_value is not None and number < slot.min_value:
        return Rejected(f"below minimum {slot.min_value:g}")
    if slot.max_value is not None and number > slot.max_value:
        return Rejected(f"above maximum {slot.max_value:g}")
    return Accepted(f"{number:g}", "numeric")


def _validate_free_text(slot: Slot, raw: str, vocab: ValidationVocabulary) -> WriteOutcome:
    value = _WS_RE.sub(" ", raw).strip(" .,!?")
    if not value:
        return Rejected("empty")
    if len(value) < slot.min_length:
        return Rejected("too short")
    if re.fullmatch(r"[\d\W_]+", value):
        return Rejected("digits only")
    if looks_like_phone(value, vocab):
        return Rejected("looks like a phone number")
    if _is_yes_no(value, vocab):
        return Rejected("a yes/no answer, not a value")
    return Accepted(value, "free_text")


def validate_write(
    slot: Slot,
    raw: str,
    stored: dict[str, str],
    vocab: ValidationVocabulary,
) -> WriteOutcome:
    """Layer 1: does ``raw`` satisfy the slot's type predicate?

    ``stored`` is the name → value view of the other slots already held
    for this call; temporal values are checked against it.
    """
    if raw is None or not str(raw).strip():
        return Rejected("empty")
    raw = str(raw)

    if slot.type_class == SlotType.PHONE:
        return _validate_phone(raw, vocab)
    if slot.type_class == SlotType.ADDRESS:
        return _validate_address(raw, vocab)
    if slot.type_class == SlotType.TEMPORAL:
        return _validate_temporal(raw, stored, vocab)
    if slot.type_class == SlotType.NUMERIC:
        return _validate_numeric(slot, raw)
    return _validate_free_text(slot, raw, vocab)


# ── Layers 2–4 ───────────────────────────────────────────────────


def sanity_sweep(
    flow: BookingFlowDefinition,
    stored: dict[str, str],
    vocab: ValidationVocabulary,
) -> Optional[Rewind]:
    """Layer 2: re-validate every stored slot; clear the ones that fail."""
    cleared: list[str] = []
    reasons: list[str] = []
    for slot in flow.slots:
        value = stored.get(slot.name)
        if value is None:
            continue
        others = {k: v for k, v in stored.items() if k != slot.name and k not in cleared}
        outcome = validate_write(slot, value, others, vocab)
        if isinstance(outcome, Rejected):
            cleared.append(slot.name)
            reasons.append(f"{slot.name}: {outcome.reason}")

    if not cleared:
        return None
    return Rewind(to_step=cleared[0], reason="; ".join(reasons), cleared=tuple(cleared))


def check_confirmation_ready(
    flow: BookingFlowDefinition,
    stored: dict[str, str],
    vocab: ValidationVocabulary,
) -> Optional[Rewind]:
    """Layer 3: None when every required slot is present and valid."""
    invalid = sanity_sweep(flow, stored, vocab)
    for slot in flow.slots:
        if not slot.required:
            continue
        if invalid and slot.name in invalid.cleared:
            return Rewind(to_step=slot.name, reason=invalid.reason, cleared=invalid.cleared)
        if slot.name not in stored:
            return Rewind(to_step=slot.name, reason=f"missing required slot {slot.name}")
    if invalid:
        return invalid
    return None


def gate_step(active_step: Optional[str], slot_name: str) -> Optional[Rejected]:
    """Layer 4: only the active step's slot may be written this turn."""
    if active_step == slot_name:
        return None
    return Rejected(f"slot {slot_name} is not the active step ({active_step})")
