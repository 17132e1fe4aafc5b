"""Pull a candidate slot value out of a caller utterance.

Deterministic extractors run first. When they find nothing and the tenant
allows it, ``LLMSlotExtractor`` asks the LLM, gated by the same daily spend
ledger as the router's tier 3. Extraction only proposes; every candidate
still goes through Layer 1 validation.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

import httpx

from frontdesk.booking.validation import normalize
from frontdesk.budget import SpendLedger
from frontdesk.flows.schema import Slot, SlotType, TenantConfig, ValidationVocabulary
from frontdesk.llm import LLMClient, extract_json_signal

log = logging.getLogger("frontdesk.booking.extraction")

_PHONE_RE = re.compile(r"(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}")
_ADDRESS_RE = re.compile(r"\b\d+[A-Za-z]?(?:-\d+)?\s+[A-Za-z].*", re.DOTALL)
_NUMBER_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?")

_WORD_NUMBERS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}


def strip_lead_ins(text: str, vocab: ValidationVocabulary) -> str:
    """Drop conversational lead-ins ("my name is", "it's") from the front."""
    result = text.strip().strip(" .,!?")
    lead_ins = sorted((normalize(p) for p in vocab.lead_ins), key=len, reverse=True)
    changed = True
    while changed and result:
        changed = False
        lowered = result.lower()
        for lead in lead_ins:
            if lead and re.match(rf"{re.escape(lead)}(?![a-z0-9])", lowered):
                result = result[len(lead):].strip(" ,.")
                changed = True
                break
    return result


def extract_for_slot(slot: Slot, text: str, vocab: ValidationVocabulary) -> Optional[str]:
    """Deterministic extraction for the active step's slot type."""
    if not text or not text.strip():
        return None
    body = strip_lead_ins(text, vocab)
    if not body:
        return None

    if slot.type_class == SlotType.PHONE:
        match = _PHONE_RE.search(body)
        return match.group(0) if match else body

    if slot.type_class == SlotType.ADDRESS:
        match = _ADDRESS_RE.search(body)
        return match.group(0).strip(" .,") if match else body

    if slot.type_class == SlotType.NUMERIC:
        match = _NUMBER_RE.search(body)
        if match:
            return match.group(0)
        word = normalize(body)
        if word in _WORD_NUMBERS:
            return str(_WORD_NUMBERS[word])
        return None

    # Temporal and free text: the whole utterance minus lead-ins; Layer 1 judges it.
    return body


class LLMSlotExtractor:
    """Budget-gated LLM fallback for slot extraction."""

    def __init__(
        self,
        client: Optional[LLMClient],
        ledger: SpendLedger,
        cost_usd: float,
        timeout_s: float,
    ) -> None:
        self._client = client
        self._ledger = ledger
        self._cost_usd = cost_usd
        self._timeout_s = timeout_s

    async def extract(
        self,
        slot: Slot,
        text: str,
        config: TenantConfig,
        charge_key: str,
    ) -> Optional[str]:
        if self._client is None or not config.llm_slot_extraction_enabled:
            return None
        if not await self._ledger.allows(config.tenant_id, config.daily_llm_budget_usd):
            log.info("Slot extraction for %s skipped: daily LLM budget reached", config.tenant_id)
            return None

        await self._ledger.charge(config.tenant_id, self._cost_usd, charge_key)

        system = (
            f"{config.replies.persona}\n"
            f"Extract the caller's {slot.display_name} ({slot.type_class.value}) from "
            "their message. Reply with a single JSON line: "
            '{"value": "<extracted text>"} or {"value": null} if it is not present.'
        )
        try:
            reply = await asyncio.wait_for(
                self._client.complete(system, text), timeout=self._timeout_s,
            )
        except asyncio.TimeoutError:
            log.warning("LLM slot extraction timed out for %s", slot.name)
            return None
        except httpx.HTTPError as e:
            log.warning("LLM slot extraction failed for %s: %s", slot.name, e)
            return None

        signal = extract_json_signal(reply)
        if not signal or not signal.get("value"):
            return None
        return str(signal["value"])
