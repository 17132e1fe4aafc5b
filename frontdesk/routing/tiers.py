"""The three routing tiers, each a small strategy object.

A tier looks at the turn and returns a :class:`TierResult`. The router
walks the tiers in order and stops at the first ``hit``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx
import numpy as np

from frontdesk.budget import SpendLedger
from frontdesk.flows.schema import ScenarioCard, TenantConfig
from frontdesk.llm import LLMClient, extract_json_signal
from frontdesk.routing.embeddings import SimilarityComparator, cosine_scores
from frontdesk.routing.normalize import TextNormalizer, contains_phrase

log = logging.getLogger("frontdesk.routing.tiers")

COVERAGE_WEIGHT = 0.85


@dataclass
class RoutingContext:
    text: str
    normalized: str
    config: TenantConfig
    normalizer: TextNormalizer
    call_id: str = ""
    turn_index: int = 0
    hangup: Optional[asyncio.Event] = None


@dataclass(frozen=True)
class TierResult:
    tier: int
    card: Optional[ScenarioCard] = None
    confidence: float = 0.0
    matched: str = ""             # trigger or phrase that produced the score
    hit: bool = False
    budget_skipped: bool = False
    abandoned: bool = False
    detail: dict = field(default_factory=dict)


def pick_best(scored: list[tuple[float, ScenarioCard, str]]) -> Optional[tuple[float, ScenarioCard, str]]:
    """Highest score; ties broken by card priority, shortest match, card id."""
    if not scored:
        return None
    return min(scored, key=lambda s: (-s[0], -s[1].priority, len(s[2]), s[1].card_id))


def _disqualified(card: ScenarioCard, ctx: RoutingContext) -> bool:
    return any(
        contains_phrase(ctx.normalized, ctx.normalizer.normalize(neg))
        for neg in card.negative_triggers
    )


class Tier(ABC):
    number: int = 0
    name: str = "tier"

    @abstractmethod
    async def evaluate(self, ctx: RoutingContext) -> TierResult:
        ...


# ── Tier 1 ───────────────────────────────────────────────────────


class DeterministicTier(Tier):
    number = 1
    name = "deterministic"

    def __init__(self) -> None:
        self._regex_cache: dict[str, Optional[re.Pattern]] = {}

    def _regex(self, pattern: str) -> Optional[re.Pattern]:
        if pattern not in self._regex_cache:
            try:
                self._regex_cache[pattern] = re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                log.warning("Invalid regex trigger %r: %s", pattern, e)
                self._regex_cache[pattern] = None
        return self._regex_cache[pattern]

    def score_card(self, card: ScenarioCard, ctx: RoutingContext) -> tuple[float, str]:
        best, matched = 0.0, ""
        text_tokens = set(ctx.normalized.split())
        for trigger in card.triggers:
            phrase = ctx.normalizer.normalize(trigger)
            if not phrase:
                continue
            if contains_phrase(ctx.normalized, phrase):
                score = 1.0
            else:
                trigger_tokens = phrase.split()
                covered = sum(1 for t in trigger_tokens if t in text_tokens)
                score = COVERAGE_WEIGHT * covered / len(trigger_tokens)
            if score > best or (score == best and score > 0 and len(phrase) < len(matched)):
                best, matched = score, phrase
        for pattern in card.regex_triggers:
            compiled = self._regex(pattern)
            if compiled is not None and compiled.search(ctx.text):
                if best < 1.0 or len(pattern) < len(matched):
                    best, matched = 1.0, pattern
        return best, matched

    async def evaluate(self, ctx: RoutingContext) -> TierResult:
        scored = []
        for card in ctx.config.scenario_cards:
            if _disqualified(card, ctx):
                continue
            score, matched = self.score_card(card, ctx)
            if score > 0 and score >= card.min_confidence:
                scored.append((score, card, matched))

        best = pick_best(scored)
        if best is None:
            return TierResult(tier=self.number)
        score, card, matched = best
        return TierResult(
            tier=self.number, card=card, confidence=score, matched=matched,
            hit=score >= ctx.config.thresholds.deterministic,
        )


# ── Tier 2 ───────────────────────────────────────────────────────


@dataclass
class _CardIndex:
    cards: list[ScenarioCard]
    owners: list[int]            # row → index into cards
    phrases: list[str]
    matrix: np.ndarray


class SemanticTier(Tier):
    number = 2
    name = "semantic"

    def __init__(self, comparator: SimilarityComparator, timeout_s: float = 0.4) -> None:
        self._comparator = comparator
        self._timeout_s = timeout_s
        self._indexes: dict[tuple[str, int], _CardIndex] = {}

    async def _index(self, ctx: RoutingContext) -> _CardIndex:
        key = (ctx.config.tenant_id, ctx.config.version)
        index = self._indexes.get(key)
        if index is not None:
            return index

        cards, owners, phrases = [], [], []
        for card in ctx.config.scenario_cards:
            source = card.reference_phrases or card.triggers
            normalized = [ctx.normalizer.normalize(p) for p in source]
            normalized = [p for p in normalized if p]
            if not normalized:
                continue
            cards.append(card)
            owners.extend([len(cards) - 1] * len(normalized))
            phrases.extend(normalized)

        matrix = await self._comparator.embed(phrases)
        index = _CardIndex(cards=cards, owners=owners, phrases=phrases, matrix=matrix)
        # Older versions of this tenant are dead once a newer one is indexed.
        for stale in [k for k in self._indexes if k[0] == key[0]]:
            del self._indexes[stale]
        self._indexes[key] = index
        return index

    async def _score(self, ctx: RoutingContext) -> TierResult:
        index = await self._index(ctx)
        if not index.phrases or not ctx.normalized:
            return TierResult(tier=self.number)

        query = (await self._comparator.embed([ctx.normalized]))[0]
        scores = cosine_scores(query, index.matrix)

        per_card: dict[int, tuple[float, str]] = {}
        for row, score in enumerate(scores):
            owner = index.owners[row]
            phrase = index.phrases[row]
            current = per_card.get(owner)
            if current is None or score > current[0]:
                per_card[owner] = (float(score), phrase)

        scored = []
        for owner, (score, phrase) in per_card.items():
            card = index.cards[owner]
            if _disqualified(card, ctx) or score < card.min_confidence:
                continue
            scored.append((score, card, phrase))

        best = pick_best(scored)
        if best is None:
            return TierResult(tier=self.number)
        score, card, phrase = best
        return TierResult(
            tier=self.number, card=card, confidence=score, matched=phrase,
            hit=score >= ctx.config.thresholds.semantic,
        )

    async def evaluate(self, ctx: RoutingContext) -> TierResult:
        try:
            return await asyncio.wait_for(self._score(ctx), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            log.warning("Semantic tier timed out after %.0fms", self._timeout_s * 1000)
            return TierResult(tier=self.number, detail={"miss": "timeout"})
        except httpx.HTTPError as e:
            log.warning("Semantic comparator failed: %s", e)
            return TierResult(tier=self.number, detail={"miss": "comparator_error"})


# ── Tier 3 ───────────────────────────────────────────────────────


class LLMTier(Tier):
    number = 3
    name = "llm"

    def __init__(
        self,
        client: Optional[LLMClient],
        ledger: SpendLedger,
        cost_usd: float,
        timeout_s: float = 2.5,
    ) -> None:
        self._client = client
        self._ledger = ledger
        self._cost_usd = cost_usd
        self._timeout_s = timeout_s

    def _system_prompt(self, config: TenantConfig) -> str:
        lines = [
            config.replies.persona,
            "",
            "Classify the caller's message against these scenarios:",
        ]
        for card in config.scenario_cards:
            lines.append(f"- {card.card_id}: {card.description or ', '.join(card.triggers[:3])}")
        lines += [
            "",
            "Reply briefly, then on its own line output a JSON object:",
            '{"card_id": "<one of the ids above, or null>", "confidence": <0.0-1.0>}',
        ]
        return "\n".join(lines)

    async def evaluate(self, ctx: RoutingContext) -> TierResult:
        config = ctx.config
        if self._client is None or not config.llm_fallback_enabled:
            return TierResult(tier=self.number, detail={"miss": "disabled"})
        if not await self._ledger.allows(config.tenant_id, config.daily_llm_budget_usd):
            return TierResult(tier=self.number, budget_skipped=True)

        await self._ledger.charge(
            config.tenant_id, self._cost_usd, f"{ctx.call_id}:{ctx.turn_index}:tier3",
        )

        request = asyncio.ensure_future(self._client.complete(self._system_prompt(config), ctx.text))
        waiters = {request}
        hangup_wait = None
        if ctx.hangup is not None:
            hangup_wait = asyncio.ensure_future(ctx.hangup.wait())
            waiters.add(hangup_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self._timeout_s, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if hangup_wait is not None:
                hangup_wait.cancel()

        if hangup_wait is not None and hangup_wait in done:
            request.cancel()
            log.info("Call %s hung up while tier 3 was in flight", ctx.call_id)
            return TierResult(tier=self.number, abandoned=True)
        if request not in done:
            request.cancel()
            log.warning("LLM tier timed out after %.0fms", self._timeout_s * 1000)
            return TierResult(tier=self.number, detail={"miss": "timeout"})

        try:
            reply = request.result()
        except httpx.HTTPError as e:
            log.warning("LLM tier request failed: %s", e)
            return TierResult(tier=self.number, detail={"miss": "provider_error"})

        signal = extract_json_signal(reply) or {}
        card = config.card(str(signal.get("card_id"))) if signal.get("card_id") else None
        try:
            confidence = min(max(float(signal.get("confidence", 0.0)), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.0
        return TierResult(
            tier=self.number, card=card, confidence=confidence, hit=True,
            detail={"card_id": signal.get("card_id")},
        )


def default_tiers(
    comparator: SimilarityComparator,
    llm_client: Optional[LLMClient],
    ledger: SpendLedger,
    cost_usd: float,
    semantic_timeout_s: float,
    llm_timeout_s: float,
) -> list[Tier]:
    return [
        DeterministicTier(),
        SemanticTier(comparator, timeout_s=semantic_timeout_s),
        LLMTier(llm_client, ledger, cost_usd, timeout_s=llm_timeout_s),
    ]

