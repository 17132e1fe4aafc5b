"""Intelligent response router: the tier cascade.

Tiers run strictly in order; a tier runs only when every earlier tier
missed its threshold. The router returns a :class:`Decision` and never
touches session state.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from frontdesk import audit_events as ev
from frontdesk.audit_events import AuditBroadcaster, get_broadcaster
from frontdesk.flows.schema import ScenarioCard, TenantConfig
from frontdesk.models.decision import Decision, Signal
from frontdesk.routing.normalize import TextNormalizer
from frontdesk.routing.tiers import RoutingContext, Tier, TierResult

log = logging.getLogger("frontdesk.routing.router")


@dataclass
class RouteContext:
    """Per-turn facts the router needs beyond the utterance."""

    call_id: str
    turn_index: int
    lane: str = "discovery"
    scheduling_pending: bool = False   # accepted earlier, no slot written yet
    hangup: Optional[asyncio.Event] = None


def choose_response(card: ScenarioCard, call_id: str, turn_index: int):
    """Deterministic pick among a card's responses, stable across replays."""
    if not card.responses:
        return None
    digest = hashlib.sha256(f"{call_id}:{turn_index}:{card.card_id}".encode()).hexdigest()
    return card.responses[int(digest, 16) % len(card.responses)]


class IntelligentResponseRouter:
    def __init__(
        self,
        tiers: list[Tier],
        audit_for: Callable[[str], AuditBroadcaster] = get_broadcaster,
    ) -> None:
        self._tiers = sorted(tiers, key=lambda t: t.number)
        self._audit_for = audit_for
        self._normalizers: dict[tuple[str, int], TextNormalizer] = {}

    def normalizer(self, config: TenantConfig) -> TextNormalizer:
        key = (config.tenant_id, config.version)
        if key not in self._normalizers:
            for stale in [k for k in self._normalizers if k[0] == config.tenant_id]:
                del self._normalizers[stale]
            self._normalizers[key] = TextNormalizer(config.normalization)
        return self._normalizers[key]

    async def route(self, text: str, config: TenantConfig, context: RouteContext) -> Decision:
        audit = self._audit_for(context.call_id)
        normalizer = self.normalizer(config)
        ctx = RoutingContext(
            text=text,
            normalized=normalizer.normalize(text),
            config=config,
            normalizer=normalizer,
            call_id=context.call_id,
            turn_index=context.turn_index,
            hangup=context.hangup,
        )

        def emit(event_type: str, data: dict) -> None:
            audit.emit(event_type, context.lane, {"turn_index": context.turn_index, **data})

        for tier in self._tiers:
            if tier.number >= 3 and context.scheduling_pending:
                emit(ev.TIER_MISS, {"tier": tier.number, "skipped": "scheduling_pending"})
                return self._defer()

            result = await tier.evaluate(ctx)

            if result.abandoned:
                emit(ev.LLM_ABANDONED, {"tier": tier.number})
                return Decision(tier=tier.number, abandoned=True)

            if result.budget_skipped:
                emit(ev.BUDGET_EXCEEDED, {"tier": tier.number, "tenant_id": config.tenant_id})
                log.info("Tier %d skipped for %s: daily LLM budget reached",
                         tier.number, config.tenant_id)
                return Decision(
                    tier=tier.number,
                    signals=frozenset({Signal.BUDGET_EXCEEDED, Signal.ESCALATE}),
                )

            if result.hit:
                emit(ev.TIER_SELECTED, {
                    "tier": tier.number,
                    "card_id": result.card.card_id if result.card else None,
                    "confidence": round(result.confidence, 4),
                    "matched": result.matched,
                })
                return self._decide(result, config, context)

            emit(ev.TIER_MISS, {
                "tier": tier.number,
                "confidence": round(result.confidence, 4),
                "card_id": result.card.card_id if result.card else None,
                **result.detail,
            })

        if context.scheduling_pending:
            return self._defer()
        return Decision(tier=0, response_text=config.replies.default_reply)

    @staticmethod
    def _defer() -> Decision:
        return Decision(tier=0, signals=frozenset({Signal.DEFER_TO_BOOKING}))

    def _decide(self, result: TierResult, config: TenantConfig, context: RouteContext) -> Decision:
        card = result.card
        if card is None:
            # Tier 3 answered but named no known card.
            return Decision(
                tier=result.tier,
                confidence=result.confidence,
                response_text=config.replies.llm_safe_reply,
            )

        if card.escalates:
            return Decision(
                tier=result.tier, confidence=result.confidence, card_id=card.card_id,
                signals=frozenset({Signal.ESCALATE}),
            )

        if card.accepts_scheduling and config.booking_enabled:
            return Decision(
                tier=result.tier, confidence=result.confidence, card_id=card.card_id,
                signals=frozenset({Signal.SCHEDULING_ACCEPTED, Signal.DEFER_TO_BOOKING}),
            )

        response = choose_response(card, context.call_id, context.turn_index)
        return Decision(
            tier=result.tier,
            confidence=result.confidence,
            card_id=card.card_id,
            response_id=response.id if response else None,
            response_text=response.text if response else config.replies.default_reply,
        )
