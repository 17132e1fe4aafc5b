from .normalize import TextNormalizer
from .router import IntelligentResponseRouter, RouteContext
from .tiers import DeterministicTier, LLMTier, SemanticTier, Tier, TierResult, default_tiers

__all__ = [
    "DeterministicTier",
    "IntelligentResponseRouter",
    "LLMTier",
    "RouteContext",
    "SemanticTier",
    "TextNormalizer",
    "Tier",
    "TierResult",
    "default_tiers",
]
