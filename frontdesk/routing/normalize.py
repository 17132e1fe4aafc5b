"""Utterance normalization for the deterministic and semantic tiers."""

from __future__ import annotations

import re

from frontdesk.flows.schema import NormalizationConfig

_PUNCT_RE = re.compile(r"[^\w\s']+")
_WS_RE = re.compile(r"\s+")


def _alternation(phrases: list[str]) -> re.Pattern | None:
    cleaned = sorted({p for p in phrases if p}, key=len, reverse=True)
    if not cleaned:
        return None
    body = "|".join(re.escape(p) for p in cleaned)
    return re.compile(rf"(?<![\w'])(?:{body})(?![\w'])")


class TextNormalizer:
    """Case-fold, strip punctuation, map synonyms to their canonical term
    and drop filler words. Triggers and utterances go through the same
    normalizer so they compare like for like."""

    def __init__(self, config: NormalizationConfig) -> None:
        self._canonical: dict[str, str] = {}
        for canonical, aliases in config.synonyms.items():
            for alias in aliases:
                self._canonical[self._clean(alias)] = self._clean(canonical)
        self._synonym_re = _alternation(list(self._canonical))
        self._filler_re = _alternation([self._clean(w) for w in config.filler_words])

    @staticmethod
    def _clean(text: str) -> str:
        text = _PUNCT_RE.sub(" ", text.casefold())
        return _WS_RE.sub(" ", text).strip()

    def normalize(self, text: str) -> str:
        result = self._clean(text)
        if self._synonym_re is not None:
            result = self._synonym_re.sub(lambda m: self._canonical[m.group(0)], result)
        if self._filler_re is not None:
            result = self._filler_re.sub(" ", result)
        return _WS_RE.sub(" ", result).strip()

    def tokens(self, text: str) -> list[str]:
        normalized = self.normalize(text)
        return normalized.split() if normalized else []


def contains_phrase(haystack: str, phrase: str) -> bool:
    """Whole-phrase match on word boundaries; both sides already normalized."""
    if not phrase:
        return False
    return re.search(rf"(?<![\w']){re.escape(phrase)}(?![\w'])", haystack) is not None
