"""Similarity comparators for the semantic tier.

A comparator turns a batch of texts into L2-normalized row vectors; the
tier takes dot products to get cosine similarity.
"""

from __future__ import annotations

import logging
import zlib
from abc import ABC, abstractmethod

import httpx
import numpy as np

from frontdesk.config import Settings

log = logging.getLogger("frontdesk.routing.embeddings")


def l2_normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of one normalized query row against normalized rows."""
    if matrix.size == 0:
        return np.zeros(0)
    return matrix @ query


class SimilarityComparator(ABC):
    name: str = "comparator"

    @abstractmethod
    async def embed(self, texts: list[str]) -> np.ndarray:
        """Return a ``(len(texts), dim)`` array of L2-normalized vectors."""


class HashingEmbedder(SimilarityComparator):
    """Local bag-of-words plus character-trigram embedding.

    No network and no model download; good enough to catch paraphrases
    that share most of their words or word stems.
    """

    name = "local"

    def __init__(self, dim: int = 512) -> None:
        self._dim = dim

    def _features(self, text: str) -> list[tuple[str, float]]:
        words = text.split()
        features = [(f"w:{w}", 1.0) for w in words]
        for w in words:
            padded = f"#{w}#"
            features.extend((f"c:{padded[i:i + 3]}", 0.5) for i in range(len(padded) - 2))
        return features

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self._dim, dtype=np.float64)
        for feature, weight in self._features(text):
            h = zlib.crc32(feature.encode("utf-8"))
            sign = 1.0 if (h >> 31) & 1 else -1.0
            vec[h % self._dim] += sign * weight
        return vec

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self._dim))
        return l2_normalize(np.vstack([self._vector(t) for t in texts]))


class HttpEmbeddingComparator(SimilarityComparator):
    """OpenAI-compatible ``/embeddings`` endpoint."""

    name = "http"

    def __init__(self, url: str, model: str, api_key: str = "", timeout_s: float = 5.0) -> None:
        self._url = url
        self._model = model
        self._api_key = api_key
        self._timeout_s = timeout_s

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0))
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            resp = await client.post(
                self._url,
                headers=headers,
                json={"model": self._model, "input": texts},
            )
            resp.raise_for_status()
            data = resp.json()

        rows = sorted(data.get("data", []), key=lambda d: d.get("index", 0))
        if len(rows) != len(texts):
            raise httpx.DecodingError(
                f"embedding endpoint returned {len(rows)} vectors for {len(texts)} inputs"
            )
        return l2_normalize(np.array([r["embedding"] for r in rows], dtype=np.float64))


def create_comparator(settings: Settings) -> SimilarityComparator:
    if settings.embedding_provider == "http":
        log.info("Semantic tier using HTTP embeddings at %s", settings.embedding_url)
        return HttpEmbeddingComparator(
            url=settings.embedding_url,
            model=settings.embedding_model,
            api_key=settings.embedding_api_key,
            timeout_s=max(settings.semantic_timeout_ms / 1000, 0.1),
        )
    return HashingEmbedder()
