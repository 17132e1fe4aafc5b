"""Tests for the semantic tier's similarity comparators."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import numpy as np
import pytest

from frontdesk.config import Settings
from frontdesk.routing.embeddings import (
    HashingEmbedder,
    HttpEmbeddingComparator,
    cosine_scores,
    create_comparator,
)


class TestHashingEmbedder:
    async def test_rows_are_unit_length(self):
        vectors = await HashingEmbedder(dim=64).embed(["are you open today", "how much"])
        assert vectors.shape == (2, 64)
        assert np.allclose(np.linalg.norm(vectors, axis=1), 1.0)

    async def test_empty_batch(self):
        assert (await HashingEmbedder(dim=64).embed([])).shape == (0, 64)

    async def test_paraphrase_scores_above_unrelated(self):
        embedder = HashingEmbedder()
        query = (await embedder.embed(["are you guys open today"]))[0]
        refs = await embedder.embed(["are you open today", "my furnace is leaking water"])
        close, far = cosine_scores(query, refs)
        assert close > far
        assert close > 0.6

    async def test_deterministic(self):
        a = await HashingEmbedder().embed(["when are you open"])
        b = await HashingEmbedder().embed(["when are you open"])
        assert np.array_equal(a, b)

    def test_cosine_scores_empty_matrix(self):
        assert cosine_scores(np.ones(3), np.zeros((0, 3))).size == 0


class TestHttpEmbeddingComparator:
    async def test_rows_ordered_by_index(self, mock_transport):
        def handler(request):
            return httpx.Response(200, json={"data": [
                {"index": 1, "embedding": [0.0, 2.0]},
                {"index": 0, "embedding": [3.0, 0.0]},
            ]})

        mock_transport(handler)
        vectors = await HttpEmbeddingComparator("https://emb.test/v1/embeddings", "m").embed(["a", "b"])
        assert np.allclose(vectors, [[1.0, 0.0], [0.0, 1.0]])

    async def test_row_count_mismatch(self, mock_transport):
        mock_transport(lambda request: httpx.Response(200, json={"data": []}))
        with pytest.raises(httpx.DecodingError):
            await HttpEmbeddingComparator("https://emb.test/v1/embeddings", "m").embed(["a"])

    async def test_sends_bearer_key(self, mock_transport):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})

        mock_transport(handler)
        await HttpEmbeddingComparator("https://emb.test/v1/embeddings", "m", api_key="k").embed(["a"])
        assert seen["auth"] == "Bearer k"


class TestCreateComparator:
    def test_local_default(self):
        assert isinstance(create_comparator(Settings(_env_file=None)), HashingEmbedder)

    def test_http(self):
        cfg = Settings(_env_file=None, embedding_provider="http", embedding_url="https://emb.test")
        assert isinstance(create_comparator(cfg), HttpEmbeddingComparator)
