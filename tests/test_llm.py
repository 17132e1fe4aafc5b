"""Tests for LLM provider wiring and JSON signal extraction."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest

from frontdesk.config import Settings
from frontdesk.llm import AnthropicClient, OllamaClient, create_llm_client, extract_json_signal


class TestJsonSignalExtraction:
    def test_fenced_json(self):
        text = 'Got it.\n```json\n{"card_id": "pricing", "confidence": 0.8}\n```'
        assert extract_json_signal(text) == {"card_id": "pricing", "confidence": 0.8}

    def test_bare_json(self):
        text = 'Sure thing.\n{"value": "tomorrow morning"}'
        assert extract_json_signal(text) == {"value": "tomorrow morning"}

    def test_no_json(self):
        assert extract_json_signal("Could you tell me more?") is None

    def test_invalid_json(self):
        assert extract_json_signal('```json\n{card_id: pricing}\n```') is None

    def test_empty(self):
        assert extract_json_signal("") is None

    def test_json_in_conversation(self):
        text = (
            "That sounds like a question about our rates. I'll pull that up.\n\n"
            '```json\n{"card_id": "pricing", "confidence": 0.9}\n```'
        )
        assert extract_json_signal(text)["card_id"] == "pricing"

    def test_skips_invalid_line_then_finds_valid(self):
        text = '{not json}\n{"card_id": null}'
        assert extract_json_signal(text) == {"card_id": None}


class TestCreateLlmClient:
    def test_disabled(self):
        assert create_llm_client(Settings(_env_file=None, llm_provider="disabled")) is None

    def test_anthropic(self):
        client = create_llm_client(Settings(
            _env_file=None, llm_provider="anthropic", anthropic_api_key="sk-ant-real",
        ))
        assert isinstance(client, AnthropicClient)

    def test_ollama(self):
        client = create_llm_client(Settings(_env_file=None, llm_provider="ollama"))
        assert isinstance(client, OllamaClient)


# ── Provider request shape ────────────────────────────────────────


class TestProviders:
    async def test_anthropic_joins_text_blocks(self, mock_transport):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = request.read()
            return httpx.Response(200, json={"content": [
                {"type": "text", "text": "Sure. "},
                {"type": "text", "text": '{"card_id": "hours"}'},
            ]})

        mock_transport(handler)
        client = AnthropicClient("key-1", "model-x", "https://llm.test/v1/messages")
        reply = await client.complete("system", "what are your hours")

        assert reply == 'Sure. {"card_id": "hours"}'
        assert seen["headers"]["x-api-key"] == "key-1"
        assert b'"system":"system"' in seen["body"].replace(b" ", b"")

    async def test_ollama_reply(self, mock_transport):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/chat"
            return httpx.Response(200, json={"message": {"content": " hello \n"}})

        mock_transport(handler)
        client = OllamaClient("qwen", "http://ollama.test/")
        assert await client.complete("system", "hi") == "hello"

    async def test_http_error_propagates(self, mock_transport):
        mock_transport(lambda request: httpx.Response(500))
        client = OllamaClient("qwen", "http://ollama.test")
        with pytest.raises(httpx.HTTPStatusError):
            await client.complete("system", "hi")
