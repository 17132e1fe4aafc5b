"""Narrow request/response clients for the LLM provider.

The turn core only ever sends one system prompt plus one user message and
reads back text. Structured answers ride along as a JSON signal, either in
a fenced block or on a line of its own, and are pulled out with
``extract_json_signal``.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from frontdesk.config import Settings

log = logging.getLogger("frontdesk.llm")


class LLMClient(ABC):
    """Abstract LLM provider."""

    name: str = "llm"

    @abstractmethod
    async def complete(self, system: str, user: str) -> str:
        """Return the model's reply text.

        Raises:
            httpx.HTTPError: on transport or HTTP status errors.
        """


class AnthropicClient(LLMClient):
    name = "anthropic"

    def __init__(self, api_key: str, model: str, url: str, timeout_s: float = 10.0,
                 max_tokens: int = 256) -> None:
        self._api_key = api_key
        self._model = model
        self._url = url
        self._timeout_s = timeout_s
        self._max_tokens = max_tokens

    async def complete(self, system: str, user: str) -> str:
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            resp = await client.post(
                self._url,
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json={
                    "model": self._model,
                    "max_tokens": self._max_tokens,
                    "system": system,
                    "messages": [{"role": "user", "content": user}],
                },
            )
            resp.raise_for_status()
            data = resp.json()

        parts = [block.get("text", "") for block in data.get("content", [])
                 if block.get("type") == "text"]
        return "".join(parts).strip()


class OllamaClient(LLMClient):
    name = "ollama"

    def __init__(self, model: str, url: str, timeout_s: float = 10.0) -> None:
        self._model = model
        self._url = url.rstrip("/")
        self._timeout_s = timeout_s

    async def complete(self, system: str, user: str) -> str:
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            resp = await client.post(
                f"{self._url}/api/chat",
                json={
                    "model": self._model,
                    "stream": False,
                    "messages": [
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                },
            )
            resp.raise_for_status()
            data = resp.json()
        return data.get("message", {}).get("content", "").strip()


def create_llm_client(settings: Settings) -> Optional[LLMClient]:
    """Build the configured provider, or None when the LLM is disabled."""
    timeout_s = max(settings.llm_timeout_ms / 1000, 0.1)
    if settings.llm_provider == "anthropic":
        return AnthropicClient(
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            url=settings.anthropic_url,
            timeout_s=timeout_s,
        )
    if settings.llm_provider == "ollama":
        return OllamaClient(model=settings.ollama_model, url=settings.ollama_url, timeout_s=timeout_s)
    log.info("LLM provider disabled")
    return None


# ── JSON signal extraction ───────────────────────────────────────


def extract_json_signal(text: str) -> dict | None:
    """Extract a JSON signal from LLM output.

    Returns the parsed dict, or None if no signal found.
    """
    if not text:
        return None

    # Try fenced code blocks first
    pattern = r"```(?:json)?\s*\n?({.*?})\s*\n?```"
    match = re.search(pattern, text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            pass

    # Try bare JSON on its own line
    for line in text.split("\n"):
        line = line.strip()
        if line.startswith("{") and line.endswith("}"):
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed

    return None
