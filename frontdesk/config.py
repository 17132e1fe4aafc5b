"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("frontdesk.config")


class Settings(BaseSettings):
    # LLM (tier 3 and slot-extraction helper)
    llm_provider: str = "disabled"  # "anthropic", "ollama" or "disabled"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-haiku-latest"
    anthropic_url: str = "https://api.anthropic.com/v1/messages"
    ollama_model: str = "qwen2.5:7b"
    ollama_url: str = "http://localhost:11434"
    llm_timeout_ms: int = 2500
    llm_call_cost_usd: float = 0.01

    # Semantic tier
    embedding_provider: str = "local"  # "local" or "http"
    embedding_url: str = ""
    embedding_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    semantic_timeout_ms: int = 400

    # Session state store
    redis_url: str = ""  # empty → in-memory store
    session_ttl_s: int = 30 * 60
    terminated_ttl_s: int = 5 * 60
    lease_ttl_ms: int = 15_000
    lease_wait_ms: int = 5_000

    # Tenant configuration
    tenant_config_dir: str = "data/tenants"
    config_staleness_s: float = 30.0

    # Daily LLM spend is bucketed by this timezone
    budget_timezone: str = "America/Chicago"

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-ant-...", "changeme"}

        if self.llm_provider not in {"anthropic", "ollama", "disabled"}:
            raise ValueError(
                f"LLM_PROVIDER={self.llm_provider!r} is not one of "
                "anthropic, ollama, disabled."
            )

        if self.llm_provider == "anthropic":
            if not self.anthropic_api_key or self.anthropic_api_key in _placeholders:
                raise ValueError(
                    "ANTHROPIC_API_KEY is missing or still a placeholder. "
                    "Set it in .env or use LLM_PROVIDER=disabled."
                )

        if self.embedding_provider == "http" and not self.embedding_url:
            raise ValueError("EMBEDDING_PROVIDER=http requires EMBEDDING_URL.")

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        if not self.redis_url:
            warnings.append(
                "REDIS_URL not set. Sessions live in process memory and are "
                "not shared between workers."
            )

        if self.llm_provider == "disabled":
            warnings.append("LLM_PROVIDER=disabled. Tier 3 fallback is off for every tenant.")

        return warnings


settings = Settings()
