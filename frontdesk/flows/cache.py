"""Tenant configuration cache with invalidation and bounded staleness.

The configuration collaborator emits ``(tenant_id, version)`` whenever a
tenant's configuration changes. ``invalidate`` marks the cached copy
stale and the next ``get`` reloads it. Independently of invalidation
events, no entry is served longer than ``staleness_s`` seconds after it
was fetched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from frontdesk.faults import TenantConfigError
from frontdesk.flows.loader import load_tenant_config_jsonl
from frontdesk.flows.schema import TenantConfig

log = logging.getLogger("frontdesk.flows.cache")


class TenantConfigSource(ABC):
    """Where tenant configurations come from."""

    @abstractmethod
    async def fetch(self, tenant_id: str) -> TenantConfig:
        """Return the current configuration for ``tenant_id``.

        Raises:
            TenantConfigError: if the tenant has no configuration.
        """


class DirectoryConfigSource(TenantConfigSource):
    """One ``<tenant_id>.jsonl`` file per tenant in a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    async def fetch(self, tenant_id: str) -> TenantConfig:
        path = self._directory / f"{tenant_id}.jsonl"
        if not path.exists():
            raise TenantConfigError(f"No configuration file for tenant {tenant_id!r} at {path}")
        try:
            config = load_tenant_config_jsonl(path)
        except ValueError as e:
            raise TenantConfigError(f"Invalid configuration for tenant {tenant_id!r}: {e}") from e
        if config.tenant_id != tenant_id:
            raise TenantConfigError(
                f"{path} declares tenant {config.tenant_id!r}, expected {tenant_id!r}"
            )
        return config


class StaticConfigSource(TenantConfigSource):
    """In-memory configurations; ``put`` replaces a tenant's config."""

    def __init__(self, configs: Optional[dict[str, TenantConfig]] = None) -> None:
        self._configs: dict[str, TenantConfig] = dict(configs or {})

    def put(self, config: TenantConfig) -> None:
        self._configs[config.tenant_id] = config

    async def fetch(self, tenant_id: str) -> TenantConfig:
        config = self._configs.get(tenant_id)
        if config is None:
            raise TenantConfigError(f"Unknown tenant {tenant_id!r}")
        return config


@dataclass
class _Entry:
    config: TenantConfig
    fetched_at: float
    stale: bool = False


class TenantConfigCache:
    def __init__(
        self,
        source: TenantConfigSource,
        staleness_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._staleness_s = staleness_s
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, tenant_id: str) -> TenantConfig:
        entry = self._entries.get(tenant_id)
        if entry and self._is_fresh(entry):
            return entry.config

        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        async with lock:
            entry = self._entries.get(tenant_id)
            if entry and self._is_fresh(entry):
                return entry.config

            config = await self._source.fetch(tenant_id)
            self._entries[tenant_id] = _Entry(config=config, fetched_at=self._clock())
            if entry is None or entry.config.version != config.version:
                log.info("Tenant %s config loaded (version %d)", tenant_id, config.version)
            return config

    def invalidate(self, tenant_id: str, version: Optional[int] = None) -> bool:
        """Mark a tenant's cached config stale.

        With ``version`` given, only entries older than that version are
        invalidated. Returns True if an entry was marked stale.
        """
        entry = self._entries.get(tenant_id)
        if entry is None:
            return False
        if version is not None and entry.config.version >= version:
            log.debug(
                "Ignoring invalidation for %s: cached version %d >= %d",
                tenant_id, entry.config.version, version,
            )
            return False
        entry.stale = True
        log.info("Tenant %s config invalidated (event version %s)", tenant_id, version)
        return True

    def cached_version(self, tenant_id: str) -> Optional[int]:
        entry = self._entries.get(tenant_id)
        return entry.config.version if entry else None

    def _is_fresh(self, entry: _Entry) -> bool:
        if entry.stale:
            return False
        return (self._clock() - entry.fetched_at) < self._staleness_s
