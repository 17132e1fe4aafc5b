"""Load JSONL tenant configurations into TenantConfig objects."""

from __future__ import annotations

import json
from pathlib import Path

from frontdesk.flows.schema import TenantConfig


def load_tenant_config_jsonl(path: str | Path) -> TenantConfig:
    """Load a single tenant configuration from a JSONL file.

    The file contains one JSON object (the tenant) on its first non-empty
    line. Scenario cards and booking flows may be given either as lists or
    as dicts keyed by their ID.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8").strip()

    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        data = json.loads(line)
        return _parse_tenant(data)

    raise ValueError(f"No tenant configuration found in {path}")


def load_tenant_configs_jsonl(path: str | Path) -> dict[str, TenantConfig]:
    """Load multiple tenant configurations from a JSONL file (one per line).

    Returns a dict keyed by tenant ID.
    """
    path = Path(path)
    tenants: dict[str, TenantConfig] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        cfg = _parse_tenant(json.loads(line))
        tenants[cfg.tenant_id] = cfg
    return tenants


def _parse_tenant(data: dict) -> TenantConfig:
    """Parse a raw dict into a TenantConfig."""
    cards = data.get("scenario_cards", [])
    if isinstance(cards, dict):
        parsed = []
        for card_id, card in cards.items():
            card.setdefault("card_id", card_id)
            parsed.append(card)
        data["scenario_cards"] = parsed

    flows = data.get("booking_flows", [])
    if isinstance(flows, dict):
        parsed = []
        for flow_id, flow in flows.items():
            flow.setdefault("flow_id", flow_id)
            parsed.append(flow)
        data["booking_flows"] = parsed

    return TenantConfig(**data)


def save_tenant_config_jsonl(config: TenantConfig, path: str | Path) -> None:
    """Persist a tenant configuration back to a JSONL file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    path.write_text(json.dumps(data) + "\n", encoding="utf-8")
