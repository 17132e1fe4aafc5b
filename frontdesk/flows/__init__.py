"""Tenant configuration: schema, JSONL loading and the invalidating cache."""

from .cache import DirectoryConfigSource, StaticConfigSource, TenantConfigCache, TenantConfigSource
from .loader import load_tenant_config_jsonl, load_tenant_configs_jsonl, save_tenant_config_jsonl
from .schema import (
    CONFIRM_STEP,
    BookingFlowDefinition,
    CardResponse,
    ConfirmationPolicy,
    ScenarioCard,
    Slot,
    SlotType,
    TenantConfig,
    ValidationVocabulary,
)

__all__ = [
    "CONFIRM_STEP",
    "BookingFlowDefinition",
    "CardResponse",
    "ConfirmationPolicy",
    "DirectoryConfigSource",
    "ScenarioCard",
    "Slot",
    "SlotType",
    "StaticConfigSource",
    "TenantConfig",
    "TenantConfigCache",
    "TenantConfigSource",
    "ValidationVocabulary",
    "load_tenant_config_jsonl",
    "load_tenant_configs_jsonl",
    "save_tenant_config_jsonl",
]
