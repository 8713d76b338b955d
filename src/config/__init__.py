"""
Configuration loaders.

App config:    reads config.yaml, resolves env vars for secrets.
Market policy: reads policy.default.json (or override), validates against JSON Schema.
"""

from config.loader import (
    AlertingConfig,
    AppConfig,
    EscrowConfig,
    JournalConfig,
    LedgerConfig,
    PolicyConfig,
    RelayConfig,
    SettlementConfig,
    StoreConfig,
    load_config,
)
from config.policy import (
    Lifetimes,
    MarketPolicy,
    PolicyConfigError,
    SellOrderRules,
    VoucherRules,
    load_policy,
)

__all__ = [
    # App config (YAML)
    "AlertingConfig",
    "AppConfig",
    "EscrowConfig",
    "JournalConfig",
    "LedgerConfig",
    "PolicyConfig",
    "RelayConfig",
    "SettlementConfig",
    "StoreConfig",
    "load_config",
    # Market policy (JSON + schema)
    "Lifetimes",
    "MarketPolicy",
    "PolicyConfigError",
    "SellOrderRules",
    "VoucherRules",
    "load_policy",
]
