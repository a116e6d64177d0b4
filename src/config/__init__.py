"""
Configuration loaders.

App config:     reads config.yaml, resolves env vars for secrets.
Ledger config:  reads ledger.default.json (or override), validates against JSON Schema.
"""

from config.ledger_config import (
    IntegrityConfig,
    LedgerConfig,
    LedgerConfigError,
    NumericConfig,
    ReconciliationConfig,
    load_ledger_config,
)
from config.loader import (
    AlertingConfig,
    AppConfig,
    BrokerConfig,
    ImportConfig,
    JournalConfig,
    StoreConfig,
    WatchConfig,
    load_config,
)

__all__ = [
    # App config (YAML)
    "AlertingConfig",
    "AppConfig",
    "BrokerConfig",
    "ImportConfig",
    "JournalConfig",
    "StoreConfig",
    "WatchConfig",
    "load_config",
    # Ledger config (JSON + schema)
    "IntegrityConfig",
    "LedgerConfig",
    "LedgerConfigError",
    "NumericConfig",
    "ReconciliationConfig",
    "load_ledger_config",
]
