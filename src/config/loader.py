"""
Config loader: YAML file -> frozen dataclass tree.

API secrets resolved from environment variables (APCA_API_KEY_ID, APCA_API_SECRET_KEY).
Config file holds only non-secret values.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import yaml


@dataclass(frozen=True)
class StoreConfig:
    path: str = "data/ledger.db"
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class BrokerConfig:
    source: str = "alpaca"
    paper: bool = True
    lookback_days: int = 7
    api_key: str = ""
    api_secret: str = ""


@dataclass(frozen=True)
class ImportConfig:
    timezone: str = "UTC"  # applied to naive CSV dates


@dataclass(frozen=True)
class JournalConfig:
    path: str = "data/journal.jsonl"
    echo_stdout: bool = False


@dataclass(frozen=True)
class AlertingConfig:
    structured_logs: bool = True
    webhook_url: str = ""


@dataclass(frozen=True)
class WatchConfig:
    interval: str = "1h"
    auto_repair: bool = True
    sync_broker: bool = False


@dataclass(frozen=True)
class AppConfig:
    owner: str
    store: StoreConfig
    broker: BrokerConfig
    import_: ImportConfig
    journal: JournalConfig
    alerting: AlertingConfig = AlertingConfig()
    watch: WatchConfig = WatchConfig()
    ledger_config_path: str | None = None  # None -> docs/config/ledger.default.json


def load_config(path: str | Path = "config.yaml") -> AppConfig:
    """
    Load configuration from a YAML file.

    API keys are resolved from environment variables:
      - APCA_API_KEY_ID
      - APCA_API_SECRET_KEY
    These follow Alpaca's standard env var names.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    s_raw = raw.get("store", {})
    store_cfg = StoreConfig(
        path=str(s_raw.get("path", "data/ledger.db")),
        timeout_seconds=float(s_raw.get("timeout_seconds", 10.0)),
    )

    b_raw = raw.get("broker", {})
    broker_cfg = BrokerConfig(
        source=b_raw.get("source", "alpaca"),
        paper=bool(b_raw.get("paper", True)),
        lookback_days=int(b_raw.get("lookback_days", 7)),
        api_key=os.environ.get("APCA_API_KEY_ID", ""),
        api_secret=os.environ.get("APCA_API_SECRET_KEY", ""),
    )

    i_raw = raw.get("import", {})
    import_cfg = ImportConfig(timezone=str(i_raw.get("timezone", "UTC")))

    j_raw = raw.get("journal", {})
    j_cfg = JournalConfig(
        path=j_raw.get("path", "data/journal.jsonl"),
        echo_stdout=bool(j_raw.get("echo_stdout", False)),
    )

    a_raw = raw.get("alerting", {})
    a_cfg = AlertingConfig(
        structured_logs=bool(a_raw.get("structured_logs", True)),
        webhook_url=str(a_raw.get("webhook_url", "")),
    )

    w_raw = raw.get("watch", {})
    w_cfg = WatchConfig(
        interval=str(w_raw.get("interval", "1h")),
        auto_repair=bool(w_raw.get("auto_repair", True)),
        sync_broker=bool(w_raw.get("sync_broker", False)),
    )

    ledger_path = raw.get("ledger_config_path")
    return AppConfig(
        owner=str(raw.get("owner", "default")),
        store=store_cfg,
        broker=broker_cfg,
        import_=import_cfg,
        journal=j_cfg,
        alerting=a_cfg,
        watch=w_cfg,
        ledger_config_path=str(ledger_path) if ledger_path else None,
    )
