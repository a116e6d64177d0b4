"""Tests for config loader: YAML parsing, env var resolution, error cases."""

import os
import tempfile
from pathlib import Path

import pytest

from config import load_config


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(content)


def test_load_config_basic() -> None:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write(
            """
owner: alice
store:
  path: test_ledger.db
  timeout_seconds: 2.5
broker:
  source: alpaca
  paper: false
  lookback_days: 3
import:
  timezone: America/New_York
journal:
  path: test_journal.jsonl
watch:
  interval: "15m"
  sync_broker: true
ledger_config_path: custom/ledger.json
"""
        )
        path = f.name
    try:
        cfg = load_config(path)
        assert cfg.owner == "alice"
        assert cfg.store.path == "test_ledger.db"
        assert cfg.store.timeout_seconds == 2.5
        assert cfg.broker.paper is False
        assert cfg.broker.lookback_days == 3
        assert cfg.import_.timezone == "America/New_York"
        assert cfg.journal.path == "test_journal.jsonl"
        assert cfg.watch.interval == "15m"
        assert cfg.watch.sync_broker is True
        assert cfg.ledger_config_path == "custom/ledger.json"
    finally:
        os.unlink(path)


def test_load_config_env_vars() -> None:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("owner: bob\nbroker:\n  source: alpaca\n")
        path = f.name
    try:
        os.environ["APCA_API_KEY_ID"] = "test_key_123"
        os.environ["APCA_API_SECRET_KEY"] = "test_secret_456"
        cfg = load_config(path)
        assert cfg.broker.api_key == "test_key_123"
        assert cfg.broker.api_secret == "test_secret_456"
    finally:
        os.environ.pop("APCA_API_KEY_ID", None)
        os.environ.pop("APCA_API_SECRET_KEY", None)
        os.unlink(path)


def test_load_config_defaults() -> None:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("owner: bob\n")
        path = f.name
    try:
        cfg = load_config(path)
        assert cfg.store.path == "data/ledger.db"
        assert cfg.broker.source == "alpaca"
        assert cfg.broker.paper is True
        assert cfg.import_.timezone == "UTC"
        assert cfg.journal.echo_stdout is False
        assert cfg.alerting.structured_logs is True
        assert cfg.watch.interval == "1h"
        assert cfg.watch.auto_repair is True
        assert cfg.ledger_config_path is None
    finally:
        os.unlink(path)


def test_load_config_missing_file() -> None:
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/path.yaml")


def test_load_config_not_a_mapping(tmp_path: Path) -> None:
    p = tmp_path / "list.yaml"
    _write_yaml(p, "- one\n- two\n")
    with pytest.raises(ValueError, match="YAML mapping"):
        load_config(p)
