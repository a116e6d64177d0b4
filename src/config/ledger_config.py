"""
Ledger policy loader: JSON file -> frozen dataclass tree, validated against JSON Schema.

Default values:      docs/config/ledger.default.json
Schema:              docs/config/ledger_config.schema.json

Per-owner overrides: place a partial JSON file named ``ledger.{owner}.json``
next to the default config. Only the keys you want to override need to be
present; they are deep-merged on top of the base config before schema
validation.

Usage:
    from config.ledger_config import load_ledger_config
    cfg = load_ledger_config()                      # loads default
    cfg = load_ledger_config(owner="alice")         # merges ledger.alice.json if present
    cfg.numeric.policy().money(x)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

import jsonschema

from ledger_core.numeric import NumericPolicy

logger = logging.getLogger("ledger.config")

# ---------------------------------------------------------------------------
# Project root detection (walk up from this file to find pyproject.toml)
# ---------------------------------------------------------------------------


def _find_project_root() -> Path:
    """Walk up from this file looking for pyproject.toml.

    When running from source, finds the repo root. When installed as a
    package, pyproject.toml won't exist; fall back to CWD.
    """
    candidate = Path(__file__).resolve().parent
    for _ in range(10):
        if (candidate / "pyproject.toml").exists():
            return candidate
        parent = candidate.parent
        if parent == candidate:
            break
        candidate = parent
    return Path.cwd()


_PROJECT_ROOT = _find_project_root()

DEFAULT_CONFIG_PATH = _PROJECT_ROOT / "docs" / "config" / "ledger.default.json"
DEFAULT_SCHEMA_PATH = _PROJECT_ROOT / "docs" / "config" / "ledger_config.schema.json"


# ---------------------------------------------------------------------------
# Frozen dataclass tree; mirrors ledger.default.json
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NumericConfig:
    quantity_scale: int = 8
    price_scale: int = 8
    money_scale: int = 4
    percent_scale: int = 4
    rounding: str = "ROUND_HALF_EVEN"

    def policy(self) -> NumericPolicy:
        return NumericPolicy(
            quantity_scale=self.quantity_scale,
            price_scale=self.price_scale,
            money_scale=self.money_scale,
            percent_scale=self.percent_scale,
            rounding=self.rounding,
        )


@dataclass(frozen=True)
class IntegrityConfig:
    quantity_epsilon: Decimal = Decimal("0.00000001")
    check_after_incremental: bool = True
    auto_rebuild: bool = True


@dataclass(frozen=True)
class ReconciliationConfig:
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.05
    max_backoff_seconds: float = 1.0
    max_reported_errors: int = 10
    max_workers: int = 1
    allow_short: bool = True
    lock_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class LedgerConfig:
    """Top-level ledger policy: numeric precision, integrity and reconciliation knobs."""
    version: str = "1.0"
    numeric: NumericConfig = field(default_factory=NumericConfig)
    integrity: IntegrityConfig = field(default_factory=IntegrityConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)


# ---------------------------------------------------------------------------
# Deep merge for per-owner overrides
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overrides* into a copy of *base*.

    - Dict values are merged recursively (override keys win).
    - Non-dict values in overrides replace the base value.
    - Keys in base that are absent from overrides are preserved.
    """
    merged = dict(base)
    for key, val in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(val, dict):
            merged[key] = _deep_merge(merged[key], val)
        else:
            merged[key] = val
    return merged


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class LedgerConfigError(Exception):
    """Raised when ledger config loading or validation fails."""


def _validate_schema(data: dict[str, Any], schema_path: Path) -> None:
    """Validate *data* against the JSON Schema at *schema_path*."""
    if not schema_path.exists():
        raise LedgerConfigError(f"Schema file not found: {schema_path}")
    with open(schema_path) as f:
        schema = json.load(f)
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as exc:
        raise LedgerConfigError(f"Ledger config validation failed: {exc.message}") from exc


def _build_config(data: dict[str, Any]) -> LedgerConfig:
    """Convert a raw dict (already validated) into the frozen dataclass tree."""
    num = data.get("numeric", {})
    integ = data.get("integrity", {})
    rec = data.get("reconciliation", {})
    return LedgerConfig(
        version=data["version"],
        numeric=NumericConfig(
            quantity_scale=num.get("quantity_scale", 8),
            price_scale=num.get("price_scale", 8),
            money_scale=num.get("money_scale", 4),
            percent_scale=num.get("percent_scale", 4),
            rounding=num.get("rounding", "ROUND_HALF_EVEN"),
        ),
        integrity=IntegrityConfig(
            # Kept as text in JSON so the epsilon is exact.
            quantity_epsilon=Decimal(str(integ.get("quantity_epsilon", "0.00000001"))),
            check_after_incremental=integ.get("check_after_incremental", True),
            auto_rebuild=integ.get("auto_rebuild", True),
        ),
        reconciliation=ReconciliationConfig(
            retry_attempts=rec.get("retry_attempts", 3),
            retry_backoff_seconds=float(rec.get("retry_backoff_seconds", 0.05)),
            max_backoff_seconds=float(rec.get("max_backoff_seconds", 1.0)),
            max_reported_errors=rec.get("max_reported_errors", 10),
            max_workers=rec.get("max_workers", 1),
            allow_short=rec.get("allow_short", True),
            lock_timeout_seconds=float(rec.get("lock_timeout_seconds", 30.0)),
        ),
    )


def load_ledger_config(
    config_path: str | Path | None = None,
    schema_path: str | Path | None = None,
    owner: str | None = None,
) -> LedgerConfig:
    """Load and validate the ledger policy configuration.

    Parameters
    ----------
    config_path:
        Path to a ledger JSON config file. Defaults to ``docs/config/ledger.default.json``.
    schema_path:
        Path to the JSON Schema file. Defaults to ``docs/config/ledger_config.schema.json``.
    owner:
        Optional owner id. When provided, the loader looks for a per-owner
        override file ``ledger.{owner}.json`` in the same directory as the
        base config and deep-merges it before schema validation. A missing
        override file is not an error.

    Returns
    -------
    LedgerConfig
        Frozen dataclass tree with all ledger parameters.

    Raises
    ------
    LedgerConfigError
        If the file is missing, unparseable, or fails schema validation.
    """
    cfg_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    sch_path = Path(schema_path) if schema_path else DEFAULT_SCHEMA_PATH

    if not cfg_path.exists():
        raise LedgerConfigError(f"Ledger config file not found: {cfg_path}")

    try:
        with open(cfg_path) as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise LedgerConfigError(f"Ledger config is not valid JSON: {exc}") from exc

    if owner:
        override_path = cfg_path.parent / f"ledger.{owner}.json"
        if override_path.exists():
            try:
                with open(override_path) as f:
                    overrides = json.load(f)
            except json.JSONDecodeError as exc:
                raise LedgerConfigError(
                    f"Per-owner config {override_path.name} is not valid JSON: {exc}"
                ) from exc
            data = _deep_merge(data, overrides)
            logger.info("Loaded per-owner config: %s", override_path.name)
        else:
            logger.debug("No per-owner config found at %s, using defaults", override_path)

    _validate_schema(data, sch_path)

    return _build_config(data)
