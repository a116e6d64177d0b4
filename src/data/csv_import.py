"""
CSV trade-book import: detect columns, parse dates, emit ExecutionDraft rows.

Broker exports disagree on headers ("qty" vs "quantity", "trade_date" +
"trade_time" vs one "datetime" column). Headers are mapped by alias, exact
match first, then substring match. Field-level validation (side, positive
quantity/price) is left to the ledger core so every rejection is reported
the same way.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Sequence
from zoneinfo import ZoneInfo

import pandas as pd

from ledger_core.validation import ExecutionDraft

logger = logging.getLogger("ledger.csv_import")

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "symbol": ("symbol", "stock", "instrument", "ticker", "name", "script"),
    "side": ("type", "trade_type", "side", "buy_sell", "transaction_type", "action"),
    "quantity": ("quantity", "qty", "volume", "shares"),
    "price": ("price", "rate", "avg_price", "execution_price", "fill_price"),
    "date": ("datetime", "timestamp", "date", "trade_date", "order_execution_time"),
    "time": ("time", "trade_time"),
    "commission": ("commission", "brokerage", "fees", "fee"),
    "trade_id": ("trade_id", "order_id", "execution_id", "id"),
}
ESSENTIAL_FIELDS = ("symbol", "side", "quantity", "price", "date")

_DMY = re.compile(r"^(\d{1,2})[-/](\d{1,2})[-/](\d{4})(?:[ T](\d{1,2}):(\d{2})(?::(\d{2}))?)?$")


def _normalize_header(header: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", header.strip().lower()).strip("_")


@dataclass
class ColumnMapping:
    fields: dict[str, str]  # field -> CSV header
    confidence: float  # share of essential fields mapped

    @property
    def missing(self) -> list[str]:
        return [f for f in ESSENTIAL_FIELDS if f not in self.fields]

    @property
    def complete(self) -> bool:
        return not self.missing


@dataclass(frozen=True)
class RowError:
    row: int  # 1-based data row, header excluded
    message: str


@dataclass
class CsvImportResult:
    drafts: list[ExecutionDraft]
    mapping: ColumnMapping
    total_rows: int
    errors: list[RowError] = field(default_factory=list)


def detect_columns(headers: Sequence[str]) -> ColumnMapping:
    """Map CSV headers to ledger fields. Each header is used at most once."""
    normalized = {_normalize_header(h): h for h in headers}
    mapped: dict[str, str] = {}
    used: set[str] = set()

    for exact in (True, False):
        for fld, aliases in FIELD_ALIASES.items():
            if fld in mapped:
                continue
            for alias in aliases:
                hit = None
                for norm, original in normalized.items():
                    if original in used:
                        continue
                    if (norm == alias) if exact else (len(alias) > 2 and alias in norm):
                        hit = original
                        break
                if hit is not None:
                    mapped[fld] = hit
                    used.add(hit)
                    break

    found = sum(1 for f in ESSENTIAL_FIELDS if f in mapped)
    return ColumnMapping(fields=mapped, confidence=round(found / len(ESSENTIAL_FIELDS), 2))


def parse_trade_datetime(date_text: str, time_text: str | None = None, *, tz: str = "UTC") -> datetime:
    """
    Parse DD-MM-YYYY, DD/MM/YYYY or ISO dates, optionally joined with a time column.
    Naive results are localized to *tz* and returned timezone-aware.
    """
    text = date_text.strip()
    if time_text and time_text.strip():
        text = f"{text} {time_text.strip()}"
    if not text:
        raise ValueError("missing date")

    m = _DMY.match(text)
    if m:
        day, month, year, hh, mm, ss = m.groups()
        parsed = datetime(int(year), int(month), int(day), int(hh or 0), int(mm or 0), int(ss or 0))
    else:
        try:
            stamp = pd.Timestamp(text)
        except (ValueError, TypeError) as exc:
            raise ValueError(f"unparseable date {text!r}") from exc
        if pd.isna(stamp):
            raise ValueError(f"unparseable date {text!r}")
        parsed = stamp.to_pydatetime()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(tz))
    return parsed


def load_executions_csv(
    path: str | Path,
    mapping: ColumnMapping | dict[str, str] | None = None,
    *,
    timezone: str = "UTC",
) -> CsvImportResult:
    """Read a trade-book CSV into drafts. Raises ValueError when essential columns are missing."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False, skipinitialspace=True)
    if mapping is None:
        mapping = detect_columns(list(df.columns))
    elif isinstance(mapping, dict):
        found = sum(1 for f in ESSENTIAL_FIELDS if f in mapping)
        mapping = ColumnMapping(fields=dict(mapping), confidence=round(found / len(ESSENTIAL_FIELDS), 2))
    if not mapping.complete:
        raise ValueError(f"CSV is missing required columns: {', '.join(mapping.missing)}")

    cols = mapping.fields
    drafts: list[ExecutionDraft] = []
    errors: list[RowError] = []
    for i, record in enumerate(df.to_dict("records"), start=1):
        if not any(str(v).strip() for v in record.values()):
            continue
        try:
            ts = parse_trade_datetime(
                record.get(cols["date"], ""),
                record.get(cols["time"]) if "time" in cols else None,
                tz=timezone,
            )
        except ValueError as exc:
            errors.append(RowError(row=i, message=str(exc)))
            continue
        drafts.append(
            ExecutionDraft(
                symbol=record.get(cols["symbol"]),
                side=record.get(cols["side"]),
                quantity=record.get(cols["quantity"]),
                price=record.get(cols["price"]),
                timestamp=ts,
                commission=record.get(cols["commission"]) or None if "commission" in cols else None,
                external_trade_id=record.get(cols["trade_id"]) or None if "trade_id" in cols else None,
                row=i,
            )
        )
    logger.info("Parsed %d rows from %s (%d date errors)", len(drafts), path, len(errors))
    return CsvImportResult(drafts=drafts, mapping=mapping, total_rows=len(df), errors=errors)
