"""Pytest fixtures: executions, drafts and a throwaway ledger store."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from data.ledger_store import LedgerStore
from ledger_core.contracts import Execution, Side
from ledger_core.validation import ExecutionDraft
from reconciliation import ReconciliationOrchestrator

OWNER = "alice"


def _ts(year: int, month: int, day: int, hour: int = 9, minute: int = 30) -> datetime:
    return datetime(year, month, day, hour, minute, 0, tzinfo=timezone.utc)


def make_execution(
    side: str,
    quantity: str,
    price: str,
    ts: datetime,
    *,
    symbol: str = "AAPL",
    owner: str = OWNER,
    commission: str = "0",
    ex_id: str | None = None,
    sequence: int | None = None,
) -> Execution:
    return Execution(
        id=ex_id or str(uuid.uuid4()),
        owner=owner,
        symbol=symbol,
        side=Side(side),
        quantity=Decimal(quantity),
        price=Decimal(price),
        timestamp=ts,
        commission=Decimal(commission),
        sequence=sequence,
    )


def draft(
    side: str,
    quantity,
    price,
    ts: datetime,
    *,
    symbol: str = "AAPL",
    commission=None,
    trade_id: str | None = None,
) -> ExecutionDraft:
    return ExecutionDraft(
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        timestamp=ts,
        commission=commission,
        external_trade_id=trade_id,
    )


@pytest.fixture
def owner() -> str:
    return OWNER


@pytest.fixture
def store(tmp_path: Path) -> LedgerStore:
    return LedgerStore(tmp_path / "ledger.db")


@pytest.fixture
def events() -> list[tuple[str, dict]]:
    return []


@pytest.fixture
def orchestrator(store: LedgerStore, events: list) -> ReconciliationOrchestrator:
    return ReconciliationOrchestrator(
        store,
        on_event=lambda name, payload: events.append((name, payload)),
        clock=lambda: _ts(2024, 6, 1, 12, 0),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def round_trip_drafts() -> list[ExecutionDraft]:
    """BUY 10 @ 100, BUY 5 @ 110, SELL 12 @ 120: two matches, 3 left open @ 110."""
    return [
        draft("BUY", "10", "100", _ts(2024, 1, 2), trade_id="T1"),
        draft("BUY", "5", "110", _ts(2024, 1, 3), trade_id="T2"),
        draft("SELL", "12", "120", _ts(2024, 1, 4), trade_id="T3"),
    ]
