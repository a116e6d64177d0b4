"""Tests for the SQLite ledger store: round trips, atomicity, rebuild application."""

import sqlite3
import tempfile
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import OWNER, _ts, make_execution
from data.ledger_store import LedgerStore
from ledger_core.aggregator import FullRebuildAggregator, IncrementalAggregator
from ledger_core.contracts import Batch
from ledger_core.errors import PersistenceError


def _batch(batch_id: str = "batch-1") -> Batch:
    return Batch(id=batch_id, owner=OWNER, source="csv", created_at=_ts(2024, 1, 2), label="trades.csv")


def test_store_creates_file_and_wal() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nested" / "ledger.db"
        store = LedgerStore(path)
        assert path.exists()
        conn = sqlite3.connect(str(path))
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        finally:
            conn.close()
        assert store.count_executions(OWNER) == 0


def test_execution_round_trip_preserves_decimals(store: LedgerStore) -> None:
    ex = replace(
        make_execution("BUY", "0.12345678", "101.10000000", _ts(2024, 1, 2), commission="0.0100"),
        external_trade_id="T1",
        batch_id="batch-1",
    )
    with store.transaction() as tx:
        tx.ensure_batch(_batch())
        stored = tx.insert_executions([ex])

    assert stored[0].sequence is not None
    loaded = store.list_executions(OWNER)[0]
    assert loaded.quantity == Decimal("0.12345678")
    assert str(loaded.price) == "101.10000000"
    assert loaded.commission == Decimal("0.0100")
    assert loaded.timestamp == ex.timestamp
    assert loaded.external_trade_id == "T1"
    assert loaded.sequence == stored[0].sequence


def test_executions_ordered_by_time_then_arrival(store: LedgerStore) -> None:
    ts = _ts(2024, 1, 2)
    later = make_execution("BUY", "1", "10", _ts(2024, 1, 3))
    first = make_execution("BUY", "1", "10", ts)
    second = make_execution("BUY", "1", "11", ts)
    with store.transaction() as tx:
        tx.insert_executions([later, first, second])

    assert [ex.id for ex in store.list_executions(OWNER)] == [first.id, second.id, later.id]


def test_transaction_rolls_back_on_error(store: LedgerStore) -> None:
    ex = make_execution("BUY", "1", "10", _ts(2024, 1, 2))
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.insert_executions([ex])
            raise RuntimeError("boom")

    assert store.list_executions(OWNER) == []


def test_sqlite_error_becomes_persistence_error(store: LedgerStore) -> None:
    ex = replace(make_execution("BUY", "1", "10", _ts(2024, 1, 2)), external_trade_id="T1")
    dup = replace(make_execution("BUY", "1", "10", _ts(2024, 1, 2)), external_trade_id="T1")
    with pytest.raises(PersistenceError):
        with store.transaction() as tx:
            tx.insert_executions([ex, dup])

    assert store.count_executions(OWNER) == 0


def test_known_external_ids(store: LedgerStore) -> None:
    rows = [replace(make_execution("BUY", "1", "10", _ts(2024, 1, 2)), external_trade_id=f"T{i}") for i in range(3)]
    with store.transaction() as tx:
        tx.insert_executions(rows)

    with store.snapshot() as snap:
        assert snap.known_external_ids(OWNER, ["T0", "T2", "T9", None]) == {"T0", "T2"}
        assert snap.known_external_ids("bob", ["T0"]) == set()


def test_apply_incremental_update(store: LedgerStore) -> None:
    batch = [make_execution("BUY", "10", "100", _ts(2024, 1, 2)), make_execution("SELL", "4", "110", _ts(2024, 1, 3))]
    with store.transaction() as tx:
        stored = tx.insert_executions(batch)
        update = IncrementalAggregator().aggregate(OWNER, "AAPL", stored, None)
        tx.apply(update)

    executions = store.list_executions(OWNER)
    assert [ex.matched_quantity for ex in executions] == [Decimal(4), Decimal(4)]
    assert executions[1].is_fully_matched
    assert len(store.list_matched_trades(OWNER)) == 1
    position = store.get_position(OWNER, "aapl")
    assert position.net_quantity == Decimal(6)


def test_apply_rebuild_replaces_matches(store: LedgerStore) -> None:
    history = [make_execution("BUY", "10", "100", _ts(2024, 1, 2)), make_execution("SELL", "10", "110", _ts(2024, 1, 3))]
    with store.transaction() as tx:
        stored = tx.insert_executions(history)
        tx.apply(IncrementalAggregator().aggregate(OWNER, "AAPL", stored, None))

    with store.transaction() as tx:
        update = FullRebuildAggregator().aggregate(OWNER, "AAPL", tx.executions(OWNER, "AAPL"), tx.position(OWNER, "AAPL"))
        removed = tx.apply(update)

    assert removed == 1
    assert len(store.list_matched_trades(OWNER)) == 1
    assert store.get_position(OWNER, "AAPL") is None
    assert all(ex.is_fully_matched for ex in store.list_executions(OWNER))


def test_position_upsert_and_closed_filter(store: LedgerStore) -> None:
    with store.transaction() as tx:
        stored = tx.insert_executions([make_execution("BUY", "5", "20", _ts(2024, 1, 2))])
        tx.apply(IncrementalAggregator().aggregate(OWNER, "AAPL", stored, None))

    position = store.get_position(OWNER, "AAPL")
    with store.transaction() as tx:
        tx.save_position(replace(position, is_manually_closed=True, manual_close_reason="gone", manual_close_date=_ts(2024, 2, 1)))

    assert store.list_positions(OWNER) == []
    closed = store.list_positions(OWNER, include_closed=True)
    assert len(closed) == 1
    assert closed[0].manual_close_reason == "gone"
    assert closed[0].manual_close_date == _ts(2024, 2, 1)


def test_batches_and_deletion(store: LedgerStore) -> None:
    ex = replace(make_execution("BUY", "1", "10", _ts(2024, 1, 2)), batch_id="batch-1")
    with store.transaction() as tx:
        tx.ensure_batch(_batch())
        tx.ensure_batch(_batch())
        tx.insert_executions([ex])

    batches = store.list_batches(OWNER)
    assert len(batches) == 1
    batch, count = batches[0]
    assert batch.label == "trades.csv" and count == 1

    with store.transaction() as tx:
        assert tx.batch_symbols(OWNER, "batch-1") == ["AAPL"]
        assert tx.delete_executions(OWNER, batch_id="batch-1") == 1
        assert tx.delete_batch(OWNER, "batch-1") == 1
    assert store.list_batches(OWNER) == []


def test_symbols_include_derived_only_rows(store: LedgerStore) -> None:
    with store.transaction() as tx:
        stored = tx.insert_executions([make_execution("BUY", "5", "20", _ts(2024, 1, 2), symbol="MSFT")])
        tx.apply(IncrementalAggregator().aggregate(OWNER, "MSFT", stored, None))
        tx.delete_executions(OWNER)
        tx.insert_executions([make_execution("BUY", "1", "20", _ts(2024, 1, 2), symbol="AAPL")])

    with store.snapshot() as snap:
        assert snap.symbols(OWNER) == ["AAPL", "MSFT"]
