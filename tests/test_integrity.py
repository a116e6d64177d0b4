"""Tests for the integrity checker scans."""

from dataclasses import replace
from decimal import Decimal

from conftest import OWNER, _ts, make_execution
from ledger_core.aggregator import FullRebuildAggregator
from ledger_core.integrity import IntegrityChecker, evaluate_integrity


def _consistent_ledger():
    b1 = make_execution("BUY", "10", "100", _ts(2024, 1, 2))
    b2 = make_execution("BUY", "5", "110", _ts(2024, 1, 3))
    s1 = make_execution("SELL", "12", "120", _ts(2024, 1, 4))
    update = FullRebuildAggregator().aggregate(OWNER, "AAPL", [b1, b2, s1], None)
    executions = [ex.with_matched(update.consumed[ex.id]) for ex in (b1, b2, s1)]
    return executions, update.matched, [update.position]


def test_consistent_ledger_passes() -> None:
    executions, matched, positions = _consistent_ledger()

    report = evaluate_integrity(OWNER, executions, matched, positions)

    assert not report.rebuild_required
    assert report.affected_symbols == []


def test_detects_orphaned_match() -> None:
    executions, matched, positions = _consistent_ledger()
    buy_of_first_match = matched[0].buy_execution_id
    survivors = [ex for ex in executions if ex.id != buy_of_first_match]

    report = evaluate_integrity(OWNER, survivors, matched, positions)

    assert report.rebuild_required
    assert matched[0].id in report.orphaned_matches
    assert report.affected_symbols == ["AAPL"]


def test_detects_quantity_mismatch() -> None:
    executions, matched, positions = _consistent_ledger()
    wrong = [replace(positions[0], net_quantity=Decimal(4))]

    report = evaluate_integrity(OWNER, executions, matched, wrong)

    assert len(report.mismatched_symbols) == 1
    mismatch = report.mismatched_symbols[0]
    assert mismatch.expected == Decimal(3)
    assert mismatch.actual == Decimal(4)
    assert mismatch.difference == Decimal(1)


def test_missing_position_counts_as_zero() -> None:
    executions, matched, _ = _consistent_ledger()

    report = evaluate_integrity(OWNER, executions, matched, [])

    assert report.mismatched_symbols[0].actual == 0


def test_position_without_executions_is_flagged() -> None:
    _, _, positions = _consistent_ledger()

    report = evaluate_integrity(OWNER, [], [], positions)

    assert [m.symbol for m in report.mismatched_symbols] == ["AAPL"]


def test_difference_within_epsilon_is_ignored() -> None:
    executions, matched, positions = _consistent_ledger()
    nudged = [replace(positions[0], net_quantity=Decimal("3.000000001"))]

    report = evaluate_integrity(OWNER, executions, matched, nudged)

    assert report.mismatched_symbols == []


def test_detects_over_matching() -> None:
    executions, matched, positions = _consistent_ledger()
    doubled = matched + [replace(matched[0], id="dup")]

    report = evaluate_integrity(OWNER, executions, doubled, positions)

    assert matched[0].buy_execution_id in report.overmatched_executions


def test_detects_consumption_drift() -> None:
    executions, matched, positions = _consistent_ledger()
    drifted = [executions[0].with_matched(Decimal(0))] + executions[1:]

    report = evaluate_integrity(OWNER, drifted, matched, positions)

    assert report.drifted_executions == [executions[0].id]
    assert report.rebuild_required


def test_checker_reads_store_snapshot(store) -> None:
    executions, matched, positions = _consistent_ledger()
    with store.transaction() as tx:
        tx.insert_executions([replace(ex, matched_quantity=Decimal(0)) for ex in executions])
        tx.insert_matched_trades(matched)
        tx.save_position(positions[0])

    report = IntegrityChecker(store).check(OWNER)

    # consumption was never recorded on the stored rows
    assert len(report.drifted_executions) == 3
    assert report.affected_pairs == [(OWNER, "AAPL")]


def test_detects_unaccounted_quantity() -> None:
    buy = make_execution("BUY", "10", "100", _ts(2024, 1, 2))
    sell = make_execution("SELL", "10", "110", _ts(2024, 1, 3))

    # net is flat and no position is stored, but neither leg was matched
    report = evaluate_integrity(OWNER, [buy, sell], [], [])

    assert report.mismatched_symbols == []
    assert report.rebuild_required
    unaccounted = report.unaccounted_symbols[0]
    assert unaccounted.symbol == "AAPL"
    assert unaccounted.expected == Decimal(0)
    assert unaccounted.actual == Decimal(20)
    assert report.affected_symbols == ["AAPL"]


def test_unmatched_quantity_matching_short_position_passes() -> None:
    sell = make_execution("SELL", "5", "100", _ts(2024, 1, 2))
    update = FullRebuildAggregator().aggregate(OWNER, "AAPL", [sell], None)

    report = evaluate_integrity(OWNER, [sell], [], [update.position])

    assert report.unaccounted_symbols == []
    assert not report.rebuild_required
