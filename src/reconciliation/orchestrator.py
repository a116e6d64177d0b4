"""
Reconciliation orchestrator: the single entry point collaborators call.

Per submitted batch:
RECEIVED -> GROUPED_BY_SYMBOL -> MATCHED -> PERSISTED -> INTEGRITY_CHECKED
-> OK | REBUILD_TRIGGERED -> DONE

One run per owner at a time (owner lock). Each symbol group is matched and
persisted in its own store transaction under its (owner, symbol) lock, so a
failed or cancelled symbol never leaves half-written matches or positions
and never blocks the other symbols of the batch.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence, TypeVar

from config.ledger_config import LedgerConfig
from data.ledger_store import LedgerStore
from ledger_core.aggregator import FullRebuildAggregator, IncrementalAggregator, SymbolUpdate
from ledger_core.contracts import Batch, Execution, OpenPosition
from ledger_core.errors import (
    BatchNotFoundError,
    LedgerError,
    PersistenceError,
    PositionNotFoundError,
    ReconciliationCancelled,
    ShortExposureError,
)
from ledger_core.integrity import IntegrityChecker, IntegrityReport
from ledger_core.numeric import canonical
from ledger_core.validation import dedupe_executions, group_by_symbol, validate_executions
from reconciliation.locks import LockRegistry
from reconciliation.results import RebuildReport, ReconciliationResult, ReconciliationStage, SymbolFailure

logger = logging.getLogger("ledger.orchestrator")

EventCallback = Callable[[str, dict], None]
T = TypeVar("T")

MANUAL_CLOSE_REASON = "Manually closed by user"


def _raise_if_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ReconciliationCancelled("reconciliation cancelled before commit")


def _position_payload(p: OpenPosition) -> dict[str, Any]:
    return {
        "symbol": p.symbol,
        "side": p.side.value,
        "net_quantity": canonical(p.net_quantity),
        "average_price": canonical(p.average_price),
        "commission": canonical(p.commission),
        "is_investment": p.is_investment,
        "is_manually_closed": p.is_manually_closed,
    }


def _failure_payload(f: SymbolFailure) -> dict[str, Any]:
    return {"symbol": f.symbol, "reason": f.reason, "stage": f.stage, "attempts": f.attempts}


class ReconciliationOrchestrator:
    """Turns submitted executions into persisted matched trades and open positions."""

    def __init__(
        self,
        store: LedgerStore,
        config: LedgerConfig | None = None,
        *,
        locks: LockRegistry | None = None,
        on_event: EventCallback | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._store = store
        self._config = config or LedgerConfig()
        self._policy = self._config.numeric.policy()
        self._locks = locks or LockRegistry(timeout=self._config.reconciliation.lock_timeout_seconds)
        self._incremental = IncrementalAggregator(self._policy)
        self._full = FullRebuildAggregator(self._policy)
        self._checker = IntegrityChecker(store, epsilon=self._config.integrity.quantity_epsilon)
        self._on_event = on_event
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep or time.sleep

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def config(self) -> LedgerConfig:
        return self._config

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self._on_event is not None:
            self._on_event(event_type, payload)

    # ---------- retry / fan-out ----------

    def _run_symbol(self, symbol: str, stage: str, work: Callable[[], T]) -> T | SymbolFailure:
        """Run one symbol's unit of work with bounded exponential backoff on persistence errors."""
        rec = self._config.reconciliation
        delay = rec.retry_backoff_seconds
        for attempt in range(1, rec.retry_attempts + 1):
            try:
                return work()
            except ReconciliationCancelled:
                return SymbolFailure(symbol, "cancelled", stage, attempt)
            except PersistenceError as exc:
                if attempt >= rec.retry_attempts:
                    logger.error("Giving up on %s after %d attempts: %s", symbol, attempt, exc)
                    return SymbolFailure(symbol, str(exc), stage, attempt)
                logger.warning("Persisting %s failed (attempt %d/%d): %s", symbol, attempt, rec.retry_attempts, exc)
                self._sleep(min(delay, rec.max_backoff_seconds))
                delay *= 2
            except LedgerError as exc:
                return SymbolFailure(symbol, str(exc), stage, attempt)
        raise AssertionError("unreachable")

    def _run_groups(
        self,
        symbols: Sequence[str],
        stage: str,
        work: Callable[[str], T],
    ) -> tuple[dict[str, T], list[SymbolFailure]]:
        workers = min(self._config.reconciliation.max_workers, len(symbols))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ledger-recon") as pool:
                outcomes = list(pool.map(lambda s: self._run_symbol(s, stage, lambda: work(s)), symbols))
        else:
            outcomes = [self._run_symbol(s, stage, lambda s=s: work(s)) for s in symbols]

        done: dict[str, T] = {}
        failures: list[SymbolFailure] = []
        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, SymbolFailure):
                failures.append(outcome)
                self._emit("symbol_failed", **_failure_payload(outcome))
            else:
                done[symbol] = outcome
        return done, failures

    # ---------- incremental path ----------

    def _apply_incremental(
        self,
        owner: str,
        symbol: str,
        executions: list[Execution],
        batch: Batch,
        cancel_event: threading.Event | None,
    ) -> tuple[SymbolUpdate, list[Execution]]:
        _raise_if_cancelled(cancel_event)
        with self._locks.symbol(owner, symbol):
            with self._store.transaction() as tx:
                # Re-check under the write lock: another process may have stored them meanwhile.
                known = tx.known_external_ids(owner, (ex.external_trade_id for ex in executions))
                fresh = [ex for ex in executions if ex.external_trade_id is None or ex.external_trade_id not in known]
                tx.ensure_batch(batch)
                stored = tx.insert_executions(fresh)
                existing = tx.position(owner, symbol)
                update = self._incremental.aggregate(owner, symbol, stored, existing)
                if (
                    not self._config.reconciliation.allow_short
                    and update.position is not None
                    and update.position.net_quantity < 0
                ):
                    raise ShortExposureError(
                        f"{symbol}: short exposure {canonical(update.position.net_quantity)} not permitted"
                    )
                tx.apply(update)
                _raise_if_cancelled(cancel_event)
        return update, stored

    def submit_executions(
        self,
        owner: str,
        drafts: Iterable[Any],
        *,
        source: str = "api",
        label: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ReconciliationResult:
        """
        Validate, deduplicate and reconcile a batch of executions for *owner*.

        Invalid rows are rejected with a reason and excluded; duplicates (by
        external trade id) are skipped. Each symbol group commits or rolls back
        on its own; failed symbols are listed in ``failed_symbols``. When the
        post-write integrity check finds drift, the affected symbols are fully
        rebuilt before returning.
        """
        rec = self._config.reconciliation
        integ = self._config.integrity
        run_id = str(uuid.uuid4())
        batch_id = str(uuid.uuid4())
        result = ReconciliationResult(run_id=run_id, owner=owner)
        result.stages.append(ReconciliationStage.RECEIVED)

        outcome = validate_executions(owner, drafts, self._policy, batch_id=batch_id)
        result.rejected_count = len(outcome.rejected)
        result.rejected = outcome.rejected[: rec.max_reported_errors]
        for rej in outcome.rejected:
            logger.debug("Rejected execution #%d (row %s): %s", rej.index, rej.row, rej.reason)
        self._emit(
            "reconciliation_start",
            run_id=run_id,
            owner=owner,
            source=source,
            received=len(outcome.accepted) + len(outcome.rejected),
            rejected=len(outcome.rejected),
        )

        with self._locks.owner(owner):
            with self._store.snapshot() as snap:
                known = snap.known_external_ids(owner, (ex.external_trade_id for ex in outcome.accepted))
            fresh, duplicates = dedupe_executions(outcome.accepted, known)
            result.duplicates_skipped = len(duplicates)
            groups = group_by_symbol(fresh)
            result.stages.append(ReconciliationStage.GROUPED_BY_SYMBOL)

            if groups:
                batch = Batch(id=batch_id, owner=owner, source=source, created_at=self._clock(), label=label)
                updates, failures = self._run_groups(
                    list(groups),
                    "incremental",
                    lambda s: self._apply_incremental(owner, s, groups[s], batch, cancel_event),
                )
                result.failed_symbols.extend(failures)
                if updates:
                    result.batch_id = batch_id
                    result.stages.append(ReconciliationStage.MATCHED)
                    result.stages.append(ReconciliationStage.PERSISTED)
                touched: dict[str, OpenPosition] = {}
                for symbol, (update, stored) in updates.items():
                    result.succeeded_symbols.append(symbol)
                    result.accepted_count += len(stored)
                    result.duplicates_skipped += len(groups[symbol]) - len(stored)
                    result.matched.extend(update.matched)
                    if update.position is not None:
                        touched[symbol] = update.position
                    elif update.closed:
                        result.closed_symbols.append(symbol)
                    self._emit(
                        "symbol_reconciled",
                        symbol=symbol,
                        executions=len(stored),
                        matched=len(update.matched),
                        position=_position_payload(update.position) if update.position else None,
                        closed=update.closed,
                    )

                result.cancelled = cancel_event is not None and cancel_event.is_set()
                if updates and integ.check_after_incremental and not result.cancelled:
                    report = self.check_integrity(owner)
                    result.integrity = report
                    result.stages.append(ReconciliationStage.INTEGRITY_CHECKED)
                    if report.rebuild_required:
                        result.stages.append(ReconciliationStage.REBUILD_TRIGGERED)
                        result.rebuild_triggered = True
                        self._emit(
                            "rebuild_triggered",
                            owner=owner,
                            symbols=report.affected_symbols,
                            reason=self._drift_summary(report),
                        )
                        if integ.auto_rebuild:
                            rebuild = self._rebuild_symbols(owner, report.affected_symbols, cancel_event)
                            self._merge_rebuild(result, touched, rebuild)
                    else:
                        result.stages.append(ReconciliationStage.OK)
                result.open_positions_touched = [touched[s] for s in sorted(touched)]

        result.stages.append(ReconciliationStage.DONE)
        if result.failed_symbols:
            logger.warning(
                "Reconciliation %s for %s finished with %d failed symbol(s): %s",
                run_id,
                owner,
                len(result.failed_symbols),
                ", ".join(f.symbol for f in result.failed_symbols),
            )
        else:
            logger.info(
                "Reconciliation %s for %s: %d accepted, %d matched, %d rejected, %d duplicates",
                run_id,
                owner,
                result.accepted_count,
                len(result.matched),
                result.rejected_count,
                result.duplicates_skipped,
            )
        self._emit(
            "reconciliation_complete",
            run_id=run_id,
            owner=owner,
            batch_id=result.batch_id,
            accepted=result.accepted_count,
            matched=len(result.matched),
            rejected=result.rejected_count,
            rejected_rows=[{"index": r.index, "row": r.row, "reason": r.reason} for r in result.rejected],
            duplicates=result.duplicates_skipped,
            succeeded=result.succeeded_symbols,
            failed=[_failure_payload(f) for f in result.failed_symbols],
            rebuild_triggered=result.rebuild_triggered,
            cancelled=result.cancelled,
        )
        return result

    @staticmethod
    def _merge_rebuild(result: ReconciliationResult, touched: dict[str, OpenPosition], rebuild: RebuildReport) -> None:
        rebuilt = set(rebuild.rebuilt_symbols)
        result.rebuilt_symbols = list(rebuild.rebuilt_symbols)
        result.failed_symbols.extend(rebuild.failed_symbols)
        result.matched = [m for m in result.matched if m.symbol not in rebuilt] + rebuild.matched
        for symbol in rebuilt:
            touched.pop(symbol, None)
        for p in rebuild.positions:
            touched[p.symbol] = p
        for symbol in rebuild.closed_symbols:
            if symbol not in result.closed_symbols:
                result.closed_symbols.append(symbol)

    @staticmethod
    def _drift_summary(report: IntegrityReport) -> str:
        return (
            f"{len(report.orphaned_matches)} orphaned, {len(report.mismatched_symbols)} mismatched, "
            f"{len(report.overmatched_executions)} overmatched, {len(report.drifted_executions)} drifted, "
            f"{len(report.unaccounted_symbols)} unaccounted"
        )

    # ---------- full rebuild ----------

    def _apply_rebuild(
        self,
        owner: str,
        symbol: str,
        cancel_event: threading.Event | None,
    ) -> tuple[SymbolUpdate, int]:
        _raise_if_cancelled(cancel_event)
        with self._locks.symbol(owner, symbol):
            with self._store.transaction() as tx:
                executions = tx.executions(owner, symbol)
                existing = tx.position(owner, symbol)
                update = self._full.aggregate(owner, symbol, executions, existing)
                removed = tx.apply(update)
                # Cancelling here discards the deletes together with the re-derived rows.
                _raise_if_cancelled(cancel_event)
        return update, removed

    def _rebuild_symbols(
        self,
        owner: str,
        symbols: Sequence[str],
        cancel_event: threading.Event | None,
        *,
        scope: str | None = None,
    ) -> RebuildReport:
        report = RebuildReport(owner=owner, scope=scope)
        done, failures = self._run_groups(
            list(symbols),
            "rebuild",
            lambda s: self._apply_rebuild(owner, s, cancel_event),
        )
        report.failed_symbols = failures
        for symbol, (update, removed) in done.items():
            report.rebuilt_symbols.append(symbol)
            report.matched.extend(update.matched)
            report.removed_matches += removed
            if update.position is not None:
                report.positions.append(update.position)
            elif update.previous is not None:
                report.closed_symbols.append(symbol)
        report.cancelled = cancel_event is not None and cancel_event.is_set()
        self._emit(
            "rebuild_complete",
            owner=owner,
            scope=scope,
            rebuilt=report.rebuilt_symbols,
            failed=[_failure_payload(f) for f in failures],
            matched=len(report.matched),
            removed_matches=report.removed_matches,
            positions=[_position_payload(p) for p in report.positions],
        )
        if failures:
            logger.error("Full rebuild failed for %s: %s", owner, ", ".join(f.symbol for f in failures))
        return report

    def run_full_rebuild(
        self,
        owner: str,
        symbol: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> RebuildReport:
        """
        Discard and re-derive matched trades and positions from the complete
        execution history, for one symbol or every symbol of *owner*.
        Each symbol is all-or-nothing; a failed symbol keeps its previous rows.
        """
        with self._locks.owner(owner):
            if symbol:
                symbols = [symbol.strip().upper()]
            else:
                with self._store.snapshot() as snap:
                    symbols = snap.symbols(owner)
            logger.info("Full rebuild for %s: %d symbol(s)", owner, len(symbols))
            return self._rebuild_symbols(owner, symbols, cancel_event, scope=symbol.strip().upper() if symbol else None)

    # ---------- integrity ----------

    def check_integrity(self, owner: str) -> IntegrityReport:
        """Read-only scan of *owner*'s derived state against raw executions."""
        report = self._checker.check(owner)
        self._emit(
            "integrity_checked",
            owner=owner,
            rebuild_required=report.rebuild_required,
            orphaned_matches=report.orphaned_matches,
            mismatched_symbols=[
                {"symbol": m.symbol, "expected": canonical(m.expected), "actual": canonical(m.actual)}
                for m in report.mismatched_symbols
            ],
            overmatched_executions=report.overmatched_executions,
            drifted_executions=report.drifted_executions,
            unaccounted_symbols=[
                {"symbol": m.symbol, "open": canonical(m.expected), "unmatched": canonical(m.actual)}
                for m in report.unaccounted_symbols
            ],
            affected_symbols=report.affected_symbols,
        )
        return report

    def repair(
        self,
        owner: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> tuple[IntegrityReport, RebuildReport | None]:
        """Check integrity and rebuild only the affected symbols."""
        with self._locks.owner(owner):
            report = self.check_integrity(owner)
            if not report.rebuild_required:
                return report, None
            self._emit("rebuild_triggered", owner=owner, symbols=report.affected_symbols, reason=self._drift_summary(report))
            return report, self._rebuild_symbols(owner, report.affected_symbols, cancel_event)

    # ---------- data management ----------

    def delete_batch(self, owner: str, batch_id: str) -> RebuildReport:
        """Remove one upload/sync batch, then re-derive the symbols it touched."""
        with self._locks.owner(owner):
            with self._store.transaction() as tx:
                symbols = tx.batch_symbols(owner, batch_id)
                removed = tx.delete_executions(owner, batch_id=batch_id)
                if not tx.delete_batch(owner, batch_id) and not removed:
                    raise BatchNotFoundError(f"No batch {batch_id} for {owner}")
            logger.info("Deleted batch %s for %s (%d executions)", batch_id, owner, removed)
            self._emit("batch_deleted", owner=owner, batch_id=batch_id, executions_removed=removed, symbols=symbols)
            report = self.check_integrity(owner)
            targets = sorted(set(symbols) | set(report.affected_symbols))
            return self._rebuild_symbols(owner, targets, None)

    def delete_owner_data(self, owner: str) -> RebuildReport:
        """Remove every execution and batch of *owner* and clear all derived rows."""
        with self._locks.owner(owner):
            with self._store.transaction() as tx:
                symbols = tx.symbols(owner)
                removed = tx.delete_executions(owner)
                tx.delete_batches(owner)
            logger.info("Deleted %d executions for %s", removed, owner)
            self._emit("owner_data_deleted", owner=owner, executions_removed=removed, symbols=symbols)
            return self._rebuild_symbols(owner, symbols, None)

    # ---------- position lifecycle ----------

    def _update_position(
        self,
        owner: str,
        symbol: str,
        action: str,
        change: Callable[[OpenPosition], OpenPosition],
    ) -> OpenPosition:
        symbol = symbol.strip().upper()
        with self._locks.owner(owner), self._locks.symbol(owner, symbol):
            with self._store.transaction() as tx:
                current = tx.position(owner, symbol)
                if current is None:
                    raise PositionNotFoundError(owner, symbol)
                updated = change(current)
                tx.save_position(updated)
        self._emit("position_updated", owner=owner, action=action, position=_position_payload(updated), notes=updated.notes)
        return updated

    def mark_investment(
        self,
        owner: str,
        symbol: str,
        is_investment: bool = True,
        notes: str | None = None,
    ) -> OpenPosition:
        return self._update_position(
            owner,
            symbol,
            "mark_investment",
            lambda p: replace(p, is_investment=is_investment, notes=notes if notes is not None else p.notes),
        )

    def close_position(
        self,
        owner: str,
        symbol: str,
        reason: str | None = None,
        notes: str | None = None,
    ) -> OpenPosition:
        """Hide a position from the open list without touching its quantities."""
        return self._update_position(
            owner,
            symbol,
            "close",
            lambda p: replace(
                p,
                is_manually_closed=True,
                manual_close_reason=reason or MANUAL_CLOSE_REASON,
                manual_close_date=self._clock(),
                notes=notes if notes is not None else p.notes,
            ),
        )

    def reopen_position(self, owner: str, symbol: str, notes: str | None = None) -> OpenPosition:
        return self._update_position(
            owner,
            symbol,
            "reopen",
            lambda p: replace(
                p,
                is_manually_closed=False,
                manual_close_reason=None,
                manual_close_date=None,
                notes=notes if notes is not None else p.notes,
            ),
        )

    def update_notes(self, owner: str, symbol: str, notes: str | None) -> OpenPosition:
        return self._update_position(owner, symbol, "notes", lambda p: replace(p, notes=notes))
