"""
Wiring shared by CLI commands and the watch loop: store, ledger policy,
orchestrator, journal and structured events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cli.structured_log import StructuredEventLogger
from config.ledger_config import load_ledger_config
from config.loader import AppConfig
from data.ledger_store import LedgerStore
from journal import JournalWriter
from reconciliation import ReconciliationOrchestrator, ReconciliationResult

logger = logging.getLogger("ledger.runtime")


@dataclass
class LedgerRuntime:
    owner: str
    orchestrator: ReconciliationOrchestrator
    journal: JournalWriter
    events: StructuredEventLogger


def build_runtime(cfg: AppConfig) -> LedgerRuntime:
    """Every orchestrator event goes to both the journal and the structured log."""
    ledger_cfg = load_ledger_config(cfg.ledger_config_path, owner=cfg.owner)
    store = LedgerStore(cfg.store.path, timeout=cfg.store.timeout_seconds)
    journal = JournalWriter(cfg.journal.path, echo_stdout=cfg.journal.echo_stdout)
    events = StructuredEventLogger(
        cfg.owner,
        enabled=cfg.alerting.structured_logs,
        webhook_url=cfg.alerting.webhook_url,
    )

    def on_event(event_type: str, payload: dict) -> None:
        journal.record(event_type, payload)
        events.record(event_type, payload)

    orchestrator = ReconciliationOrchestrator(store, ledger_cfg, on_event=on_event)
    return LedgerRuntime(owner=cfg.owner, orchestrator=orchestrator, journal=journal, events=events)


def sync_from_broker(
    runtime: LedgerRuntime,
    cfg: AppConfig,
    *,
    days: int | None = None,
    symbols: list[str] | None = None,
) -> ReconciliationResult:
    """Fetch filled orders for the lookback window and submit them as one batch."""
    from data import get_alpaca_fetcher

    if cfg.broker.source != "alpaca":
        raise ValueError(f"Unsupported broker source: {cfg.broker.source!r}")
    fetcher = get_alpaca_fetcher(cfg.broker.api_key, cfg.broker.api_secret, paper=cfg.broker.paper)
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days if days is not None else cfg.broker.lookback_days)
    fetched = fetcher.fetch(start=start, end=end, symbols=symbols)
    runtime.journal.broker_sync(runtime.owner, fetched.source, len(fetched.drafts), fetched.skipped, start, end)
    logger.info("Broker sync: %d fills from %s", len(fetched.drafts), fetched.source)
    return runtime.orchestrator.submit_executions(
        runtime.owner,
        fetched.drafts,
        source="broker",
        label=f"{fetched.source} {start:%Y-%m-%d}..{end:%Y-%m-%d}",
    )
