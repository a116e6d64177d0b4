"""
Watch loop: periodic integrity sweep (and optional broker sync) for one owner.

Each cycle optionally pulls new fills from the broker, then checks the
ledger and, with auto_repair, rebuilds only the symbols that drifted.
Ctrl+C for graceful shutdown.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

import click

from cli.runtime import LedgerRuntime, build_runtime, sync_from_broker
from config.loader import AppConfig

logger = logging.getLogger("ledger.scheduler")


def parse_interval(interval: str) -> int:
    """Convert an interval string like '15m' or '1h' to minutes."""
    text = interval.strip().lower()
    try:
        if text.endswith("m"):
            minutes = int(text[:-1])
        elif text.endswith("h"):
            minutes = int(text[:-1]) * 60
        else:
            raise ValueError(text)
    except ValueError:
        raise ValueError(f"Unsupported watch interval: {interval!r} (use e.g. '15m', '1h')") from None
    if minutes <= 0:
        raise ValueError(f"Watch interval must be positive: {interval!r}")
    return minutes


def run_cycle(runtime: LedgerRuntime, cfg: AppConfig, cycle: int, cancel_event: threading.Event | None = None) -> None:
    """One sweep: sync (when enabled), then check or repair."""
    now = datetime.now(timezone.utc)
    synced = 0
    if cfg.watch.sync_broker:
        try:
            result = sync_from_broker(runtime, cfg)
            synced = result.accepted_count
            click.echo(f"[{now:%H:%M:%S} UTC] Synced {synced} new fill(s), {result.duplicates_skipped} already stored.")
        except (ValueError, ImportError) as exc:
            logger.error("Broker sync failed: %s", exc)
            runtime.events.error("broker sync failed", str(exc))

    orchestrator = runtime.orchestrator
    if cfg.watch.auto_repair:
        report, rebuild = orchestrator.repair(runtime.owner, cancel_event=cancel_event)
    else:
        report, rebuild = orchestrator.check_integrity(runtime.owner), None

    rebuilt = rebuild.rebuilt_symbols if rebuild else []
    if report.rebuild_required:
        action = f"rebuilt {', '.join(rebuilt) or 'nothing'}" if cfg.watch.auto_repair else "repair disabled"
        click.echo(f"[{now:%H:%M:%S} UTC] Drift in {', '.join(report.affected_symbols)}: {action}.")
    else:
        click.echo(f"[{now:%H:%M:%S} UTC] Ledger consistent.")
    runtime.events.watch_cycle(cycle, report.rebuild_required, rebuilt, synced)


def run_watch_loop(
    cfg: AppConfig,
    *,
    iterations: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Main loop: run a cycle, sleep one interval, repeat.
    Returns the number of completed cycles.
    """
    interval_minutes = parse_interval(cfg.watch.interval)
    runtime = build_runtime(cfg)
    cancel_event = threading.Event()
    cycles = 0

    click.echo(f"Watching ledger for {cfg.owner} every {cfg.watch.interval}  |  Ctrl+C to stop\n")

    try:
        while iterations is None or cycles < iterations:
            cycles += 1
            run_cycle(runtime, cfg, cycles, cancel_event)
            if iterations is not None and cycles >= iterations:
                break
            sleep(interval_minutes * 60)
    except KeyboardInterrupt:
        cancel_event.set()
        click.echo(f"\n\nShutting down after {cycles} cycle(s). Goodbye.")

    runtime.events.shutdown(cycles)
    return cycles
