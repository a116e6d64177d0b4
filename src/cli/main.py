"""
CLI entry point: ledger import-csv | sync | rebuild | check | positions | trades | ...

Every command loads config from --config (default config.yaml), prints a
human-readable summary, and journals what the orchestrator did.
"""

import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from config import load_config

load_dotenv()

logger = logging.getLogger("ledger")


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s  %(message)s",
        stream=sys.stderr,
    )


def _runtime(ctx: click.Context):
    from cli.runtime import build_runtime

    cfg = load_config(ctx.obj["config_path"])
    return cfg, build_runtime(cfg)


def _fail(message: str) -> None:
    click.echo(message, err=True)
    raise SystemExit(1)


@click.group()
@click.option("--config", "config_path", default="config.yaml", help="Path to config file.")
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """trade-ledger: FIFO trade matching, open positions and self-healing reconciliation."""
    _setup_logging()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------- ledger detect-columns ----------


@cli.command("detect-columns")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
def detect_columns_cmd(csv_path: str) -> None:
    """Show how the CSV headers would be mapped, without importing."""
    import pandas as pd

    from cli.output import format_mapping
    from data.csv_import import detect_columns

    headers = list(pd.read_csv(csv_path, nrows=0).columns)
    mapping = detect_columns(headers)
    click.echo(format_mapping(mapping))
    if not mapping.complete:
        raise SystemExit(1)


# ---------- ledger import-csv ----------


@cli.command("import-csv")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--label", default=None, help="Batch label (default: file name).")
@click.option("--map", "overrides", multiple=True, help="Column override field=header, e.g. --map quantity=Shares.")
@click.pass_context
def import_csv(ctx: click.Context, csv_path: str, label: str | None, overrides: tuple[str, ...]) -> None:
    """Import a trade-book CSV as one batch and reconcile it."""
    from cli.output import format_mapping, format_reconciliation, format_row_errors
    from data.csv_import import detect_columns, load_executions_csv

    cfg, runtime = _runtime(ctx)
    mapping = None
    if overrides:
        import pandas as pd

        mapping = detect_columns(list(pd.read_csv(csv_path, nrows=0).columns)).fields
        for item in overrides:
            fld, sep, header = item.partition("=")
            if not sep or not fld.strip() or not header.strip():
                _fail(f"Invalid --map value {item!r}; expected field=header")
            mapping[fld.strip()] = header.strip()

    try:
        parsed = load_executions_csv(csv_path, mapping, timezone=cfg.import_.timezone)
    except ValueError as exc:
        _fail(f"Cannot import {csv_path}: {exc}")

    click.echo(format_mapping(parsed.mapping))
    if parsed.errors:
        click.echo(f"{len(parsed.errors)} row(s) with unreadable dates skipped:")
        click.echo(format_row_errors(parsed.errors, runtime.orchestrator.config.reconciliation.max_reported_errors))

    runtime.journal.import_file(
        runtime.owner,
        csv_path,
        parsed.total_rows,
        parsed.mapping.fields,
        parsed.mapping.confidence,
        date_errors=len(parsed.errors),
    )
    result = runtime.orchestrator.submit_executions(
        runtime.owner,
        parsed.drafts,
        source="csv",
        label=label or Path(csv_path).name,
    )
    click.echo(format_reconciliation(result))
    if not result.ok:
        raise SystemExit(1)


# ---------- ledger sync ----------


@cli.command()
@click.option("--days", default=None, type=int, help="Lookback in calendar days (default: broker.lookback_days).")
@click.option("--symbol", "symbols", multiple=True, help="Only fetch these symbols (repeatable).")
@click.pass_context
def sync(ctx: click.Context, days: int | None, symbols: tuple[str, ...]) -> None:
    """Fetch filled orders from the broker and reconcile them."""
    from cli.output import format_reconciliation
    from cli.runtime import sync_from_broker

    cfg, runtime = _runtime(ctx)
    try:
        result = sync_from_broker(runtime, cfg, days=days, symbols=list(symbols) or None)
    except (ValueError, ImportError) as exc:
        _fail(f"Broker sync failed: {exc}")
    click.echo(format_reconciliation(result))
    if not result.ok:
        raise SystemExit(1)


# ---------- ledger rebuild ----------


@cli.command()
@click.option("--symbol", default=None, help="Rebuild one symbol only (default: all).")
@click.pass_context
def rebuild(ctx: click.Context, symbol: str | None) -> None:
    """Discard derived rows and re-derive them from the execution history."""
    from cli.output import format_rebuild

    _, runtime = _runtime(ctx)
    report = runtime.orchestrator.run_full_rebuild(runtime.owner, symbol)
    click.echo(format_rebuild(report))
    if not report.ok:
        raise SystemExit(1)


# ---------- ledger check ----------


@cli.command()
@click.option("--repair", is_flag=True, default=False, help="Rebuild the affected symbols when drift is found.")
@click.option("--strict", is_flag=True, default=False, help="Exit 1 when drift is found (and not repaired).")
@click.pass_context
def check(ctx: click.Context, repair: bool, strict: bool) -> None:
    """Verify matched trades and positions against raw executions."""
    from cli.output import format_integrity, format_rebuild

    _, runtime = _runtime(ctx)
    orchestrator = runtime.orchestrator
    if repair:
        report, rebuilt = orchestrator.repair(runtime.owner)
    else:
        report, rebuilt = orchestrator.check_integrity(runtime.owner), None
    click.echo(format_integrity(report))
    if rebuilt is not None:
        click.echo(format_rebuild(rebuilt))
        if not rebuilt.ok:
            raise SystemExit(1)
    elif strict and report.rebuild_required:
        raise SystemExit(1)


# ---------- ledger positions / trades / summary / batches ----------


@cli.command()
@click.option("--include-closed", is_flag=True, default=False, help="Also show manually closed positions.")
@click.pass_context
def positions(ctx: click.Context, include_closed: bool) -> None:
    """List open positions."""
    from cli.output import format_positions

    _, runtime = _runtime(ctx)
    click.echo(format_positions(runtime.orchestrator.store.list_positions(runtime.owner, include_closed=include_closed)))


@cli.command()
@click.option("--symbol", default=None, help="Only this symbol.")
@click.option("--limit", default=None, type=int, help="Show at most N trades.")
@click.pass_context
def trades(ctx: click.Context, symbol: str | None, limit: int | None) -> None:
    """List matched (realized) trades."""
    from cli.output import format_matched_trades

    _, runtime = _runtime(ctx)
    sym = symbol.strip().upper() if symbol else None
    click.echo(format_matched_trades(runtime.orchestrator.store.list_matched_trades(runtime.owner, sym, limit=limit)))


@cli.command()
@click.pass_context
def summary(ctx: click.Context) -> None:
    """Performance metrics over all matched trades."""
    from cli.output import format_metrics
    from ledger_core.metrics import compute_performance

    _, runtime = _runtime(ctx)
    click.echo(format_metrics(compute_performance(runtime.orchestrator.store.list_matched_trades(runtime.owner))))


@cli.command()
@click.pass_context
def batches(ctx: click.Context) -> None:
    """List upload and sync batches."""
    from cli.output import format_batches

    _, runtime = _runtime(ctx)
    click.echo(format_batches(runtime.orchestrator.store.list_batches(runtime.owner)))


@cli.command("delete-batch")
@click.argument("batch_id")
@click.pass_context
def delete_batch(ctx: click.Context, batch_id: str) -> None:
    """Delete one batch's executions and rebuild the symbols it touched."""
    from cli.output import format_rebuild
    from ledger_core.errors import BatchNotFoundError

    _, runtime = _runtime(ctx)
    try:
        report = runtime.orchestrator.delete_batch(runtime.owner, batch_id)
    except BatchNotFoundError as exc:
        _fail(str(exc))
    click.echo(format_rebuild(report))


# ---------- ledger position lifecycle ----------


@cli.command("close-position")
@click.argument("symbol")
@click.option("--reason", default=None, help="Why the position was closed.")
@click.option("--notes", default=None)
@click.pass_context
def close_position(ctx: click.Context, symbol: str, reason: str | None, notes: str | None) -> None:
    """Hide a position from the open list (quantities are untouched)."""
    _position_action(ctx, lambda o, owner: o.close_position(owner, symbol, reason, notes))


@cli.command("reopen-position")
@click.argument("symbol")
@click.option("--notes", default=None)
@click.pass_context
def reopen_position(ctx: click.Context, symbol: str, notes: str | None) -> None:
    """Undo a manual close."""
    _position_action(ctx, lambda o, owner: o.reopen_position(owner, symbol, notes))


@cli.command("mark-investment")
@click.argument("symbol")
@click.option("--unset", is_flag=True, default=False, help="Clear the investment flag.")
@click.option("--notes", default=None)
@click.pass_context
def mark_investment(ctx: click.Context, symbol: str, unset: bool, notes: str | None) -> None:
    """Flag a position as a long-term investment."""
    _position_action(ctx, lambda o, owner: o.mark_investment(owner, symbol, not unset, notes))


@cli.command()
@click.argument("symbol")
@click.argument("text", required=False, default=None)
@click.pass_context
def notes(ctx: click.Context, symbol: str, text: str | None) -> None:
    """Set (or clear, with no TEXT) the notes on a position."""
    _position_action(ctx, lambda o, owner: o.update_notes(owner, symbol, text))


def _position_action(ctx: click.Context, action) -> None:
    from cli.output import format_position_line
    from ledger_core.errors import PositionNotFoundError

    _, runtime = _runtime(ctx)
    try:
        position = action(runtime.orchestrator, runtime.owner)
    except PositionNotFoundError as exc:
        _fail(str(exc))
    click.echo(format_position_line(position))


# ---------- ledger watch ----------


@cli.command()
@click.option("--iterations", default=None, type=int, help="Stop after N cycles (default: run until Ctrl+C).")
@click.pass_context
def watch(ctx: click.Context, iterations: int | None) -> None:
    """Periodically check (and repair) the ledger; optionally sync the broker first."""
    from cli.scheduler import run_watch_loop

    cfg = load_config(ctx.obj["config_path"])
    run_watch_loop(cfg, iterations=iterations)


# ---------- ledger health ----------


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check system health: config, ledger policy, store access, integrity.

    Exit code 0 = healthy, 1 = unhealthy. Designed for Docker HEALTHCHECK.
    """
    checks: list[tuple[str, bool, str]] = []

    try:
        cfg = load_config(ctx.obj["config_path"])
        checks.append(("config", True, f"loaded (owner={cfg.owner})"))
    except Exception as e:
        checks.append(("config", False, str(e)))
        _print_health(checks)
        raise SystemExit(1)

    try:
        from config.ledger_config import load_ledger_config
        ledger_cfg = load_ledger_config(cfg.ledger_config_path, owner=cfg.owner)
        checks.append(("ledger_config", True, f"validated (rounding={ledger_cfg.numeric.rounding})"))
    except Exception as e:
        checks.append(("ledger_config", False, str(e)))
        ledger_cfg = None

    try:
        from data.ledger_store import LedgerStore
        store = LedgerStore(cfg.store.path, timeout=cfg.store.timeout_seconds)
        checks.append(("store", True, f"{store.count_executions(cfg.owner)} executions in {cfg.store.path}"))
    except Exception as e:
        checks.append(("store", False, str(e)))
        store = None

    if store is not None:
        try:
            from ledger_core.integrity import IntegrityChecker
            kwargs = {"epsilon": ledger_cfg.integrity.quantity_epsilon} if ledger_cfg else {}
            report = IntegrityChecker(store, **kwargs).check(cfg.owner)
            if report.rebuild_required:
                checks.append(("integrity", False, f"drift in {', '.join(report.affected_symbols)}"))
            else:
                checks.append(("integrity", True, "consistent"))
        except Exception as e:
            checks.append(("integrity", False, str(e)))

    _print_health(checks)
    healthy = all(ok for _, ok, _ in checks)
    raise SystemExit(0 if healthy else 1)


def _print_health(checks: list[tuple[str, bool, str]]) -> None:
    for name, ok, detail in checks:
        status = "OK" if ok else "FAIL"
        click.echo(f"  [{status}] {name}: {detail}")
    healthy = all(ok for _, ok, _ in checks)
    click.echo(f"\nHealth: {'HEALTHY' if healthy else 'UNHEALTHY'}")


if __name__ == "__main__":
    cli()
