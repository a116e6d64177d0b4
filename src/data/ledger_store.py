"""
Ledger store: executions, matched trades, open positions and batches in SQLite.

Decimals are stored as fixed-point text and timestamps as UTC ISO strings.
Writes go through ``transaction()`` (BEGIN IMMEDIATE, all-or-nothing); reads
that must see one consistent view go through ``snapshot()``.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from ledger_core.aggregator import SymbolUpdate
from ledger_core.contracts import Batch, Execution, MatchedTrade, OpenPosition, Side, TradeDirection
from ledger_core.errors import PersistenceError
from ledger_core.numeric import canonical

logger = logging.getLogger("ledger.store")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS batches (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        source TEXT NOT NULL,
        label TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS executions (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        owner TEXT NOT NULL,
        symbol TEXT NOT NULL,
        side TEXT NOT NULL,
        quantity TEXT NOT NULL,
        price TEXT NOT NULL,
        ts_utc TEXT NOT NULL,
        commission TEXT NOT NULL,
        external_trade_id TEXT,
        batch_id TEXT,
        matched_quantity TEXT NOT NULL,
        remaining_quantity TEXT NOT NULL,
        is_fully_matched INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_executions_external
        ON executions (owner, external_trade_id) WHERE external_trade_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS ix_executions_owner_symbol ON executions (owner, symbol, ts_utc)",
    """
    CREATE TABLE IF NOT EXISTS matched_trades (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        symbol TEXT NOT NULL,
        quantity TEXT NOT NULL,
        buy_price TEXT NOT NULL,
        sell_price TEXT NOT NULL,
        buy_ts_utc TEXT NOT NULL,
        sell_ts_utc TEXT NOT NULL,
        duration_minutes INTEGER NOT NULL,
        direction TEXT NOT NULL,
        commission TEXT NOT NULL,
        realized_pnl TEXT NOT NULL,
        pnl_pct TEXT NOT NULL,
        buy_execution_id TEXT NOT NULL,
        sell_execution_id TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_matched_owner_symbol ON matched_trades (owner, symbol)",
    """
    CREATE TABLE IF NOT EXISTS open_positions (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        symbol TEXT NOT NULL,
        trade_type TEXT NOT NULL,
        net_quantity TEXT NOT NULL,
        average_price TEXT NOT NULL,
        commission TEXT NOT NULL,
        opened_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        is_investment INTEGER NOT NULL DEFAULT 0,
        is_manually_closed INTEGER NOT NULL DEFAULT 0,
        manual_close_reason TEXT,
        manual_close_date TEXT,
        notes TEXT,
        UNIQUE (owner, symbol)
    )
    """,
)

_EXECUTION_COLUMNS = (
    "seq, id, owner, symbol, side, quantity, price, ts_utc, commission, "
    "external_trade_id, batch_id, matched_quantity"
)
_MATCHED_COLUMNS = (
    "id, owner, symbol, quantity, buy_price, sell_price, buy_ts_utc, sell_ts_utc, "
    "duration_minutes, direction, commission, realized_pnl, pnl_pct, buy_execution_id, sell_execution_id"
)
_POSITION_COLUMNS = (
    "owner, symbol, net_quantity, average_price, commission, opened_at, updated_at, "
    "is_investment, is_manually_closed, manual_close_reason, manual_close_date, notes"
)


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _ts_text(ts: datetime | None) -> str | None:
    return _utc(ts).isoformat() if ts is not None else None


def _parse_ts(text: str | None) -> datetime | None:
    if text is None:
        return None
    # SQLite has no native datetime; we store ISO strings
    return _utc(datetime.fromisoformat(text.replace("Z", "+00:00")))


def _row_to_execution(r: tuple) -> Execution:
    return Execution(
        id=r[1],
        owner=r[2],
        symbol=r[3],
        side=Side(r[4]),
        quantity=Decimal(r[5]),
        price=Decimal(r[6]),
        timestamp=_parse_ts(r[7]),
        commission=Decimal(r[8]),
        external_trade_id=r[9],
        batch_id=r[10],
        matched_quantity=Decimal(r[11]),
        sequence=r[0],
    )


def _row_to_matched(r: tuple) -> MatchedTrade:
    return MatchedTrade(
        id=r[0],
        owner=r[1],
        symbol=r[2],
        quantity=Decimal(r[3]),
        buy_price=Decimal(r[4]),
        sell_price=Decimal(r[5]),
        buy_timestamp=_parse_ts(r[6]),
        sell_timestamp=_parse_ts(r[7]),
        duration_minutes=int(r[8]),
        direction=TradeDirection(r[9]),
        commission=Decimal(r[10]),
        realized_pnl=Decimal(r[11]),
        pnl_pct=Decimal(r[12]),
        buy_execution_id=r[13],
        sell_execution_id=r[14],
    )


def _row_to_position(r: tuple) -> OpenPosition:
    return OpenPosition(
        owner=r[0],
        symbol=r[1],
        net_quantity=Decimal(r[2]),
        average_price=Decimal(r[3]),
        commission=Decimal(r[4]),
        opened_at=_parse_ts(r[5]),
        updated_at=_parse_ts(r[6]),
        is_investment=bool(r[7]),
        is_manually_closed=bool(r[8]),
        manual_close_reason=r[9],
        manual_close_date=_parse_ts(r[10]),
        notes=r[11],
    )


class LedgerReader:
    """Read queries bound to one open connection (and therefore one transaction)."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._c = conn

    def executions(self, owner: str, symbol: str | None = None) -> list[Execution]:
        """Executions in FIFO order (timestamp, then arrival sequence)."""
        q = f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE owner = ?"
        params: list = [owner]
        if symbol is not None:
            q += " AND symbol = ?"
            params.append(symbol)
        q += " ORDER BY symbol ASC, ts_utc ASC, seq ASC"
        return [_row_to_execution(r) for r in self._c.execute(q, params).fetchall()]

    def batch_symbols(self, owner: str, batch_id: str) -> list[str]:
        rows = self._c.execute(
            "SELECT DISTINCT symbol FROM executions WHERE owner = ? AND batch_id = ? ORDER BY symbol",
            (owner, batch_id),
        ).fetchall()
        return [r[0] for r in rows]

    def symbols(self, owner: str) -> list[str]:
        """Every symbol with raw or derived rows for *owner*."""
        rows = self._c.execute(
            """
            SELECT symbol FROM executions WHERE owner = ?
            UNION SELECT symbol FROM matched_trades WHERE owner = ?
            UNION SELECT symbol FROM open_positions WHERE owner = ?
            ORDER BY symbol
            """,
            (owner, owner, owner),
        ).fetchall()
        return [r[0] for r in rows]

    def known_external_ids(self, owner: str, external_ids: Iterable[str]) -> set[str]:
        wanted = sorted({x for x in external_ids if x})
        found: set[str] = set()
        # Stay under SQLite's bound-parameter limit.
        for start in range(0, len(wanted), 500):
            chunk = wanted[start:start + 500]
            marks = ", ".join("?" for _ in chunk)
            rows = self._c.execute(
                f"SELECT external_trade_id FROM executions WHERE owner = ? AND external_trade_id IN ({marks})",
                [owner, *chunk],
            ).fetchall()
            found.update(r[0] for r in rows)
        return found

    def count_executions(self, owner: str) -> int:
        row = self._c.execute("SELECT COUNT(*) FROM executions WHERE owner = ?", (owner,)).fetchone()
        return row[0] if row else 0

    def matched_trades(
        self,
        owner: str,
        symbol: str | None = None,
        *,
        limit: int | None = None,
    ) -> list[MatchedTrade]:
        q = f"SELECT {_MATCHED_COLUMNS} FROM matched_trades WHERE owner = ?"
        params: list = [owner]
        if symbol is not None:
            q += " AND symbol = ?"
            params.append(symbol)
        q += " ORDER BY symbol ASC, rowid ASC"
        if limit is not None:
            q += " LIMIT ?"
            params.append(limit)
        return [_row_to_matched(r) for r in self._c.execute(q, params).fetchall()]

    def position(self, owner: str, symbol: str) -> OpenPosition | None:
        row = self._c.execute(
            f"SELECT {_POSITION_COLUMNS} FROM open_positions WHERE owner = ? AND symbol = ?",
            (owner, symbol),
        ).fetchone()
        return _row_to_position(row) if row else None

    def positions(self, owner: str, include_closed: bool = True) -> list[OpenPosition]:
        q = f"SELECT {_POSITION_COLUMNS} FROM open_positions WHERE owner = ?"
        if not include_closed:
            q += " AND is_manually_closed = 0"
        q += " ORDER BY symbol ASC"
        return [_row_to_position(r) for r in self._c.execute(q, (owner,)).fetchall()]

    def batches(self, owner: str) -> list[tuple[Batch, int]]:
        """Batches with their stored execution counts, newest first."""
        rows = self._c.execute(
            """
            SELECT b.id, b.owner, b.source, b.label, b.created_at, COUNT(e.id)
            FROM batches b LEFT JOIN executions e ON e.batch_id = b.id AND e.owner = b.owner
            WHERE b.owner = ?
            GROUP BY b.id
            ORDER BY b.created_at DESC, b.id ASC
            """,
            (owner,),
        ).fetchall()
        return [
            (Batch(id=r[0], owner=r[1], source=r[2], label=r[3], created_at=_parse_ts(r[4])), r[5])
            for r in rows
        ]


class LedgerWriter(LedgerReader):
    """Mutations inside one BEGIN IMMEDIATE transaction."""

    def ensure_batch(self, batch: Batch) -> None:
        self._c.execute(
            "INSERT OR IGNORE INTO batches (id, owner, source, label, created_at) VALUES (?, ?, ?, ?, ?)",
            (batch.id, batch.owner, batch.source, batch.label, _ts_text(batch.created_at)),
        )

    def insert_executions(self, executions: Sequence[Execution]) -> list[Execution]:
        """Insert and return the executions with their arrival sequence assigned."""
        stored: list[Execution] = []
        for ex in executions:
            cur = self._c.execute(
                """
                INSERT INTO executions (id, owner, symbol, side, quantity, price, ts_utc, commission,
                                        external_trade_id, batch_id, matched_quantity, remaining_quantity,
                                        is_fully_matched)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ex.id,
                    ex.owner,
                    ex.symbol,
                    ex.side.value,
                    canonical(ex.quantity),
                    canonical(ex.price),
                    _ts_text(ex.timestamp),
                    canonical(ex.commission),
                    ex.external_trade_id,
                    ex.batch_id,
                    canonical(ex.matched_quantity),
                    canonical(ex.remaining_quantity),
                    int(ex.is_fully_matched),
                ),
            )
            stored.append(replace(ex, sequence=cur.lastrowid))
        return stored

    def _add_matched_quantity(self, execution_id: str, quantity: Decimal) -> None:
        row = self._c.execute(
            "SELECT quantity, matched_quantity FROM executions WHERE id = ?", (execution_id,)
        ).fetchone()
        if row is None:
            return
        total = Decimal(row[0])
        matched = Decimal(row[1]) + quantity
        self._c.execute(
            "UPDATE executions SET matched_quantity = ?, remaining_quantity = ?, is_fully_matched = ? WHERE id = ?",
            (canonical(matched), canonical(total - matched), int(matched == total), execution_id),
        )

    def insert_matched_trades(self, trades: Sequence[MatchedTrade]) -> None:
        for m in trades:
            self._c.execute(
                f"INSERT INTO matched_trades ({_MATCHED_COLUMNS}) VALUES ({', '.join('?' * 15)})",
                (
                    m.id,
                    m.owner,
                    m.symbol,
                    canonical(m.quantity),
                    canonical(m.buy_price),
                    canonical(m.sell_price),
                    _ts_text(m.buy_timestamp),
                    _ts_text(m.sell_timestamp),
                    m.duration_minutes,
                    m.direction.value,
                    canonical(m.commission),
                    canonical(m.realized_pnl),
                    canonical(m.pnl_pct),
                    m.buy_execution_id,
                    m.sell_execution_id,
                ),
            )

    def delete_matched_trades(self, owner: str, symbol: str | None = None) -> int:
        q = "DELETE FROM matched_trades WHERE owner = ?"
        params: list = [owner]
        if symbol is not None:
            q += " AND symbol = ?"
            params.append(symbol)
        return self._c.execute(q, params).rowcount

    def save_position(self, position: OpenPosition) -> None:
        self._c.execute(
            """
            INSERT INTO open_positions (id, owner, symbol, trade_type, net_quantity, average_price, commission,
                                        opened_at, updated_at, is_investment, is_manually_closed,
                                        manual_close_reason, manual_close_date, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (owner, symbol) DO UPDATE SET
                trade_type = excluded.trade_type,
                net_quantity = excluded.net_quantity,
                average_price = excluded.average_price,
                commission = excluded.commission,
                opened_at = excluded.opened_at,
                updated_at = excluded.updated_at,
                is_investment = excluded.is_investment,
                is_manually_closed = excluded.is_manually_closed,
                manual_close_reason = excluded.manual_close_reason,
                manual_close_date = excluded.manual_close_date,
                notes = excluded.notes
            """,
            (
                position.id,
                position.owner,
                position.symbol,
                position.trade_type.value,
                canonical(position.net_quantity),
                canonical(position.average_price),
                canonical(position.commission),
                _ts_text(position.opened_at),
                _ts_text(position.updated_at),
                int(position.is_investment),
                int(position.is_manually_closed),
                position.manual_close_reason,
                _ts_text(position.manual_close_date),
                position.notes,
            ),
        )

    def delete_position(self, owner: str, symbol: str) -> int:
        return self._c.execute(
            "DELETE FROM open_positions WHERE owner = ? AND symbol = ?", (owner, symbol)
        ).rowcount

    def delete_executions(self, owner: str, *, batch_id: str | None = None, execution_ids: Iterable[str] | None = None) -> int:
        """Delete raw executions. Derived rows are left for the integrity check to flag."""
        if batch_id is not None:
            return self._c.execute(
                "DELETE FROM executions WHERE owner = ? AND batch_id = ?", (owner, batch_id)
            ).rowcount
        if execution_ids is not None:
            removed = 0
            for ex_id in execution_ids:
                removed += self._c.execute(
                    "DELETE FROM executions WHERE owner = ? AND id = ?", (owner, ex_id)
                ).rowcount
            return removed
        return self._c.execute("DELETE FROM executions WHERE owner = ?", (owner,)).rowcount

    def delete_batch(self, owner: str, batch_id: str) -> int:
        return self._c.execute("DELETE FROM batches WHERE owner = ? AND id = ?", (owner, batch_id)).rowcount

    def delete_batches(self, owner: str) -> int:
        return self._c.execute("DELETE FROM batches WHERE owner = ?", (owner,)).rowcount

    def apply(self, update: SymbolUpdate) -> int:
        """Persist one symbol's derived-state change. Returns matched trades removed."""
        removed = 0
        if update.replaces_history:
            removed = self.delete_matched_trades(update.owner, update.symbol)
            self._c.execute(
                """
                UPDATE executions SET matched_quantity = '0', remaining_quantity = quantity, is_fully_matched = 0
                WHERE owner = ? AND symbol = ?
                """,
                (update.owner, update.symbol),
            )
        for ex_id, qty in update.consumed.items():
            if qty:
                self._add_matched_quantity(ex_id, qty)
        self.insert_matched_trades(update.matched)
        if update.position is not None:
            self.save_position(update.position)
        else:
            self.delete_position(update.owner, update.symbol)
        return removed


class LedgerStore:
    """SQLite-backed ledger. One file per path; safe for concurrent threads and processes."""

    def __init__(self, path: str | Path, *, timeout: float = 10.0) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _conn(self) -> sqlite3.Connection:
        # Autocommit mode: transaction boundaries are issued explicitly.
        conn = sqlite3.connect(str(self._path), timeout=self._timeout, isolation_level=None)
        conn.execute("PRAGMA busy_timeout = %d" % int(self._timeout * 1000))
        return conn

    def _init_schema(self) -> None:
        conn = self._conn()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            for stmt in _SCHEMA:
                conn.execute(stmt)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[LedgerWriter]:
        """All-or-nothing unit of work. Any exception rolls back every write."""
        try:
            conn = self._conn()
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open ledger store {self._path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield LedgerWriter(conn)
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise PersistenceError(f"ledger write failed: {exc}") from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                logger.warning("Rollback failed: %s", exc)

    @contextmanager
    def snapshot(self) -> Iterator[LedgerReader]:
        """Read-only view; every query inside sees the same committed state."""
        try:
            conn = self._conn()
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open ledger store {self._path}: {exc}") from exc
        try:
            conn.execute("BEGIN")
            yield LedgerReader(conn)
        except sqlite3.Error as exc:
            raise PersistenceError(f"ledger read failed: {exc}") from exc
        finally:
            self._rollback(conn)
            conn.close()

    # Convenience reads for collaborators that need a single query.

    def list_executions(self, owner: str, symbol: str | None = None) -> list[Execution]:
        with self.snapshot() as snap:
            return snap.executions(owner, symbol)

    def list_matched_trades(self, owner: str, symbol: str | None = None, *, limit: int | None = None) -> list[MatchedTrade]:
        with self.snapshot() as snap:
            return snap.matched_trades(owner, symbol, limit=limit)

    def list_positions(self, owner: str, *, include_closed: bool = False) -> list[OpenPosition]:
        with self.snapshot() as snap:
            return snap.positions(owner, include_closed=include_closed)

    def get_position(self, owner: str, symbol: str) -> OpenPosition | None:
        with self.snapshot() as snap:
            return snap.position(owner, symbol.upper())

    def list_batches(self, owner: str) -> list[tuple[Batch, int]]:
        with self.snapshot() as snap:
            return snap.batches(owner)

    def count_executions(self, owner: str) -> int:
        with self.snapshot() as snap:
            return snap.count_executions(owner)
