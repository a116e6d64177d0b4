"""
Audit journal: append-only JSON lines. One line per reconciliation event or user action.
"""

import json
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from ledger_core.numeric import canonical


def _serialize(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return canonical(obj)
    if isinstance(obj, Enum):
        return obj.value
    if is_dataclass(obj) and not isinstance(obj, type):
        return _serialize(asdict(obj))
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_serialize(x) for x in obj]
    return obj


class JournalWriter:
    """Append-only journal. Each line is a JSON object with event type and payload."""

    def __init__(self, path: str | Path, *, echo_stdout: bool = False) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._echo = echo_stdout

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, event_type: str, payload: dict) -> None:
        record = {"ts_utc": datetime.now(timezone.utc).isoformat(), "event": event_type, **payload}
        line = json.dumps(_serialize(record)) + "\n"
        with open(self._path, "a") as f:
            f.write(line)
        if self._echo:
            print(line.rstrip())

    def record(self, event_type: str, payload: dict) -> None:
        """Orchestrator event callback."""
        self._write(event_type, payload)

    def import_file(self, owner: str, path: str, rows: int, mapping: dict[str, str], confidence: float, **extra: Any) -> None:
        self._write(
            "import_file",
            {"owner": owner, "path": path, "rows": rows, "mapping": mapping, "confidence": confidence, **extra},
        )

    def broker_sync(self, owner: str, source: str, fetched: int, skipped: int, start: datetime | None, end: datetime | None, **extra: Any) -> None:
        self._write(
            "broker_sync",
            {"owner": owner, "source": source, "fetched": fetched, "skipped": skipped, "start": start, "end": end, **extra},
        )
