"""
Structured JSON event logger for container observability.

Emits one JSON object per line to stderr. Events are designed to be
parsed by log aggregators (Grafana Loki, CloudWatch, ELK).

Optional webhook: when configured, events that need a human
(symbol_failed, rebuild_triggered, error) are POSTed to the URL.
"""

from __future__ import annotations

import json
import logging
import sys
import urllib.request
from datetime import datetime, timezone
from typing import Any, Iterable

logger = logging.getLogger("ledger.events")

# Events that need a human; only these reach the webhook.
ALERT_EVENTS = frozenset({"symbol_failed", "rebuild_triggered", "error"})


class StructuredEventLogger:
    """Emit structured JSON events to stderr and optional webhook."""

    def __init__(
        self,
        owner: str,
        *,
        enabled: bool = True,
        webhook_url: str = "",
        stream: Any = None,
        alert_events: Iterable[str] = ALERT_EVENTS,
    ) -> None:
        self._owner = owner
        self._enabled = enabled
        self._webhook_url = webhook_url.strip()
        self._stream = stream or sys.stderr
        self._alert_events = frozenset(alert_events)

    def _emit(self, event_type: str, **fields: Any) -> dict:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "owner": self._owner,
            **fields,
        }
        if self._enabled:
            self._stream.write(json.dumps(record, default=str) + "\n")
            self._stream.flush()

        if self._webhook_url and event_type in self._alert_events:
            self._post_webhook(record)

        return record

    def _post_webhook(self, record: dict) -> None:
        try:
            data = json.dumps(record, default=str).encode("utf-8")
            req = urllib.request.Request(
                self._webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            urllib.request.urlopen(req, timeout=5)
        except Exception as exc:
            logger.warning("Webhook POST failed: %s", exc)

    def record(self, event_type: str, payload: dict) -> dict:
        """Orchestrator event callback; the owner field is always this logger's."""
        fields = {k: v for k, v in payload.items() if k != "owner"}
        return self._emit(event_type, **fields)

    def watch_cycle(self, cycle: int, rebuild_required: bool, rebuilt: list[str], synced: int = 0) -> dict:
        return self._emit(
            "watch_cycle",
            cycle=cycle,
            rebuild_required=rebuild_required,
            rebuilt=rebuilt,
            synced=synced,
        )

    def error(self, message: str, detail: str = "") -> dict:
        return self._emit("error", message=message, detail=detail)

    def shutdown(self, cycles: int) -> dict:
        return self._emit("shutdown", cycles=cycles)
