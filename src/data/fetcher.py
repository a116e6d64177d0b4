"""
Fetch executed fills from a broker. Configurable adapter; sync for MVP.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence

from ledger_core.validation import ExecutionDraft


@dataclass
class FetchResult:
    """Result of a fetch: execution drafts and optional next cursor for pagination."""

    drafts: list[ExecutionDraft]
    source: str
    skipped: int = 0  # orders without a fill
    next_cursor: str | None = None


class ExecutionFetcher(Protocol):
    """Protocol for fill fetchers. Implement per broker."""

    def fetch(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        symbols: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> FetchResult:
        """Fetch fills; normalize timestamps to UTC. Returns FetchResult."""
        ...


@dataclass
class MockExecutionFetcher:
    """Returns preset drafts; for tests and when no broker is configured."""

    drafts: list[ExecutionDraft] = field(default_factory=list)

    def fetch(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        symbols: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> FetchResult:
        wanted = {s.upper() for s in symbols} if symbols else None
        drafts = [d for d in self.drafts if wanted is None or str(d.symbol).upper() in wanted]
        return FetchResult(drafts=drafts, source="mock")
