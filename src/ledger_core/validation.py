"""
Ingestion boundary: loosely typed rows -> validated Execution values.

Collaborators (CSV import, broker fetchers, API callers) hand over drafts.
Each draft either becomes an Execution or a RejectedExecution with a reason;
one bad row never aborts the rest of the batch.
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from ledger_core.contracts import Execution, Side, utc
from ledger_core.numeric import DEFAULT_POLICY, ZERO, NumericPolicy

_BUY_ALIASES = {"BUY", "B", "BOT", "LONG"}
_SELL_ALIASES = {"SELL", "S", "SLD", "SHORT"}


@dataclass
class ExecutionDraft:
    """Unvalidated execution as produced by a collaborator."""

    symbol: Any = None
    side: Any = None
    quantity: Any = None
    price: Any = None
    timestamp: Any = None
    commission: Any = None
    external_trade_id: Any = None
    row: int | None = None  # source row number, for error reporting


@dataclass(frozen=True)
class RejectedExecution:
    index: int  # position in the submitted batch
    reason: str
    row: int | None = None
    symbol: str | None = None
    external_trade_id: str | None = None


@dataclass
class ValidationOutcome:
    accepted: list[Execution] = field(default_factory=list)
    rejected: list[RejectedExecution] = field(default_factory=list)


def _field(draft: Any, name: str) -> Any:
    if isinstance(draft, Mapping):
        return draft.get(name)
    return getattr(draft, name, None)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_side(value: Any) -> Side:
    if isinstance(value, Side):
        return value
    text = (_text(value) or "").upper()
    if text in _BUY_ALIASES:
        return Side.BUY
    if text in _SELL_ALIASES:
        return Side.SELL
    raise ValueError(f"unknown side {value!r}")


def parse_timestamp(value: Any) -> datetime:
    """Accept datetime or ISO-8601 text; naive values are taken as UTC."""
    if value is None or value == "":
        raise ValueError("missing timestamp")
    if isinstance(value, datetime):
        return utc(value)
    if isinstance(value, str):
        try:
            return utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError as exc:
            raise ValueError(f"invalid timestamp {value!r}") from exc
    raise ValueError(f"invalid timestamp type {type(value).__name__}")


def validate_execution(
    owner: str,
    draft: Any,
    policy: NumericPolicy = DEFAULT_POLICY,
    *,
    batch_id: str | None = None,
) -> Execution:
    """Validate one draft. Raises ValueError with a human-readable reason."""
    symbol = _text(_field(draft, "symbol"))
    if not symbol:
        raise ValueError("missing symbol")
    side = parse_side(_field(draft, "side"))

    raw_qty = _field(draft, "quantity")
    try:
        quantity = policy.quantity(raw_qty)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid quantity {raw_qty!r}") from exc
    if quantity <= 0:
        raise ValueError(f"quantity must be positive, got {raw_qty!r}")

    raw_price = _field(draft, "price")
    try:
        price = policy.price(raw_price)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid price {raw_price!r}") from exc
    if price <= 0:
        raise ValueError(f"price must be positive, got {raw_price!r}")

    timestamp = parse_timestamp(_field(draft, "timestamp"))

    raw_commission = _field(draft, "commission")
    if raw_commission is None or raw_commission == "":
        commission = ZERO
    else:
        try:
            commission = policy.money(raw_commission)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid commission {raw_commission!r}") from exc
        if commission < 0:
            raise ValueError(f"commission must be non-negative, got {raw_commission!r}")

    return Execution(
        id=str(uuid.uuid4()),
        owner=owner,
        symbol=symbol.upper(),
        side=side,
        quantity=quantity,
        price=price,
        timestamp=timestamp,
        commission=commission,
        external_trade_id=_text(_field(draft, "external_trade_id")),
        batch_id=batch_id,
    )


def validate_executions(
    owner: str,
    drafts: Iterable[Any],
    policy: NumericPolicy = DEFAULT_POLICY,
    *,
    batch_id: str | None = None,
) -> ValidationOutcome:
    if not owner or not str(owner).strip():
        raise ValueError("owner is required")
    outcome = ValidationOutcome()
    for index, draft in enumerate(drafts):
        try:
            outcome.accepted.append(validate_execution(owner, draft, policy, batch_id=batch_id))
        except (TypeError, ValueError) as exc:
            outcome.rejected.append(
                RejectedExecution(
                    index=index,
                    reason=str(exc),
                    row=_field(draft, "row"),
                    symbol=_text(_field(draft, "symbol")),
                    external_trade_id=_text(_field(draft, "external_trade_id")),
                )
            )
    return outcome


def dedupe_executions(
    executions: Sequence[Execution],
    known_external_ids: Iterable[str],
) -> tuple[list[Execution], list[Execution]]:
    """Split into (fresh, duplicates). Repeats within the batch count as duplicates."""
    seen = set(known_external_ids)
    fresh: list[Execution] = []
    duplicates: list[Execution] = []
    for ex in executions:
        key = ex.external_trade_id
        if key is not None and key in seen:
            duplicates.append(ex)
            continue
        if key is not None:
            seen.add(key)
        fresh.append(ex)
    return fresh, duplicates


def group_by_symbol(executions: Iterable[Execution]) -> dict[str, list[Execution]]:
    """Group by symbol, keys sorted, arrival order kept inside each group."""
    groups: dict[str, list[Execution]] = {}
    for ex in executions:
        groups.setdefault(ex.symbol, []).append(ex)
    return {symbol: groups[symbol] for symbol in sorted(groups)}
