"""
Alpaca fill fetcher: implements ExecutionFetcher using the alpaca-py trading API.

Maps filled Alpaca orders to ExecutionDraft rows (filled qty, average fill
price, fill time in UTC). The Alpaca order id becomes the external trade id,
so re-syncing an overlapping window is deduplicated by the ledger.
Alpaca does not report commissions on equity orders; commission is 0.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Sequence

from ledger_core.numeric import to_decimal
from ledger_core.validation import ExecutionDraft

from data.fetcher import FetchResult

logger = logging.getLogger(__name__)

MAX_ORDERS_PER_REQUEST = 500


def _side_text(side: Any) -> str:
    return str(getattr(side, "value", side)).upper()


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def order_to_draft(order: Any) -> ExecutionDraft | None:
    """Convert one Alpaca order; None when nothing was filled."""
    filled_qty = getattr(order, "filled_qty", None)
    filled_at = getattr(order, "filled_at", None)
    if not filled_qty or to_decimal(str(filled_qty)) <= 0 or filled_at is None:
        return None
    return ExecutionDraft(
        symbol=order.symbol,
        side=_side_text(order.side),
        quantity=str(filled_qty),
        price=str(order.filled_avg_price) if order.filled_avg_price is not None else None,
        timestamp=_utc(filled_at),
        commission="0",
        external_trade_id=str(order.id),
    )


class AlpacaExecutionFetcher:
    """
    Fetch filled orders from the Alpaca Trading API.

    Uses TradingClient from alpaca-py.
    API keys via constructor (typically from AppConfig, sourced from env vars).
    """

    def __init__(self, api_key: str, api_secret: str, *, paper: bool = True) -> None:
        if not api_key or not api_secret:
            raise ValueError(
                "Alpaca API key and secret are required. "
                "Set APCA_API_KEY_ID and APCA_API_SECRET_KEY environment variables."
            )
        try:
            from alpaca.trading.client import TradingClient
        except ImportError:
            raise ImportError(
                "alpaca-py is required for AlpacaExecutionFetcher. "
                "Install with: pip install 'trade-ledger[broker]'"
            )
        self._client = TradingClient(api_key, api_secret, paper=paper)

    def fetch(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        symbols: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> FetchResult:
        """Fetch closed orders in the window and keep the filled ones."""
        from alpaca.trading.enums import QueryOrderStatus
        from alpaca.trading.requests import GetOrdersRequest

        request = GetOrdersRequest(
            status=QueryOrderStatus.CLOSED,
            after=start,
            until=end,
            limit=limit or MAX_ORDERS_PER_REQUEST,
            symbols=list(symbols) if symbols else None,
        )
        orders = self._client.get_orders(filter=request)
        drafts: list[ExecutionDraft] = []
        skipped = 0
        for order in orders:
            draft = order_to_draft(order)
            if draft is None:
                skipped += 1
                continue
            drafts.append(draft)
        logger.info("Fetched %d filled orders from Alpaca (%d skipped without fills)", len(drafts), skipped)
        return FetchResult(drafts=drafts, source="alpaca", skipped=skipped)
