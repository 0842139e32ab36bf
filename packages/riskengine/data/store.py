"""Price and holdings collaborators consumed by the analytics engine.

The engine only reads: prices are refreshed and holdings imported by other
services. Both contracts are Protocols so callers can plug in any source;
the database-backed implementations read the shared PostgreSQL tables.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Protocol

import pandas as pd
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..errors import InvalidInput, ProviderFailure
from ..models import HoldingsSnapshot
from ..risk.returns import price_frame_to_series

logger = structlog.get_logger()


class PriceSeriesStore(Protocol):
    async def get_price_series(self, ticker: str, start: date, end: date) -> pd.Series:
        """Close prices indexed by date, ascending.

        Raises InvalidInput for an unknown ticker and ProviderFailure when
        the upstream source is unavailable.
        """
        ...


class HoldingsSnapshotStore(Protocol):
    async def get_holdings_snapshots(self, account_id: str) -> list[HoldingsSnapshot]:
        ...


def validate_date_range(start: date, end: date) -> None:
    if start > end:
        raise InvalidInput(f"Malformed date range: start {start} is after end {end}")


# ---------------------------------------------------------------------------
# Database-backed implementations
# ---------------------------------------------------------------------------

_SELECT_PRICES = text("""
    SELECT date, close, adj_close
    FROM prices_daily
    WHERE symbol = :symbol
      AND date >= :start_date
      AND date <= :end_date
    ORDER BY date
""")

_SELECT_HOLDINGS = text("""
    SELECT account_id, ticker, snapshot_date, quantity, price, book_value, market_value
    FROM holdings_snapshots
    WHERE account_id = :account_id
    ORDER BY snapshot_date, ticker
""")


class DatabasePriceStore:
    """Reads daily closes from the prices_daily table."""

    def __init__(self, engine: AsyncEngine, price_col: str = "adj_close") -> None:
        self.engine = engine
        self.price_col = price_col

    async def get_price_series(self, ticker: str, start: date, end: date) -> pd.Series:
        validate_date_range(start, end)
        params: dict[str, Any] = {"symbol": ticker, "start_date": start, "end_date": end}

        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(_SELECT_PRICES, params)
                rows = result.fetchall()
        except SQLAlchemyError as exc:
            logger.error("price_fetch_failed", ticker=ticker, error=str(exc))
            raise ProviderFailure(f"Price data unavailable for {ticker}", ticker=ticker) from exc

        if not rows:
            raise InvalidInput(f"Unknown ticker or no prices in range: {ticker}", ticker=ticker)

        df = pd.DataFrame(rows, columns=["date", "close", "adj_close"])
        series = price_frame_to_series(df, self.price_col)
        series.name = ticker
        return series


class DatabaseHoldingsStore:
    """Reads imported holdings snapshots from the holdings_snapshots table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def get_holdings_snapshots(self, account_id: str) -> list[HoldingsSnapshot]:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(_SELECT_HOLDINGS, {"account_id": account_id})
                rows = result.mappings().all()
        except SQLAlchemyError as exc:
            logger.error("holdings_fetch_failed", account_id=account_id, error=str(exc))
            raise ProviderFailure(
                f"Holdings unavailable for account {account_id}", account_id=account_id
            ) from exc

        return [HoldingsSnapshot(**dict(row)) for row in rows]
