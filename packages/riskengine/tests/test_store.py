"""Tests for the database-backed price and holdings collaborators."""

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from riskengine.data.store import DatabaseHoldingsStore, DatabasePriceStore
from riskengine.errors import InvalidInput, ProviderFailure


def _engine_returning(rows=None, error=None):
    result = MagicMock()
    result.fetchall.return_value = rows or []
    result.mappings.return_value.all.return_value = rows or []

    mock_conn = AsyncMock()
    if error is not None:
        mock_conn.execute.side_effect = error
    else:
        mock_conn.execute.return_value = result
    mock_engine = MagicMock()
    mock_engine.connect.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_engine.connect.return_value.__aexit__ = AsyncMock(return_value=False)
    return mock_engine


@pytest.mark.asyncio
async def test_price_series_prefers_adjusted_close():
    rows = [
        (date(2024, 1, 2), 100.0, 99.0),
        (date(2024, 1, 3), 101.0, 100.0),
    ]
    store = DatabasePriceStore(_engine_returning(rows))

    series = await store.get_price_series("AAPL", date(2024, 1, 1), date(2024, 1, 31))

    assert list(series.values) == [99.0, 100.0]
    assert series.name == "AAPL"


@pytest.mark.asyncio
async def test_price_series_unknown_ticker():
    store = DatabasePriceStore(_engine_returning([]))

    with pytest.raises(InvalidInput, match="ZZZZ"):
        await store.get_price_series("ZZZZ", date(2024, 1, 1), date(2024, 1, 31))


@pytest.mark.asyncio
async def test_price_series_database_error_is_provider_failure():
    error = OperationalError("SELECT 1", {}, Exception("connection refused"))
    store = DatabasePriceStore(_engine_returning(error=error))

    with pytest.raises(ProviderFailure) as exc_info:
        await store.get_price_series("AAPL", date(2024, 1, 1), date(2024, 1, 31))

    assert exc_info.value.__cause__ is error


@pytest.mark.asyncio
async def test_price_series_malformed_range():
    store = DatabasePriceStore(_engine_returning([]))

    with pytest.raises(InvalidInput, match="Malformed date range"):
        await store.get_price_series("AAPL", date(2024, 2, 1), date(2024, 1, 1))


@pytest.mark.asyncio
async def test_holdings_snapshots():
    rows = [
        {
            "account_id": "ACC-1", "ticker": "", "snapshot_date": date(2024, 1, 2),
            "quantity": 500.0, "price": 1.0, "book_value": None, "market_value": 500.0,
        },
        {
            "account_id": "ACC-1", "ticker": "AAPL", "snapshot_date": date(2024, 1, 2),
            "quantity": 10.0, "price": 180.0, "book_value": 1700.0, "market_value": 1800.0,
        },
    ]
    store = DatabaseHoldingsStore(_engine_returning(rows))

    snapshots = await store.get_holdings_snapshots("ACC-1")

    assert [s.is_cash for s in snapshots] == [True, False]
    assert snapshots[1].market_value == 1800.0
