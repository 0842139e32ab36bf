"""
Shared test fixtures for the analytics engine test suite.

Provides consistent test data across all test modules:
- Sample close price series and correlated return matrices
- In-memory price and holdings stores standing in for the collaborators
- Holdings snapshot builders
"""

import asyncio
from collections import Counter
from datetime import date

import pytest
import numpy as np
import pandas as pd

from riskengine.config import Settings
from riskengine.errors import InvalidInput
from riskengine.models import HoldingsSnapshot


class FakePriceStore:
    """Price collaborator backed by a dict; counts fetches per ticker.

    The requested date range is ignored: the full stored series is returned.
    """

    def __init__(self, prices, delay: float = 0.0, error: Exception = None):
        self.prices = prices
        self.delay = delay
        self.error = error
        self.calls = Counter()

    async def get_price_series(self, ticker, start, end):
        self.calls[ticker] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if ticker not in self.prices:
            raise InvalidInput(f"Unknown ticker: {ticker}", ticker=ticker)
        return self.prices[ticker]


class FakeHoldingsStore:
    def __init__(self, snapshots=None):
        self.snapshots = list(snapshots or [])

    async def get_holdings_snapshots(self, account_id):
        return [s for s in self.snapshots if s.account_id == account_id]


def make_prices(n, seed=0, start='2023-01-02', base=100.0, drift=0.0005, vol=0.02):
    """Random-walk close series over n business days."""
    rng = np.random.default_rng(seed)
    dates = pd.bdate_range(start, periods=n)
    returns = rng.normal(drift, vol, n)
    return pd.Series(base * np.exp(np.cumsum(returns)), index=dates)


def snap(ticker, on, quantity, price=None, market_value=None, account_id="ACC-1"):
    """Build a HoldingsSnapshot; market value defaults to quantity * price."""
    if market_value is None:
        market_value = quantity * (price if price is not None else 1.0)
    return HoldingsSnapshot(
        account_id=account_id,
        ticker=ticker,
        snapshot_date=on,
        quantity=quantity,
        price=price,
        market_value=market_value,
    )


def cash(on, amount, account_id="ACC-1"):
    return snap("", on, amount, price=1.0, market_value=amount, account_id=account_id)


@pytest.fixture
def sample_prices():
    """Close price Series for five tickers plus SPY over 300 business days.

    Returns:
        Dict[str, pd.Series]: ticker -> close prices indexed by date
    """
    np.random.seed(42)
    dates = pd.bdate_range('2023-01-02', periods=300)
    market = np.random.normal(0.0004, 0.01, len(dates))

    prices = {'SPY': pd.Series(400 * np.exp(np.cumsum(market)), index=dates)}
    for i, sym in enumerate(['AAPL', 'GOOGL', 'MSFT', 'TSLA', 'AMZN']):
        idio = np.random.normal(0.0002, 0.015, len(dates))
        returns = (0.8 + 0.2 * i) * market + idio
        prices[sym] = pd.Series((100 + i * 50) * np.exp(np.cumsum(returns)), index=dates)

    return prices


@pytest.fixture
def sample_returns():
    """Sample returns DataFrame with correlation structure.

    Returns:
        pd.DataFrame: Returns matrix (252 x 5) with DatetimeIndex
            GOOGL and MSFT are correlated with AAPL
    """
    np.random.seed(42)
    dates = pd.bdate_range('2023-01-01', periods=252)
    symbols = ['AAPL', 'GOOGL', 'MSFT', 'TSLA', 'AMZN']

    data = np.random.normal(0, 0.02, (len(dates), len(symbols)))
    data[:, 1] = 0.7 * data[:, 0] + 0.3 * data[:, 1]
    data[:, 2] = 0.5 * data[:, 0] + 0.5 * data[:, 2]

    return pd.DataFrame(data, index=dates, columns=symbols)


@pytest.fixture
def price_store(sample_prices):
    return FakePriceStore(sample_prices)


@pytest.fixture
def settings():
    return Settings(postgres_url="", rolling_beta_background_only=False)


@pytest.fixture
def as_of(sample_prices):
    return sample_prices['SPY'].index[-1].date()


@pytest.fixture
def account_snapshots():
    """Cash-funded account: deposit, buy, price move, partial sell, deposit."""
    d1, d2, d3, d4 = date(2023, 1, 2), date(2023, 4, 3), date(2023, 7, 3), date(2023, 10, 2)
    return [
        cash(d1, 10000.0),
        cash(d2, 5000.0),
        snap("AAPL", d2, 50, price=100.0),
        cash(d3, 5000.0),
        snap("AAPL", d3, 50, price=120.0),
        snap("MSFT", d3, 0.005, price=300.0),  # below quantity tolerance
        cash(d4, 8200.0),
        snap("AAPL", d4, 40, price=110.0),
    ]
