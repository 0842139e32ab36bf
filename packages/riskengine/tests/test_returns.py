"""
Unit tests for returns.py - Return Construction Module

Tests cover:
- Price cleaning (ordering, duplicates, NaN)
- Simple returns and non-positive price rejection
- Date alignment and price matrix construction
- Window trimming
"""

import pytest
import numpy as np
import pandas as pd
from numpy.testing import assert_allclose

from riskengine.errors import InsufficientData, InvalidInput
from riskengine.risk.returns import (
    align_returns,
    build_price_matrix,
    clean_price_series,
    compute_simple_returns,
    price_frame_to_series,
    prices_to_returns,
    rolling_realized_volatility,
    trim_to_window,
)


class TestPricesToReturns:
    """Tests for prices_to_returns function."""

    def test_simple_returns(self):
        """Returns are (P_t - P_{t-1}) / P_{t-1}, first date dropped."""
        dates = pd.bdate_range('2024-01-01', periods=3)
        prices = pd.Series([100.0, 110.0, 99.0], index=dates)

        returns = prices_to_returns(prices)

        assert list(returns.index) == list(dates[1:])
        assert_allclose(returns.values, [0.10, -0.10], rtol=1e-12)

    def test_unsorted_input_is_sorted(self):
        """Out-of-order input produces date-ascending returns."""
        dates = pd.bdate_range('2024-01-01', periods=3)
        prices = pd.Series([99.0, 100.0, 110.0], index=[dates[2], dates[0], dates[1]])

        returns = prices_to_returns(prices)

        assert returns.index.is_monotonic_increasing
        assert_allclose(returns.values, [0.10, -0.10], rtol=1e-12)

    def test_duplicate_dates_keep_last(self):
        """A repeated date keeps its last observation."""
        d = pd.bdate_range('2024-01-01', periods=2)
        prices = pd.Series([100.0, 50.0, 120.0], index=[d[0], d[0], d[1]])

        returns = prices_to_returns(prices)

        assert len(returns) == 1
        assert_allclose(returns.iloc[0], 1.4)

    def test_non_positive_price_raises(self):
        """Zero or negative prices are rejected."""
        dates = pd.bdate_range('2024-01-01', periods=3)
        prices = pd.Series([100.0, 0.0, 101.0], index=dates)

        with pytest.raises(InvalidInput, match="Non-positive prices"):
            prices_to_returns(prices, "AAPL")

    def test_nan_prices_dropped(self):
        dates = pd.bdate_range('2024-01-01', periods=3)
        prices = pd.Series([100.0, np.nan, 105.0], index=dates)

        cleaned = clean_price_series(prices)

        assert len(cleaned) == 2


class TestPriceFrameToSeries:

    def test_uses_adj_close(self):
        df = pd.DataFrame({
            'date': ['2024-01-02', '2024-01-03'],
            'close': [100.0, 101.0],
            'adj_close': [99.0, 100.0],
        })

        series = price_frame_to_series(df)

        assert_allclose(series.values, [99.0, 100.0])
        assert isinstance(series.index, pd.DatetimeIndex)

    def test_falls_back_to_close(self):
        """Missing adj_close falls back to close."""
        df = pd.DataFrame({
            'date': ['2024-01-02', '2024-01-03'],
            'close': [100.0, 101.0],
            'adj_close': [None, None],
        })

        series = price_frame_to_series(df)

        assert_allclose(series.values, [100.0, 101.0])

    def test_empty_frame(self):
        assert price_frame_to_series(pd.DataFrame()).empty


class TestAlignment:

    def test_align_returns_intersection(self):
        """Only common dates survive alignment."""
        dates = pd.bdate_range('2024-01-01', periods=5)
        a = pd.Series([0.01, 0.02, 0.03, 0.04, 0.05], index=dates)
        b = pd.Series([0.1, 0.2, 0.3], index=dates[2:])

        a2, b2 = align_returns(a, b)

        assert list(a2.index) == list(dates[2:])
        assert list(b2.index) == list(dates[2:])
        assert_allclose(a2.values, [0.03, 0.04, 0.05])

    def test_build_price_matrix_excludes_bad_tickers(self, sample_prices):
        """Empty and short series are excluded with a reason."""
        prices = {
            'AAPL': sample_prices['AAPL'],
            'MSFT': sample_prices['MSFT'],
            'EMPTY': pd.Series(dtype=float),
            'SHORT': sample_prices['SPY'].iloc[:2],
        }

        matrix, excluded = build_price_matrix(prices, min_history=3)

        assert list(matrix.columns) == ['AAPL', 'MSFT']
        assert excluded['EMPTY'] == 'no_price_data'
        assert excluded['SHORT'].startswith('insufficient_history')
        assert not matrix.isna().any().any()

    def test_build_price_matrix_no_overlap(self):
        """A ticker whose dates never meet the others is dropped."""
        early = pd.Series([1.0, 2.0, 3.0, 4.0], index=pd.bdate_range('2020-01-01', periods=4))
        late = pd.Series([1.0, 2.0, 3.0], index=pd.bdate_range('2024-01-01', periods=3))

        matrix, excluded = build_price_matrix({'EARLY': early, 'LATE': late}, min_history=2)

        assert list(matrix.columns) == ['EARLY']
        assert excluded == {'LATE': 'no_overlapping_dates'}

    def test_compute_simple_returns_drops_first_row(self, sample_prices):
        matrix, _ = build_price_matrix({'AAPL': sample_prices['AAPL'], 'SPY': sample_prices['SPY']})

        returns = compute_simple_returns(matrix)

        assert len(returns) == len(matrix) - 1


class TestWindows:

    def test_trim_to_window(self):
        returns = pd.Series(np.arange(10, dtype=float))

        trimmed = trim_to_window(returns, 4)

        assert_allclose(trimmed.values, [6.0, 7.0, 8.0, 9.0])

    def test_trim_to_window_insufficient(self):
        """The error names both the available and required counts."""
        returns = pd.Series(np.zeros(60))

        with pytest.raises(InsufficientData) as exc_info:
            trim_to_window(returns, 90, series="AAPL")

        assert exc_info.value.actual == 60
        assert exc_info.value.required == 90
        assert exc_info.value.deficit == 30
        assert "60" in str(exc_info.value) and "90" in str(exc_info.value)

    def test_rolling_realized_volatility_length(self):
        returns = pd.Series(np.random.default_rng(1).normal(0, 0.01, 50))

        vol = rolling_realized_volatility(returns, window=20)

        assert len(vol) == 31
        assert (vol > 0).all()
