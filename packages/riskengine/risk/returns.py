"""
Return Construction Module

Pure functions for turning (date, close) price sequences into return series
and aligning them across tickers. Everything returned is date-ascending with
no duplicate dates.
"""

import numpy as np
import pandas as pd
import structlog
from typing import Dict, Tuple

from ..errors import InsufficientData, InvalidInput

logger = structlog.get_logger(__name__)


def price_frame_to_series(
    df: pd.DataFrame,
    price_col: str = 'adj_close',
) -> pd.Series:
    """Convert a price DataFrame with [date, close, adj_close] into a Series.

    Falls back to ``close`` when ``price_col`` is missing or entirely null.
    """
    if df is None or df.empty:
        return pd.Series(dtype=float)

    if price_col not in df.columns or df[price_col].isna().all():
        price_col = 'close'

    df = df.copy()
    if not pd.api.types.is_datetime64_any_dtype(df['date']):
        df['date'] = pd.to_datetime(df['date'])

    return df.set_index('date')[price_col].astype(float)


def clean_price_series(prices: pd.Series) -> pd.Series:
    """Sort by date, drop NaNs and keep the last observation per date."""
    if prices.empty:
        return prices.astype(float)

    series = prices.copy()
    if not isinstance(series.index, pd.DatetimeIndex):
        series.index = pd.to_datetime(series.index)

    series = series.dropna()
    series = series[~series.index.duplicated(keep='last')].sort_index()
    return series.astype(float)


def prices_to_returns(prices: pd.Series, name: str = "series") -> pd.Series:
    """Compute simple returns (P_t - P_{t-1}) / P_{t-1} from a close series.

    Args:
        prices: Close prices indexed by date
        name: Series label used in error messages

    Returns:
        Return series indexed by the later date of each pair (first date dropped)

    Raises:
        InvalidInput: If any price is zero or negative
    """
    series = clean_price_series(prices)

    if (series <= 0).any():
        bad = series[series <= 0]
        logger.error(
            "prices_to_returns: non-positive prices detected",
            series=name,
            count=len(bad),
            first_bad_date=str(bad.index[0].date()),
        )
        raise InvalidInput(f"Non-positive prices detected in {name} series", series=name)

    returns = series.pct_change().iloc[1:]
    returns.name = name
    return returns


def align_returns(
    asset: pd.Series,
    benchmark: pd.Series,
) -> Tuple[pd.Series, pd.Series]:
    """Restrict two return series to their common dates."""
    common = asset.index.intersection(benchmark.index).sort_values()
    return asset.loc[common], benchmark.loc[common]


def build_price_matrix(
    prices: Dict[str, pd.Series],
    min_history: int = 2,
) -> Tuple[pd.DataFrame, Dict[str, str]]:
    """Build aligned price matrix from dict of ticker -> close series.

    Aligns all series to a common date index (intersection of trading days).
    Drops tickers with fewer than ``min_history`` observations, and any
    ticker whose dates do not overlap the rest.

    Args:
        prices: Dictionary mapping ticker to close price Series
        min_history: Minimum number of aligned prices required per ticker

    Returns:
        Tuple of (price_matrix, excluded):
            - price_matrix: DataFrame with DatetimeIndex and ticker columns
            - excluded: {ticker: reason} for every dropped ticker

    Note:
        Does NOT forward-fill prices as this creates false returns.
    """
    excluded: Dict[str, str] = {}
    series_dict: Dict[str, pd.Series] = {}

    for ticker, series in prices.items():
        if series is None or series.empty:
            excluded[ticker] = "no_price_data"
            continue

        clean = clean_price_series(series)
        if len(clean) < min_history:
            excluded[ticker] = f"insufficient_history_{len(clean)}_lt_{min_history}"
            continue

        series_dict[ticker] = clean

    # Greedy alignment: keep a ticker only if it leaves enough common dates
    aligned_index = None
    kept: Dict[str, pd.Series] = {}
    for ticker in sorted(series_dict, key=lambda t: -len(series_dict[t])):
        idx = series_dict[ticker].index
        candidate = idx if aligned_index is None else aligned_index.intersection(idx)
        if len(candidate) < min_history:
            excluded[ticker] = "no_overlapping_dates"
            continue
        aligned_index = candidate
        kept[ticker] = series_dict[ticker]

    if excluded:
        logger.info(
            "build_price_matrix: dropped tickers",
            dropped_count=len(excluded),
            dropped=list(excluded.items())[:10],
        )

    if not kept:
        logger.warning("build_price_matrix: no valid tickers remain after filtering")
        return pd.DataFrame(), excluded

    ordered = [t for t in prices if t in kept]
    price_matrix = pd.DataFrame({t: kept[t].loc[aligned_index] for t in ordered})
    price_matrix = price_matrix.sort_index()

    logger.info(
        "build_price_matrix: matrix built",
        num_tickers=len(price_matrix.columns),
        num_dates=len(price_matrix),
    )

    return price_matrix, excluded


def compute_simple_returns(price_matrix: pd.DataFrame) -> pd.DataFrame:
    """Compute simple returns: (P_t - P_{t-1}) / P_{t-1}

    Args:
        price_matrix: DataFrame with DatetimeIndex and ticker columns

    Returns:
        DataFrame with simple returns (first row dropped due to NaN)
    """
    if price_matrix.empty:
        logger.warning("compute_simple_returns: empty price matrix provided")
        return pd.DataFrame()

    if (price_matrix <= 0).any().any():
        bad = (price_matrix <= 0).sum()
        logger.error(
            "compute_simple_returns: non-positive prices detected",
            affected_tickers=bad[bad > 0].to_dict()
        )
        raise InvalidInput("Non-positive prices detected in price matrix")

    simple_returns = price_matrix.pct_change().iloc[1:]

    logger.info(
        "compute_simple_returns: returns computed",
        num_tickers=len(simple_returns.columns),
        num_periods=len(simple_returns)
    )

    return simple_returns


def trim_to_window(returns, window: int, series: str = "returns"):
    """Take the last ``window`` rows of a return Series or DataFrame.

    Raises:
        InsufficientData: If fewer than ``window`` rows are available
    """
    if window < 1:
        raise InvalidInput(f"Window must be >= 1, got {window}")

    if len(returns) < window:
        raise InsufficientData(series=series, actual=len(returns), required=window)

    return returns.iloc[-window:]


def rolling_realized_volatility(returns: pd.Series, window: int = 20) -> pd.Series:
    """Annualized rolling volatility in percent (population stdev).

    The first ``window - 1`` observations are dropped.
    """
    vol = returns.rolling(window).std(ddof=0) * np.sqrt(252) * 100
    return vol.dropna()
