"""
Market Regime Detection Module

Classifies a trading day as bull / bear / high_volatility / normal from a
benchmark's trailing volatility and return, refines it with the hidden
Markov state model, and projects the state distribution forward. Each
regime carries the threshold multiplier that scales risk-level cutoffs.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import structlog

from ..errors import InsufficientData, InvalidInput, NonConvergence
from ..models import ForecastPoint, MarketRegimeRecord, RegimeType
from .hmm import (
    STATES,
    HiddenMarkovModel,
    confidence_level,
    observation_symbol,
    probabilities_by_state,
)
from .returns import clean_price_series, rolling_realized_volatility

logger = structlog.get_logger(__name__)

DEFAULT_BENCHMARK = "SPY"
DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_THRESHOLDS = (20.0, 25.0, 35.0)  # bull max vol, bear min vol, high vol
DEFAULT_FORECAST_HORIZONS = (5, 10, 30)
REALIZED_VOL_WINDOW = 20

THRESHOLD_MULTIPLIERS = {
    RegimeType.BULL: 0.8,
    RegimeType.NORMAL: 1.0,
    RegimeType.BEAR: 1.3,
    RegimeType.HIGH_VOLATILITY: 1.5,
}


def threshold_multiplier(regime: RegimeType) -> float:
    return THRESHOLD_MULTIPLIERS[RegimeType(regime)]


def trailing_volatility_and_return(
    prices: pd.Series,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> Tuple[float, float]:
    """Annualized volatility (%) and total return (%) over the last lookback_days prices.

    Volatility uses the population standard deviation of daily returns.

    Raises:
        InsufficientData: If fewer than 2 prices are available
    """
    window = clean_price_series(prices).iloc[-lookback_days:]
    if len(window) < 2:
        raise InsufficientData(
            series="benchmark", actual=len(window), required=2, statistic="regime"
        )
    if len(window) < lookback_days:
        logger.warning(
            "trailing_volatility_and_return: short lookback",
            available=len(window),
            lookback_days=lookback_days,
        )

    daily = window.pct_change().iloc[1:]
    volatility = float(daily.std(ddof=0) * np.sqrt(252) * 100)
    market_return = float((window.iloc[-1] / window.iloc[0] - 1.0) * 100)
    return volatility, market_return


def classify_regime(
    volatility: float,
    market_return: float,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
) -> Tuple[RegimeType, float]:
    """Deterministic baseline classification.

    High volatility takes precedence: a 40% vol crash is high_volatility,
    not bear.

    Returns:
        Tuple of (regime, confidence in [0, 100])
    """
    bull_vol, bear_vol, high_vol = thresholds

    if volatility > high_vol:
        conf = (volatility - high_vol) / high_vol * 100
        return RegimeType.HIGH_VOLATILITY, float(np.clip(conf, 75.0, 100.0))

    if volatility < bull_vol and market_return > 0:
        vol_margin = (bull_vol - volatility) / bull_vol
        conf = (vol_margin * 0.6 + min(market_return / 10.0, 1.0) * 0.4) * 100
        return RegimeType.BULL, float(np.clip(conf, 60.0, 100.0))

    if volatility > bear_vol and market_return < 0:
        vol_margin = (volatility - bear_vol) / bear_vol
        conf = (vol_margin * 0.6 + min(abs(market_return) / 10.0, 1.0) * 0.4) * 100
        return RegimeType.BEAR, float(np.clip(conf, 60.0, 100.0))

    return RegimeType.NORMAL, 70.0


def build_observations(
    prices: pd.Series,
    vol_window: int = REALIZED_VOL_WINDOW,
) -> List[int]:
    """Observation symbols from daily returns paired with rolling realized vol."""
    series = clean_price_series(prices)
    returns = series.pct_change().iloc[1:]
    vol = rolling_realized_volatility(returns, vol_window)
    daily_pct = returns.loc[vol.index] * 100
    return [observation_symbol(r, v) for r, v in zip(daily_pct.values, vol.values)]


def regime_training_set(
    prices: pd.Series,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
    vol_window: int = REALIZED_VOL_WINDOW,
) -> Tuple[List[int], List[RegimeType]]:
    """Observation symbols paired with the baseline label of each day.

    Each day's label is ``classify_regime`` over the ``lookback_days`` prices
    ending that day, so it matches what detect_regime's baseline would have
    reported on that date. Days without a full lookback or vol window are
    dropped.
    """
    if lookback_days < 2:
        raise InvalidInput(f"lookback_days must be >= 2, got {lookback_days}")

    series = clean_price_series(prices)
    returns = series.pct_change().iloc[1:]
    span = lookback_days - 1

    frame = pd.DataFrame({
        "daily_pct": returns * 100,
        "realized_vol": rolling_realized_volatility(returns, vol_window),
        "volatility": returns.rolling(span).std(ddof=0) * np.sqrt(252) * 100,
        "market_return": (series / series.shift(span) - 1.0) * 100,
    }).dropna()

    observations = [
        observation_symbol(r, v) for r, v in zip(frame["daily_pct"], frame["realized_vol"])
    ]
    labels = [
        classify_regime(v, m, thresholds)[0]
        for v, m in zip(frame["volatility"], frame["market_return"])
    ]
    return observations, labels


def train_regime_model(
    prices: pd.Series,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
    min_prices: int = 252,
    smoothing: float = 1.0,
) -> HiddenMarkovModel:
    """Fit the state model to the benchmark's baseline-labelled history.

    Raises:
        InsufficientData: If fewer than ``min_prices`` closes are available
    """
    series = clean_price_series(prices)
    if len(series) < min_prices:
        raise InsufficientData(
            series="benchmark", actual=len(series), required=min_prices,
            statistic="regime model training",
        )

    observations, labels = regime_training_set(series, lookback_days, thresholds)
    model = HiddenMarkovModel.fit_from_labels(observations, labels, smoothing=smoothing)

    logger.info(
        "train_regime_model: model fitted",
        prices=len(series),
        observations=len(observations),
        start=str(series.index[0].date()),
        end=str(series.index[-1].date()),
    )
    return model


def detect_regime(
    prices: pd.Series,
    as_of: date,
    benchmark_ticker: str = DEFAULT_BENCHMARK,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
    model: Optional[HiddenMarkovModel] = None,
) -> MarketRegimeRecord:
    """Classify the regime for ``as_of`` from benchmark closes up to that date.

    The baseline classification is refined by filtering the full history
    through the state model. If the model cannot produce a valid state
    distribution, the baseline regime and confidence are returned with
    ``model="baseline"``.

    Args:
        prices: Benchmark close prices indexed by date
        as_of: Date being classified; later prices are ignored
        benchmark_ticker: Recorded on the result
        lookback_days: Trailing window for the baseline
        thresholds: (bull max vol, bear min vol, high vol) in percent
        model: State model; defaults to HiddenMarkovModel()

    Returns:
        MarketRegimeRecord
    """
    series = clean_price_series(prices)
    series = series[series.index <= pd.Timestamp(as_of)]

    volatility, market_return = trailing_volatility_and_return(series, lookback_days)
    regime, confidence = classify_regime(volatility, market_return, thresholds)
    probabilities = None
    source = "baseline"

    model = model or HiddenMarkovModel()
    try:
        probs = model.filter(build_observations(series))
        best = int(np.argmax(probs))
        regime = STATES[best]
        confidence = float(probs[best] * 100)
        probabilities = [float(p) for p in probs]
        source = "hmm"
    except (NonConvergence, InsufficientData) as exc:
        logger.warning(
            "detect_regime: state model unavailable, using baseline",
            as_of=str(as_of),
            error=str(exc),
        )

    record = MarketRegimeRecord(
        date=as_of,
        regime_type=regime,
        volatility_level=volatility,
        market_return=market_return,
        confidence=min(max(confidence, 0.0), 100.0),
        benchmark_ticker=benchmark_ticker,
        lookback_days=lookback_days,
        threshold_multiplier=threshold_multiplier(regime),
        state_probabilities=probabilities,
        model=source,
    )

    logger.info(
        "detect_regime: regime classified",
        as_of=str(as_of),
        regime=record.regime_type.value,
        confidence=round(record.confidence, 1),
        volatility=round(volatility, 2),
        market_return=round(market_return, 2),
        model=source,
    )
    return record


def forecast_regime(
    current: Sequence[float],
    horizons: Sequence[int] = DEFAULT_FORECAST_HORIZONS,
    model: Optional[HiddenMarkovModel] = None,
) -> List[ForecastPoint]:
    """Forecast state probabilities for each horizon.

    Args:
        current: Current state distribution in STATES order
        horizons: Days ahead (each 1-30)
        model: State model; defaults to HiddenMarkovModel()

    Returns:
        One ForecastPoint per horizon, in the order given
    """
    model = model or HiddenMarkovModel()
    points = []
    for horizon in horizons:
        probs = model.forecast(current, horizon)
        best = int(np.argmax(probs))
        max_prob = float(probs[best])
        points.append(
            ForecastPoint(
                horizon_days=horizon,
                predicted_regime=STATES[best],
                confidence=max_prob * 100,
                state_probabilities=probabilities_by_state(probs),
                transition_probability=1.0 - max_prob,
                confidence_level=confidence_level(max_prob),
            )
        )
    return points
