"""
Risk Metrics Module

Per-ticker and portfolio risk metrics computed from simple return series:
volatility, drawdown, beta, Sharpe/Sortino, historical VaR and Expected
Shortfall, and the composite 0-100 risk score with regime-adjusted level
bucketing. Pure computation functions; persistence happens elsewhere.
"""

import math

import numpy as np
import pandas as pd
import structlog
from typing import List, Optional, Tuple

from ..errors import InsufficientData, InvalidInput
from ..models import PositionRisk, RiskAssessment, RiskLevel
from .returns import align_returns

logger = structlog.get_logger(__name__)

TRADING_DAYS = 252

# Base score cutoffs for Low / Moderate / High; anything above is Severe.
RISK_LEVEL_CUTOFFS = (25.0, 50.0, 75.0)

# Portfolio aggregation ignores positions below this weight
MIN_POSITION_WEIGHT = 0.001

_EPS = 1e-12


def _as_array(returns) -> np.ndarray:
    return np.asarray(returns, dtype=float).flatten()


def annualized_volatility(returns) -> float:
    """Annualized volatility in percent: sample stdev * sqrt(252) * 100.

    Raises:
        InsufficientData: If fewer than 2 observations
    """
    r = _as_array(returns)
    if len(r) < 2:
        raise InsufficientData(series="returns", actual=len(r), required=2, statistic="volatility")

    return float(np.std(r, ddof=1) * np.sqrt(TRADING_DAYS) * 100)


def max_drawdown(returns) -> float:
    """Largest peak-to-trough decline of the cumulative value curve, in percent.

    The curve starts at 1.0 and compounds each return, so [0.1, -0.1]
    traces 1.0 -> 1.1 -> 0.99 for a 10% drawdown. Returns 0 when the curve
    never falls.
    """
    r = _as_array(returns)
    if len(r) == 0:
        return 0.0

    curve = np.concatenate([[1.0], np.cumprod(1.0 + r)])
    peaks = np.maximum.accumulate(curve)
    drawdowns = np.where(peaks > 0, (peaks - curve) / peaks, 0.0)

    return float(max(drawdowns.max(), 0.0) * 100)


def beta(
    asset_returns,
    benchmark_returns,
    min_observations: int = 20,
) -> Optional[float]:
    """Beta = cov(asset, benchmark) / var(benchmark).

    Pandas Series are aligned on the date intersection first; plain arrays
    must already be aligned and of equal length.

    Returns:
        Beta, or None if the overlap is shorter than ``min_observations`` or
        the benchmark has zero variance
    """
    if isinstance(asset_returns, pd.Series) and isinstance(benchmark_returns, pd.Series):
        asset_returns, benchmark_returns = align_returns(asset_returns, benchmark_returns)

    a = _as_array(asset_returns)
    b = _as_array(benchmark_returns)

    if len(a) != len(b):
        raise InvalidInput(
            f"Asset length {len(a)} doesn't match benchmark length {len(b)}"
        )

    if len(a) < max(min_observations, 2):
        logger.info(
            "beta: overlap below minimum",
            observations=len(a),
            min_observations=min_observations,
        )
        return None

    var_b = np.var(b, ddof=1)
    if var_b < _EPS:
        return None

    cov_ab = np.cov(a, b, ddof=1)[0, 1]
    return float(cov_ab / var_b)


def sharpe_ratio(returns, risk_free_rate: float = 0.04) -> Optional[float]:
    """Annualized Sharpe: ((mean - rf/252) * 252) / annualized vol.

    Args:
        returns: Daily simple returns
        risk_free_rate: Annual risk-free rate as a decimal

    Returns:
        Sharpe ratio, or None when volatility is zero
    """
    r = _as_array(returns)
    vol = annualized_volatility(r) / 100
    if vol < _EPS:
        return None

    excess = (r.mean() - risk_free_rate / TRADING_DAYS) * TRADING_DAYS
    return float(excess / vol)


def sortino_ratio(returns, risk_free_rate: float = 0.04) -> Optional[float]:
    """Annualized Sortino ratio using downside deviation of negative returns.

    Returns None when there are no losing days.
    """
    r = _as_array(returns)
    if len(r) < 2:
        raise InsufficientData(series="returns", actual=len(r), required=2, statistic="sortino")

    downside = np.minimum(r, 0.0)
    if not (downside < 0).any():
        return None

    downside_dev = np.sqrt(np.mean(downside ** 2)) * np.sqrt(TRADING_DAYS)
    if downside_dev < _EPS:
        return None

    excess = (r.mean() - risk_free_rate / TRADING_DAYS) * TRADING_DAYS
    return float(excess / downside_dev)


def annualized_return(returns) -> float:
    """Geometric annualized return in percent."""
    r = _as_array(returns)
    if len(r) == 0:
        return 0.0

    growth = float(np.prod(1.0 + r))
    if growth <= 0:
        return -100.0

    return float((growth ** (TRADING_DAYS / len(r)) - 1.0) * 100)


def _tail_size(n: int, confidence: float) -> float:
    # 100 * (1 - 0.95) is 5.000000000000004 before rounding
    return round(n * (1 - confidence), 9)


def historical_var(returns, confidence: float = 0.95) -> float:
    """Historical-simulation VaR as a positive fractional loss.

    Uses the sorted return at index floor(n * (1 - confidence)).
    """
    if not 0 < confidence < 1:
        raise InvalidInput(f"Confidence must be between 0 and 1, got {confidence}")

    r = np.sort(_as_array(returns))
    if len(r) == 0:
        raise InsufficientData(series="returns", actual=0, required=1, statistic="value_at_risk")

    idx = min(int(math.floor(_tail_size(len(r), confidence))), len(r) - 1)
    return float(max(-r[idx], 0.0))


def historical_expected_shortfall(returns, confidence: float = 0.95) -> float:
    """Mean of the worst ceil(n * (1 - confidence)) returns, as a positive loss."""
    if not 0 < confidence < 1:
        raise InvalidInput(f"Confidence must be between 0 and 1, got {confidence}")

    r = np.sort(_as_array(returns))
    if len(r) == 0:
        raise InsufficientData(series="returns", actual=0, required=1, statistic="expected_shortfall")

    tail = max(int(math.ceil(_tail_size(len(r), confidence))), 1)
    return float(max(-r[:tail].mean(), 0.0))


# ---------------------------------------------------------------------------
# Composite score and bucketing
# ---------------------------------------------------------------------------


def risk_score(
    volatility: float,
    max_drawdown_pct: float,
    beta_value: Optional[float] = None,
    var_pct: Optional[float] = None,
) -> float:
    """Composite 0-100 risk score.

    40 points from volatility (saturating at 50%), 30 from drawdown
    (saturating at 50%), 20 from |beta - 1| (saturating at 1) and 10 from
    the 95% VaR (saturating at a 10% daily loss). Missing inputs score 0.
    """
    score = 40.0 * min(max(volatility, 0.0) / 50.0, 1.0)
    score += 30.0 * min(max(max_drawdown_pct, 0.0) / 50.0, 1.0)
    if beta_value is not None:
        score += 20.0 * min(abs(beta_value - 1.0), 1.0)
    if var_pct is not None:
        score += 10.0 * min(abs(var_pct) / 10.0, 1.0)

    return float(min(max(score, 0.0), 100.0))


def classify_risk_level(score: float, threshold_multiplier: float = 1.0) -> RiskLevel:
    """Bucket a score into a RiskLevel using regime-scaled cutoffs.

    Each base cutoff is multiplied by ``threshold_multiplier`` first, so a
    multiplier below 1 (calm market) lowers the bar for higher levels.
    """
    if threshold_multiplier <= 0:
        raise InvalidInput(f"Threshold multiplier must be positive, got {threshold_multiplier}")

    low, moderate, high = (c * threshold_multiplier for c in RISK_LEVEL_CUTOFFS)
    if score < low:
        return RiskLevel.LOW
    if score < moderate:
        return RiskLevel.MODERATE
    if score < high:
        return RiskLevel.HIGH
    return RiskLevel.SEVERE


def assess_risk(
    returns: pd.Series,
    benchmark: Optional[pd.Series] = None,
    position_value: Optional[float] = None,
    ticker: Optional[str] = None,
    threshold_multiplier: float = 1.0,
    risk_free_rate: float = 0.04,
    min_beta_observations: int = 20,
) -> RiskAssessment:
    """Compute the full RiskAssessment for one return series.

    Args:
        returns: Daily simple returns (Series indexed by date, or array-like)
        benchmark: Optional benchmark returns; aligned on common dates for beta
        position_value: If given, VaR/ES are reported in currency units
        ticker: Ticker the series belongs to; None for a portfolio
        threshold_multiplier: Regime multiplier applied to level cutoffs
        risk_free_rate: Annual risk-free rate for Sharpe/Sortino
        min_beta_observations: Minimum overlap for a beta estimate

    Returns:
        RiskAssessment

    Raises:
        InsufficientData: If fewer than 2 returns are supplied
    """
    r = _as_array(returns)
    if len(r) < 2:
        raise InsufficientData(
            series=ticker or "portfolio", actual=len(r), required=2, statistic="volatility"
        )

    vol = annualized_volatility(r)
    dd = max_drawdown(r)
    beta_value = None
    if benchmark is not None:
        beta_value = beta(returns, benchmark, min_observations=min_beta_observations)

    var_95 = historical_var(r, 0.95)
    var_99 = historical_var(r, 0.99)
    es_95 = historical_expected_shortfall(r, 0.95)
    es_99 = historical_expected_shortfall(r, 0.99)

    score = risk_score(vol, dd, beta_value, var_95 * 100)
    level = classify_risk_level(score, threshold_multiplier)

    scale = position_value if position_value is not None else 100.0

    assessment = RiskAssessment(
        ticker=ticker,
        volatility=vol,
        max_drawdown=dd,
        beta=beta_value,
        sharpe=sharpe_ratio(r, risk_free_rate),
        sortino=sortino_ratio(r, risk_free_rate),
        annualized_return=annualized_return(r),
        value_at_risk=var_95 * scale,
        var_99=var_99 * scale,
        expected_shortfall=es_95 * scale,
        expected_shortfall_99=es_99 * scale,
        risk_score=score,
        risk_level=level,
        threshold_multiplier=threshold_multiplier,
        observations=len(r),
    )

    logger.info(
        "assess_risk: assessment computed",
        ticker=ticker,
        observations=len(r),
        risk_score=round(score, 2),
        risk_level=level.value,
        threshold_multiplier=threshold_multiplier,
    )
    return assessment


def _weighted(values: List[Tuple[Optional[float], float]]) -> Optional[float]:
    present = [(v, w) for v, w in values if v is not None]
    if not present:
        return None
    total_w = sum(w for _, w in present)
    if total_w <= 0:
        return None
    return sum(v * w for v, w in present) / total_w


def aggregate_portfolio_assessment(
    positions: List[PositionRisk],
    threshold_multiplier: float = 1.0,
) -> Tuple[RiskAssessment, float]:
    """Market-value-weighted average of position assessments.

    Positions weighing less than 0.1% of the total are skipped. VaR is
    summed (it is already in currency units per position). The level is
    re-bucketed from the weighted score with the given multiplier.

    Returns:
        Tuple of (portfolio RiskAssessment with ticker=None, total market value)

    Raises:
        InvalidInput: If there are no positions with positive market value
    """
    total_value = sum(p.market_value for p in positions if p.market_value > 0)
    if total_value <= 0:
        raise InvalidInput("Portfolio has no positions with positive market value")

    weighted = [
        (p, p.market_value / total_value)
        for p in positions
        if p.market_value > 0 and p.market_value / total_value >= MIN_POSITION_WEIGHT
    ]
    if not weighted:
        raise InvalidInput("No position carries enough weight to aggregate")

    def avg(attr: str) -> Optional[float]:
        return _weighted([(getattr(p.assessment, attr), w) for p, w in weighted])

    var_values = [p.assessment.value_at_risk for p, _ in weighted if p.assessment.value_at_risk is not None]
    score = avg("risk_score") or 0.0

    assessment = RiskAssessment(
        ticker=None,
        volatility=avg("volatility") or 0.0,
        max_drawdown=avg("max_drawdown") or 0.0,
        beta=avg("beta"),
        sharpe=avg("sharpe"),
        sortino=avg("sortino"),
        annualized_return=avg("annualized_return"),
        value_at_risk=sum(var_values) if var_values else None,
        risk_score=score,
        risk_level=classify_risk_level(score, threshold_multiplier),
        threshold_multiplier=threshold_multiplier,
        observations=min(p.assessment.observations for p, _ in weighted),
    )

    logger.info(
        "aggregate_portfolio_assessment: portfolio aggregated",
        positions=len(positions),
        included=len(weighted),
        total_value=total_value,
        risk_score=round(score, 2),
    )
    return assessment, total_value
