"""Pydantic models for analytics engine records."""

from __future__ import annotations

import datetime as dt
from enum import Enum

from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    SEVERE = "severe"


class RegimeType(str, Enum):
    BULL = "bull"
    BEAR = "bear"
    HIGH_VOLATILITY = "high_volatility"
    NORMAL = "normal"


class SnapshotKind(str, Enum):
    PORTFOLIO = "portfolio"
    POSITION = "position"


class TransactionKind(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


# ---------------------------------------------------------------------------
# Risk metrics
# ---------------------------------------------------------------------------


class RiskAssessment(BaseModel):
    """Risk metrics for one ticker, or a whole portfolio when ``ticker`` is None.

    Volatility, drawdown and annualized return are percentages.
    ``value_at_risk`` is a currency amount when a position value was
    supplied, otherwise a percentage loss.
    """

    ticker: str | None = None
    volatility: float
    max_drawdown: float
    beta: float | None = None
    sharpe: float | None = None
    sortino: float | None = None
    annualized_return: float | None = None
    value_at_risk: float | None = None
    var_99: float | None = None
    expected_shortfall: float | None = None
    expected_shortfall_99: float | None = None
    risk_score: float = Field(ge=0, le=100)
    risk_level: RiskLevel
    threshold_multiplier: float = 1.0
    observations: int = 0


class RiskSnapshot(BaseModel):
    """A persisted RiskAssessment, unique per (portfolio, ticker, date, kind)."""

    portfolio_id: str
    ticker: str | None = None
    snapshot_date: dt.date
    snapshot_type: SnapshotKind
    volatility: float
    max_drawdown: float
    beta: float | None = None
    sharpe: float | None = None
    value_at_risk: float | None = None
    risk_score: float
    risk_level: RiskLevel
    total_value: float | None = None  # portfolio rows
    market_value: float | None = None  # position rows

    @classmethod
    def from_assessment(
        cls,
        portfolio_id: str,
        snapshot_date: dt.date,
        assessment: RiskAssessment,
        market_value: float | None = None,
    ) -> "RiskSnapshot":
        is_portfolio = assessment.ticker is None
        return cls(
            portfolio_id=portfolio_id,
            ticker=assessment.ticker,
            snapshot_date=snapshot_date,
            snapshot_type=SnapshotKind.PORTFOLIO if is_portfolio else SnapshotKind.POSITION,
            volatility=assessment.volatility,
            max_drawdown=assessment.max_drawdown,
            beta=assessment.beta,
            sharpe=assessment.sharpe,
            value_at_risk=assessment.value_at_risk,
            risk_score=assessment.risk_score,
            risk_level=assessment.risk_level,
            total_value=market_value if is_portfolio else None,
            market_value=None if is_portfolio else market_value,
        )


class PositionRisk(BaseModel):
    """Input to portfolio snapshotting: one position's assessment and size."""

    assessment: RiskAssessment
    market_value: float


class RiskIncrease(BaseModel):
    ticker: str
    metric: str
    previous: float
    current: float
    change_pct: float


# ---------------------------------------------------------------------------
# Rolling beta
# ---------------------------------------------------------------------------


class BetaPoint(BaseModel):
    date: dt.date
    beta: float
    r_squared: float
    alpha: float | None = None


class RollingBetaAnalysis(BaseModel):
    ticker: str
    benchmark: str
    window: int
    points: list[BetaPoint]
    current_beta: float
    average_beta: float
    min_beta: float
    max_beta: float
    beta_volatility: float


class CacheStatus(BaseModel):
    is_stale: bool
    last_updated: dt.datetime | None = None
    should_refresh: bool = False
    source: str = "cache"  # "cache" or "computed"


class RollingBetaResult(BaseModel):
    series: RollingBetaAnalysis
    cache_status: CacheStatus


# ---------------------------------------------------------------------------
# Market regime
# ---------------------------------------------------------------------------


class MarketRegimeRecord(BaseModel):
    """One classification per calendar date."""

    date: dt.date
    regime_type: RegimeType
    volatility_level: float
    market_return: float
    confidence: float = Field(ge=0, le=100)
    benchmark_ticker: str
    lookback_days: int
    threshold_multiplier: float
    state_probabilities: list[float] | None = None
    model: str = "baseline"  # "hmm" when the state model produced confidence


class ForecastPoint(BaseModel):
    horizon_days: int
    predicted_regime: RegimeType
    confidence: float
    state_probabilities: dict[str, float]
    transition_probability: float
    confidence_level: str  # "high", "medium" or "low"


# ---------------------------------------------------------------------------
# Holdings, transactions and performance
# ---------------------------------------------------------------------------


class HoldingsSnapshot(BaseModel):
    """A single imported holding line; an empty ticker is the cash line."""

    account_id: str
    ticker: str
    snapshot_date: dt.date
    quantity: float
    price: float | None = None
    book_value: float | None = None
    market_value: float = 0.0

    @property
    def is_cash(self) -> bool:
        return self.ticker == ""


class DetectedTransaction(BaseModel):
    account_id: str
    ticker: str  # "" for deposits and withdrawals
    date: dt.date
    kind: TransactionKind
    quantity_delta: float
    value_delta: float
    price: float | None = None
    description: str = ""


class TruePerformance(BaseModel):
    account_id: str
    twr: float
    mwr: float
    start_date: dt.date
    end_date: dt.date
    sub_periods: int
    total_deposits: float
    total_withdrawals: float
    net_contributions: float
    current_value: float
    true_gain_loss: float
    true_gain_loss_pct: float | None = None


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


class CorrelationPair(BaseModel):
    ticker1: str
    ticker2: str
    correlation: float


class CorrelationCluster(BaseModel):
    cluster_id: int  # 1 = largest
    tickers: list[str]
    size: int
    average_correlation: float  # mean pairwise correlation; 1.0 for a singleton
    representative: str  # member most correlated with the rest of the cluster


class CorrelationStatistics(BaseModel):
    average_correlation: float
    max_correlation: float
    min_correlation: float
    correlation_std_dev: float
    high_correlation_pairs: int
    diversification_score: float  # 0-10


class CorrelationResult(BaseModel):
    tickers: list[str]
    matrix: list[list[float]]
    observations: int
    excluded: dict[str, str] = Field(default_factory=dict)
    statistics: CorrelationStatistics
    top_pairs: list[CorrelationPair] = Field(default_factory=list)
    clusters: list[CorrelationCluster] = Field(default_factory=list)
