"""Analytics orchestration service.

Wires the pure risk/performance modules to the price and holdings
collaborators, the rolling beta cache and the database. This is the surface
other services call: every public coroutine maps to one engine operation.
"""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from typing import Callable, Iterable, Sequence

import pandas as pd
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from ..config import Settings, get_settings
from ..data.store import HoldingsSnapshotStore, PriceSeriesStore
from ..db.repository import (
    get_latest_position_snapshots,
    get_market_regime,
    get_regime_history,
    get_risk_history,
    replace_detected_transactions,
    upsert_market_regime,
    upsert_risk_snapshots,
)
from ..errors import InvalidInput
from ..models import (
    CorrelationResult,
    DetectedTransaction,
    ForecastPoint,
    MarketRegimeRecord,
    PositionRisk,
    RiskAssessment,
    RiskIncrease,
    RiskSnapshot,
    RollingBetaResult,
    TruePerformance,
)
from ..performance.reconciliation import reconcile_snapshots
from ..performance.true_performance import compute_true_performance
from ..risk.correlation import compute_correlation
from ..risk.hmm import HiddenMarkovModel, one_hot
from ..risk.metrics import aggregate_portfolio_assessment, assess_risk
from ..risk.regime import (
    DEFAULT_FORECAST_HORIZONS,
    detect_regime,
    forecast_regime,
    train_regime_model,
)
from ..risk.returns import prices_to_returns
from ..risk.rolling_beta import RollingBetaCache, compute_rolling_beta, rolling_beta_key

logger = structlog.get_logger()

# Calendar days of benchmark history fetched for regime detection
REGIME_HISTORY_DAYS = 400

RISK_INCREASE_METRICS = ("volatility", "max_drawdown", "risk_score", "value_at_risk")


def find_risk_increases(
    snapshots: Iterable[RiskSnapshot],
    threshold_pct: float,
) -> list[RiskIncrease]:
    """Metrics that rose by more than ``threshold_pct`` percent between the
    two most recent snapshot dates of each ticker."""
    by_ticker: dict[str, list[RiskSnapshot]] = {}
    for snap in sorted(snapshots, key=lambda s: s.snapshot_date):
        by_ticker.setdefault(snap.ticker or "", []).append(snap)

    increases = []
    for ticker, history in sorted(by_ticker.items()):
        if len(history) < 2:
            continue
        previous, current = history[-2], history[-1]
        for metric in RISK_INCREASE_METRICS:
            before = getattr(previous, metric)
            after = getattr(current, metric)
            if before is None or after is None or before == 0:
                continue
            change_pct = (abs(after) - abs(before)) / abs(before) * 100
            if change_pct > threshold_pct:
                increases.append(
                    RiskIncrease(
                        ticker=ticker,
                        metric=metric,
                        previous=before,
                        current=after,
                        change_pct=change_pct,
                    )
                )
    return increases


class AnalyticsService:
    """Risk & performance analytics over injected collaborators.

    ``engine`` is optional: without it nothing is persisted and regimes are
    always computed on demand.
    """

    def __init__(
        self,
        prices: PriceSeriesStore,
        holdings: HoldingsSnapshotStore,
        engine: AsyncEngine | None = None,
        settings: Settings | None = None,
        beta_cache: RollingBetaCache | None = None,
        regime_model: HiddenMarkovModel | None = None,
        today_fn: Callable[[], date] | None = None,
    ) -> None:
        self.prices = prices
        self.holdings = holdings
        self.engine = engine
        self.settings = settings or get_settings()
        self.beta_cache = beta_cache or RollingBetaCache(
            ttl=timedelta(hours=self.settings.rolling_beta_ttl_hours),
            background_only=self.settings.rolling_beta_background_only,
            idle_ttl=timedelta(hours=self.settings.rolling_beta_idle_hours),
        )
        self.regime_model = regime_model or HiddenMarkovModel()
        self._today = today_fn or date.today
        self._latest_regime: MarketRegimeRecord | None = None

    async def _fetch_prices(self, ticker: str, days: int) -> pd.Series:
        end = self._today()
        return await self.prices.get_price_series(ticker, end - timedelta(days=days), end)

    # -------------------------------------------------------------------
    # Risk metrics
    # -------------------------------------------------------------------

    async def current_threshold_multiplier(self) -> float:
        if self._latest_regime is not None:
            return self._latest_regime.threshold_multiplier
        if self.engine is not None:
            stored = await get_market_regime(self.engine)
            if stored is not None:
                self._latest_regime = stored
                return stored.threshold_multiplier
        return 1.0

    async def assess_risk(
        self,
        series: pd.Series,
        benchmark: pd.Series | None = None,
        position_value: float | None = None,
        ticker: str | None = None,
        threshold_multiplier: float | None = None,
    ) -> RiskAssessment:
        """Assess a return series; the latest regime's multiplier applies by default."""
        if threshold_multiplier is None:
            threshold_multiplier = await self.current_threshold_multiplier()

        return assess_risk(
            series,
            benchmark=benchmark,
            position_value=position_value,
            ticker=ticker,
            threshold_multiplier=threshold_multiplier,
            risk_free_rate=self.settings.risk_free_rate,
            min_beta_observations=self.settings.min_beta_observations,
        )

    async def assess_ticker_risk(
        self,
        ticker: str,
        days: int = 365,
        benchmark: str | None = None,
        position_value: float | None = None,
    ) -> RiskAssessment:
        """Fetch prices for ``ticker`` and its benchmark, then assess."""
        benchmark = benchmark or self.settings.default_benchmark
        ticker_prices, bench_prices = await asyncio.gather(
            self._fetch_prices(ticker, days),
            self._fetch_prices(benchmark, days),
        )
        return await self.assess_risk(
            prices_to_returns(ticker_prices, ticker),
            benchmark=prices_to_returns(bench_prices, benchmark),
            position_value=position_value,
            ticker=ticker,
        )

    async def snapshot_risk(
        self,
        portfolio_id: str,
        positions: Sequence[PositionRisk],
        snapshot_date: date | None = None,
    ) -> list[RiskSnapshot]:
        """Persist position snapshots plus the value-weighted portfolio snapshot."""
        snapshot_date = snapshot_date or self._today()
        multiplier = await self.current_threshold_multiplier()
        portfolio, total_value = aggregate_portfolio_assessment(list(positions), multiplier)

        snapshots = [
            RiskSnapshot.from_assessment(portfolio_id, snapshot_date, p.assessment, p.market_value)
            for p in positions
        ]
        snapshots.append(
            RiskSnapshot.from_assessment(portfolio_id, snapshot_date, portfolio, total_value)
        )

        if self.engine is not None:
            await upsert_risk_snapshots(self.engine, snapshots)
        return snapshots

    async def risk_history(
        self,
        portfolio_id: str,
        ticker: str | None,
        start: date,
        end: date,
    ) -> list[RiskSnapshot]:
        if start > end:
            raise InvalidInput(f"Malformed date range: start {start} is after end {end}")
        if self.engine is None:
            return []
        return await get_risk_history(self.engine, portfolio_id, ticker, start, end)

    async def detect_risk_increases(
        self,
        portfolio_id: str,
        threshold_pct: float = 20.0,
    ) -> list[RiskIncrease]:
        if self.engine is None:
            return []
        snapshots = await get_latest_position_snapshots(self.engine, portfolio_id)
        increases = find_risk_increases(snapshots, threshold_pct)
        if increases:
            logger.info(
                "risk_increases_detected",
                portfolio_id=portfolio_id,
                count=len(increases),
            )
        return increases

    # -------------------------------------------------------------------
    # Rolling beta
    # -------------------------------------------------------------------

    async def get_rolling_beta(
        self,
        ticker: str,
        benchmark: str | None = None,
        window: int = 90,
        force: bool = False,
        timeout: float | None = None,
        record_request: bool = True,
    ) -> RollingBetaResult:
        """Rolling beta series with cache status.

        ``record_request=False`` refreshes a key without counting as a
        caller request.

        Raises:
            InvalidInput: If window is not 30, 60 or 90
            NotAvailable: If nothing is cached, background-only mode is on
                and ``force`` is False
            InsufficientData: If either series is shorter than the window
        """
        key = rolling_beta_key(ticker, benchmark or self.settings.default_benchmark, window)
        days = self.settings.rolling_beta_lookback_days

        async def compute():
            ticker_prices, bench_prices = await asyncio.gather(
                self._fetch_prices(key[0], days),
                self._fetch_prices(key[1], days),
            )
            return await asyncio.to_thread(
                compute_rolling_beta,
                prices_to_returns(ticker_prices, key[0]),
                prices_to_returns(bench_prices, key[1]),
                key[2],
                key[0],
                key[1],
            )

        return await self.beta_cache.get(
            key, compute, force=force, timeout=timeout, record_request=record_request
        )

    # -------------------------------------------------------------------
    # Market regime
    # -------------------------------------------------------------------

    async def get_regime(self, on: date | None = None, refresh: bool = False) -> MarketRegimeRecord:
        """Regime for a date (today by default), detecting and storing it if absent."""
        on = on or self._today()

        if self.engine is not None and not refresh:
            stored = await get_market_regime(self.engine, on)
            if stored is not None:
                self._remember(stored)
                return stored

        benchmark = self.settings.default_benchmark
        prices = await self.prices.get_price_series(
            benchmark, on - timedelta(days=REGIME_HISTORY_DAYS), on
        )
        record = await asyncio.to_thread(
            detect_regime,
            prices,
            on,
            benchmark,
            self.settings.regime_lookback_days,
            self.settings.regime_thresholds,
            self.regime_model,
        )

        if self.engine is not None:
            await upsert_market_regime(self.engine, record)
        self._remember(record)
        return record

    async def retrain_regime_model(self) -> HiddenMarkovModel:
        """Refit the state model on the benchmark's baseline-labelled history.

        ``regime_model`` is replaced only after fitting succeeds.

        Raises:
            InsufficientData: If the benchmark has too little history
        """
        s = self.settings
        prices = await self._fetch_prices(s.default_benchmark, s.regime_training_lookback_days)
        model = await asyncio.to_thread(
            train_regime_model,
            prices,
            s.regime_lookback_days,
            s.regime_thresholds,
            s.regime_training_min_days,
        )
        self.regime_model = model
        logger.info(
            "regime_model_retrained",
            benchmark=s.default_benchmark,
            observations=model.training_observations,
        )
        return model

    def _remember(self, record: MarketRegimeRecord) -> None:
        if self._latest_regime is None or record.date >= self._latest_regime.date:
            self._latest_regime = record

    async def regime_history(self, start: date, end: date) -> list[MarketRegimeRecord]:
        if start > end:
            raise InvalidInput(f"Malformed date range: start {start} is after end {end}")
        if self.engine is None:
            return []
        return await get_regime_history(self.engine, start, end)

    async def forecast_regime(
        self,
        horizon_days: int | Sequence[int] | None = None,
    ) -> list[ForecastPoint]:
        """Forecast from today's regime; defaults to 5, 10 and 30 days."""
        if horizon_days is None:
            horizons = list(DEFAULT_FORECAST_HORIZONS)
        elif isinstance(horizon_days, int):
            horizons = [horizon_days]
        else:
            horizons = list(horizon_days)

        regime = await self.get_regime()
        current = regime.state_probabilities or one_hot(regime.regime_type)
        return forecast_regime(current, horizons, self.regime_model)

    # -------------------------------------------------------------------
    # Reconciliation and performance
    # -------------------------------------------------------------------

    async def reconcile_snapshots(self, account_id: str) -> list[DetectedTransaction]:
        """Recompute (and persist) the account's detected transactions."""
        snapshots = await self.holdings.get_holdings_snapshots(account_id)
        transactions = reconcile_snapshots(snapshots, account_id=account_id)

        if self.engine is not None:
            await replace_detected_transactions(
                self.engine,
                account_id,
                {s.snapshot_date for s in snapshots},
                transactions,
            )
        return transactions

    async def true_performance(self, account_id: str) -> TruePerformance:
        """TWR and IRR for an account from its snapshot history.

        Raises:
            InsufficientData: If fewer than 2 snapshot dates exist
            NonConvergence: If the IRR solver does not converge
        """
        snapshots = await self.holdings.get_holdings_snapshots(account_id)
        transactions = reconcile_snapshots(snapshots, account_id=account_id)
        s = self.settings
        return compute_true_performance(
            account_id,
            transactions,
            snapshots,
            irr_lower=s.irr_lower_bound,
            irr_upper=s.irr_upper_bound,
            irr_tolerance=s.irr_tolerance,
            irr_max_iterations=s.irr_max_iterations,
        )

    # -------------------------------------------------------------------
    # Correlation
    # -------------------------------------------------------------------

    async def correlation_matrix(
        self,
        tickers: Sequence[str],
        window: int = 90,
        timeout: float | None = None,
    ) -> CorrelationResult:
        """Pairwise correlation over date-aligned returns.

        Unknown tickers are excluded and reported rather than failing the
        whole request. The computation runs off the event loop under an
        extended timeout (``correlation_timeout_seconds`` by default).
        """
        unique = list(dict.fromkeys(t.strip().upper() for t in tickers if t and t.strip()))
        if len(unique) < 2:
            raise InvalidInput("Correlation requires at least 2 distinct tickers")
        if window < 2:
            raise InvalidInput(f"Window must be >= 2, got {window}")

        # Trading days -> calendar days with headroom for holidays
        days = int(window * 1.5) + 10
        results = await asyncio.gather(
            *(self._fetch_prices(t, days) for t in unique),
            return_exceptions=True,
        )

        prices: dict[str, pd.Series] = {}
        unknown: dict[str, str] = {}
        for ticker, result in zip(unique, results):
            if isinstance(result, InvalidInput):
                unknown[ticker] = "unknown_ticker"
            elif isinstance(result, BaseException):
                raise result
            else:
                prices[ticker] = result

        correlation = await asyncio.wait_for(
            asyncio.to_thread(compute_correlation, prices, window),
            timeout or self.settings.correlation_timeout_seconds,
        )
        if unknown:
            correlation = correlation.model_copy(
                update={"excluded": {**correlation.excluded, **unknown}}
            )
        return correlation
