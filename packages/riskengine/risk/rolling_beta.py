"""
Rolling Window Regression Module

Rolling OLS beta / R-squared of a ticker against a benchmark, plus the keyed
cache that serves them. The cache holds one entry per
(ticker, benchmark, window) with the last computed series, when it was
computed, and the in-flight computation (if any). Concurrent requests for a
key share a single asyncio task; the entry is only replaced after that task
succeeds.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import structlog

from ..errors import InsufficientData, InvalidInput, NotAvailable
from ..models import BetaPoint, CacheStatus, RollingBetaAnalysis, RollingBetaResult
from .returns import align_returns

logger = structlog.get_logger(__name__)

VALID_WINDOWS = (30, 60, 90)
DEFAULT_TTL = timedelta(hours=6)
DEFAULT_IDLE_TTL = timedelta(days=7)

_EPS = 1e-12

CacheKey = Tuple[str, str, int]


def rolling_beta_key(ticker: str, benchmark: str, window: int) -> CacheKey:
    """Normalise and validate a cache key."""
    if window not in VALID_WINDOWS:
        raise InvalidInput(
            f"Window must be one of {VALID_WINDOWS}, got {window}", window=window
        )
    if not ticker or not benchmark:
        raise InvalidInput("Ticker and benchmark are required")
    return ticker.strip().upper(), benchmark.strip().upper(), window


def compute_rolling_beta(
    ticker_returns: pd.Series,
    benchmark_returns: pd.Series,
    window: int,
    ticker: str = "ticker",
    benchmark: str = "benchmark",
) -> RollingBetaAnalysis:
    """Rolling OLS regression of ticker returns on benchmark returns.

    For each aligned date d preceded by at least ``window`` returns,
    regresses over the ``window`` returns strictly before d and emits
    (d, slope, R^2, intercept). The return dated d is not part of its own
    window. Windows where the benchmark has zero variance are skipped.

    Args:
        ticker_returns: Daily simple returns of the asset
        benchmark_returns: Daily simple returns of the benchmark
        window: Regression window (30, 60 or 90)
        ticker: Asset label for errors and output
        benchmark: Benchmark label for errors and output

    Returns:
        RollingBetaAnalysis with the point series and summary stats

    Raises:
        InvalidInput: If window is not supported
        InsufficientData: If either return series is shorter than window, or
            their overlap leaves no date after a full window. Counts are of
            daily returns, one fewer than the price rows they come from.
    """
    if window not in VALID_WINDOWS:
        raise InvalidInput(f"Window must be one of {VALID_WINDOWS}, got {window}", window=window)

    if len(ticker_returns) < window:
        raise InsufficientData(
            series=f"{ticker} (ticker)", actual=len(ticker_returns), required=window,
            statistic="rolling_beta daily returns",
        )
    if len(benchmark_returns) < window:
        raise InsufficientData(
            series=f"{benchmark} (benchmark)", actual=len(benchmark_returns), required=window,
            statistic="rolling_beta daily returns",
        )

    a, b = align_returns(ticker_returns, benchmark_returns)
    # The first point needs a full window before its own date
    if len(a) <= window:
        raise InsufficientData(
            series=f"{ticker}/{benchmark} (aligned)", actual=len(a), required=window + 1,
            statistic="rolling_beta daily returns",
        )

    # Statistics over [i - window, i) are the trailing window at i - 1
    mean_a = a.rolling(window).mean().shift(1)
    mean_b = b.rolling(window).mean().shift(1)
    cov_ab = a.rolling(window).cov(b).shift(1)
    var_a = a.rolling(window).var().shift(1)
    var_b = b.rolling(window).var().shift(1)

    valid = var_b > _EPS
    betas = (cov_ab / var_b).where(valid)
    alphas = mean_a - betas * mean_b
    r_squared = (cov_ab ** 2 / (var_a * var_b)).where(valid & (var_a > _EPS), 0.0)

    points: List[BetaPoint] = []
    for d, beta_value in betas.dropna().items():
        points.append(
            BetaPoint(
                date=d.date(),
                beta=float(beta_value),
                r_squared=float(min(max(r_squared.loc[d], 0.0), 1.0)),
                alpha=float(alphas.loc[d]),
            )
        )

    if not points:
        raise InsufficientData(
            series=f"{benchmark} (benchmark)", actual=0, required=1,
            statistic="rolling_beta windows with non-zero benchmark variance",
        )

    values = np.array([p.beta for p in points])
    analysis = RollingBetaAnalysis(
        ticker=ticker,
        benchmark=benchmark,
        window=window,
        points=points,
        current_beta=float(values[-1]),
        average_beta=float(values.mean()),
        min_beta=float(values.min()),
        max_beta=float(values.max()),
        beta_volatility=float(values.std(ddof=1)) if len(values) > 1 else 0.0,
    )

    logger.info(
        "compute_rolling_beta: series computed",
        ticker=ticker,
        benchmark=benchmark,
        window=window,
        points=len(points),
        current_beta=round(analysis.current_beta, 4),
    )
    return analysis


# ---------------------------------------------------------------------------
# Keyed cache with single-flight computation
# ---------------------------------------------------------------------------


@dataclass
class RollingBetaCacheEntry:
    value: Optional[RollingBetaAnalysis] = None
    computed_at: Optional[datetime] = None
    in_flight: Optional[asyncio.Task] = None
    last_requested_at: Optional[datetime] = None


class RollingBetaCache:
    """Rolling beta results keyed by (ticker, benchmark, window).

    ``background_only`` disables synchronous computation for keys with no
    entry: such requests raise NotAvailable unless ``force`` is set.

    Keys not requested by a caller within ``idle_ttl`` drop out of
    ``stale_keys()`` and are removed by ``evict_idle()``; background
    refreshes do not count as requests.
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        background_only: bool = False,
        now_fn: Optional[Callable[[], datetime]] = None,
        idle_ttl: Optional[timedelta] = DEFAULT_IDLE_TTL,
    ) -> None:
        self.ttl = ttl
        self.idle_ttl = idle_ttl
        self.background_only = background_only
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[CacheKey, RollingBetaCacheEntry] = {}

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.computed_at is None:
            return True
        return self._now_fn() - entry.computed_at > self.ttl

    def peek(self, key: CacheKey) -> Optional[RollingBetaAnalysis]:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def is_idle(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.last_requested_at is None:
            return True
        if self.idle_ttl is None:
            return False
        return self._now_fn() - entry.last_requested_at > self.idle_ttl

    def requested_keys(self) -> List[CacheKey]:
        """Keys a caller has asked for within the idle window."""
        return sorted(k for k in self._entries if not self.is_idle(k))

    def stale_keys(self) -> List[CacheKey]:
        return [k for k in self.requested_keys() if self.is_stale(k)]

    def in_flight(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.in_flight is not None and not entry.in_flight.done()

    def evict_idle(self) -> List[CacheKey]:
        """Drop idle entries with no computation in flight."""
        idle = sorted(k for k in self._entries if self.is_idle(k) and not self.in_flight(k))
        for key in idle:
            del self._entries[key]
        if idle:
            logger.info("rolling_beta_cache: evicted idle keys", count=len(idle))
        return idle

    async def get(
        self,
        key: CacheKey,
        compute: Callable[[], Awaitable[RollingBetaAnalysis]],
        force: bool = False,
        timeout: Optional[float] = None,
        record_request: bool = True,
    ) -> RollingBetaResult:
        """Serve a cached series or (re)compute it.

        Args:
            key: Normalised cache key
            compute: Coroutine factory producing a fresh analysis
            force: Recompute even when a fresh entry exists
            timeout: Seconds this caller is willing to wait; expiry raises
                asyncio.TimeoutError but leaves the shared computation running
            record_request: False for background refreshes, which do not keep
                a key active

        Returns:
            RollingBetaResult with cache_status
        """
        entry = self._entries.setdefault(key, RollingBetaCacheEntry())
        if record_request:
            entry.last_requested_at = self._now_fn()
        has_value = entry.value is not None

        if has_value and not force:
            if not self.is_stale(key):
                return self._result(entry, is_stale=False, source="cache")
            if self.background_only:
                return self._result(entry, is_stale=True, source="cache")

        if not has_value and not force and self.background_only:
            raise NotAvailable(
                f"No cached rolling beta for {key[0]} vs {key[1]} ({key[2]}d); "
                "request with force=true to compute it",
                ticker=key[0],
                benchmark=key[1],
                window=key[2],
            )

        task = self._start_or_join(key, compute)
        if timeout is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        else:
            await asyncio.shield(task)

        return self._result(entry, is_stale=False, source="computed")

    def _start_or_join(
        self,
        key: CacheKey,
        compute: Callable[[], Awaitable[RollingBetaAnalysis]],
    ) -> asyncio.Task:
        # No await between lookup and registration
        entry = self._entries.setdefault(key, RollingBetaCacheEntry())
        if entry.in_flight is not None and not entry.in_flight.done():
            logger.info("rolling_beta_cache: joining in-flight computation", key=key)
            return entry.in_flight

        task = asyncio.create_task(self._run(key, entry, compute))
        task.add_done_callback(self._retrieve_result)
        entry.in_flight = task
        return task

    async def _run(
        self,
        key: CacheKey,
        entry: RollingBetaCacheEntry,
        compute: Callable[[], Awaitable[RollingBetaAnalysis]],
    ) -> RollingBetaAnalysis:
        try:
            value = await compute()
            entry.value = value
            entry.computed_at = self._now_fn()
            logger.info("rolling_beta_cache: entry updated", key=key, points=len(value.points))
            return value
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "rolling_beta_cache: computation failed, keeping previous value",
                key=key,
                error=str(exc),
                has_previous=entry.value is not None,
            )
            raise
        finally:
            entry.in_flight = None

    @staticmethod
    def _retrieve_result(task: asyncio.Task) -> None:
        # Marks the exception as retrieved when every waiter has gone away
        if not task.cancelled():
            task.exception()

    def _result(self, entry: RollingBetaCacheEntry, is_stale: bool, source: str) -> RollingBetaResult:
        return RollingBetaResult(
            series=entry.value,
            cache_status=CacheStatus(
                is_stale=is_stale,
                last_updated=entry.computed_at,
                should_refresh=is_stale,
                source=source,
            ),
        )

    async def clear(self) -> None:
        """Cancel in-flight computations and drop every entry."""
        tasks = [e.in_flight for e in self._entries.values() if e.in_flight is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._entries.clear()
