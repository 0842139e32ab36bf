"""Background jobs for cache refresh, regime model training and daily
regime classification.

The rolling beta sweep recomputes every stale key that callers have asked
for recently, through the same cache foreground requests use, so a foreground
``force`` request joins a sweep computation already in flight instead of
starting a second one.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog

from ..errors import AnalyticsError

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


async def run_rolling_beta_sweep(service: Any) -> dict[str, Any]:
    """Evict idle keys, then recompute stale entries for the active ones.

    Args:
        service: AnalyticsService owning the cache

    Returns:
        Dictionary with sweep statistics
    """
    cache = service.beta_cache
    evicted = cache.evict_idle()
    stale = cache.stale_keys()
    stats: dict[str, Any] = {
        "started_at": datetime.now(timezone.utc).isoformat(),
        "requested": len(cache.requested_keys()),
        "stale": len(stale),
        "evicted": len(evicted),
        "refreshed": 0,
        "errors": [],
    }

    logger.info("rolling_beta_sweep_started", stale=len(stale))

    for ticker, benchmark, window in stale:
        try:
            await service.get_rolling_beta(
                ticker, benchmark, window, force=True, record_request=False
            )
            stats["refreshed"] += 1
        except AnalyticsError as e:
            logger.warning(
                "rolling_beta_refresh_failed",
                ticker=ticker,
                benchmark=benchmark,
                window=window,
                error=str(e),
            )
            stats["errors"].append(f"{ticker}/{benchmark}/{window}: {e}")

    stats["completed_at"] = datetime.now(timezone.utc).isoformat()
    logger.info(
        "rolling_beta_sweep_completed",
        refreshed=stats["refreshed"],
        errors=len(stats["errors"]),
    )
    return stats


async def run_regime_model_training(service: Any) -> dict[str, Any]:
    """Refit the regime state model from the benchmark's history.

    On failure the service keeps its current model and the error propagates
    to the loop runner.
    """
    logger.info("regime_model_training_started")
    model = await service.retrain_regime_model()
    stats = {
        "benchmark": service.settings.default_benchmark,
        "observations": model.training_observations,
        "transition_diagonal": [round(float(p), 4) for p in model.transition.diagonal()],
    }
    logger.info("regime_model_training_completed", **stats)
    return stats


async def run_daily_regime_update(service: Any) -> dict[str, Any]:
    """Classify today's regime and upsert it (overwriting any earlier run)."""
    logger.info("daily_regime_update_started")
    record = await service.get_regime(refresh=True)
    stats = {
        "date": str(record.date),
        "regime": record.regime_type.value,
        "confidence": record.confidence,
        "threshold_multiplier": record.threshold_multiplier,
        "model": record.model,
    }
    logger.info("daily_regime_update_completed", **stats)
    return stats


# ---------------------------------------------------------------------------
# Loop runner
# ---------------------------------------------------------------------------


async def run_periodic(
    name: str,
    job: Callable[[], Awaitable[Any]],
    interval_seconds: float,
    initial_delay: float = 0.0,
    retry_seconds: float = 300.0,
) -> None:
    """Run ``job`` forever every ``interval_seconds`` until cancelled."""
    logger.info(f"{name}_loop_started", interval_s=interval_seconds)

    if initial_delay:
        await asyncio.sleep(initial_delay)

    while True:
        try:
            await job()
            await asyncio.sleep(interval_seconds)

        except asyncio.CancelledError:
            logger.info(f"{name}_loop_cancelled")
            raise
        except Exception:
            logger.exception(f"{name}_loop_error")
            await asyncio.sleep(retry_seconds)


def start_background_jobs(service: Any) -> list[asyncio.Task]:
    """Start the rolling beta sweep, regime model training and daily regime loops.

    The caller owns the returned tasks and cancels them on shutdown.
    """
    settings = service.settings
    return [
        asyncio.create_task(
            run_periodic(
                "rolling_beta_sweep",
                lambda: run_rolling_beta_sweep(service),
                settings.rolling_beta_refresh_hours * 3600,
                initial_delay=60,
            )
        ),
        asyncio.create_task(
            run_periodic(
                "regime_model_training",
                lambda: run_regime_model_training(service),
                settings.regime_training_interval_days * 24 * 3600,
                initial_delay=10,
            )
        ),
        asyncio.create_task(
            run_periodic(
                "regime_update",
                lambda: run_daily_regime_update(service),
                24 * 3600,
                initial_delay=30,
            )
        ),
    ]
