"""Collaborator stores and background jobs."""

from riskengine.data.scheduler import (
    run_daily_regime_update,
    run_periodic,
    run_rolling_beta_sweep,
    start_background_jobs,
)
from riskengine.data.store import (
    DatabaseHoldingsStore,
    DatabasePriceStore,
    HoldingsSnapshotStore,
    PriceSeriesStore,
)

__all__ = [
    "DatabaseHoldingsStore",
    "DatabasePriceStore",
    "HoldingsSnapshotStore",
    "PriceSeriesStore",
    "run_daily_regime_update",
    "run_periodic",
    "run_rolling_beta_sweep",
    "start_background_jobs",
]
