"""Configuration for the analytics engine loaded from environment variables."""

from functools import lru_cache
from typing import Tuple

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Analytics engine configuration.

    All fields can be overridden with ``RISKENGINE_``-prefixed environment
    variables (or a ``.env`` file).  Only ``postgres_url`` is needed for the
    database-backed collaborators; the numerical defaults match the values
    used in production.
    """

    postgres_url: str = ""
    db_ssl: bool = False
    log_level: str = "INFO"
    log_json: bool = False

    # Risk metrics
    risk_free_rate: float = 0.04  # annual
    min_beta_observations: int = 20

    # Rolling beta cache
    rolling_beta_ttl_hours: float = 6.0
    rolling_beta_refresh_hours: float = 6.0
    rolling_beta_background_only: bool = False
    rolling_beta_idle_hours: float = 168.0  # keys unrequested this long leave the sweep
    rolling_beta_lookback_days: int = 365
    default_benchmark: str = "SPY"

    # Market regime
    regime_lookback_days: int = 30
    regime_thresholds: Tuple[float, float, float] = (20.0, 25.0, 35.0)  # bull, bear, high vol
    regime_training_lookback_days: int = 3650  # calendar days of benchmark history
    regime_training_min_days: int = 252
    regime_training_interval_days: float = 30.0

    # IRR solver
    irr_lower_bound: float = -0.99
    irr_upper_bound: float = 10.0
    irr_tolerance: float = 1e-6
    irr_max_iterations: int = 100

    correlation_timeout_seconds: float = 120.0

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "RISKENGINE_",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()
