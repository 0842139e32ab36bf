"""Error taxonomy for the analytics engine.

Every failure surfaced to callers derives from :class:`AnalyticsError` and
carries a ``details`` dict with enough context to decide whether to retry,
force a recompute, or supply more input.
"""

from __future__ import annotations

from typing import Any


class AnalyticsError(Exception):
    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InsufficientData(AnalyticsError):
    """A series is too short for the requested statistic."""

    def __init__(self, series: str, actual: int, required: int, statistic: str | None = None) -> None:
        what = f" for {statistic}" if statistic else ""
        super().__init__(
            f"Insufficient data in {series} series{what}: have {actual}, need {required}",
            series=series,
            actual=actual,
            required=required,
            statistic=statistic,
        )
        self.series = series
        self.actual = actual
        self.required = required

    @property
    def deficit(self) -> int:
        return max(self.required - self.actual, 0)


class NotAvailable(AnalyticsError):
    """No cached value exists and synchronous computation is disabled."""


class NonConvergence(AnalyticsError):
    """An iterative solver or filter failed to produce a valid result."""


class InvalidInput(AnalyticsError, ValueError):
    """Bad window size, malformed date range, unknown ticker, etc."""


class ProviderFailure(AnalyticsError):
    """Upstream data collaborator failed; the original exception is chained."""
