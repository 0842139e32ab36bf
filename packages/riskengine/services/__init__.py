"""Service layer exposing the analytics operations."""

from riskengine.services.analytics import AnalyticsService, find_risk_increases

__all__ = ["AnalyticsService", "find_risk_increases"]
