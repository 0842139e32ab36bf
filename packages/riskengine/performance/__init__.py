"""
Performance Analytics

- reconciliation: Holdings snapshots -> detected transactions
- true_performance: Time-weighted and money-weighted returns
"""

from .reconciliation import diff_snapshots, reconcile_snapshots
from .true_performance import (
    compute_true_performance,
    external_cash_flows,
    money_weighted_return,
    portfolio_values,
    time_weighted_return,
)

__all__ = [
    'diff_snapshots',
    'reconcile_snapshots',
    'compute_true_performance',
    'external_cash_flows',
    'money_weighted_return',
    'portfolio_values',
    'time_weighted_return',
]
