"""
Unit tests for true_performance.py - True Performance Module

Tests cover:
- Time-weighted return across cash-flow sub-periods
- Money-weighted return (IRR) solving and failure modes
- End-to-end performance from holdings snapshots
"""

from datetime import date

import pytest
import pandas as pd
from numpy.testing import assert_allclose

from riskengine.errors import InsufficientData, InvalidInput, NonConvergence
from riskengine.performance.reconciliation import reconcile_snapshots
from riskengine.performance.true_performance import (
    compute_true_performance,
    external_cash_flows,
    money_weighted_return,
    portfolio_values,
    time_weighted_return,
)

from conftest import cash, snap

D1, D2, D3 = date(2023, 1, 1), date(2023, 7, 1), date(2024, 1, 1)

NO_FLOWS = pd.Series(dtype=float)


class TestTimeWeightedReturn:

    def test_single_period_equals_simple_return(self):
        values = pd.Series([1.0, 1.25], index=[D1, D3])

        twr, sub_periods = time_weighted_return(values, NO_FLOWS)

        assert twr == pytest.approx(0.25, abs=1e-15)
        assert sub_periods == 1

    def test_deposit_splits_sub_periods(self):
        """(160 - 50) / 100 and 176 / 160 both return 10%."""
        values = pd.Series([100.0, 160.0, 176.0], index=[D1, D2, D3])
        flows = pd.Series([50.0], index=[D2])

        twr, sub_periods = time_weighted_return(values, flows)

        assert_allclose(twr, 1.1 * 1.1 - 1)
        assert sub_periods == 2

    def test_withdrawal(self):
        values = pd.Series([100.0, 60.0, 66.0], index=[D1, D2, D3])
        flows = pd.Series([-50.0], index=[D2])

        twr, _ = time_weighted_return(values, flows)

        assert_allclose(twr, 1.1 * 1.1 - 1)

    def test_empty_start_skipped(self):
        values = pd.Series([0.0, 100.0, 110.0], index=[D1, D2, D3])
        flows = pd.Series([100.0], index=[D2])

        twr, sub_periods = time_weighted_return(values, flows)

        assert_allclose(twr, 0.10)
        assert sub_periods == 1

    def test_single_value_raises(self):
        with pytest.raises(InsufficientData):
            time_weighted_return(pd.Series([100.0], index=[D1]), NO_FLOWS)


class TestMoneyWeightedReturn:

    def test_one_year_ten_percent(self):
        """-1000 then +1100 exactly 365 days later is a 10% IRR."""
        irr = money_weighted_return([(D1, -1000.0), (D3, 1100.0)])

        assert irr == pytest.approx(0.10, abs=1e-5)

    def test_flow_order_irrelevant(self):
        flows = [(D3, 1100.0), (D2, -200.0), (D1, -1000.0)]

        assert money_weighted_return(flows) == money_weighted_return(sorted(flows))

    def test_no_sign_change_raises(self):
        with pytest.raises(NonConvergence, match="no root"):
            money_weighted_return([(D1, -1000.0), (D3, -100.0)])

    def test_iteration_limit_raises(self):
        with pytest.raises(NonConvergence, match="did not converge"):
            money_weighted_return(
                [(D1, -1000.0), (D3, 1100.0)], tolerance=1e-14, max_iterations=2
            )

    def test_single_flow_raises(self):
        with pytest.raises(InsufficientData):
            money_weighted_return([(D1, -1000.0)])

    def test_invalid_bracket(self):
        with pytest.raises(InvalidInput, match="Invalid IRR bracket"):
            money_weighted_return([(D1, -1000.0), (D3, 1100.0)], lower=-1.5)


class TestComputeTruePerformance:

    def test_buy_and_hold(self):
        snapshots = [
            cash(D1, 1000.0),
            cash(D2, 0.0), snap("AAPL", D2, 10, price=100.0),
            snap("AAPL", D3, 10, price=110.0),
        ]
        transactions = reconcile_snapshots(snapshots)

        perf = compute_true_performance("ACC-1", transactions, snapshots)

        assert perf.twr == pytest.approx(0.10)
        assert perf.mwr == pytest.approx(0.10, abs=1e-5)
        assert perf.total_deposits == 1000.0
        assert perf.current_value == 1100.0
        assert perf.true_gain_loss == pytest.approx(100.0)
        assert perf.true_gain_loss_pct == pytest.approx(10.0)
        assert (perf.start_date, perf.end_date) == (D1, D3)

    def test_mid_period_deposit(self, account_snapshots):
        transactions = reconcile_snapshots(account_snapshots)

        perf = compute_true_performance("ACC-1", transactions, account_snapshots)

        # The top-up lands on the last date: one sub-period net of the flow
        assert_allclose(perf.twr, (12600.0 - 2100.0) / 10000.0 - 1)
        assert perf.sub_periods == 1
        assert_allclose(perf.total_deposits, 12100.0)
        assert_allclose(perf.true_gain_loss, 500.0)
        years = (date(2023, 10, 2) - date(2023, 1, 2)).days / 365
        assert_allclose(10500.0 / (1 + perf.mwr) ** years, 10000.0, rtol=1e-5)

    def test_single_snapshot_date_raises(self):
        snapshots = [cash(D1, 1000.0)]

        with pytest.raises(InsufficientData):
            compute_true_performance("ACC-1", reconcile_snapshots(snapshots), snapshots)


def test_portfolio_values_sum_lines(account_snapshots):
    values = portfolio_values(account_snapshots)

    assert_allclose(values.loc[date(2023, 7, 3)], 5000.0 + 6000.0 + 1.5)


def test_external_flows_ignore_trades(account_snapshots):
    flows = external_cash_flows(reconcile_snapshots(account_snapshots))

    assert list(flows.index) == [date(2023, 1, 2), date(2023, 10, 2)]
    assert_allclose(flows.values, [10000.0, 2100.0])
