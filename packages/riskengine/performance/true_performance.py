"""
True Performance Module

Cash-flow-aware returns for an account: time-weighted return (TWR), which
neutralises the timing of deposits and withdrawals, and money-weighted
return (IRR), which solves for the single rate that nets every cash flow to
zero present value.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable, List, Sequence, Tuple

import pandas as pd
import structlog
from scipy import optimize

from ..errors import InsufficientData, InvalidInput, NonConvergence
from ..models import DetectedTransaction, HoldingsSnapshot, TransactionKind, TruePerformance

logger = structlog.get_logger(__name__)

DAYS_PER_YEAR = 365.0


def portfolio_values(snapshots: Iterable[HoldingsSnapshot]) -> pd.Series:
    """Total account market value (cash included) per snapshot date."""
    rows = [(s.snapshot_date, s.market_value) for s in snapshots]
    if not rows:
        return pd.Series(dtype=float)
    df = pd.DataFrame(rows, columns=["date", "market_value"])
    return df.groupby("date")["market_value"].sum().sort_index()


def external_cash_flows(transactions: Iterable[DetectedTransaction]) -> pd.Series:
    """Net external flow per date: deposits positive, withdrawals negative.

    Buys and sells are internal to the account and are ignored.
    """
    rows = [
        (t.date, abs(t.value_delta) if t.kind == TransactionKind.DEPOSIT else -abs(t.value_delta))
        for t in transactions
        if t.kind in (TransactionKind.DEPOSIT, TransactionKind.WITHDRAWAL)
    ]
    if not rows:
        return pd.Series(dtype=float)
    df = pd.DataFrame(rows, columns=["date", "flow"])
    return df.groupby("date")["flow"].sum().sort_index()


def time_weighted_return(values: pd.Series, flows: pd.Series) -> Tuple[float, int]:
    """Chain sub-period returns split at external cash-flow dates.

    Each sub-period return is (end_value - cash_flow) / start_value - 1,
    where cash_flow is the net flow on the sub-period's end date. Flows on
    the first date are already part of the starting value.

    Args:
        values: Account value per date
        flows: Net external flow per date

    Returns:
        Tuple of (TWR as a decimal, number of sub-periods used)

    Raises:
        InsufficientData: If fewer than 2 valuation dates are supplied
    """
    values = values.sort_index()
    if len(values) < 2:
        raise InsufficientData(series="portfolio values", actual=len(values), required=2, statistic="twr")

    first, last = values.index[0], values.index[-1]
    breakpoints = [d for d in flows.index if first < d < last and abs(flows.loc[d]) > 0]
    missing = [d for d in breakpoints if d not in values.index]
    if missing:
        logger.warning("time_weighted_return: flows without valuation", dates=[str(d) for d in missing])
    breakpoints = sorted(d for d in breakpoints if d in values.index) + [last]

    growth = 1.0
    used = 0
    start_value = float(values.loc[first])
    for end in breakpoints:
        end_value = float(values.loc[end])
        cash_flow = float(flows.loc[end]) if end in flows.index else 0.0
        if start_value > 0:
            growth *= 1.0 + ((end_value - cash_flow) / start_value - 1.0)
            used += 1
        else:
            logger.info("time_weighted_return: skipping empty sub-period", end=str(end))
        start_value = end_value

    return growth - 1.0, used


def money_weighted_return(
    cash_flows: Sequence[Tuple[date, float]],
    lower: float = -0.99,
    upper: float = 10.0,
    tolerance: float = 1e-6,
    max_iterations: int = 100,
) -> float:
    """Annual IRR of dated cash flows via bracketed root-finding (Brent).

    Sign convention is the investor's: money put in is negative, money taken
    out (including the final value) is positive. Time is measured in years
    of 365 days from the first flow.

    Raises:
        InsufficientData: If fewer than 2 flows are supplied
        NonConvergence: If no root exists in [lower, upper] or the solver
            exhausts ``max_iterations``
    """
    if len(cash_flows) < 2:
        raise InsufficientData(series="cash flows", actual=len(cash_flows), required=2, statistic="irr")
    if not -1.0 < lower < upper:
        raise InvalidInput(f"Invalid IRR bracket [{lower}, {upper}]")

    flows = sorted(cash_flows, key=lambda f: f[0])
    t0 = flows[0][0]
    times = [(d - t0).days / DAYS_PER_YEAR for d, _ in flows]
    amounts = [a for _, a in flows]

    def npv(rate: float) -> float:
        return sum(a / (1.0 + rate) ** t for a, t in zip(amounts, times))

    try:
        root, result = optimize.brentq(
            npv,
            lower,
            upper,
            xtol=tolerance,
            maxiter=max_iterations,
            full_output=True,
            disp=False,
        )
    except ValueError as exc:
        raise NonConvergence(
            f"IRR has no root in [{lower}, {upper}]",
            lower=lower,
            upper=upper,
        ) from exc

    if not result.converged:
        raise NonConvergence(
            f"IRR did not converge within {max_iterations} iterations",
            iterations=result.iterations,
            flag=result.flag,
        )

    return float(root)


def compute_true_performance(
    account_id: str,
    transactions: List[DetectedTransaction],
    snapshots: List[HoldingsSnapshot],
    irr_lower: float = -0.99,
    irr_upper: float = 10.0,
    irr_tolerance: float = 1e-6,
    irr_max_iterations: int = 100,
) -> TruePerformance:
    """TWR, IRR and contribution-adjusted gain for one account.

    The first snapshot's total value is the initial contribution; later
    deposits and withdrawals come from the reconciled transactions.
    """
    values = portfolio_values(snapshots)
    if len(values) < 2:
        raise InsufficientData(series="portfolio values", actual=len(values), required=2)

    flows = external_cash_flows(transactions)
    first, last = values.index[0], values.index[-1]
    later_flows = flows.loc[[d for d in flows.index if first < d <= last]]

    twr, sub_periods = time_weighted_return(values, flows)

    initial_value = float(values.loc[first])
    current_value = float(values.loc[last])
    irr_flows = [(first, -initial_value)]
    irr_flows += [(d, -float(f)) for d, f in later_flows.items()]
    irr_flows.append((last, current_value))
    mwr = money_weighted_return(
        irr_flows,
        lower=irr_lower,
        upper=irr_upper,
        tolerance=irr_tolerance,
        max_iterations=irr_max_iterations,
    )

    total_deposits = initial_value + float(later_flows[later_flows > 0].sum())
    total_withdrawals = float(-later_flows[later_flows < 0].sum())
    gain = current_value + total_withdrawals - total_deposits

    perf = TruePerformance(
        account_id=account_id,
        twr=twr,
        mwr=mwr,
        start_date=first,
        end_date=last,
        sub_periods=sub_periods,
        total_deposits=total_deposits,
        total_withdrawals=total_withdrawals,
        net_contributions=total_deposits - total_withdrawals,
        current_value=current_value,
        true_gain_loss=gain,
        true_gain_loss_pct=gain / total_deposits * 100 if total_deposits > 0 else None,
    )

    logger.info(
        "compute_true_performance: performance computed",
        account_id=account_id,
        twr=round(twr, 6),
        mwr=round(mwr, 6),
        sub_periods=sub_periods,
    )
    return perf
