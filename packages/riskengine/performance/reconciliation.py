"""
Snapshot Reconciliation Module

Derives discrete transactions (buy / sell / deposit / withdrawal) from the
sequence of holdings snapshots imported for an account. The output is a pure
function of the snapshot set: input order does not matter, and re-running on
the same snapshots yields the same list.

Known limitation: snapshots only expose net position changes, so a partial
sell and a rebuy of the same ticker inside one reporting interval appear as a
single net trade.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Optional

import structlog

from ..errors import InvalidInput
from ..models import DetectedTransaction, HoldingsSnapshot, TransactionKind

logger = structlog.get_logger(__name__)

QUANTITY_TOLERANCE = 0.01
CASH_TOLERANCE = 1.0  # dollars

_KIND_ORDER = {
    TransactionKind.DEPOSIT: 0,
    TransactionKind.WITHDRAWAL: 1,
    TransactionKind.SELL: 2,
    TransactionKind.BUY: 3,
}


def _group_by_date(
    snapshots: Iterable[HoldingsSnapshot],
) -> Dict[date, Dict[str, HoldingsSnapshot]]:
    """Group snapshots by date, then ticker. Duplicate keys are summed."""
    ordered = sorted(
        snapshots,
        key=lambda s: (s.snapshot_date, s.ticker, s.quantity, s.market_value),
    )
    grouped: Dict[date, Dict[str, HoldingsSnapshot]] = defaultdict(dict)
    for snap in ordered:
        existing = grouped[snap.snapshot_date].get(snap.ticker)
        if existing is None:
            grouped[snap.snapshot_date][snap.ticker] = snap
            continue
        grouped[snap.snapshot_date][snap.ticker] = existing.model_copy(update={
            "quantity": existing.quantity + snap.quantity,
            "market_value": existing.market_value + snap.market_value,
            "price": snap.price if snap.price is not None else existing.price,
        })
    return dict(grouped)


def _unit_price(snap: HoldingsSnapshot) -> Optional[float]:
    if snap.price is not None:
        return snap.price
    if abs(snap.quantity) > 0:
        return snap.market_value / snap.quantity
    return None


def _cash_amount(holdings: Dict[str, HoldingsSnapshot]) -> float:
    cash = holdings.get("")
    if cash is None:
        return 0.0
    return cash.market_value if cash.market_value else cash.quantity


def _trade(
    account_id: str,
    ticker: str,
    on: date,
    quantity_delta: float,
    price: Optional[float],
    description: str,
) -> DetectedTransaction:
    kind = TransactionKind.BUY if quantity_delta > 0 else TransactionKind.SELL
    return DetectedTransaction(
        account_id=account_id,
        ticker=ticker,
        date=on,
        kind=kind,
        quantity_delta=quantity_delta,
        value_delta=quantity_delta * price if price is not None else 0.0,
        price=price,
        description=description,
    )


def _cash_flow(account_id: str, on: date, amount: float, description: str) -> DetectedTransaction:
    return DetectedTransaction(
        account_id=account_id,
        ticker="",
        date=on,
        kind=TransactionKind.DEPOSIT if amount > 0 else TransactionKind.WITHDRAWAL,
        quantity_delta=amount,
        value_delta=amount,
        price=1.0,
        description=description,
    )


def diff_snapshots(
    account_id: str,
    on: date,
    prev: Dict[str, HoldingsSnapshot],
    curr: Dict[str, HoldingsSnapshot],
) -> List[DetectedTransaction]:
    """Transactions explaining the move from one snapshot date to the next.

    Ticker lines produce buys and sells from the quantity change. Whatever
    part of the cash change is not explained by those trades is an external
    deposit or withdrawal. Accounts without a cash line are treated as
    holding zero cash, so their trades are funded externally.
    """
    transactions: List[DetectedTransaction] = []
    tickers = sorted((set(prev) | set(curr)) - {""})

    for ticker in tickers:
        before = prev.get(ticker)
        after = curr.get(ticker)

        if before is None and after is not None:
            if abs(after.quantity) > QUANTITY_TOLERANCE:
                transactions.append(
                    _trade(account_id, ticker, on, after.quantity, _unit_price(after), "New position")
                )
        elif before is not None and after is None:
            if abs(before.quantity) > QUANTITY_TOLERANCE:
                transactions.append(
                    _trade(account_id, ticker, on, -before.quantity, _unit_price(before), "Position closed")
                )
        elif before is not None and after is not None:
            delta = after.quantity - before.quantity
            if abs(delta) > QUANTITY_TOLERANCE:
                price = _unit_price(after)
                if price is None:
                    price = _unit_price(before)
                transactions.append(
                    _trade(account_id, ticker, on, delta, price, "Quantity changed")
                )

    traded = sum(t.value_delta for t in transactions)
    external = (_cash_amount(curr) - _cash_amount(prev)) + traded
    if abs(external) > CASH_TOLERANCE:
        transactions.append(
            _cash_flow(account_id, on, round(external, 2), "Cash change not explained by trades")
        )

    return transactions


def reconcile_snapshots(
    snapshots: Iterable[HoldingsSnapshot],
    account_id: Optional[str] = None,
) -> List[DetectedTransaction]:
    """Detect every transaction implied by an account's snapshot history.

    Args:
        snapshots: All HoldingsSnapshot rows for one account, any order
        account_id: Expected account; inferred from the rows when omitted

    Returns:
        Transactions sorted by (date, ticker, kind). The first snapshot date
        yields only an initial deposit when it holds more than $1 of cash.

    Raises:
        InvalidInput: If rows from more than one account are supplied
    """
    snapshots = list(snapshots)
    accounts = {s.account_id for s in snapshots}
    if account_id is not None:
        accounts.add(account_id)
    if len(accounts) > 1:
        raise InvalidInput(f"Snapshots span multiple accounts: {sorted(accounts)}")
    if not snapshots:
        return []

    account_id = accounts.pop()
    grouped = _group_by_date(snapshots)
    dates = sorted(grouped)

    transactions: List[DetectedTransaction] = []

    initial_cash = _cash_amount(grouped[dates[0]])
    if initial_cash > CASH_TOLERANCE:
        transactions.append(_cash_flow(account_id, dates[0], initial_cash, "Initial deposit"))

    for prev_date, curr_date in zip(dates[:-1], dates[1:]):
        transactions.extend(
            diff_snapshots(account_id, curr_date, grouped[prev_date], grouped[curr_date])
        )

    transactions.sort(key=lambda t: (t.date, t.ticker, _KIND_ORDER[t.kind]))

    logger.info(
        "reconcile_snapshots: transactions detected",
        account_id=account_id,
        snapshot_dates=len(dates),
        transactions=len(transactions),
    )
    return transactions
