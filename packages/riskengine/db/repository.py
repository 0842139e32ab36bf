"""Persistence for risk snapshots, market regimes and detected transactions.

Every write is an upsert on the table's natural key so re-running a job for
the same day overwrites instead of duplicating.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Iterable

import structlog
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncEngine

from ..models import (
    DetectedTransaction,
    MarketRegimeRecord,
    RiskSnapshot,
)

logger = structlog.get_logger()

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_UPSERT_RISK_SNAPSHOT = text("""
    INSERT INTO risk_snapshots (
        portfolio_id, ticker, snapshot_date, snapshot_type,
        volatility, max_drawdown, beta, sharpe, value_at_risk,
        risk_score, risk_level, total_value, market_value
    )
    VALUES (
        :portfolio_id, :ticker, :snapshot_date, :snapshot_type,
        :volatility, :max_drawdown, :beta, :sharpe, :value_at_risk,
        :risk_score, :risk_level, :total_value, :market_value
    )
    ON CONFLICT (portfolio_id, ticker, snapshot_date, snapshot_type)
    DO UPDATE SET
        volatility = EXCLUDED.volatility,
        max_drawdown = EXCLUDED.max_drawdown,
        beta = EXCLUDED.beta,
        sharpe = EXCLUDED.sharpe,
        value_at_risk = EXCLUDED.value_at_risk,
        risk_score = EXCLUDED.risk_score,
        risk_level = EXCLUDED.risk_level,
        total_value = EXCLUDED.total_value,
        market_value = EXCLUDED.market_value
""")

_SELECT_RISK_HISTORY = text("""
    SELECT portfolio_id, ticker, snapshot_date, snapshot_type,
           volatility, max_drawdown, beta, sharpe, value_at_risk,
           risk_score, risk_level, total_value, market_value
    FROM risk_snapshots
    WHERE portfolio_id = :portfolio_id
      AND ticker = :ticker
      AND snapshot_date BETWEEN :start_date AND :end_date
    ORDER BY snapshot_date
""")

_SELECT_LATEST_POSITION_SNAPSHOTS = text("""
    SELECT portfolio_id, ticker, snapshot_date, snapshot_type,
           volatility, max_drawdown, beta, sharpe, value_at_risk,
           risk_score, risk_level, total_value, market_value
    FROM risk_snapshots
    WHERE portfolio_id = :portfolio_id
      AND snapshot_type = 'position'
      AND snapshot_date IN (
          SELECT DISTINCT snapshot_date
          FROM risk_snapshots
          WHERE portfolio_id = :portfolio_id AND snapshot_type = 'position'
          ORDER BY snapshot_date DESC
          LIMIT 2
      )
    ORDER BY ticker, snapshot_date
""")

_UPSERT_REGIME = text("""
    INSERT INTO market_regimes (
        date, regime_type, volatility_level, market_return, confidence,
        benchmark_ticker, lookback_days, threshold_multiplier,
        state_probabilities, model, updated_at
    )
    VALUES (
        :date, :regime_type, :volatility_level, :market_return, :confidence,
        :benchmark_ticker, :lookback_days, :threshold_multiplier,
        :state_probabilities, :model, :updated_at
    )
    ON CONFLICT (date)
    DO UPDATE SET
        regime_type = EXCLUDED.regime_type,
        volatility_level = EXCLUDED.volatility_level,
        market_return = EXCLUDED.market_return,
        confidence = EXCLUDED.confidence,
        benchmark_ticker = EXCLUDED.benchmark_ticker,
        lookback_days = EXCLUDED.lookback_days,
        threshold_multiplier = EXCLUDED.threshold_multiplier,
        state_probabilities = EXCLUDED.state_probabilities,
        model = EXCLUDED.model,
        updated_at = EXCLUDED.updated_at
""")

_REGIME_COLUMNS = """
    date, regime_type, volatility_level, market_return, confidence,
    benchmark_ticker, lookback_days, threshold_multiplier,
    state_probabilities, model
"""

_SELECT_REGIME_BY_DATE = text(f"""
    SELECT {_REGIME_COLUMNS}
    FROM market_regimes
    WHERE date = :date
""")

_SELECT_LATEST_REGIME = text(f"""
    SELECT {_REGIME_COLUMNS}
    FROM market_regimes
    ORDER BY date DESC
    LIMIT 1
""")

_SELECT_REGIME_HISTORY = text(f"""
    SELECT {_REGIME_COLUMNS}
    FROM market_regimes
    WHERE date BETWEEN :start_date AND :end_date
    ORDER BY date
""")

_DELETE_TRANSACTIONS_FOR_DATES = text("""
    DELETE FROM detected_transactions
    WHERE account_id = :account_id
      AND transaction_date IN :dates
""").bindparams(bindparam("dates", expanding=True))

_UPSERT_TRANSACTION = text("""
    INSERT INTO detected_transactions (
        account_id, ticker, transaction_date, kind,
        quantity_delta, value_delta, price, description
    )
    VALUES (
        :account_id, :ticker, :transaction_date, :kind,
        :quantity_delta, :value_delta, :price, :description
    )
    ON CONFLICT (account_id, ticker, transaction_date)
    DO UPDATE SET
        kind = EXCLUDED.kind,
        quantity_delta = EXCLUDED.quantity_delta,
        value_delta = EXCLUDED.value_delta,
        price = EXCLUDED.price,
        description = EXCLUDED.description
""")

_SELECT_TRANSACTIONS = text("""
    SELECT account_id, ticker, transaction_date, kind,
           quantity_delta, value_delta, price, description
    FROM detected_transactions
    WHERE account_id = :account_id
    ORDER BY transaction_date, ticker
""")


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def risk_snapshot_params(snapshot: RiskSnapshot) -> dict[str, Any]:
    return {
        "portfolio_id": snapshot.portfolio_id,
        "ticker": snapshot.ticker or "",
        "snapshot_date": snapshot.snapshot_date,
        "snapshot_type": snapshot.snapshot_type.value,
        "volatility": snapshot.volatility,
        "max_drawdown": snapshot.max_drawdown,
        "beta": snapshot.beta,
        "sharpe": snapshot.sharpe,
        "value_at_risk": snapshot.value_at_risk,
        "risk_score": snapshot.risk_score,
        "risk_level": snapshot.risk_level.value,
        "total_value": snapshot.total_value,
        "market_value": snapshot.market_value,
    }


def _row_to_risk_snapshot(row: Any) -> RiskSnapshot:
    data = dict(row)
    data["ticker"] = data["ticker"] or None
    return RiskSnapshot(**data)


def regime_params(record: MarketRegimeRecord) -> dict[str, Any]:
    return {
        "date": record.date,
        "regime_type": record.regime_type.value,
        "volatility_level": record.volatility_level,
        "market_return": record.market_return,
        "confidence": record.confidence,
        "benchmark_ticker": record.benchmark_ticker,
        "lookback_days": record.lookback_days,
        "threshold_multiplier": record.threshold_multiplier,
        "state_probabilities": (
            json.dumps(record.state_probabilities)
            if record.state_probabilities is not None
            else None
        ),
        "model": record.model,
        "updated_at": datetime.now(timezone.utc),
    }


def _row_to_regime(row: Any) -> MarketRegimeRecord:
    data = dict(row)
    if data.get("state_probabilities"):
        data["state_probabilities"] = json.loads(data["state_probabilities"])
    return MarketRegimeRecord(**data)


def transaction_params(txn: DetectedTransaction) -> dict[str, Any]:
    return {
        "account_id": txn.account_id,
        "ticker": txn.ticker,
        "transaction_date": txn.date,
        "kind": txn.kind.value,
        "quantity_delta": txn.quantity_delta,
        "value_delta": txn.value_delta,
        "price": txn.price,
        "description": txn.description,
    }


def _row_to_transaction(row: Any) -> DetectedTransaction:
    data = dict(row)
    data["date"] = data.pop("transaction_date")
    data["description"] = data.get("description") or ""
    return DetectedTransaction(**data)


# ---------------------------------------------------------------------------
# Risk snapshots
# ---------------------------------------------------------------------------


async def upsert_risk_snapshots(
    engine: AsyncEngine,
    snapshots: Iterable[RiskSnapshot],
) -> int:
    """Insert or overwrite risk snapshots; returns the number written."""
    params = [risk_snapshot_params(s) for s in snapshots]
    if not params:
        return 0

    async with engine.begin() as conn:
        await conn.execute(_UPSERT_RISK_SNAPSHOT, params)

    logger.info("risk_snapshots_upserted", count=len(params))
    return len(params)


async def get_risk_history(
    engine: AsyncEngine,
    portfolio_id: str,
    ticker: str | None,
    start_date: date,
    end_date: date,
) -> list[RiskSnapshot]:
    """Snapshots for one ticker (or the portfolio when ticker is None)."""
    async with engine.connect() as conn:
        result = await conn.execute(
            _SELECT_RISK_HISTORY,
            {
                "portfolio_id": portfolio_id,
                "ticker": ticker or "",
                "start_date": start_date,
                "end_date": end_date,
            },
        )
        return [_row_to_risk_snapshot(row) for row in result.mappings().all()]


async def get_latest_position_snapshots(
    engine: AsyncEngine,
    portfolio_id: str,
) -> list[RiskSnapshot]:
    """Position snapshots from the two most recent snapshot dates."""
    async with engine.connect() as conn:
        result = await conn.execute(
            _SELECT_LATEST_POSITION_SNAPSHOTS, {"portfolio_id": portfolio_id}
        )
        return [_row_to_risk_snapshot(row) for row in result.mappings().all()]


# ---------------------------------------------------------------------------
# Market regimes
# ---------------------------------------------------------------------------


async def upsert_market_regime(engine: AsyncEngine, record: MarketRegimeRecord) -> None:
    async with engine.begin() as conn:
        await conn.execute(_UPSERT_REGIME, regime_params(record))
    logger.info(
        "market_regime_upserted",
        date=str(record.date),
        regime=record.regime_type.value,
    )


async def get_market_regime(
    engine: AsyncEngine,
    on: date | None = None,
) -> MarketRegimeRecord | None:
    """Regime stored for ``on``, or the most recent one when ``on`` is None."""
    async with engine.connect() as conn:
        if on is None:
            result = await conn.execute(_SELECT_LATEST_REGIME)
        else:
            result = await conn.execute(_SELECT_REGIME_BY_DATE, {"date": on})
        row = result.mappings().first()
        return _row_to_regime(row) if row is not None else None


async def get_regime_history(
    engine: AsyncEngine,
    start_date: date,
    end_date: date,
) -> list[MarketRegimeRecord]:
    async with engine.connect() as conn:
        result = await conn.execute(
            _SELECT_REGIME_HISTORY, {"start_date": start_date, "end_date": end_date}
        )
        return [_row_to_regime(row) for row in result.mappings().all()]


# ---------------------------------------------------------------------------
# Detected transactions
# ---------------------------------------------------------------------------


async def replace_detected_transactions(
    engine: AsyncEngine,
    account_id: str,
    reconciled_dates: Iterable[date],
    transactions: Iterable[DetectedTransaction],
) -> int:
    """Replace an account's transactions for the reconciled dates.

    Rows for those dates are deleted and the fresh set upserted in one
    database transaction, so a rerun leaves exactly the recomputed rows.
    """
    dates = sorted(set(reconciled_dates))
    params = [transaction_params(t) for t in transactions]

    async with engine.begin() as conn:
        if dates:
            await conn.execute(
                _DELETE_TRANSACTIONS_FOR_DATES, {"account_id": account_id, "dates": dates}
            )
        if params:
            await conn.execute(_UPSERT_TRANSACTION, params)

    logger.info(
        "detected_transactions_replaced",
        account_id=account_id,
        dates=len(dates),
        transactions=len(params),
    )
    return len(params)


async def get_detected_transactions(
    engine: AsyncEngine,
    account_id: str,
) -> list[DetectedTransaction]:
    async with engine.connect() as conn:
        result = await conn.execute(_SELECT_TRANSACTIONS, {"account_id": account_id})
        return [_row_to_transaction(row) for row in result.mappings().all()]
