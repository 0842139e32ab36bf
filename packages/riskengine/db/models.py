"""Database tables for the analytics engine.

The engine owns risk_snapshots, market_regimes and detected_transactions.
prices_daily and holdings_snapshots are written by the ingestion services
and only read here.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)

riskengine_metadata = MetaData()

# ---------------------------------------------------------------------------
# Collaborator tables (read-only)
# ---------------------------------------------------------------------------

prices_daily = Table(
    "prices_daily",
    riskengine_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("symbol", String, nullable=False),
    Column("date", Date, nullable=False),
    Column("close", Float, nullable=False),
    Column("adj_close", Float, nullable=True),
    Column("source", String, nullable=False, server_default=text("'yahoo'")),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("symbol", "date", name="uq_prices_daily_symbol_date"),
)

holdings_snapshots = Table(
    "holdings_snapshots",
    riskengine_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String, nullable=False),
    Column("ticker", String, nullable=False, server_default=text("''")),  # '' = cash
    Column("snapshot_date", Date, nullable=False),
    Column("quantity", Float, nullable=False),
    Column("price", Float, nullable=True),
    Column("book_value", Float, nullable=True),
    Column("market_value", Float, nullable=False),
    UniqueConstraint(
        "account_id", "ticker", "snapshot_date", name="uq_holdings_snapshots_key"
    ),
)

# ---------------------------------------------------------------------------
# Risk snapshots
# ---------------------------------------------------------------------------

risk_snapshots = Table(
    "risk_snapshots",
    riskengine_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("portfolio_id", String, nullable=False),
    # '' for portfolio-level rows so the unique key also covers them
    Column("ticker", String, nullable=False, server_default=text("''")),
    Column("snapshot_date", Date, nullable=False),
    Column("snapshot_type", String, nullable=False),  # portfolio | position
    Column("volatility", Float, nullable=False),
    Column("max_drawdown", Float, nullable=False),
    Column("beta", Float, nullable=True),
    Column("sharpe", Float, nullable=True),
    Column("value_at_risk", Float, nullable=True),
    Column("risk_score", Float, nullable=False),
    Column("risk_level", String, nullable=False),
    Column("total_value", Float, nullable=True),
    Column("market_value", Float, nullable=True),
    Column(
        "created_at",
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    ),
    UniqueConstraint(
        "portfolio_id",
        "ticker",
        "snapshot_date",
        "snapshot_type",
        name="uq_risk_snapshots_key",
    ),
)

# ---------------------------------------------------------------------------
# Market regimes
# ---------------------------------------------------------------------------

market_regimes = Table(
    "market_regimes",
    riskengine_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("date", Date, nullable=False),
    Column("regime_type", String, nullable=False),
    Column("volatility_level", Float, nullable=False),
    Column("market_return", Float, nullable=False),
    Column("confidence", Float, nullable=False),
    Column("benchmark_ticker", String, nullable=False),
    Column("lookback_days", Integer, nullable=False),
    Column("threshold_multiplier", Float, nullable=False),
    Column("state_probabilities", Text, nullable=True),  # JSON list
    Column("model", String, nullable=False, server_default=text("'baseline'")),
    Column(
        "created_at",
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    ),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("date", name="uq_market_regimes_date"),
)

# ---------------------------------------------------------------------------
# Detected transactions (materialized from holdings snapshots)
# ---------------------------------------------------------------------------

detected_transactions = Table(
    "detected_transactions",
    riskengine_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String, nullable=False),
    Column("ticker", String, nullable=False, server_default=text("''")),  # '' = cash
    Column("transaction_date", Date, nullable=False),
    Column("kind", String, nullable=False),
    Column("quantity_delta", Float, nullable=False),
    Column("value_delta", Float, nullable=False),
    Column("price", Float, nullable=True),
    Column("description", Text, nullable=True),
    Column(
        "created_at",
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    ),
    UniqueConstraint(
        "account_id", "ticker", "transaction_date", name="uq_detected_transactions_key"
    ),
)

# Tables this engine creates; the collaborator tables belong to their owners
OWNED_TABLES = (risk_snapshots, market_regimes, detected_transactions)
