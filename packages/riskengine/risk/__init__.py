"""
Risk Analytics Engine

Pure computation modules operating on pandas Series/DataFrames and numpy
arrays, plus the rolling beta cache.

Modules:
- returns: Price cleaning, return construction and alignment
- metrics: Volatility, drawdown, beta, Sharpe, VaR/ES, composite risk score
- rolling_beta: Rolling OLS beta and its keyed single-flight cache
- regime: Baseline regime classification, detection and forecasting
- hmm: Four-state hidden Markov model over return/volatility observations
- correlation: Correlation matrix, statistics and hierarchical clustering
"""

from .returns import (
    align_returns,
    build_price_matrix,
    compute_simple_returns,
    price_frame_to_series,
    prices_to_returns,
    trim_to_window,
)

from .metrics import (
    aggregate_portfolio_assessment,
    annualized_volatility,
    assess_risk,
    beta,
    classify_risk_level,
    historical_var,
    max_drawdown,
    risk_score,
    sharpe_ratio,
)

from .rolling_beta import (
    RollingBetaCache,
    compute_rolling_beta,
    rolling_beta_key,
)

from .regime import (
    classify_regime,
    detect_regime,
    forecast_regime,
    threshold_multiplier,
    train_regime_model,
)

from .hmm import HiddenMarkovModel

from .correlation import (
    compute_correlation,
    correlation_matrix,
    correlation_statistics,
    hierarchical_clusters,
    top_correlated_pairs,
)

__all__ = [
    # Returns
    'align_returns',
    'build_price_matrix',
    'compute_simple_returns',
    'price_frame_to_series',
    'prices_to_returns',
    'trim_to_window',
    # Metrics
    'aggregate_portfolio_assessment',
    'annualized_volatility',
    'assess_risk',
    'beta',
    'classify_risk_level',
    'historical_var',
    'max_drawdown',
    'risk_score',
    'sharpe_ratio',
    # Rolling beta
    'RollingBetaCache',
    'compute_rolling_beta',
    'rolling_beta_key',
    # Regime
    'classify_regime',
    'detect_regime',
    'forecast_regime',
    'threshold_multiplier',
    'train_regime_model',
    'HiddenMarkovModel',
    # Correlation
    'compute_correlation',
    'correlation_matrix',
    'correlation_statistics',
    'hierarchical_clusters',
    'top_correlated_pairs',
]
