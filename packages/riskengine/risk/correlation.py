"""
Correlation Analysis and Clustering Module

Pairwise Pearson correlation across a portfolio's tickers over date-aligned
returns, with summary statistics, top correlated pairs and hierarchical
clustering of the correlation distance matrix.
"""

import numpy as np
import pandas as pd
import structlog
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.spatial.distance import squareform
from typing import Dict, List

from ..errors import InsufficientData, InvalidInput
from ..models import (
    CorrelationCluster,
    CorrelationPair,
    CorrelationResult,
    CorrelationStatistics,
)
from .returns import build_price_matrix, compute_simple_returns

logger = structlog.get_logger(__name__)

HIGH_CORRELATION_THRESHOLD = 0.7


def correlation_matrix(returns: pd.DataFrame) -> pd.DataFrame:
    """Pearson correlation of date-aligned returns, labelled by ticker.

    Values are clipped to [-1, 1] and the diagonal is exactly 1.

    Args:
        returns: Aligned daily returns (T x N), one column per ticker

    Returns:
        N x N DataFrame with tickers on both axes

    Raises:
        InsufficientData: If there are fewer than 2 tickers or observations
        InvalidInput: If a ticker has zero variance over the window
    """
    if returns.shape[1] < 2:
        raise InsufficientData(
            series="tickers", actual=returns.shape[1], required=2, statistic="correlation"
        )
    if len(returns) < 2:
        raise InsufficientData(
            series="aligned returns", actual=len(returns), required=2, statistic="correlation"
        )

    flat = [t for t in returns.columns if not returns[t].std() > 0]
    if flat:
        raise InvalidInput(f"Zero-variance returns for {flat}; correlation is undefined", tickers=flat)

    values = np.clip(returns.corr().to_numpy(), -1.0, 1.0)
    np.fill_diagonal(values, 1.0)
    corr = pd.DataFrame(values, index=returns.columns, columns=returns.columns)

    logger.debug(
        "correlation_matrix: correlation computed",
        tickers=len(corr),
        observations=len(returns),
    )
    return corr


def correlation_statistics(corr: pd.DataFrame) -> CorrelationStatistics:
    """Summary statistics over the upper triangle of a correlation matrix."""
    upper = corr.values[np.triu_indices_from(corr.values, k=1)]
    if len(upper) == 0:
        return CorrelationStatistics(
            average_correlation=0.0,
            max_correlation=0.0,
            min_correlation=0.0,
            correlation_std_dev=0.0,
            high_correlation_pairs=0,
            diversification_score=10.0,
        )

    avg = float(upper.mean())
    return CorrelationStatistics(
        average_correlation=avg,
        max_correlation=float(upper.max()),
        min_correlation=float(upper.min()),
        correlation_std_dev=float(upper.std()),
        high_correlation_pairs=int((upper > HIGH_CORRELATION_THRESHOLD).sum()),
        diversification_score=float((1.0 - max(avg, 0.0)) * 10.0),
    )


def top_correlated_pairs(
    corr: pd.DataFrame,
    n: int = 20,
) -> List[CorrelationPair]:
    """Find top N most correlated pairs (excluding self-correlation).

    Includes both highly positive and highly negative correlations,
    sorted by |correlation| descending.
    """
    if corr.empty:
        raise ValueError("Cannot find pairs from empty correlation matrix")

    rows, cols = np.triu_indices_from(corr.values, k=1)

    pairs = [
        CorrelationPair(
            ticker1=corr.index[i],
            ticker2=corr.columns[j],
            correlation=float(corr.iloc[i, j]),
        )
        for i, j in zip(rows, cols)
    ]
    pairs.sort(key=lambda p: abs(p.correlation), reverse=True)

    return pairs[:n]


def _describe_cluster(corr: pd.DataFrame, cluster_id: int, members: List[str]) -> CorrelationCluster:
    if len(members) == 1:
        return CorrelationCluster(
            cluster_id=cluster_id,
            tickers=members,
            size=1,
            average_correlation=1.0,
            representative=members[0],
        )

    block = corr.loc[members, members].to_numpy()
    upper = block[np.triu_indices_from(block, k=1)]
    # Mean correlation of each member with the others
    affinity = (block.sum(axis=1) - 1.0) / (len(members) - 1)

    return CorrelationCluster(
        cluster_id=cluster_id,
        tickers=members,
        size=len(members),
        average_correlation=float(upper.mean()),
        representative=members[int(np.argmax(affinity))],
    )


def hierarchical_clusters(
    corr: pd.DataFrame,
    max_clusters: int = 8,
) -> List[CorrelationCluster]:
    """Group tickers by average-linkage clustering on d = sqrt(2 * (1 - rho)).

    Clusters are ordered by size (then by first ticker) and numbered from 1
    in that order; tickers keep the matrix order within a cluster.

    Args:
        corr: Correlation matrix from correlation_matrix
        max_clusters: Upper bound on the number of clusters

    Returns:
        List of CorrelationCluster, largest first

    Raises:
        InsufficientData: If the matrix is empty
        InvalidInput: If the matrix contains NaN
    """
    tickers = list(corr.columns)
    if not tickers:
        raise InsufficientData(series="tickers", actual=0, required=1, statistic="clustering")

    if len(tickers) == 1:
        labels = np.ones(1, dtype=int)
    else:
        distance = np.sqrt(2.0 * (1.0 - np.clip(corr.to_numpy(), -1.0, 1.0)))
        if not np.isfinite(distance).all():
            raise InvalidInput("Correlation matrix contains NaN values")
        np.fill_diagonal(distance, 0.0)
        tree = linkage(squareform(distance, checks=False), method="average")
        labels = fcluster(tree, min(max_clusters, len(tickers)), criterion="maxclust")

    groups: Dict[int, List[str]] = {}
    for ticker, label in zip(tickers, labels):
        groups.setdefault(int(label), []).append(ticker)
    ordered = sorted(groups.values(), key=lambda members: (-len(members), members[0]))

    clusters = [_describe_cluster(corr, i, members) for i, members in enumerate(ordered, start=1)]

    logger.info(
        "hierarchical_clusters: clustering complete",
        clusters=len(clusters),
        sizes=[c.size for c in clusters],
    )
    return clusters


def compute_correlation(
    prices: Dict[str, pd.Series],
    window: int,
    top_n: int = 10,
    max_clusters: int = 8,
) -> CorrelationResult:
    """Full correlation analysis for a set of tickers.

    Prices are aligned on the intersection of trading days; tickers with no
    data, too little history, no overlap, or zero variance are excluded and
    reported in ``excluded``.

    Args:
        prices: {ticker: close price Series}
        window: Lookback in return observations
        top_n: Number of top pairs to report
        max_clusters: Upper bound on hierarchical clusters

    Returns:
        CorrelationResult

    Raises:
        InsufficientData: If fewer than 2 tickers survive alignment
    """
    price_matrix, excluded = build_price_matrix(prices, min_history=3)

    if len(price_matrix.columns) < 2:
        raise InsufficientData(
            series="tickers", actual=len(price_matrix.columns), required=2, statistic="correlation"
        )

    returns = compute_simple_returns(price_matrix).iloc[-window:]

    flat = [t for t in returns.columns if returns[t].std() == 0 or pd.isna(returns[t].std())]
    for ticker in flat:
        excluded[ticker] = "zero_variance"
    returns = returns.drop(columns=flat)

    if len(returns.columns) < 2:
        raise InsufficientData(
            series="tickers", actual=len(returns.columns), required=2, statistic="correlation"
        )

    corr = correlation_matrix(returns)

    result = CorrelationResult(
        tickers=list(corr.columns),
        matrix=corr.values.tolist(),
        observations=len(returns),
        excluded=excluded,
        statistics=correlation_statistics(corr),
        top_pairs=top_correlated_pairs(corr, n=top_n),
        clusters=hierarchical_clusters(corr, max_clusters=max_clusters),
    )

    logger.info(
        "compute_correlation: analysis complete",
        tickers=len(result.tickers),
        excluded=len(excluded),
        observations=result.observations,
    )
    return result
