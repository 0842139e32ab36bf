"""
Unit tests for correlation.py - Correlation Analysis Module

Tests cover:
- Correlation matrix computation
- Summary statistics and diversification score
- Top correlated pairs identification
- Hierarchical clustering
- End-to-end analysis from price series
"""

import pytest
import numpy as np
import pandas as pd
from numpy.testing import assert_allclose

from riskengine.errors import InsufficientData, InvalidInput
from riskengine.models import CorrelationCluster
from riskengine.risk.correlation import (
    compute_correlation,
    correlation_matrix,
    correlation_statistics,
    hierarchical_clusters,
    top_correlated_pairs,
)


class TestCorrelationMatrix:
    """Tests for correlation_matrix function."""

    def test_correlation_matrix_diagonal(self, sample_returns):
        """Diagonal should be all 1.0 (self-correlation)."""
        corr = correlation_matrix(sample_returns)

        diagonal = np.diag(corr.values)
        assert_allclose(diagonal, np.ones(len(diagonal)), rtol=1e-10)

    def test_correlation_bounds(self, sample_returns):
        """All correlation values should be between -1 and 1."""
        corr = correlation_matrix(sample_returns)

        assert np.all(corr.values >= -1.0 - 1e-12)
        assert np.all(corr.values <= 1.0 + 1e-12)

    def test_correlation_symmetric(self, sample_returns):
        """Correlation matrix should be symmetric."""
        corr = correlation_matrix(sample_returns)

        assert_allclose(corr.values, corr.values.T, rtol=1e-10)

    def test_correlation_matrix_labels(self, sample_returns):
        """Row and column labels should match input symbols."""
        corr = correlation_matrix(sample_returns)

        assert list(corr.index) == list(sample_returns.columns)
        assert list(corr.columns) == list(sample_returns.columns)

    def test_correlation_empty_raises(self):
        with pytest.raises(InsufficientData):
            correlation_matrix(pd.DataFrame())

    def test_correlation_single_row_raises(self):
        """Less than 2 observations cannot be correlated."""
        single_row = pd.DataFrame([[0.01, 0.02, 0.03]], columns=['A', 'B', 'C'])

        with pytest.raises(InsufficientData, match="have 1, need 2"):
            correlation_matrix(single_row)

    def test_zero_variance_rejected(self):
        returns = pd.DataFrame({'A': [0.01, -0.02, 0.03], 'B': [0.0, 0.0, 0.0]})

        with pytest.raises(InvalidInput, match="Zero-variance"):
            correlation_matrix(returns)

    def test_clipped_to_unit_interval(self):
        base = np.random.default_rng(13).normal(0, 0.01, 30)
        corr = correlation_matrix(pd.DataFrame({'A': base, 'B': 2 * base + 1e-3}))

        assert corr.values.max() <= 1.0
        assert corr.loc['A', 'A'] == 1.0


class TestCorrelationStatistics:

    def test_perfectly_correlated_pair(self):
        """Identical series: average 1, one high pair, no diversification."""
        base = np.random.default_rng(11).normal(0, 0.01, 50)
        corr = correlation_matrix(pd.DataFrame({'A': base, 'B': 3 * base}))

        stats = correlation_statistics(corr)

        assert_allclose(stats.average_correlation, 1.0, rtol=1e-10)
        assert stats.high_correlation_pairs == 1
        assert_allclose(stats.diversification_score, 0.0, atol=1e-9)

    def test_negative_average_scores_full_diversification(self):
        base = np.random.default_rng(12).normal(0, 0.01, 50)
        corr = correlation_matrix(pd.DataFrame({'A': base, 'B': -base}))

        stats = correlation_statistics(corr)

        assert stats.min_correlation < 0
        assert stats.diversification_score == 10.0

    def test_statistics_over_upper_triangle(self, sample_returns):
        corr = correlation_matrix(sample_returns)
        upper = corr.values[np.triu_indices(5, k=1)]

        stats = correlation_statistics(corr)

        assert_allclose(stats.average_correlation, upper.mean())
        assert_allclose(stats.max_correlation, upper.max())
        assert 0 <= stats.diversification_score <= 10


class TestTopCorrelatedPairs:
    """Tests for top_correlated_pairs function."""

    def test_top_pairs_no_self_corr(self, sample_returns):
        corr = correlation_matrix(sample_returns)
        pairs = top_correlated_pairs(corr, n=20)

        for pair in pairs:
            assert pair.ticker1 != pair.ticker2

    def test_top_pairs_sorted(self, sample_returns):
        """Pairs should be sorted by |correlation| descending."""
        corr = correlation_matrix(sample_returns)
        pairs = top_correlated_pairs(corr, n=20)

        abs_correlations = [abs(pair.correlation) for pair in pairs]
        assert abs_correlations == sorted(abs_correlations, reverse=True)

    def test_strongest_pair_first(self, sample_returns):
        """GOOGL is built from 70% AAPL and should lead the list."""
        corr = correlation_matrix(sample_returns)
        top = top_correlated_pairs(corr, n=1)[0]

        assert {top.ticker1, top.ticker2} == {'AAPL', 'GOOGL'}

    def test_top_pairs_more_than_available(self, sample_returns):
        """For 5 assets, max pairs = C(5,2) = 10."""
        corr = correlation_matrix(sample_returns)

        assert len(top_correlated_pairs(corr, n=100)) == 10

    def test_top_pairs_empty_raises(self):
        with pytest.raises(ValueError, match="empty correlation"):
            top_correlated_pairs(pd.DataFrame(), n=5)


def _sector_returns(n=200, seed=5):
    """Energy names share one factor, chip names another."""
    rng = np.random.default_rng(seed)
    energy, chips = rng.normal(0, 0.02, n), rng.normal(0, 0.02, n)

    def noise():
        return rng.normal(0, 0.005, n)

    return pd.DataFrame({
        'XOM': energy + noise(),
        'NVDA': chips + noise(),
        'CVX': energy + noise(),
        'AMD': chips + noise(),
        'COP': energy + noise(),
    })


class TestHierarchicalClusters:

    def test_sector_blocks_recovered(self):
        corr = correlation_matrix(_sector_returns())

        clusters = hierarchical_clusters(corr, max_clusters=2)

        assert [c.tickers for c in clusters] == [['XOM', 'CVX', 'COP'], ['NVDA', 'AMD']]
        assert [c.cluster_id for c in clusters] == [1, 2]
        assert [c.size for c in clusters] == [3, 2]
        assert all(c.average_correlation > 0.8 for c in clusters)
        assert clusters[0].representative in clusters[0].tickers

    def test_cluster_count(self, sample_returns):
        corr = correlation_matrix(sample_returns)

        clusters = hierarchical_clusters(corr, max_clusters=3)

        assert len(clusters) <= 3
        assert all(isinstance(c, CorrelationCluster) for c in clusters)

    def test_all_symbols_assigned_once(self, sample_returns):
        corr = correlation_matrix(sample_returns)
        clusters = hierarchical_clusters(corr, max_clusters=3)

        members = [m for c in clusters for m in c.tickers]
        assert sorted(members) == sorted(sample_returns.columns)

    def test_pair_cluster_statistics(self, sample_returns):
        """A two-member cluster's average is the pair's correlation."""
        corr = correlation_matrix(sample_returns)

        for cluster in hierarchical_clusters(corr, max_clusters=4):
            assert cluster.size == len(cluster.tickers)
            if cluster.size == 2:
                a, b = cluster.tickers
                assert_allclose(cluster.average_correlation, corr.loc[a, b])
            if cluster.size == 1:
                assert cluster.average_correlation == 1.0
                assert cluster.representative == cluster.tickers[0]

    def test_largest_cluster_first(self, sample_returns):
        corr = correlation_matrix(sample_returns)
        sizes = [c.size for c in hierarchical_clusters(corr, max_clusters=3)]

        assert sizes == sorted(sizes, reverse=True)

    def test_single_ticker(self):
        corr = pd.DataFrame([[1.0]], index=['AAPL'], columns=['AAPL'])

        clusters = hierarchical_clusters(corr)

        assert clusters == [
            CorrelationCluster(
                cluster_id=1, tickers=['AAPL'], size=1, average_correlation=1.0, representative='AAPL'
            )
        ]

    def test_nan_matrix_rejected(self):
        corr = pd.DataFrame([[1.0, np.nan], [np.nan, 1.0]], index=['A', 'B'], columns=['A', 'B'])

        with pytest.raises(InvalidInput):
            hierarchical_clusters(corr)


class TestComputeCorrelation:

    def test_full_analysis(self, sample_prices):
        prices = {t: sample_prices[t] for t in ['AAPL', 'MSFT', 'SPY']}

        result = compute_correlation(prices, window=90)

        assert result.tickers == ['AAPL', 'MSFT', 'SPY']
        assert result.observations == 90
        assert len(result.matrix) == 3
        assert result.excluded == {}
        assert len(result.top_pairs) == 3

    def test_excluded_tickers_reported(self, sample_prices):
        """Empty and flat series are excluded rather than failing."""
        flat = pd.Series(100.0, index=sample_prices['SPY'].index)
        prices = {
            'AAPL': sample_prices['AAPL'],
            'MSFT': sample_prices['MSFT'],
            'NODATA': pd.Series(dtype=float),
            'FLAT': flat,
        }

        result = compute_correlation(prices, window=60)

        assert result.tickers == ['AAPL', 'MSFT']
        assert result.excluded['NODATA'] == 'no_price_data'
        assert result.excluded['FLAT'] == 'zero_variance'

    def test_fewer_than_two_tickers_raises(self, sample_prices):
        with pytest.raises(InsufficientData):
            compute_correlation({'AAPL': sample_prices['AAPL']}, window=30)
