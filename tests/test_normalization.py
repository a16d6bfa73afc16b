"""Tests for preprocessing helpers."""

import numpy as np
import pandas as pd
import pytest

from phospho_signalome.normalization import (
    filter_by_group_quantification,
    filter_by_overall_quantification,
    mean_abundance,
    median_scaling,
    standardise,
    standardise_experiment,
)


@pytest.fixture
def small_matrix():
    matrix = pd.DataFrame({
        'a1': [1.0, np.nan, 3.0],
        'a2': [2.0, np.nan, 4.0],
        'b1': [3.0, 5.0, np.nan],
        'b2': [4.0, 6.0, np.nan],
    }, index=['s1', 's2', 's3'])
    groups = pd.Series({'a1': 'A', 'a2': 'A', 'b1': 'B', 'b2': 'B'})
    return matrix, groups


class TestFilters:
    """Tests for quantification filters."""

    def test_group_filter_any(self, small_matrix):
        matrix, groups = small_matrix
        result = filter_by_group_quantification(matrix, groups, percent=1.0, mode='any')
        assert list(result.index) == ['s1', 's2', 's3']

    def test_group_filter_all(self, small_matrix):
        matrix, groups = small_matrix
        result = filter_by_group_quantification(matrix, groups, percent=1.0, mode='all')
        assert list(result.index) == ['s1']

    def test_group_filter_unknown_mode(self, small_matrix):
        matrix, groups = small_matrix
        with pytest.raises(ValueError, match='Unknown filter mode'):
            filter_by_group_quantification(matrix, groups, mode='some')

    def test_overall_filter(self, small_matrix):
        matrix, _ = small_matrix
        result = filter_by_overall_quantification(matrix, percent=0.75)
        assert list(result.index) == ['s1']


class TestScaling:
    """Tests for median scaling and standardisation."""

    def test_median_scaling_centres_samples(self, small_matrix):
        matrix, _ = small_matrix
        scaled = median_scaling(matrix)
        np.testing.assert_allclose(scaled.median(axis=0, skipna=True).to_numpy(), 0.0)

    def test_standardise_rows(self):
        matrix = pd.DataFrame([[1.0, 2.0, 3.0, 4.0], [5.0, 5.0, 5.0, 5.0]], index=['x', 'y'])
        z = standardise(matrix)
        assert z.loc['x'].mean() == pytest.approx(0.0)
        assert z.loc['x'].std(ddof=1) == pytest.approx(1.0)
        # no spread -> cannot be standardised
        assert z.loc['y'].isna().all()

    def test_standardise_ignores_missing(self):
        matrix = pd.DataFrame([[1.0, np.nan, 3.0, 5.0]])
        z = standardise(matrix)
        assert np.isnan(z.iloc[0, 1])
        assert z.iloc[0, [0, 2, 3]].mean() == pytest.approx(0.0)

    def test_mean_abundance(self, small_matrix):
        matrix, groups = small_matrix
        means = mean_abundance(matrix, groups)
        assert list(means.columns) == ['A', 'B']
        assert means.loc['s1', 'A'] == pytest.approx(1.5)
        assert np.isnan(means.loc['s2', 'A'])


class TestStandardiseExperiment:
    """Tests for the experiment-level standardisation."""

    def test_stores_layer(self, experiment):
        z = standardise_experiment(experiment, source_layer='raw')
        assert 'standardised' in experiment.layer_names
        np.testing.assert_allclose(z.mean(axis=1).to_numpy(), 0.0, atol=1e-10)

    def test_average_groups(self, experiment):
        z = standardise_experiment(experiment, source_layer='raw', average_groups=True)
        assert list(z.columns) == ['A', 'B']
        assert 'standardised' not in experiment.layer_names
