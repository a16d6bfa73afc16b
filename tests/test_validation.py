"""Tests for batch correction validation metrics."""

import numpy as np
import pandas as pd
import pytest

from phospho_signalome.batch_correction import make_design_matrix, ruv_correct
from phospho_signalome.validation import (
    CorrectionMetrics,
    calculate_group_separation,
    evaluate_correction,
    generate_qc_report,
    median_site_sd,
    within_group_sd,
)


def _batch_matrix(seed=0):
    rng = np.random.default_rng(seed)
    samples = [f'A_{j}' for j in range(6)] + [f'B_{j}' for j in range(6)]
    groups = pd.Series(['A'] * 6 + ['B'] * 6, index=samples)
    keys = [f'P{i};S{i + 1}' for i in range(50)]
    run = np.tile([1.0, -1.0, 0.5, -0.5, 1.5, -1.5], 2)
    values = rng.uniform(18, 24, size=(50, 1)) + rng.uniform(0.5, 1.5, size=(50, 1)) * run
    values = values + rng.normal(0, 0.05, size=values.shape)
    values[:15, 6:] += 3.0
    return pd.DataFrame(values, index=keys, columns=samples), groups, keys[-10:]


class TestSpreadMetrics:
    """Tests for SD summaries."""

    def test_median_site_sd(self):
        matrix = pd.DataFrame([[1.0, 3.0], [2.0, 2.0], [0.0, 4.0]])
        assert median_site_sd(matrix) == pytest.approx(np.std([1.0, 3.0], ddof=1))

    def test_within_group_sd_ignores_group_shift(self):
        matrix = pd.DataFrame({'a1': [1.0], 'a2': [1.0], 'b1': [9.0], 'b2': [9.0]})
        groups = pd.Series({'a1': 'A', 'a2': 'A', 'b1': 'B', 'b2': 'B'})
        assert within_group_sd(matrix, groups) == 0.0


class TestGroupSeparation:
    """Tests for PCA-based group separation."""

    def test_separated_groups_score_high(self):
        matrix, groups, controls = _batch_matrix()
        corrected = ruv_correct(matrix, make_design_matrix(groups), controls, k=1).corrected
        assert calculate_group_separation(corrected, groups) > calculate_group_separation(matrix, groups)

    def test_tolerates_missing_values(self):
        matrix, groups, _ = _batch_matrix()
        matrix = matrix.copy()
        matrix.iloc[0, :3] = np.nan
        assert np.isfinite(calculate_group_separation(matrix, groups))


class TestEvaluateCorrection:
    """Tests for the correction assessment."""

    def test_correction_passes(self):
        matrix, groups, controls = _batch_matrix()
        corrected = ruv_correct(matrix, make_design_matrix(groups), controls, k=1).corrected

        metrics = evaluate_correction(matrix, corrected, groups, controls)

        assert metrics.control_sd_improvement > 0.5
        assert metrics.within_group_sd_after < metrics.within_group_sd_before
        assert metrics.passed
        assert metrics.warnings == []

    def test_noisier_controls_fail(self):
        matrix, groups, controls = _batch_matrix()
        metrics = evaluate_correction(
            matrix,
            matrix + np.random.default_rng(1).normal(0, 2.0, size=matrix.shape),
            groups,
            controls,
        )
        assert not metrics.passed
        assert any('Control-site spread increased' in w for w in metrics.warnings)


class TestQCReport:
    """Tests for the HTML report."""

    def test_report_written(self, tmp_path):
        metrics = CorrectionMetrics(
            control_sd_before=1.0,
            control_sd_after=0.2,
            within_group_sd_before=1.0,
            within_group_sd_after=0.3,
            control_sd_improvement=0.8,
            within_group_sd_improvement=0.7,
            group_separation_before=1.0,
            group_separation_after=3.0,
            separation_ratio=3.0,
        )
        path = tmp_path / 'qc.html'
        generate_qc_report(metrics, ['Imputation', 'RUV-III: k=1'], str(path))

        html = path.read_text()
        assert 'Batch Correction QC Report' in html
        assert 'PASSED' in html
        assert '<li>RUV-III: k=1</li>' in html
