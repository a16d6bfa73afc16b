"""End-to-end tests for the full analysis."""

import numpy as np
import pandas as pd
import pytest

from phospho_signalome.experiment import PhosphoExperiment, make_site_key
from phospho_signalome.kinase_scoring import KinaseReference
from phospho_signalome.pipeline import run_pipeline

from conftest import make_window


def make_small_experiment(seed=5):
    """10 sites x 12 samples, two missing values per sample.

    Sites 0-2 are up in group B; sites 7-9 are flat and complete.
    """
    rng = np.random.default_rng(seed)
    keys = [make_site_key(f'PROT{i // 2}', 'S', 100 + i) for i in range(10)]
    samples = [f'A_{j}' for j in range(6)] + [f'B_{j}' for j in range(6)]
    groups = pd.Series(['A'] * 6 + ['B'] * 6, index=samples, name='group')

    values = rng.uniform(20, 24, size=(10, 1)) + rng.normal(0, 0.3, size=(10, 12))
    values[:3, 6:] += 2.0
    values[7:] = rng.uniform(20, 24, size=(3, 1)) + rng.normal(0, 0.05, size=(3, 12))
    for s in range(12):
        values[3 + s % 4, s] = np.nan
        values[3 + (s + 1) % 4, s] = np.nan

    matrix = pd.DataFrame(values, index=pd.Index(keys, name='site'), columns=samples)
    annotation = pd.DataFrame({
        'gene_symbol': [k.split(';')[0] for k in keys],
        'residue': 'S',
        'position': [100 + i for i in range(10)],
        'sequence_window': [make_window(rng) for _ in keys],
    }, index=matrix.index)
    return PhosphoExperiment(matrix, annotation, groups), keys


CONFIG = {
    'seed': 11,
    'batch_correction': {'k': 1},
    'prediction': {'top': 3, 'min_substrates': 3, 'ensemble_size': 4, 'n_iter': 2},
}


@pytest.fixture
def small_run():
    experiment, keys = make_small_experiment()
    raw = experiment.raw.copy()
    library = {'KIN1': KinaseReference('KIN1', substrates=keys[:3])}
    result = run_pipeline(experiment, library, controls=keys[7:], config=CONFIG)
    return result, raw, keys


class TestRunPipeline:
    """Tests for run_pipeline on a small complete scenario."""

    def test_exactly_top_predictions(self, small_run):
        result, _, _ = small_run
        assert result.prediction.kinases == ['KIN1']
        assert int(result.prediction.predictions['KIN1'].sum()) == 3
        assert len(result.manifest) == 0

    def test_layers_and_raw_unchanged(self, small_run):
        result, raw, _ = small_run
        exp = result.experiment
        for name in ['raw', 'imputed', 'normalized', 'standardised']:
            assert exp.has_layer(name), name
        pd.testing.assert_frame_equal(exp.raw, raw)
        assert not exp.layer('imputed').isna().to_numpy().any()

    def test_imputed_cells_blanked_after_correction(self, small_run):
        result, raw, _ = small_run
        normalized = result.experiment.layer('normalized')
        np.testing.assert_array_equal(normalized.isna().to_numpy(), raw.isna().to_numpy())

    def test_correction_recorded(self, small_run):
        result, _, keys = small_run
        assert result.correction is not None
        assert result.correction.k == 1
        assert result.correction.controls == keys[7:]
        assert result.correction_metrics is not None
        assert any('RUV-III' in step for step in result.method_log)

    def test_known_substrates_scored(self, small_run):
        result, _, keys = small_run
        assert result.scores.substrate_sites['KIN1'] == keys[:3]
        assert result.scores.combined['KIN1'].notna().all()

    def test_kinase_network_nodes(self, small_run):
        result, _, _ = small_run
        assert list(result.kinase_network.nodes) == ['KIN1']

    def test_deterministic(self, small_run):
        result, _, keys = small_run
        again, _ = make_small_experiment()
        library = {'KIN1': KinaseReference('KIN1', substrates=keys[:3])}
        second = run_pipeline(again, library, controls=keys[7:], config=CONFIG)

        pd.testing.assert_frame_equal(result.prediction.rank_scores, second.prediction.rank_scores)
        pd.testing.assert_frame_equal(result.experiment.layer('normalized'),
                                      again.layer('normalized'))


class TestPipelineOptions:
    """Tests for optional stages."""

    def test_signalomes_for_kinase_of_interest(self):
        experiment, keys = make_small_experiment()
        library = {'KIN1': KinaseReference('KIN1', substrates=keys[:3])}
        result = run_pipeline(experiment, library, controls=keys[7:], kinases_of_interest=['KIN1'],
                              config=CONFIG)

        assert result.signalomes
        assert all(s.kinase == 'KIN1' for s in result.signalomes)
        members = [p for s in result.signalomes for p in s.proteins]
        assert len(members) == len(set(members))
        assert len(result.manifest) == 0

    def test_without_controls_skips_correction(self):
        experiment, keys = make_small_experiment()
        library = {'KIN1': KinaseReference('KIN1', substrates=keys[:3])}
        result = run_pipeline(experiment, library, config=CONFIG)

        assert result.correction is None
        assert not experiment.has_layer('normalized')
        assert 'Batch correction: skipped' in result.method_log
        assert int(result.prediction.predictions['KIN1'].sum()) == 3

    def test_median_scaling_layer(self):
        experiment, keys = make_small_experiment()
        library = {'KIN1': KinaseReference('KIN1', substrates=keys[:3])}
        config = dict(CONFIG, normalization={'median_scaling': True})
        run_pipeline(experiment, library, controls=keys[7:], config=config)
        assert experiment.has_layer('scaled')

    def test_unmeasured_kinase_in_manifest(self):
        experiment, keys = make_small_experiment()
        library = {
            'KIN1': KinaseReference('KIN1', substrates=keys[:3]),
            'KIN2': KinaseReference('KIN2', substrates=['OTHER;S1']),
        }
        result = run_pipeline(experiment, library, controls=keys[7:], config=CONFIG)

        assert result.manifest.entities('kinase_scoring') == ['KIN2']
        assert result.prediction.kinases == ['KIN1']
