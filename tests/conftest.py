"""Shared synthetic data for the test suite."""

import numpy as np
import pandas as pd
import pytest

from phospho_signalome.experiment import PhosphoExperiment, make_site_key

AMINO_ACIDS = list('ACDEFGHIKLMNPQRSTVWY')


def make_window(rng, width=15, center='S'):
    """Random sequence window with the phosphorylated residue in the middle."""
    residues = rng.choice(AMINO_ACIDS, size=width)
    residues[width // 2] = center
    return ''.join(residues)


def make_site_data(
    n_sites=40,
    n_per_group=6,
    sites_per_protein=2,
    group_effect=2.0,
    n_regulated=10,
    noise=0.3,
    missing_fraction=0.0,
    seed=0,
):
    """Build (matrix, annotation, groups) for a two-group experiment.

    The first ``n_regulated`` sites are up in group B by ``group_effect``.
    """
    rng = np.random.default_rng(seed)
    keys = [make_site_key(f'PROT{i // sites_per_protein}', 'S', 10 + i) for i in range(n_sites)]
    samples = [f'A_{j}' for j in range(n_per_group)] + [f'B_{j}' for j in range(n_per_group)]
    groups = pd.Series(['A'] * n_per_group + ['B'] * n_per_group, index=samples, name='group')

    base = rng.uniform(18, 26, size=(n_sites, 1))
    values = base + rng.normal(0, noise, size=(n_sites, len(samples)))
    values[:n_regulated, n_per_group:] += group_effect

    if missing_fraction > 0:
        mask = rng.random(values.shape) < missing_fraction
        values[mask] = np.nan

    matrix = pd.DataFrame(values, index=pd.Index(keys, name='site'), columns=samples)
    annotation = pd.DataFrame({
        'gene_symbol': [k.split(';')[0] for k in keys],
        'residue': 'S',
        'position': [10 + i for i in range(n_sites)],
        'sequence_window': [make_window(rng) for _ in keys],
    }, index=matrix.index)
    return matrix, annotation, groups


@pytest.fixture
def site_data():
    """Complete 40-site x 12-sample matrix with annotation and groups."""
    return make_site_data()


@pytest.fixture
def experiment(site_data):
    matrix, annotation, groups = site_data
    return PhosphoExperiment(matrix, annotation, groups)
