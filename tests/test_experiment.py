"""Tests for the experiment container, site keys and exclusion manifest."""

import numpy as np
import pandas as pd
import pytest

from phospho_signalome.experiment import (
    RAW_LAYER,
    ExclusionManifest,
    InsufficientOverlapError,
    PhosphoExperiment,
    PhosphoSignalomeError,
    PreconditionError,
    SiteAnnotation,
    annotation_from_keys,
    base_site_key,
    build_annotation,
    is_complete,
    make_site_key,
    observed_fraction,
    parse_site_key,
)


class TestSiteKeys:
    """Tests for site key construction and parsing."""

    def test_make_key(self):
        assert make_site_key('akt1s1', 't', 246) == 'AKT1S1;T246'

    def test_make_key_with_disambiguator(self):
        assert make_site_key('GENE', 'S', 12, 'ISO2') == 'GENE;S12;ISO2'

    def test_parse_roundtrip(self):
        assert parse_site_key('AKT1S1;T246') == ('AKT1S1', 'T', 246, None)
        assert parse_site_key('GENE;Y7;ISO2') == ('GENE', 'Y', 7, 'ISO2')

    def test_base_key_drops_disambiguator(self):
        assert base_site_key('GENE;S12;ISO2') == 'GENE;S12'
        assert base_site_key('GENE;S12') == 'GENE;S12'

    @pytest.mark.parametrize('bad', ['GENE', 'GENE;A12', 'GENE;S', ';S12', 'GENE S12'])
    def test_malformed_keys_raise(self, bad):
        with pytest.raises(ValueError, match='Malformed'):
            parse_site_key(bad)


class TestSiteAnnotation:
    """Tests for annotation validation."""

    def test_normalises_case(self):
        rec = SiteAnnotation('gene', 's', 5)
        assert rec.gene_symbol == 'GENE'
        assert rec.residue == 'S'
        assert rec.key == 'GENE;S5'

    def test_invalid_residue(self):
        with pytest.raises(ValueError, match='Residue'):
            SiteAnnotation('GENE', 'K', 5)

    def test_invalid_position(self):
        with pytest.raises(ValueError, match='Position'):
            SiteAnnotation('GENE', 'S', 0)

    def test_build_annotation_rejects_duplicates(self):
        with pytest.raises(ValueError, match='Duplicate'):
            build_annotation([SiteAnnotation('G', 'S', 1), SiteAnnotation('G', 'S', 1)])

    def test_annotation_from_keys(self):
        ann = annotation_from_keys(['A;S1', 'A;S1;ISO2', 'B;Y3'], windows={'B;Y3': 'AAYAA'})
        assert list(ann.index) == ['A;S1', 'A;S1;ISO2', 'B;Y3']
        assert ann.loc['B;Y3', 'sequence_window'] == 'AAYAA'
        assert ann.loc['A;S1', 'position'] == 1


class TestPhosphoExperiment:
    """Tests for the versioned-layer container."""

    def test_raw_layer_is_immutable(self, experiment):
        with pytest.raises(ValueError, match='immutable'):
            experiment.add_layer(RAW_LAYER, experiment.raw)

    def test_layer_returns_copy(self, experiment):
        raw = experiment.layer(RAW_LAYER)
        raw.iloc[0, 0] = -999.0
        assert experiment.raw.iloc[0, 0] != -999.0

    def test_add_layer_no_overwrite(self, experiment):
        experiment.add_layer('scaled', experiment.raw - 1)
        with pytest.raises(ValueError, match='already exists'):
            experiment.add_layer('scaled', experiment.raw)
        experiment.add_layer('scaled', experiment.raw + 1, overwrite=True)
        np.testing.assert_allclose(experiment.layer('scaled'), experiment.raw + 1)

    def test_add_layer_shape_mismatch(self, experiment):
        with pytest.raises(ValueError, match='does not match'):
            experiment.add_layer('bad', experiment.raw.iloc[:5])

    def test_unknown_layer(self, experiment):
        with pytest.raises(KeyError):
            experiment.layer('nope')

    def test_missing_group_label(self, site_data):
        matrix, annotation, groups = site_data
        with pytest.raises(ValueError, match='No group label'):
            PhosphoExperiment(matrix, annotation, groups.iloc[:-1])

    def test_duplicate_sites_rejected(self, site_data):
        matrix, annotation, groups = site_data
        dup = pd.concat([matrix, matrix.iloc[:1]])
        with pytest.raises(ValueError, match='Duplicate'):
            PhosphoExperiment(dup, pd.concat([annotation, annotation.iloc[:1]]), groups)

    def test_subset_keeps_layers(self, experiment):
        experiment.add_layer('scaled', experiment.raw * 2)
        sub = experiment.subset(experiment.sites[:5])
        assert list(sub.sites) == list(experiment.sites[:5])
        assert sub.layer_names == [RAW_LAYER, 'scaled']
        np.testing.assert_allclose(sub.layer('scaled'), experiment.layer('scaled').iloc[:5])

    def test_base_keys_and_proteins(self, experiment):
        assert experiment.base_keys().iloc[0] == experiment.sites[0]
        assert experiment.proteins().iloc[0] == 'PROT0'


class TestHelpers:
    """Tests for group helpers."""

    def test_observed_fraction(self):
        matrix = pd.DataFrame({'a1': [1.0, np.nan], 'a2': [1.0, 1.0], 'b1': [np.nan, np.nan]})
        groups = pd.Series({'a1': 'A', 'a2': 'A', 'b1': 'B'})
        frac = observed_fraction(matrix, groups)
        assert frac.loc[0, 'A'] == 1.0
        assert frac.loc[1, 'A'] == 0.5
        assert frac.loc[1, 'B'] == 0.0

    def test_is_complete(self):
        assert is_complete(pd.DataFrame({'a': [1.0, 2.0]}))
        assert not is_complete(pd.DataFrame({'a': [1.0, np.nan]}))


class TestExclusionManifest:
    """Tests for the exclusion manifest."""

    def test_records_entries(self):
        manifest = ExclusionManifest()
        manifest.add('kinase_scoring', 'AKT1', 'no substrates')
        manifest.add('substrate_prediction', 'MAPK1', 'too few positives')
        assert len(manifest) == 2
        assert manifest.entities('kinase_scoring') == ['AKT1']
        frame = manifest.to_frame()
        assert list(frame.columns) == ['stage', 'entity', 'reason']
        assert frame['entity'].tolist() == ['AKT1', 'MAPK1']

    def test_empty_frame_has_columns(self):
        assert list(ExclusionManifest().to_frame().columns) == ['stage', 'entity', 'reason']


class TestErrorHierarchy:
    """Error types are ValueErrors so callers can catch them broadly."""

    def test_hierarchy(self):
        assert issubclass(InsufficientOverlapError, PreconditionError)
        assert issubclass(PreconditionError, PhosphoSignalomeError)
        assert issubclass(PhosphoSignalomeError, ValueError)
