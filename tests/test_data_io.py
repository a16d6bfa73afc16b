"""Tests for data I/O module."""

import numpy as np
import pandas as pd
import pytest

from phospho_signalome.data_io import (
    _standardize_columns,
    load_control_sites,
    load_experiment,
    load_kinase_library,
    load_phospho_matrix,
    load_sample_metadata,
    read_table,
    save_control_sites,
    validate_phospho_table,
    write_table,
)


@pytest.fixture
def matrix_file(tmp_path):
    df = pd.DataFrame({
        'gene_symbol': ['akt1s1', 'GSK3B', 'FOXO3'],
        'residue': ['T', 's', 'S'],
        'position': [246, 9, 253],
        'sequence_window': ['PRPRLNTSDFQ', 'RPRTTSFAESC', 'GRRAASMDNNS'],
        'A_0': [20.1, 18.2, np.nan],
        'A_1': [20.3, 18.0, 22.1],
        'B_0': [21.0, np.nan, 22.4],
        'B_1': [21.2, 17.8, 22.0],
    })
    path = tmp_path / 'sites.csv'
    df.to_csv(path, index=False)
    return path


@pytest.fixture
def metadata_file(tmp_path):
    path = tmp_path / 'samples.tsv'
    pd.DataFrame({
        'sample': ['A_0', 'A_1', 'B_0', 'B_1'],
        'group': ['A', 'A', 'B', 'B'],
        'batch': [1, 2, 1, 2],
    }).to_csv(path, sep='\t', index=False)
    return path


class TestColumnStandardization:
    """Tests for column name standardization."""

    def test_alternative_column_names(self):
        df = pd.DataFrame({
            'Gene names': ['AKT1'],
            'Amino acid': ['S'],
            'Position': [473],
            'Sequence window': ['RPHFPQFSYSA'],
        })
        result = _standardize_columns(df)
        assert list(result.columns) == ['gene_symbol', 'residue', 'position', 'sequence_window']

    def test_existing_standard_names_win(self):
        df = pd.DataFrame({'gene_symbol': ['A'], 'Gene': ['B']})
        result = _standardize_columns(df)
        assert result['gene_symbol'].tolist() == ['A']
        assert 'Gene' in result.columns


class TestValidatePhosphoTable:
    """Tests for matrix validation."""

    def test_valid_file(self, matrix_file):
        result = validate_phospho_table(matrix_file)
        assert result.is_valid
        assert result.n_sites == 3
        assert result.n_samples == 4
        assert 'Valid' in str(result)

    def test_missing_columns(self, tmp_path):
        path = tmp_path / 'bad.csv'
        pd.DataFrame({'gene_symbol': ['A'], 'S1': [1.0]}).to_csv(path, index=False)
        result = validate_phospho_table(path)
        assert not result.is_valid
        assert result.missing_required == ['residue', 'position']

    def test_no_sample_columns(self, tmp_path):
        path = tmp_path / 'bad.csv'
        pd.DataFrame({'gene_symbol': ['A'], 'residue': ['S'], 'position': [1]}).to_csv(path, index=False)
        result = validate_phospho_table(path)
        assert not result.is_valid
        assert 'No numeric sample columns found' in result.warnings

    def test_missing_windows_warns(self, tmp_path):
        path = tmp_path / 'nowin.csv'
        pd.DataFrame({'gene_symbol': ['A'], 'residue': ['S'], 'position': [1], 'S1': [1.0]}).to_csv(
            path, index=False)
        result = validate_phospho_table(path)
        assert result.is_valid
        assert any('sequence window' in w for w in result.warnings)


class TestLoadPhosphoMatrix:
    """Tests for loading site-level matrices."""

    def test_keys_and_annotation(self, matrix_file):
        matrix, annotation = load_phospho_matrix(matrix_file)

        assert list(matrix.index) == ['AKT1S1;T246', 'GSK3B;S9', 'FOXO3;S253']
        assert list(matrix.columns) == ['A_0', 'A_1', 'B_0', 'B_1']
        assert np.isnan(matrix.loc['FOXO3;S253', 'A_0'])
        assert annotation.loc['GSK3B;S9', 'residue'] == 'S'
        assert annotation.loc['AKT1S1;T246', 'sequence_window'] == 'PRPRLNTSDFQ'

    def test_duplicate_sites_disambiguated_by_window(self, tmp_path):
        path = tmp_path / 'dup.tsv'
        pd.DataFrame({
            'gene_symbol': ['A', 'A'],
            'residue': ['S', 'S'],
            'position': [5, 5],
            'sequence_window': ['AAASAAA', 'CCCSCCC'],
            'S1': [1.0, 2.0],
        }).to_csv(path, sep='\t', index=False)

        matrix, _ = load_phospho_matrix(path)
        assert list(matrix.index) == ['A;S5;AAASAAA', 'A;S5;CCCSCCC']

    def test_site_key_column(self, tmp_path):
        path = tmp_path / 'keys.csv'
        pd.DataFrame({'site': ['A;S5', 'B;Y7;ISO2'], 'S1': [1.0, 2.0], 'S2': [1.5, 2.5]}).to_csv(
            path, index=False)

        matrix, annotation = load_phospho_matrix(path)
        assert list(matrix.index) == ['A;S5', 'B;Y7;ISO2']
        assert annotation.loc['B;Y7;ISO2', 'position'] == 7
        assert annotation['sequence_window'].isna().all()

    def test_site_key_column_keeps_isoforms_apart(self, tmp_path):
        path = tmp_path / 'isoforms.tsv'
        pd.DataFrame({'site': ['B;Y7;ISO1', 'B;Y7;ISO2'], 'S1': [1.0, 2.0]}).to_csv(
            path, sep='\t', index=False)

        matrix, annotation = load_phospho_matrix(path)
        assert list(matrix.index) == ['B;Y7;ISO1', 'B;Y7;ISO2']
        assert annotation['gene_symbol'].tolist() == ['B', 'B']

    def test_invalid_file_raises(self, tmp_path):
        path = tmp_path / 'bad.csv'
        pd.DataFrame({'x': ['a']}).to_csv(path, index=False)
        with pytest.raises(ValueError, match='Invalid phosphosite matrix'):
            load_phospho_matrix(path)


class TestSampleMetadata:
    """Tests for sample metadata loading."""

    def test_indexed_by_sample(self, metadata_file):
        meta = load_sample_metadata(metadata_file)
        assert list(meta.index) == ['A_0', 'A_1', 'B_0', 'B_1']
        assert meta['group'].tolist() == ['A', 'A', 'B', 'B']

    def test_missing_required_columns(self, tmp_path):
        path = tmp_path / 'meta.csv'
        pd.DataFrame({'sample': ['A_0']}).to_csv(path, index=False)
        with pytest.raises(ValueError, match='Missing required metadata columns'):
            load_sample_metadata(path)

    def test_duplicate_samples(self, tmp_path):
        path = tmp_path / 'meta.csv'
        pd.DataFrame({'sample': ['A_0', 'A_0'], 'group': ['A', 'B']}).to_csv(path, index=False)
        with pytest.raises(ValueError, match='Duplicate sample'):
            load_sample_metadata(path)

    def test_load_experiment(self, matrix_file, metadata_file):
        exp = load_experiment(matrix_file, metadata_file)
        assert len(exp.sites) == 3
        assert exp.groups.to_dict() == {'A_0': 'A', 'A_1': 'A', 'B_0': 'B', 'B_1': 'B'}

    def test_experiment_sample_without_metadata(self, matrix_file, tmp_path):
        path = tmp_path / 'meta.csv'
        pd.DataFrame({'sample': ['A_0', 'A_1'], 'group': ['A', 'A']}).to_csv(path, index=False)
        with pytest.raises(ValueError, match='Samples missing from metadata'):
            load_experiment(matrix_file, path)


class TestResources:
    """Tests for kinase libraries and control-site lists."""

    def test_kinase_library(self, tmp_path):
        path = tmp_path / 'library.tsv'
        pd.DataFrame({
            'kinase': ['AKT1', 'AKT1'],
            'substrate': ['GSK3B;S9', 'FOXO3;T32'],
        }).to_csv(path, sep='\t', index=False)
        library = load_kinase_library(path)
        assert library['AKT1'].substrates == ['GSK3B;S9', 'FOXO3;T32']

    def test_kinase_library_missing_columns(self, tmp_path):
        path = tmp_path / 'library.tsv'
        pd.DataFrame({'kinase': ['AKT1']}).to_csv(path, sep='\t', index=False)
        with pytest.raises(ValueError, match='substrate'):
            load_kinase_library(path)

    def test_control_sites_roundtrip(self, tmp_path):
        path = save_control_sites(['A;S1;ISO2', 'A;S1', 'B;T2'], tmp_path / 'sps.txt')
        with open(path, 'a') as f:
            f.write('# comment\n\n')

        sps = load_control_sites(path)
        assert sps.sites == ('A;S1', 'B;T2')
        assert sps.name == 'sps'


class TestWriteTable:
    """Tests for table output."""

    @pytest.mark.parametrize('fmt,suffix', [('parquet', '.parquet'), ('csv', '.csv'), ('tsv', '.tsv')])
    def test_roundtrip(self, tmp_path, fmt, suffix):
        df = pd.DataFrame({'x': [1.0, 2.0], 'y': [3.0, np.nan]}, index=pd.Index(['a', 'b'], name='site'))
        path = write_table(df, tmp_path / f'out{suffix}', output_format=fmt)

        back = read_table(path).set_index('site') if fmt != 'parquet' else read_table(path)
        pd.testing.assert_frame_equal(back, df)

    def test_unknown_format(self, tmp_path):
        with pytest.raises(ValueError, match='Unknown output format'):
            write_table(pd.DataFrame({'x': [1]}), tmp_path / 'out.xlsx', output_format='xlsx')
