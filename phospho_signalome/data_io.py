"""Data I/O module for phosphosite matrices, sample metadata and reference resources."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .experiment import PhosphoExperiment, base_site_key, make_site_key
from .kinase_scoring import KinaseReference, build_kinase_library
from .stable_sites import StableSiteSet

logger = logging.getLogger(__name__)

# Alternative column names found in site-level exports
SITE_COLUMN_MAP = {
    'Gene': 'gene_symbol',
    'Gene names': 'gene_symbol',
    'GeneSymbol': 'gene_symbol',
    'gene': 'gene_symbol',
    'Amino acid': 'residue',
    'Residue': 'residue',
    'Position': 'position',
    'Site': 'position',
    'Sequence window': 'sequence_window',
    'SequenceWindow': 'sequence_window',
    'Isoform': 'disambiguator',
}

# Required columns for a site-level matrix
REQUIRED_COLUMNS = ['gene_symbol', 'residue', 'position']

# Non-sample columns recognised in a matrix file
ANNOTATION_FIELDS = ['site', 'gene_symbol', 'residue', 'position', 'sequence_window', 'disambiguator']

# Sample metadata required columns
METADATA_REQUIRED = ['sample', 'group']

# Kinase library required columns
LIBRARY_REQUIRED = ['kinase', 'substrate']


@dataclass
class ValidationResult:
    """Result of validating a site-level matrix file."""

    is_valid: bool
    filepath: Path
    missing_required: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    n_sites: int = 0
    n_samples: int = 0

    def __str__(self) -> str:
        if self.is_valid:
            return f"Valid: {self.filepath.name} ({self.n_sites} sites, {self.n_samples} samples)"
        else:
            issues = []
            if self.missing_required:
                issues.append(f"Missing columns: {self.missing_required}")
            issues.extend(self.warnings)
            return f"Invalid: {self.filepath.name} - {'; '.join(issues)}"


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename columns to standard names using the mapping."""
    rename_map = {}
    for orig, standard in SITE_COLUMN_MAP.items():
        if orig in df.columns and standard not in df.columns:
            rename_map[orig] = standard

    return df.rename(columns=rename_map)


def read_table(filepath: Path) -> pd.DataFrame:
    """Read a CSV, TSV or parquet table (format from the suffix)."""
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()
    if suffix == '.parquet' or filepath.is_dir():
        return pd.read_parquet(filepath)

    # Detect delimiter
    sep = '\t' if suffix in ['.tsv', '.txt'] else ','
    return pd.read_csv(filepath, sep=sep)


def write_table(df: pd.DataFrame, path: Path, output_format: str = 'parquet', index: bool = True) -> Path:
    """Write a table as parquet, csv or tsv."""
    path = Path(path)
    if output_format == 'parquet':
        table = pa.Table.from_pandas(df, preserve_index=index)
        pq.write_table(table, path)
    elif output_format == 'csv':
        df.to_csv(path, index=index)
    elif output_format == 'tsv':
        df.to_csv(path, sep='\t', index=index)
    else:
        raise ValueError(f"Unknown output format: {output_format}")
    return path


def _sample_columns(df: pd.DataFrame) -> list[str]:
    return [c for c in df.columns
            if c not in ANNOTATION_FIELDS and pd.api.types.is_numeric_dtype(df[c])]


def validate_phospho_table(filepath: Path) -> ValidationResult:
    """Validate that a site-level matrix has annotation and sample columns.

    Args:
        filepath: Path to the matrix (CSV, TSV or parquet)

    Returns:
        ValidationResult with validation details

    """
    filepath = Path(filepath)
    result = ValidationResult(is_valid=True, filepath=filepath)

    try:
        df = _standardize_columns(read_table(filepath))
    except (OSError, ValueError, pd.errors.ParserError) as e:
        result.is_valid = False
        result.warnings.append(f"Error reading file: {str(e)}")
        return result

    # Check required columns (a 'site' key column can stand in for them)
    if 'site' not in df.columns:
        for col in REQUIRED_COLUMNS:
            if col not in df.columns:
                result.missing_required.append(col)
                result.is_valid = False

    samples = _sample_columns(df)
    if not samples:
        result.is_valid = False
        result.warnings.append("No numeric sample columns found")

    if 'sequence_window' not in df.columns:
        result.warnings.append("No sequence window column - motif scores will be undefined")

    result.n_sites = len(df)
    result.n_samples = len(samples)
    return result


def _site_keys(df: pd.DataFrame) -> pd.Index:
    extra = df['disambiguator'] if 'disambiguator' in df.columns else pd.Series(None, index=df.index)
    keys = [
        make_site_key(g, r, p, d if isinstance(d, str) and d else None)
        for g, r, p, d in zip(df['gene_symbol'], df['residue'], df['position'], extra)
    ]
    keys = pd.Index(keys, name='site')

    # Rows sharing gene/residue/position get their sequence window as disambiguator
    if keys.has_duplicates and 'sequence_window' in df.columns:
        dup = keys.duplicated(keep=False)
        keys = pd.Index([
            f"{k};{w}" if d and isinstance(w, str) else k
            for k, d, w in zip(keys, dup, df['sequence_window'])
        ], name='site')
    return keys


def load_phospho_matrix(filepath: Path, validate: bool = True) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Load a site-level matrix and its annotation.

    Args:
        filepath: Path to the matrix (CSV, TSV or parquet)
        validate: Whether to validate before loading

    Returns:
        (matrix, annotation) both indexed by site key

    Raises:
        ValueError: If validation fails or site keys are not unique

    """
    filepath = Path(filepath)

    if validate:
        validation = validate_phospho_table(filepath)
        if not validation.is_valid:
            raise ValueError(f"Invalid phosphosite matrix: {validation}")

    df = _standardize_columns(read_table(filepath))
    if 'site' in df.columns and not set(REQUIRED_COLUMNS) <= set(df.columns):
        parts = df['site'].astype(str).str.split(';', expand=True)
        df['gene_symbol'] = parts[0]
        df['residue'] = parts[1].str[0]
        df['position'] = parts[1].str[1:].astype(int)
        if parts.shape[1] > 2 and 'disambiguator' not in df.columns:
            df['disambiguator'] = parts[2]

    df['gene_symbol'] = df['gene_symbol'].astype(str).str.upper()
    df['residue'] = df['residue'].astype(str).str.upper()
    keys = _site_keys(df)
    if keys.has_duplicates:
        dup = keys[keys.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate site keys: {dup[:5]}")

    samples = _sample_columns(df)
    matrix = df[samples].astype(float)
    matrix.index = keys

    annotation = pd.DataFrame({
        'gene_symbol': df['gene_symbol'].to_numpy(),
        'residue': df['residue'].to_numpy(),
        'position': df['position'].astype(int).to_numpy(),
        'sequence_window': (df['sequence_window'].to_numpy() if 'sequence_window' in df.columns
                            else [None] * len(df)),
    }, index=keys)

    n_missing = int(matrix.isna().to_numpy().sum())
    logger.info(f"Loaded {len(matrix)} sites x {len(samples)} samples from {filepath} "
                f"({n_missing} missing values)")
    return matrix, annotation


def load_sample_metadata(filepath: Path) -> pd.DataFrame:
    """Load and validate sample metadata file.

    Args:
        filepath: Path to metadata TSV/CSV with 'sample' and 'group' columns

    Returns:
        Validated metadata DataFrame indexed by sample

    Raises:
        ValueError: If validation fails

    """
    meta = read_table(Path(filepath))

    # Check required columns
    missing = [col for col in METADATA_REQUIRED if col not in meta.columns]
    if missing:
        raise ValueError(f"Missing required metadata columns: {missing}")

    # Check for duplicate sample names
    duplicates = meta[meta['sample'].duplicated()]['sample'].tolist()
    if duplicates:
        raise ValueError(f"Duplicate sample entries: {duplicates}")

    meta['sample'] = meta['sample'].astype(str)
    meta['group'] = meta['group'].astype(str)
    return meta.set_index('sample')


def load_experiment(matrix_path: Path, metadata_path: Path) -> PhosphoExperiment:
    """Load a matrix and its sample metadata into a PhosphoExperiment."""
    matrix, annotation = load_phospho_matrix(matrix_path)
    meta = load_sample_metadata(metadata_path)

    missing = [s for s in matrix.columns if s not in meta.index]
    if missing:
        raise ValueError(f"Samples missing from metadata: {missing[:5]}")

    return PhosphoExperiment(matrix, annotation, meta['group'])


def load_kinase_library(filepath: Path) -> Dict[str, KinaseReference]:
    """Load a kinase-substrate table (kinase, substrate[, sequence_window]).

    Raises:
        ValueError: If required columns are missing

    """
    table = _standardize_columns(read_table(Path(filepath)))
    missing = [col for col in LIBRARY_REQUIRED if col not in table.columns]
    if missing:
        raise ValueError(f"Missing required kinase library columns: {missing}")
    return build_kinase_library(table)


def save_control_sites(sites: Iterable[str], filepath: Path) -> Path:
    """Write a control-site resource: one base site key per line."""
    filepath = Path(filepath)
    keys = list(dict.fromkeys(base_site_key(s) for s in sites))
    filepath.write_text('\n'.join(keys) + '\n')
    logger.info(f"Saved {len(keys)} control sites to {filepath}")
    return filepath


def load_control_sites(filepath: Path, name: Optional[str] = None) -> StableSiteSet:
    """Load a control-site resource written by save_control_sites.

    Blank lines and lines starting with '#' are ignored.

    """
    filepath = Path(filepath)
    keys = []
    for line in filepath.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith('#'):
            keys.append(base_site_key(line))

    logger.info(f"Loaded {len(keys)} control sites from {filepath}")
    return StableSiteSet(name=name or filepath.stem, sites=tuple(keys))
