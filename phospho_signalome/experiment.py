"""
Phosphosite experiment container with versioned matrix layers.

A PhosphoExperiment holds one quantification matrix (phosphosites x samples),
the per-site annotation and the per-sample group labels. The matrix loaded
from disk is kept as the immutable ``raw`` layer; every processing stage
writes a new named layer (``imputed``, ``scaled``, ``normalized``...) so that
earlier states stay available for downstream stages and audits.

Site keys follow the ``GENE;S123`` convention. When two rows share gene,
residue and position a disambiguator (isoform or sequence window) is appended
as a third field: ``GENE;S123;ISOFORM2``. Control-site resources and kinase
libraries always refer to the base key without the disambiguator.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

RAW_LAYER = 'raw'
VALID_RESIDUES = {'S', 'T', 'Y'}
ANNOTATION_COLUMNS = ['gene_symbol', 'residue', 'position', 'sequence_window']

_KEY_PATTERN = re.compile(r'^([^;]+);([STY])(\d+)(?:;(.+))?$')


# ============================================================================
# Errors
# ============================================================================

class PhosphoSignalomeError(ValueError):
    """Base class for errors raised by the analysis stages."""


class PreconditionError(PhosphoSignalomeError):
    """A stage precondition was violated (completeness, rank, thresholds)."""


class InsufficientOverlapError(PreconditionError):
    """Datasets do not share enough sites to rank stability across them."""


class EstimationError(PhosphoSignalomeError):
    """A distribution model could not be estimated from the observed data."""


def check_seed(seed) -> None:
    """Reject integer seeds numpy cannot use (negative values)."""
    if isinstance(seed, (int, np.integer)) and not isinstance(seed, bool) and seed < 0:
        raise PreconditionError(f"Random seed must be a non-negative integer, got {seed}")


# ============================================================================
# Exclusion manifest
# ============================================================================

@dataclass
class Exclusion:
    """One entity left out of a stage's output."""
    stage: str
    entity: str
    reason: str


@dataclass
class ExclusionManifest:
    """
    Enumerable record of entities skipped by the pipeline.

    Per-kinase and per-site failures are recorded here instead of being
    raised, so one sparse kinase never aborts a run.
    """
    entries: List[Exclusion] = field(default_factory=list)

    def add(self, stage: str, entity: str, reason: str) -> None:
        logger.warning(f"[{stage}] excluded {entity}: {reason}")
        self.entries.append(Exclusion(stage=stage, entity=entity, reason=reason))

    def for_stage(self, stage: str) -> List[Exclusion]:
        return [e for e in self.entries if e.stage == stage]

    def entities(self, stage: Optional[str] = None) -> List[str]:
        return [e.entity for e in self.entries if stage is None or e.stage == stage]

    def extend(self, other: 'ExclusionManifest') -> None:
        self.entries.extend(other.entries)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(e.stage, e.entity, e.reason) for e in self.entries],
            columns=['stage', 'entity', 'reason'],
        )

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


# ============================================================================
# Site keys and annotation
# ============================================================================

def make_site_key(
    gene_symbol: str,
    residue: str,
    position: int,
    disambiguator: Optional[str] = None,
) -> str:
    """Build a site key such as ``AKT1S1;T246``."""
    key = f"{str(gene_symbol).upper()};{str(residue).upper()}{int(position)}"
    if disambiguator:
        key = f"{key};{disambiguator}"
    return key


def parse_site_key(key: str) -> tuple:
    """
    Split a site key into (gene_symbol, residue, position, disambiguator).

    Raises:
        ValueError: If the key does not follow ``GENE;<S|T|Y><position>``
    """
    match = _KEY_PATTERN.match(str(key).strip())
    if match is None:
        raise ValueError(f"Malformed site key: {key!r}")
    gene, residue, position, extra = match.groups()
    return gene.upper(), residue, int(position), extra


def base_site_key(key: str) -> str:
    """Drop the disambiguator field from a site key."""
    gene, residue, position, _ = parse_site_key(key)
    return make_site_key(gene, residue, position)


@dataclass
class SiteAnnotation:
    """Annotation record for a single phosphosite."""
    gene_symbol: str
    residue: str
    position: int
    sequence_window: Optional[str] = None
    disambiguator: Optional[str] = None

    def __post_init__(self):
        self.gene_symbol = str(self.gene_symbol).upper()
        self.residue = str(self.residue).upper()
        if self.residue not in VALID_RESIDUES:
            raise ValueError(f"Residue must be one of {sorted(VALID_RESIDUES)}, got {self.residue!r}")
        self.position = int(self.position)
        if self.position <= 0:
            raise ValueError(f"Position must be positive, got {self.position}")

    @property
    def key(self) -> str:
        return make_site_key(self.gene_symbol, self.residue, self.position, self.disambiguator)


def build_annotation(records: Iterable[SiteAnnotation]) -> pd.DataFrame:
    """
    Build an annotation frame indexed by site key.

    Raises:
        ValueError: If two records produce the same site key
    """
    rows = []
    keys = []
    for rec in records:
        keys.append(rec.key)
        rows.append({
            'gene_symbol': rec.gene_symbol,
            'residue': rec.residue,
            'position': rec.position,
            'sequence_window': rec.sequence_window,
        })
    annotation = pd.DataFrame(rows, index=pd.Index(keys, name='site'), columns=ANNOTATION_COLUMNS)
    duplicated = annotation.index[annotation.index.duplicated()].unique().tolist()
    if duplicated:
        raise ValueError(f"Duplicate site keys in annotation: {duplicated[:5]}")
    return annotation


def annotation_from_keys(keys: Iterable[str], windows: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    """Derive an annotation frame from site keys (and optional sequence windows)."""
    windows = windows or {}
    records = []
    for key in keys:
        gene, residue, position, extra = parse_site_key(key)
        records.append(SiteAnnotation(gene, residue, position, windows.get(key), extra))
    return build_annotation(records)


# ============================================================================
# Experiment container
# ============================================================================

class PhosphoExperiment:
    """
    Phosphosite x sample quantification with named, non-destructive layers.

    Args:
        matrix: Sites x samples values (log scale); NaN marks missing
        annotation: Per-site annotation indexed by site key
        groups: Per-sample group labels indexed by sample name

    Raises:
        ValueError: If the matrix, annotation and groups do not line up
    """

    def __init__(
        self,
        matrix: pd.DataFrame,
        annotation: pd.DataFrame,
        groups: pd.Series,
    ):
        if matrix.index.has_duplicates:
            dup = matrix.index[matrix.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate site keys in matrix: {dup[:5]}")
        if len(annotation) != len(matrix):
            raise ValueError(
                f"Annotation has {len(annotation)} rows but matrix has {len(matrix)} sites"
            )
        if not annotation.index.equals(matrix.index):
            annotation = annotation.reindex(matrix.index)
            if annotation.isna().all(axis=1).any():
                raise ValueError("Annotation index does not match matrix site keys")

        groups = pd.Series(groups)
        missing_samples = [s for s in matrix.columns if s not in groups.index]
        if missing_samples:
            raise ValueError(f"No group label for samples: {missing_samples[:5]}")

        raw = matrix.astype(float).copy()
        raw.index.name = 'site'
        self._layers: Dict[str, pd.DataFrame] = {RAW_LAYER: raw}
        self.annotation = annotation.copy()
        self.groups = groups.loc[list(matrix.columns)].astype(str).copy()
        self.groups.name = 'group'

    @property
    def sites(self) -> pd.Index:
        return self._layers[RAW_LAYER].index

    @property
    def samples(self) -> pd.Index:
        return self._layers[RAW_LAYER].columns

    @property
    def layer_names(self) -> List[str]:
        return list(self._layers)

    @property
    def raw(self) -> pd.DataFrame:
        return self.layer(RAW_LAYER)

    def has_layer(self, name: str) -> bool:
        return name in self._layers

    def layer(self, name: str) -> pd.DataFrame:
        """Return a copy of a layer so callers cannot mutate stored state."""
        if name not in self._layers:
            raise KeyError(f"Unknown layer {name!r}; available: {self.layer_names}")
        return self._layers[name].copy()

    def add_layer(self, name: str, matrix: pd.DataFrame, overwrite: bool = False) -> None:
        """
        Store a derived matrix under a new layer name.

        The raw layer can never be replaced. Existing layers are only replaced
        with ``overwrite=True``.
        """
        if name == RAW_LAYER:
            raise ValueError("The raw layer is immutable")
        if name in self._layers and not overwrite:
            raise ValueError(f"Layer {name!r} already exists")
        if not matrix.index.equals(self.sites) or not matrix.columns.equals(self.samples):
            raise ValueError(f"Layer {name!r} does not match the experiment's sites and samples")
        self._layers[name] = matrix.astype(float).copy()
        logger.debug(f"Added layer '{name}'")

    def missing_mask(self, name: str = RAW_LAYER) -> pd.DataFrame:
        return self._layers[name].isna()

    def base_keys(self) -> pd.Series:
        """Map each site key to its base key (without disambiguator)."""
        return pd.Series([base_site_key(k) for k in self.sites], index=self.sites, name='base_key')

    def proteins(self) -> pd.Series:
        return self.annotation['gene_symbol'].rename('protein')

    def windows(self) -> pd.Series:
        return self.annotation['sequence_window']

    def subset(self, sites: Iterable[str]) -> 'PhosphoExperiment':
        """Return a new experiment restricted to ``sites`` (all layers kept)."""
        sites = list(sites)
        new = PhosphoExperiment(self._layers[RAW_LAYER].loc[sites], self.annotation.loc[sites], self.groups)
        for name, mat in self._layers.items():
            if name != RAW_LAYER:
                new._layers[name] = mat.loc[sites].copy()
        return new

    def __repr__(self) -> str:
        return (
            f"PhosphoExperiment({len(self.sites)} sites x {len(self.samples)} samples, "
            f"{self.groups.nunique()} groups, layers={self.layer_names})"
        )


def group_columns(groups: pd.Series, columns: Optional[Iterable[str]] = None) -> Dict[str, List[str]]:
    """Map each group label to its sample columns, preserving column order."""
    if columns is None:
        columns = groups.index
    mapping: Dict[str, List[str]] = {}
    for col in columns:
        mapping.setdefault(str(groups[col]), []).append(col)
    return mapping


def observed_fraction(matrix: pd.DataFrame, groups: pd.Series) -> pd.DataFrame:
    """Fraction of observed (non-missing) values per site and group."""
    cols = group_columns(groups, matrix.columns)
    return pd.DataFrame(
        {g: matrix[c].notna().mean(axis=1) for g, c in cols.items()},
        index=matrix.index,
    )


def is_complete(matrix: pd.DataFrame) -> bool:
    return not bool(np.isnan(matrix.to_numpy(dtype=float)).any())
