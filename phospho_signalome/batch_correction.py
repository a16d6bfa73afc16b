"""
Removal of unwanted variation (RUV-III) using stably phosphorylated sites.

Model (samples as rows):

    Y = M beta + W alpha + epsilon

Where:
    - M     = design matrix of known biological groups (samples x groups)
    - W     = unwanted factors (samples x k), e.g. batch and run effects
    - alpha = factor loadings (k x sites)

Residuals of Y after projecting out M carry the nuisance structure. Their
leading left singular vectors give alpha for every site; W is then estimated
from the control sites only, whose biology is assumed constant, and
W alpha is subtracted from every site.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

import numpy as np
import pandas as pd

from .experiment import PreconditionError, base_site_key

logger = logging.getLogger(__name__)


@dataclass
class RUVResult:
    """
    Result of unwanted-variation removal.

    Attributes:
        corrected: Sites x samples corrected matrix
        factors: Estimated unwanted factors W (samples x k)
        loadings: Factor loadings alpha (k x sites)
        controls: Control sites used for estimating W
        k: Number of factors removed
        method_log: Processing steps
    """
    corrected: pd.DataFrame
    factors: pd.DataFrame
    loadings: pd.DataFrame
    controls: List[str]
    k: int
    method_log: List[str] = field(default_factory=list)


def make_design_matrix(groups: pd.Series) -> pd.DataFrame:
    """
    Build a samples x groups indicator matrix from group labels.

    Groups appear in order of first occurrence.
    """
    labels = pd.Series(groups).astype(str)
    levels = list(dict.fromkeys(labels))
    return pd.DataFrame(
        {g: (labels == g).astype(float) for g in levels},
        index=labels.index,
    )


def _check_design(design: Union[pd.DataFrame, np.ndarray], samples: pd.Index) -> np.ndarray:
    if isinstance(design, pd.DataFrame):
        missing = [s for s in samples if s not in design.index]
        if missing:
            raise PreconditionError(f"Design matrix has no row for samples: {missing[:5]}")
        m = design.loc[samples].to_numpy(dtype=float)
    else:
        m = np.asarray(design, dtype=float)
        if m.ndim == 1:
            m = m[:, None]
        if m.shape[0] != len(samples):
            raise PreconditionError(
                f"Design matrix has {m.shape[0]} rows but the matrix has {len(samples)} samples"
            )

    rank = np.linalg.matrix_rank(m)
    if rank < m.shape[1]:
        raise PreconditionError(
            f"Design matrix is not full column rank (rank {rank} < {m.shape[1]} columns)"
        )
    return m


def ruv_correct(
    matrix: pd.DataFrame,
    design: Union[pd.DataFrame, np.ndarray],
    controls: Iterable[str],
    k: int,
    imputed_mask: Optional[pd.DataFrame] = None,
    keep_imputed: bool = False,
) -> RUVResult:
    """
    Remove k factors of unwanted variation with RUV-III.

    Args:
        matrix: Complete sites x samples matrix (log scale)
        design: Samples x groups design (DataFrame indexed by sample, or
            array in column order)
        controls: Control site keys (present in ``matrix``)
        k: Number of unwanted factors to remove; 0 returns the input
        imputed_mask: Cells that were imputed to make the matrix complete
        keep_imputed: Keep corrected values for imputed cells instead of
            resetting them to NaN

    Returns:
        RUVResult

    Raises:
        PreconditionError: Incomplete matrix, rank-deficient design, empty
            control set, or k out of range
    """
    method_log = []
    values = matrix.to_numpy(dtype=float)
    n_missing = int(np.isnan(values).sum())
    if n_missing:
        raise PreconditionError(
            f"Batch correction requires a complete matrix; found {n_missing} missing values. "
            "Run imputation first."
        )

    m = _check_design(design, matrix.columns)
    rank = m.shape[1]

    site_pos = {s: i for i, s in enumerate(matrix.index)}
    ctl = list(dict.fromkeys(c for c in controls if c in site_pos))
    if not ctl:
        raise PreconditionError("No control sites present in the matrix")

    if not isinstance(k, (int, np.integer)) or k < 0:
        raise PreconditionError(f"k must be a non-negative integer, got {k!r}")
    n_samples = values.shape[1]
    if k > len(ctl):
        raise PreconditionError(f"k={k} exceeds the number of control sites ({len(ctl)})")
    if k > n_samples - rank:
        raise PreconditionError(
            f"k={k} exceeds the residual degrees of freedom "
            f"({n_samples} samples - {rank} groups = {n_samples - rank})"
        )

    if k == 0:
        logger.info("RUV with k=0: matrix returned unchanged")
        method_log.append("RUV-III: k=0, no correction")
        return RUVResult(
            corrected=matrix.copy(),
            factors=pd.DataFrame(index=matrix.columns),
            loadings=pd.DataFrame(columns=matrix.index),
            controls=ctl,
            k=0,
            method_log=method_log,
        )

    y = values.T  # samples x sites
    ctl_idx = np.array([site_pos[c] for c in ctl])

    beta = np.linalg.solve(m.T @ m, m.T @ y)
    y0 = y - m @ beta

    u, _, _ = np.linalg.svd(y0 @ y0.T)
    n_factors = min(n_samples - rank, len(ctl))
    full_alpha = u[:, :n_factors].T @ y
    alpha = full_alpha[:k]

    alpha_c = alpha[:, ctl_idx]
    try:
        w = np.linalg.solve(alpha_c @ alpha_c.T, (y[:, ctl_idx] @ alpha_c.T).T).T
    except np.linalg.LinAlgError as e:
        raise PreconditionError(
            f"Control sites do not span {k} unwanted factors: {e}"
        ) from e

    corrected = pd.DataFrame((y - w @ alpha).T, index=matrix.index, columns=matrix.columns)

    if imputed_mask is not None and not keep_imputed:
        mask = imputed_mask.reindex(index=matrix.index, columns=matrix.columns, fill_value=False)
        corrected = corrected.mask(mask.astype(bool))
        method_log.append(f"Re-blanked {int(mask.to_numpy().sum())} imputed values")

    factor_names = [f'W{i + 1}' for i in range(k)]
    logger.info(f"RUV-III removed {k} factor(s) using {len(ctl)} control sites")
    method_log.insert(0, f"RUV-III: k={k}, {len(ctl)} control sites")

    return RUVResult(
        corrected=corrected,
        factors=pd.DataFrame(w, index=matrix.columns, columns=factor_names),
        loadings=pd.DataFrame(alpha, index=factor_names, columns=matrix.index),
        controls=ctl,
        k=k,
        method_log=method_log,
    )


def match_controls(sites: Iterable[str], controls: Iterable[str]) -> List[str]:
    """Experiment site keys whose base key is one of ``controls``."""
    lookup = {base_site_key(c) for c in controls}
    return [s for s in sites if base_site_key(s) in lookup]


def correct_experiment(
    experiment,
    controls: Iterable[str],
    k: int,
    source_layer: str = 'imputed',
    layer_name: str = 'normalized',
    keep_imputed: bool = False,
    overwrite: bool = False,
) -> RUVResult:
    """
    Batch-correct an experiment layer and store the result as ``layer_name``.

    The design is built from the experiment's group labels. Cells missing in
    the raw layer but present in ``source_layer`` are treated as imputed.
    """
    source = experiment.layer(source_layer)
    design = make_design_matrix(experiment.groups)
    ctl = match_controls(experiment.sites, controls)
    if not ctl:
        raise PreconditionError("No control sites present in the experiment")

    imputed_mask = experiment.missing_mask() & source.notna()
    result = ruv_correct(
        source,
        design,
        ctl,
        k,
        imputed_mask=imputed_mask,
        keep_imputed=keep_imputed,
    )
    experiment.add_layer(layer_name, result.corrected, overwrite=overwrite)
    result.method_log.append(f"Stored corrected matrix as layer '{layer_name}'")
    return result
