"""
Matrix preprocessing helpers shared by the analysis stages.

Supports:
- Filtering sites by quantification completeness (per group or overall)
- Median scaling of samples
- Averaging replicates into group means
- Row standardisation (zero mean, unit variance) for kinase profiling
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from .experiment import group_columns, observed_fraction

logger = logging.getLogger(__name__)


def filter_by_group_quantification(
    matrix: pd.DataFrame,
    groups: pd.Series,
    percent: float = 0.5,
    mode: str = 'any',
) -> pd.DataFrame:
    """
    Keep sites quantified in at least ``percent`` of samples of some/all groups.

    Args:
        matrix: Sites x samples matrix
        groups: Group label per sample
        percent: Minimum observed fraction within a group
        mode: 'any' keeps a site passing in at least one group,
              'all' requires every group to pass

    Returns:
        Filtered matrix
    """
    frac = observed_fraction(matrix, groups) >= percent
    if mode == 'any':
        keep = frac.any(axis=1)
    elif mode == 'all':
        keep = frac.all(axis=1)
    else:
        raise ValueError(f"Unknown filter mode: {mode}")

    logger.info(f"Group quantification filter ({mode}, {percent:.2f}): "
                f"kept {int(keep.sum())}/{len(matrix)} sites")
    return matrix.loc[keep]


def filter_by_overall_quantification(matrix: pd.DataFrame, percent: float = 0.5) -> pd.DataFrame:
    """Keep sites observed in at least ``percent`` of all samples."""
    keep = matrix.notna().mean(axis=1) >= percent
    logger.info(f"Overall quantification filter ({percent:.2f}): kept {int(keep.sum())}/{len(matrix)} sites")
    return matrix.loc[keep]


def median_scaling(
    matrix: pd.DataFrame,
    scale: bool = False,
) -> pd.DataFrame:
    """
    Center each sample on its median (and optionally scale by its MAD).

    Median centering is the standard global normalization for log-scale
    phosphosite data before unwanted-variation removal.
    """
    medians = matrix.median(axis=0, skipna=True)
    centered = matrix - medians
    if scale:
        mad = (centered.abs()).median(axis=0, skipna=True)
        mad = mad.replace(0, np.nan)
        centered = centered / mad
    return centered


def mean_abundance(matrix: pd.DataFrame, groups: pd.Series) -> pd.DataFrame:
    """Average replicates into one column per group (NaN-aware)."""
    cols = group_columns(groups, matrix.columns)
    return pd.DataFrame(
        {g: matrix[c].mean(axis=1, skipna=True) for g, c in cols.items()},
        index=matrix.index,
    )


def standardise(matrix: pd.DataFrame, min_sd: float = 1e-12) -> pd.DataFrame:
    """
    Row-standardise to zero mean and unit variance.

    Rows with (near) zero spread cannot be standardised and become NaN.
    """
    values = matrix.to_numpy(dtype=float)
    means = np.nanmean(values, axis=1, keepdims=True)
    sds = np.nanstd(values, axis=1, ddof=1, keepdims=True)
    with np.errstate(invalid='ignore', divide='ignore'):
        z = (values - means) / np.where(sds > min_sd, sds, np.nan)
    n_flat = int(np.sum(~(sds.ravel() > min_sd)))
    if n_flat:
        logger.debug(f"{n_flat} sites have no variation and were not standardised")
    return pd.DataFrame(z, index=matrix.index, columns=matrix.columns)


def scale_experiment(
    experiment,
    source_layer: str = 'imputed',
    layer_name: str = 'scaled',
    scale: bool = False,
) -> pd.DataFrame:
    """Median-scale an experiment layer and store the result as a new layer."""
    scaled = median_scaling(experiment.layer(source_layer), scale=scale)
    experiment.add_layer(layer_name, scaled)
    return scaled


def standardise_experiment(
    experiment,
    source_layer: str = 'normalized',
    layer_name: Optional[str] = 'standardised',
    average_groups: bool = False,
) -> pd.DataFrame:
    """
    Build the standardised matrix used for profile scoring.

    With ``average_groups`` the replicates are averaged first, which gives one
    column per condition; the result then cannot be stored as a layer.
    """
    source = experiment.layer(source_layer)
    if average_groups:
        return standardise(mean_abundance(source, experiment.groups))
    z = standardise(source)
    if layer_name:
        experiment.add_layer(layer_name, z)
    return z
