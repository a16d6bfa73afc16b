"""
Missing-value imputation for phosphosite quantification.

Two complementary passes:

1. Site-level imputation within each condition group. When a site is observed
   in at least ``percent`` of a group's samples, the missing values of that
   group are drawn from the observed within-group distribution (a normal
   distribution truncated to the observed range).
2. Tail imputation. Values still missing are assumed to be below the detection
   limit and are drawn from a down-shifted, narrowed normal distribution fitted
   to each sample's observed values:

       x ~ N(mean - m * sd, (s * sd)^2)

   This assumption does not hold for ratio data, so the pass can be disabled.

Imputed values are random draws; every function takes an explicit ``seed``.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from .experiment import EstimationError, RAW_LAYER, check_seed, group_columns

logger = logging.getLogger(__name__)

SeedLike = Union[None, int, np.random.Generator]


@dataclass
class ImputationResult:
    """
    Result of the two-pass imputation.

    Attributes:
        imputed: Sites x samples matrix after imputation
        imputed_mask: True where a value was imputed
        n_site_imputed: Values filled by the group-conditional pass
        n_tail_imputed: Values filled by the tail pass
        n_remaining: Values still missing (tail pass disabled)
        method_log: Processing steps
    """
    imputed: pd.DataFrame
    imputed_mask: pd.DataFrame
    n_site_imputed: int = 0
    n_tail_imputed: int = 0
    n_remaining: int = 0
    method_log: List[str] = field(default_factory=list)


def _rng(seed: SeedLike) -> np.random.Generator:
    if isinstance(seed, np.random.Generator):
        return seed
    check_seed(seed)
    return np.random.default_rng(seed)


def _draw_within_range(values: np.ndarray, n: int, rng: np.random.Generator) -> np.ndarray:
    """Draw ``n`` values from N(mean, sd) truncated to [min, max] of ``values``."""
    lo, hi = values.min(), values.max()
    if len(values) < 2 or hi - lo <= 0:
        return np.full(n, values.mean())

    mu = values.mean()
    sd = values.std(ddof=1)
    if not np.isfinite(sd) or sd <= 0:
        return np.full(n, mu)

    a, b = (lo - mu) / sd, (hi - mu) / sd
    draws = stats.truncnorm.rvs(a, b, loc=mu, scale=sd, size=n, random_state=rng)
    # truncnorm can land a hair outside the bounds through floating point
    return np.clip(draws, lo, hi)


def site_impute(
    matrix: pd.DataFrame,
    groups: pd.Series,
    percent: float = 0.5,
    seed: SeedLike = None,
) -> pd.DataFrame:
    """
    Group-conditional site-level imputation.

    Args:
        matrix: Sites x samples matrix with NaN for missing values
        groups: Group label per sample
        percent: Minimum observed fraction within a group for imputation
        seed: Seed or Generator for the random draws

    Returns:
        Matrix with qualifying group values filled; other NaN left in place
    """
    rng = _rng(seed)
    values = matrix.to_numpy(dtype=float).copy()
    col_pos = {c: i for i, c in enumerate(matrix.columns)}

    n_filled = 0
    for group, cols in group_columns(groups, matrix.columns).items():
        idx = np.array([col_pos[c] for c in cols])
        block = values[:, idx]
        observed = ~np.isnan(block)
        frac = observed.mean(axis=1)
        candidates = np.where((frac >= percent) & (~observed).any(axis=1) & observed.any(axis=1))[0]

        for row in candidates:
            obs_vals = block[row, observed[row]]
            miss = ~observed[row]
            block[row, miss] = _draw_within_range(obs_vals, int(miss.sum()), rng)
            n_filled += int(miss.sum())

        values[:, idx] = block

    logger.info(f"Site-level imputation filled {n_filled} values (percent={percent:.2f})")
    return pd.DataFrame(values, index=matrix.index, columns=matrix.columns)


def _tail_parameters(observed: np.ndarray, sample: str, m: float, s: float, min_observed: int):
    if len(observed) < min_observed:
        raise EstimationError(
            f"Cannot fit tail distribution for sample '{sample}': "
            f"{len(observed)} observed values, need at least {min_observed}"
        )
    sd = observed.std(ddof=1)
    if not np.isfinite(sd) or sd <= 0:
        raise EstimationError(
            f"Cannot fit tail distribution for sample '{sample}': observed values have no spread"
        )
    return observed.mean() - m * sd, s * sd


def tail_impute(
    matrix: pd.DataFrame,
    m: float = 1.6,
    s: float = 0.6,
    min_observed: int = 3,
    seed: SeedLike = None,
) -> pd.DataFrame:
    """
    Fill remaining missing values from each sample's low-abundance tail.

    Args:
        matrix: Sites x samples matrix with NaN for missing values
        m: Down-shift of the tail mean, in sample standard deviations
        s: Width of the tail distribution, as a fraction of the sample SD
        min_observed: Observed values a sample needs for the fit
        seed: Seed or Generator for the random draws

    Returns:
        Matrix without missing values

    Raises:
        EstimationError: If a sample with missing values has too few
            observations to fit the tail distribution
    """
    rng = _rng(seed)
    values = matrix.to_numpy(dtype=float).copy()

    n_filled = 0
    for j, sample in enumerate(matrix.columns):
        col = values[:, j]
        miss = np.isnan(col)
        if not miss.any():
            continue
        mu, sd = _tail_parameters(col[~miss], str(sample), m, s, min_observed)
        col[miss] = rng.normal(mu, sd, size=int(miss.sum()))
        n_filled += int(miss.sum())

    logger.info(f"Tail imputation filled {n_filled} values (m={m}, s={s})")
    return pd.DataFrame(values, index=matrix.index, columns=matrix.columns)


def paired_tail_impute(
    matrix: pd.DataFrame,
    groups: pd.Series,
    group1: str,
    group2: str,
    percent1: float = 0.5,
    percent2: float = 0.0,
    m: float = 1.6,
    s: float = 0.6,
    min_observed: int = 3,
    seed: SeedLike = None,
) -> pd.DataFrame:
    """
    Tail-impute sites that are present in one condition and absent in another.

    Sites quantified in at least ``percent1`` of ``group1`` samples and at most
    ``percent2`` of ``group2`` samples are treated as switched off in
    ``group2``; their missing ``group2`` values are drawn from the tail of
    each ``group2`` sample. All other values are left untouched.
    """
    rng = _rng(seed)
    cols = group_columns(groups, matrix.columns)
    for g in (group1, group2):
        if g not in cols:
            raise ValueError(f"Unknown group: {g}")

    frac1 = matrix[cols[group1]].notna().mean(axis=1)
    frac2 = matrix[cols[group2]].notna().mean(axis=1)
    selected = (frac1 >= percent1) & (frac2 <= percent2)

    result = matrix.copy()
    n_filled = 0
    for sample in cols[group2]:
        col = matrix[sample]
        target = selected & col.isna()
        if not target.any():
            continue
        mu, sd = _tail_parameters(col.dropna().to_numpy(), str(sample), m, s, min_observed)
        result.loc[target, sample] = rng.normal(mu, sd, size=int(target.sum()))
        n_filled += int(target.sum())

    logger.info(f"Paired tail imputation ({group1} -> {group2}): "
                f"{int(selected.sum())} sites, {n_filled} values")
    return result


def impute(
    matrix: pd.DataFrame,
    groups: pd.Series,
    percent: float = 0.5,
    tail: bool = True,
    m: float = 1.6,
    s: float = 0.6,
    min_observed: int = 3,
    seed: SeedLike = None,
) -> ImputationResult:
    """
    Run site-level imputation followed by tail imputation.

    Args:
        matrix: Sites x samples matrix with NaN for missing values
        groups: Group label per sample
        percent: Completeness threshold for the site-level pass
        tail: Run the tail pass (disable for ratio data)
        m, s: Tail distribution shift and width
        min_observed: Minimum observations per sample for the tail fit
        seed: Seed for all random draws

    Returns:
        ImputationResult
    """
    rng = _rng(seed)
    method_log = []
    missing = matrix.isna()
    n_missing = int(missing.to_numpy().sum())

    if n_missing == 0:
        logger.info("No missing values - imputation skipped")
        method_log.append("Imputation: skipped (no missing values)")
        return ImputationResult(
            imputed=matrix.copy(),
            imputed_mask=missing,
            method_log=method_log,
        )

    after_site = site_impute(matrix, groups, percent=percent, seed=rng)
    n_site = n_missing - int(after_site.isna().to_numpy().sum())
    method_log.append(f"Site-level imputation: {n_site} values (percent={percent})")

    if tail:
        imputed = tail_impute(after_site, m=m, s=s, min_observed=min_observed, seed=rng)
        n_tail = int(after_site.isna().to_numpy().sum())
        method_log.append(f"Tail imputation: {n_tail} values (m={m}, s={s})")
    else:
        imputed = after_site
        n_tail = 0
        method_log.append("Tail imputation: disabled")

    n_remaining = int(imputed.isna().to_numpy().sum())
    if n_remaining:
        logger.info(f"{n_remaining} values remain missing after imputation")

    return ImputationResult(
        imputed=imputed,
        imputed_mask=missing & imputed.notna(),
        n_site_imputed=n_site,
        n_tail_imputed=n_tail,
        n_remaining=n_remaining,
        method_log=method_log,
    )


def impute_experiment(
    experiment,
    percent: float = 0.5,
    tail: bool = True,
    m: float = 1.6,
    s: float = 0.6,
    min_observed: int = 3,
    seed: SeedLike = None,
    source_layer: str = RAW_LAYER,
    layer_name: str = 'imputed',
    overwrite: bool = False,
) -> ImputationResult:
    """Impute an experiment layer and store the result as ``layer_name``."""
    result = impute(
        experiment.layer(source_layer),
        experiment.groups,
        percent=percent,
        tail=tail,
        m=m,
        s=s,
        min_observed=min_observed,
        seed=seed,
    )
    experiment.add_layer(layer_name, result.imputed, overwrite=overwrite)
    result.method_log.append(f"Stored imputed matrix as layer '{layer_name}'")
    return result
