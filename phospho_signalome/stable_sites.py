"""
Discovery of stably phosphorylated sites (SPS) across independent datasets.

Without reference samples a batch-correction baseline has to come from the
data itself: sites whose phosphorylation does not change across conditions in
several unrelated experiments serve as negative controls. Each dataset ranks
its sites by four statistics:

- one-way ANOVA F statistic across condition groups (low is stable)
- largest group-mean difference on the log scale (low is stable)
- mean abundance (high is reliable)
- pooled within-group SD (low is stable)

The first three ranks are averaged and then averaged with the SD rank, so a
noisy site cannot look stable just because its group means agree. The
per-dataset percentiles are averaged across datasets and the top sites form a
reusable StableSiteSet. Rankings are only meaningful when the datasets share
enough sites, so the overlap gate below is a hard precondition.
"""

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .experiment import (
    InsufficientOverlapError,
    PreconditionError,
    base_site_key,
    group_columns,
)

logger = logging.getLogger(__name__)

MIN_PAIRWISE_OVERLAP = 200
MIN_COMBINED_OVERLAP = 1000


@dataclass
class OverlapReport:
    """Site overlap between datasets, checked before stability ranking."""
    n_datasets: int
    dataset_sizes: List[int]
    pairwise: Dict[Tuple[int, int], int]
    n_shared: int  # distinct sites measured in at least two datasets

    @property
    def max_pairwise(self) -> int:
        return max(self.pairwise.values()) if self.pairwise else 0

    @property
    def passed(self) -> bool:
        return self.max_pairwise >= MIN_PAIRWISE_OVERLAP or self.n_shared >= MIN_COMBINED_OVERLAP


@dataclass
class StableSiteSet:
    """
    Named, ranked set of stably phosphorylated base site keys.

    Attributes:
        name: Resource name
        sites: Base site keys, most stable first
        scores: Mean stability percentile per site (lower is more stable)
        n_datasets: Number of datasets the set was derived from
        overlap: Overlap report of the source datasets
    """
    name: str
    sites: Tuple[str, ...]
    scores: pd.Series = field(default_factory=lambda: pd.Series(dtype=float))
    n_datasets: int = 0
    overlap: Optional[OverlapReport] = None

    def __post_init__(self):
        seen = []
        for s in self.sites:
            if s not in seen:
                seen.append(s)
        self.sites = tuple(seen)

    def __len__(self) -> int:
        return len(self.sites)

    def __iter__(self):
        return iter(self.sites)

    def __contains__(self, key: str) -> bool:
        return key in set(self.sites)

    def match(self, keys: Iterable[str]) -> List[str]:
        """Return the ``keys`` whose base key belongs to this set."""
        lookup = set(self.sites)
        return [k for k in keys if base_site_key(k) in lookup]


def _measured_sites(matrix: pd.DataFrame) -> set:
    observed = matrix.notna().any(axis=1)
    return {base_site_key(k) for k in matrix.index[observed]}


def check_dataset_overlap(site_sets: Sequence[set]) -> OverlapReport:
    """Count pairwise and combined overlap between measured site sets."""
    pairwise = {
        (i, j): len(site_sets[i] & site_sets[j])
        for i, j in combinations(range(len(site_sets)), 2)
    }
    counts: Dict[str, int] = {}
    for sites in site_sets:
        for s in sites:
            counts[s] = counts.get(s, 0) + 1
    n_shared = sum(1 for c in counts.values() if c >= 2)
    return OverlapReport(
        n_datasets=len(site_sets),
        dataset_sizes=[len(s) for s in site_sets],
        pairwise=pairwise,
        n_shared=n_shared,
    )


def _to_base_keys(matrix: pd.DataFrame) -> pd.DataFrame:
    base = [base_site_key(k) for k in matrix.index]
    out = matrix.copy()
    out.index = pd.Index(base, name='site')
    # Isoform rows sharing a base key: keep the most completely observed one
    if out.index.has_duplicates:
        order = out.notna().sum(axis=1).to_numpy().argsort(kind='stable')[::-1]
        out = out.iloc[order]
        out = out[~out.index.duplicated(keep='first')]
    return out


def site_stability_statistics(
    matrix: pd.DataFrame,
    groups: pd.Series,
    min_group_fraction: float = 0.5,
) -> pd.DataFrame:
    """
    Per-site stability statistics within one dataset.

    Only sites observed in at least ``min_group_fraction`` of the samples of
    every group are evaluated.

    Returns:
        DataFrame indexed by site with columns f_stat, max_fold_change, within_sd
        (pooled within-group SD), abundance, and stability (percentile of the
        averaged ranks; lower is more stable)
    """
    cols = group_columns(groups, matrix.columns)
    if len(cols) < 2:
        raise PreconditionError(
            f"Stability ranking needs at least 2 condition groups, got {len(cols)}"
        )

    n_g, mean_g, ss_g = [], [], []
    eligible = np.ones(len(matrix), dtype=bool)
    for g, c in cols.items():
        block = matrix[c].to_numpy(dtype=float)
        n = np.sum(~np.isnan(block), axis=1)
        need = max(1, int(np.ceil(min_group_fraction * len(c))))
        eligible &= n >= need
        with np.errstate(invalid='ignore'):
            mu = np.nanmean(np.where(n[:, None] > 0, block, 0.0), axis=1)
            ss = np.nansum((block - mu[:, None]) ** 2, axis=1)
        n_g.append(n)
        mean_g.append(mu)
        ss_g.append(ss)

    n_g = np.column_stack(n_g).astype(float)
    mean_g = np.column_stack(mean_g)
    ss_g = np.column_stack(ss_g)

    n_total = n_g.sum(axis=1)
    k = n_g.shape[1]
    with np.errstate(invalid='ignore', divide='ignore'):
        grand = (n_g * mean_g).sum(axis=1) / n_total
        ss_between = (n_g * (mean_g - grand[:, None]) ** 2).sum(axis=1)
        df_within = n_total - k
        ms_within = ss_g.sum(axis=1) / df_within
        ms_between = ss_between / (k - 1)
        f_stat = np.where(ms_within > 0, ms_between / ms_within, np.inf)
        f_stat = np.where(ms_between <= 0, 0.0, f_stat)
        pooled_sd = np.sqrt(ms_within)
        max_fold_change = mean_g.max(axis=1) - mean_g.min(axis=1)

    eligible &= df_within > 0

    stats_df = pd.DataFrame({
        'f_stat': f_stat,
        'max_fold_change': max_fold_change,
        'within_sd': pooled_sd,
        'abundance': grand,
    }, index=matrix.index)[eligible]

    if stats_df.empty:
        return stats_df.assign(stability=pd.Series(dtype=float))

    # Low within-group SD weighs as much as the other three ranks together
    profile_rank = pd.DataFrame({
        'f_stat': stats_df['f_stat'].rank(method='average'),
        'max_fold_change': stats_df['max_fold_change'].rank(method='average'),
        'abundance': stats_df['abundance'].rank(method='average', ascending=False),
    }).mean(axis=1)
    dispersion_rank = stats_df['within_sd'].rank(method='average')
    combined = (profile_rank + dispersion_rank) / 2.0
    stats_df['stability'] = combined.rank(method='average', pct=True)
    return stats_df


def find_stable_sites(
    datasets: Sequence[pd.DataFrame],
    groups: Sequence[pd.Series],
    num: int = 100,
    min_group_fraction: float = 0.5,
    name: str = 'SPS',
) -> StableSiteSet:
    """
    Find sites that are stably phosphorylated across independent datasets.

    Args:
        datasets: Two or more sites x samples matrices (log scale). Site
            vocabularies and sample names may differ between datasets.
        groups: Explicit group-label Series for each dataset's samples
        num: Number of sites to select
        min_group_fraction: Completeness each group needs for a site to be
            evaluated within a dataset
        name: Name of the resulting set

    Returns:
        StableSiteSet ranked by mean stability percentile

    Raises:
        PreconditionError: Fewer than two datasets, mismatched inputs, or no
            site can be evaluated in two datasets
        InsufficientOverlapError: No pair of datasets shares
            MIN_PAIRWISE_OVERLAP sites and fewer than MIN_COMBINED_OVERLAP
            sites are shared by at least two datasets
    """
    if len(datasets) < 2:
        raise PreconditionError(f"Stable site discovery needs at least 2 datasets, got {len(datasets)}")
    if len(groups) != len(datasets):
        raise PreconditionError(
            f"Got {len(datasets)} datasets but {len(groups)} group-label vectors"
        )

    base_mats = [_to_base_keys(m) for m in datasets]
    overlap = check_dataset_overlap([_measured_sites(m) for m in base_mats])
    logger.info(
        f"Dataset overlap: max pairwise {overlap.max_pairwise}, "
        f"{overlap.n_shared} sites shared by >=2 of {overlap.n_datasets} datasets"
    )
    if not overlap.passed:
        raise InsufficientOverlapError(
            f"Insufficient overlap between datasets: need at least {MIN_PAIRWISE_OVERLAP} "
            f"sites common to two datasets (max found {overlap.max_pairwise}) or at least "
            f"{MIN_COMBINED_OVERLAP} sites shared across datasets (found {overlap.n_shared})"
        )

    per_dataset = {}
    for i, (mat, grp) in enumerate(zip(base_mats, groups)):
        missing = [c for c in mat.columns if c not in grp.index]
        if missing:
            raise PreconditionError(f"Dataset {i}: no group label for samples {missing[:5]}")
        st = site_stability_statistics(mat, grp, min_group_fraction=min_group_fraction)
        logger.info(f"Dataset {i}: {len(st)}/{len(mat)} sites evaluated for stability")
        per_dataset[i] = st['stability']

    table = pd.DataFrame(per_dataset)
    n_eval = table.notna().sum(axis=1)
    table = table[n_eval >= 2]
    if table.empty:
        raise PreconditionError("No site could be evaluated for stability in at least 2 datasets")

    score = table.mean(axis=1).rename('stability')
    ranked = pd.DataFrame(
        {'stability': score, 'key': score.index.astype(str)},
        index=score.index,
    ).sort_values(['stability', 'key'])
    selected = ranked.head(num)
    if len(selected) < num:
        logger.warning(f"Only {len(selected)} sites available, fewer than requested {num}")

    logger.info(f"Selected {len(selected)} stably phosphorylated sites from {len(datasets)} datasets")
    return StableSiteSet(
        name=name,
        sites=tuple(selected.index),
        scores=selected['stability'],
        n_datasets=len(datasets),
        overlap=overlap,
    )
