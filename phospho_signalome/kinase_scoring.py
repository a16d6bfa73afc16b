"""
Kinase-substrate scoring from sequence motifs and perturbation profiles.

For every (site, kinase) pair three scores in [0, 1] are computed:

- motif score: log-odds of the site's flanking sequence under a position
  frequency matrix built from the kinase's known substrate windows
- profile score: Pearson correlation between the site's standardised profile
  and the kinase's mean substrate profile, mapped to [0, 1]
- combined score: weighted mean of the two, with weights proportional to the
  number of substrates that defined each term

Each motif is built from at most ``num_motif`` windows (those most consistent
with the kinase's other windows) and each profile from at most ``num_sub``
substrates (the most complete and mutually correlated). Kinases with fewer
characterised substrates are discounted by a confidence factor
min(1, n / required) applied to each term.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from .experiment import ExclusionManifest, base_site_key

logger = logging.getLogger(__name__)

AMINO_ACIDS = 'ACDEFGHIKLMNPQRSTVWY'
GAP = '_'
ALPHABET = AMINO_ACIDS + GAP
_CODE = {aa: i for i, aa in enumerate(ALPHABET)}
STAGE = 'kinase_scoring'


@dataclass
class KinaseReference:
    """
    Reference knowledge for one kinase.

    Attributes:
        kinase: Kinase identifier
        substrates: Known substrate base site keys (profile-defining)
        motif_windows: Known substrate sequence windows (motif-defining)
        reference_profiles: Optional substrate x sample profiles measured
            elsewhere; used when their columns match the current data
    """
    kinase: str
    substrates: List[str] = field(default_factory=list)
    motif_windows: List[str] = field(default_factory=list)
    reference_profiles: Optional[pd.DataFrame] = None


@dataclass
class KinaseScores:
    """
    Score matrices (sites x kinases) and the evidence behind them.

    Attributes:
        motif: Motif scores (NaN where the window is undefined)
        profile: Profile scores
        combined: Combined scores
        n_motif: Motif-defining windows per kinase
        n_profile: Profile-defining substrates per kinase
        substrate_sites: Known substrate rows present in the data per kinase
        excluded: Kinases without usable evidence in this dataset
    """
    motif: pd.DataFrame
    profile: pd.DataFrame
    combined: pd.DataFrame
    n_motif: pd.Series
    n_profile: pd.Series
    substrate_sites: Dict[str, List[str]] = field(default_factory=dict)
    excluded: List[str] = field(default_factory=list)

    @property
    def kinases(self) -> List[str]:
        """Kinases with at least one defined combined score."""
        return [k for k in self.combined.columns if self.combined[k].notna().any()]


def build_kinase_library(
    table: pd.DataFrame,
    kinase_col: str = 'kinase',
    substrate_col: str = 'substrate',
    window_col: str = 'sequence_window',
) -> Dict[str, KinaseReference]:
    """
    Build a kinase reference library from a long kinase-substrate table.

    Args:
        table: One row per (kinase, substrate) pair
        kinase_col: Column with kinase identifiers
        substrate_col: Column with substrate site keys (``GENE;S123``)
        window_col: Optional column with the substrate sequence window

    Returns:
        Dict of kinase -> KinaseReference
    """
    library: Dict[str, KinaseReference] = {}
    n_bad = 0
    for row in table.itertuples(index=False):
        rec = row._asdict()
        kinase = str(rec[kinase_col]).strip()
        try:
            key = base_site_key(rec[substrate_col])
        except ValueError:
            n_bad += 1
            continue
        ref = library.setdefault(kinase, KinaseReference(kinase=kinase))
        if key not in ref.substrates:
            ref.substrates.append(key)
            window = rec.get(window_col)
            if isinstance(window, str) and window:
                ref.motif_windows.append(window.upper())

    if n_bad:
        logger.warning(f"Skipped {n_bad} library rows with malformed substrate keys")
    logger.info(f"Kinase library: {len(library)} kinases, "
                f"{sum(len(r.substrates) for r in library.values())} kinase-substrate pairs")
    return library


def substrate_confidence(n: float, required: int) -> float:
    """Confidence factor for a term defined by ``n`` substrates."""
    if required <= 0:
        return 1.0
    return float(min(1.0, n / required))


# ============================================================================
# Motif scoring
# ============================================================================

def _window_width(windows: Iterable) -> Optional[int]:
    lengths = pd.Series([len(w) for w in windows if isinstance(w, str) and w])
    if lengths.empty:
        return None
    return int(lengths.mode().iloc[0])


def encode_windows(windows: pd.Series, width: int) -> pd.DataFrame:
    """
    Integer-encode sequence windows of the given width.

    Residues outside the standard alphabet are treated as padding. Windows of
    a different width (or missing) are dropped.
    """
    rows = {}
    for key, w in windows.items():
        if not isinstance(w, str) or len(w) != width:
            continue
        rows[key] = [_CODE.get(ch, _CODE[GAP]) for ch in w.upper()]
    return pd.DataFrame.from_dict(rows, orient='index', columns=range(width), dtype=int)


def _background(codes: np.ndarray, pseudocount: float = 1.0) -> np.ndarray:
    counts = np.bincount(codes.ravel(), minlength=len(ALPHABET)).astype(float) + pseudocount
    return counts / counts.sum()


def position_log_odds(
    codes: np.ndarray,
    background: np.ndarray,
    pseudocount: float = 1.0,
) -> np.ndarray:
    """
    Position-specific log2-odds matrix (width x alphabet) from encoded windows.

    Pseudocounts are distributed according to the background composition.
    """
    width = codes.shape[1]
    counts = np.zeros((width, len(ALPHABET)))
    for pos in range(width):
        counts[pos] = np.bincount(codes[:, pos], minlength=len(ALPHABET))
    freqs = (counts + pseudocount * background) / (codes.shape[0] + pseudocount)
    return np.log2(freqs / background)


def select_motif_windows(
    codes: np.ndarray,
    background: np.ndarray,
    n: int,
    positions: Optional[np.ndarray] = None,
    pseudocount: float = 1.0,
) -> np.ndarray:
    """
    Indices of the ``n`` windows that agree best with the rest of the set.

    Each window is scored by its log-odds under the frequency matrix of the
    other windows (leave-one-out), summed over ``positions``. Ties keep the
    input order. All windows are kept when there are ``n`` or fewer.
    """
    n_windows = codes.shape[0]
    if n <= 0 or n_windows <= n:
        return np.arange(n_windows)

    width = codes.shape[1]
    if positions is None:
        positions = np.arange(width)
    counts = np.stack([np.bincount(codes[:, pos], minlength=len(ALPHABET)) for pos in range(width)])
    residues = codes[:, positions]
    others = counts[positions[None, :], residues] - 1
    bg = background[residues]
    freqs = (others + pseudocount * bg) / (n_windows - 1 + pseudocount)
    agreement = np.log2(freqs / bg).sum(axis=1)
    return np.sort(np.argsort(-agreement, kind='stable')[:n])


def _minmax(values: pd.Series) -> pd.Series:
    lo, hi = values.min(), values.max()
    if not np.isfinite(lo) or hi - lo <= 0:
        return pd.Series(0.5, index=values.index)
    return (values - lo) / (hi - lo)


def motif_scores(
    windows: pd.Series,
    library: Dict[str, KinaseReference],
    num_motif: int = 5,
    extra_windows: Optional[Dict[str, List[str]]] = None,
) -> tuple:
    """
    Score sequence windows against each kinase's substrate motif.

    Args:
        windows: Sequence window per site (NaN/None where undefined)
        library: Kinase reference library
        num_motif: Windows kept to define each motif (the most consistent
            ones); kinases with fewer are down-weighted by min(1, n / num_motif)
        extra_windows: Additional motif windows per kinase (e.g. windows of
            known substrates looked up in the current annotation)

    Returns:
        (scores DataFrame sites x kinases, Series of motif window counts)
    """
    extra_windows = extra_windows or {}
    width = _window_width(windows)
    scores = pd.DataFrame(np.nan, index=windows.index, columns=list(library))
    n_motif = pd.Series(0, index=list(library), dtype=int)
    if width is None:
        logger.warning("No sequence windows available - motif scores undefined")
        return scores, n_motif

    site_codes = encode_windows(windows, width)
    if site_codes.empty:
        return scores, n_motif
    background = _background(site_codes.to_numpy())
    center = width // 2
    flank = np.array([p for p in range(width) if p != center])

    for kinase, ref in library.items():
        kin_windows = list(dict.fromkeys(ref.motif_windows + extra_windows.get(kinase, [])))
        kin_codes = encode_windows(pd.Series(kin_windows, dtype=object), width).to_numpy()
        if len(kin_codes) == 0:
            continue
        kin_codes = kin_codes[select_motif_windows(kin_codes, background, num_motif, flank)]
        n_motif[kinase] = len(kin_codes)

        log_odds = position_log_odds(kin_codes, background)
        codes = site_codes.to_numpy()
        raw = log_odds[flank[None, :], codes[:, flank]].sum(axis=1)
        scaled = _minmax(pd.Series(raw, index=site_codes.index))
        scores.loc[site_codes.index, kinase] = scaled * substrate_confidence(len(kin_codes), num_motif)

    return scores, n_motif


# ============================================================================
# Profile scoring
# ============================================================================

def nan_correlation(matrix: np.ndarray, profile: np.ndarray, min_obs: int = 3) -> np.ndarray:
    """Pearson correlation of each row with ``profile`` over pairwise-complete entries."""
    valid = ~np.isnan(matrix) & ~np.isnan(profile)[None, :]
    n = valid.sum(axis=1)
    x = np.where(valid, matrix, 0.0)
    p = np.where(valid, profile[None, :], 0.0)
    with np.errstate(invalid='ignore', divide='ignore'):
        mx = x.sum(axis=1) / n
        mp = p.sum(axis=1) / n
        dx = np.where(valid, x - mx[:, None], 0.0)
        dp = np.where(valid, p - mp[:, None], 0.0)
        r = (dx * dp).sum(axis=1) / np.sqrt((dx ** 2).sum(axis=1) * (dp ** 2).sum(axis=1))
    r[n < min_obs] = np.nan
    return np.clip(r, -1.0, 1.0)


def known_substrate_sites(sites: Iterable[str], ref: KinaseReference) -> List[str]:
    lookup = set(ref.substrates)
    return [s for s in sites if base_site_key(s) in lookup]


def select_profile_rows(profiles: pd.DataFrame, m: int, min_obs: int = 3) -> pd.DataFrame:
    """
    Keep the ``m`` substrate profiles that best represent the set.

    Rows are ranked by completeness (observed samples), then by mean Pearson
    correlation with the other rows. Ties keep the input order.
    """
    if m <= 0 or len(profiles) <= m:
        return profiles

    values = profiles.to_numpy(dtype=float)
    completeness = (~np.isnan(values)).sum(axis=1)
    corr = pd.DataFrame(values.T).corr(min_periods=min_obs).to_numpy()
    np.fill_diagonal(corr, np.nan)
    with np.errstate(invalid='ignore'):
        coherence = np.nan_to_num(np.nanmean(corr, axis=1), nan=-1.0)

    ranking = pd.DataFrame({
        'completeness': completeness,
        'coherence': coherence,
        'order': np.arange(len(profiles)),
    }).sort_values(['completeness', 'coherence', 'order'], ascending=[False, False, True])
    return profiles.iloc[np.sort(ranking.index[:m].to_numpy())]


def profile_scores(
    standardised: pd.DataFrame,
    library: Dict[str, KinaseReference],
    num_sub: int = 1,
) -> tuple:
    """
    Correlate each site's standardised profile with each kinase's profile.

    The kinase profile is the mean of at most ``num_sub`` substrate rows
    chosen by select_profile_rows; all quantified known substrates are still
    reported as used.

    Returns:
        (scores DataFrame sites x kinases, Series of profile substrate counts,
         dict of kinase -> substrate rows used)
    """
    scores = pd.DataFrame(np.nan, index=standardised.index, columns=list(library))
    n_profile = pd.Series(0, index=list(library), dtype=int)
    used: Dict[str, List[str]] = {}
    values = standardised.to_numpy(dtype=float)

    for kinase, ref in library.items():
        present = [s for s in known_substrate_sites(standardised.index, ref)
                   if standardised.loc[s].notna().any()]
        profiles = [standardised.loc[present]] if present else []

        if ref.reference_profiles is not None and not ref.reference_profiles.empty:
            aligned = ref.reference_profiles.reindex(columns=standardised.columns)
            present_base = {base_site_key(s) for s in present}
            extra = aligned[[base_site_key(k) not in present_base for k in aligned.index]]
            extra = extra.dropna(how='all')
            if not extra.empty:
                profiles.append(extra)

        used[kinase] = present
        if not profiles:
            continue

        stacked = select_profile_rows(pd.concat(profiles), num_sub)
        n_profile[kinase] = len(stacked)
        kinase_profile = np.nanmean(stacked.to_numpy(dtype=float), axis=0)
        r = nan_correlation(values, kinase_profile)
        scores[kinase] = (r + 1.0) / 2.0 * substrate_confidence(len(stacked), num_sub)

    return scores, n_profile, used


# ============================================================================
# Combined scoring
# ============================================================================

def combine_scores(
    motif: pd.DataFrame,
    profile: pd.DataFrame,
    n_motif: pd.Series,
    n_profile: pd.Series,
) -> pd.DataFrame:
    """
    Combine motif and profile scores per kinase.

    Each kinase's weights are the shares of motif-defining and
    profile-defining substrates. Where one term is undefined for a site the
    other term alone is used.
    """
    total = (n_motif + n_profile).astype(float)
    w_motif = (n_motif / total.replace(0, np.nan)).fillna(0.0)
    w_profile = (n_profile / total.replace(0, np.nan)).fillna(0.0)

    num = motif.fillna(0.0).mul(w_motif, axis=1) + profile.fillna(0.0).mul(w_profile, axis=1)
    den = motif.notna().mul(w_motif, axis=1) + profile.notna().mul(w_profile, axis=1)
    return num.div(den.where(den > 0))


def score_kinases(
    standardised: pd.DataFrame,
    annotation: pd.DataFrame,
    library: Dict[str, KinaseReference],
    num_motif: int = 5,
    num_sub: int = 1,
    manifest: Optional[ExclusionManifest] = None,
) -> KinaseScores:
    """
    Compute motif, profile and combined scores for every site and kinase.

    Args:
        standardised: Row-standardised sites x samples (or groups) matrix
        annotation: Site annotation with a ``sequence_window`` column
        library: Kinase reference library
        num_motif: Windows that define each motif (see motif_scores)
        num_sub: Substrate profiles that define each kinase profile (see profile_scores)
        manifest: Exclusion manifest to record kinases without evidence

    Returns:
        KinaseScores
    """
    if manifest is None:
        manifest = ExclusionManifest()

    windows = annotation['sequence_window'].reindex(standardised.index)

    # windows of known substrates measured here extend the library's windows
    extra = {}
    for kinase, ref in library.items():
        sites = known_substrate_sites(standardised.index, ref)
        extra[kinase] = [w.upper() for w in windows.loc[sites] if isinstance(w, str) and w]

    motif, n_motif = motif_scores(windows, library, num_motif=num_motif, extra_windows=extra)
    profile, n_profile, used = profile_scores(standardised, library, num_sub=num_sub)
    combined = combine_scores(motif, profile, n_motif, n_profile)

    excluded = []
    for kinase in library:
        if not used.get(kinase):
            excluded.append(kinase)
            manifest.add(STAGE, kinase, 'no known substrates quantified in this dataset')
            motif[kinase] = np.nan
            profile[kinase] = np.nan
            combined[kinase] = np.nan
        else:
            logger.debug(f"{kinase}: {n_motif[kinase]} motif windows, {n_profile[kinase]} profile substrates")

    logger.info(f"Scored {len(standardised)} sites against {len(library) - len(excluded)} kinases "
                f"({len(excluded)} excluded)")
    return KinaseScores(
        motif=motif,
        profile=profile,
        combined=combined,
        n_motif=n_motif,
        n_profile=n_profile,
        substrate_sites={k: v for k, v in used.items() if v},
        excluded=excluded,
    )
