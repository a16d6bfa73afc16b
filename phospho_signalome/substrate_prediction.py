"""
Kinase substrate prediction with adaptive positive-unlabeled learning.

Known substrates of a kinase are the only labelled examples; every other site
is unlabelled, not negative. For each kinase:

1. Draw a negative training set from the unlabelled pool, stratified by the
   kinase's combined score so the draw is not biased towards low scorers.
2. Fit a logistic regression on the site x kinase combined-score features.
3. Score every site and convert the probabilities to ranks.
4. Repeat ``ensemble_size`` times per iteration. After each iteration the
   unlabelled sites whose mean probability exceeds ``cs`` leave the negative
   pool (adaptive sampling), and the next iteration starts.

The rank scores averaged over all draws order the sites; the top ``top``
sites are the predicted substrates.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy.stats import rankdata
from sklearn.linear_model import LogisticRegression

from .experiment import ExclusionManifest, check_seed
from .kinase_scoring import KinaseScores

logger = logging.getLogger(__name__)

STAGE = 'substrate_prediction'


@dataclass
class SubstratePrediction:
    """
    Predicted kinase substrates.

    Attributes:
        predictions: Sites x kinases boolean matrix, top-k True per kinase
        rank_scores: Sites x kinases aggregated rank scores in [0, 1]
        excluded: Kinase -> reason for kinases skipped by the predictor
        top: Number of substrates retained per kinase
        seed: Seed the per-kinase random streams were derived from
    """
    predictions: pd.DataFrame
    rank_scores: pd.DataFrame
    excluded: Dict[str, str] = field(default_factory=dict)
    top: int = 30
    seed: Optional[int] = None

    @property
    def kinases(self) -> List[str]:
        return list(self.predictions.columns)

    def substrates(self, kinase: str) -> List[str]:
        """Predicted substrate sites of a kinase, best first."""
        col = self.predictions[kinase]
        return self.rank_scores.loc[col[col].index, kinase].sort_values(ascending=False).index.tolist()


def _stratified_negatives(
    pool: np.ndarray,
    anchor: np.ndarray,
    n: int,
    rng: np.random.Generator,
    n_strata: int,
) -> np.ndarray:
    """Sample ``n`` pool indices spread evenly over quantile strata of ``anchor``."""
    if len(pool) <= n:
        return pool.copy()

    order = pool[np.argsort(anchor[pool], kind='stable')]
    strata = np.array_split(order, min(n_strata, len(order)))
    sizes = np.array([len(s) for s in strata], dtype=float)
    share = n * sizes / sizes.sum()
    alloc = np.floor(share).astype(int)
    for i in np.argsort(-(share - alloc), kind='stable')[:n - alloc.sum()]:
        alloc[i] += 1

    picks = [rng.choice(s, size=a, replace=False) for s, a in zip(strata, alloc) if a > 0]
    return np.concatenate(picks)


def pu_learning_scores(
    features: np.ndarray,
    positives: np.ndarray,
    seed=None,
    ensemble_size: int = 10,
    n_iter: int = 5,
    cs: float = 0.8,
    n_strata: int = 5,
    anchor: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Adaptive positive-unlabeled ranking of all sites.

    A pure function of its inputs: all randomness comes from ``seed``.

    Args:
        features: Sites x features matrix (no NaN)
        positives: Boolean mask of labelled positive sites
        seed: Seed, SeedSequence or Generator for negative sampling
        ensemble_size: Classifiers trained per iteration
        n_iter: Adaptive sampling iterations
        cs: Probability above which unlabelled sites leave the negative pool
        n_strata: Strata used for stratified negative sampling
        anchor: Score used for stratification (defaults to the first feature)

    Returns:
        Rank score per site in [0, 1]; higher means more substrate-like

    Raises:
        ValueError: If there are no positives or no unlabelled sites
        PreconditionError: If ``seed`` is a negative integer
    """
    features = np.asarray(features, dtype=float)
    if features.ndim == 1:
        features = features[:, None]
    positives = np.asarray(positives, dtype=bool)
    n_sites = features.shape[0]

    pos_idx = np.where(positives)[0]
    pool = np.where(~positives)[0]
    if len(pos_idx) == 0:
        raise ValueError("No positive examples")
    if len(pool) == 0:
        raise ValueError("No unlabeled sites to sample negatives from")

    check_seed(seed)
    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)
    if anchor is None:
        anchor = features[:, 0]
    anchor = np.asarray(anchor, dtype=float)

    rank_sum = np.zeros(n_sites)
    n_models = 0
    for iteration in range(n_iter):
        prob_sum = np.zeros(n_sites)
        for _ in range(ensemble_size):
            neg_idx = _stratified_negatives(pool, anchor, len(pos_idx), rng, n_strata)
            x_train = np.vstack([features[pos_idx], features[neg_idx]])
            y_train = np.concatenate([np.ones(len(pos_idx)), np.zeros(len(neg_idx))])

            clf = LogisticRegression(C=1.0, max_iter=1000)
            clf.fit(x_train, y_train)
            prob = clf.predict_proba(features)[:, 1]

            prob_sum += prob
            rank_sum += (rankdata(prob) - 1) / max(n_sites - 1, 1)
            n_models += 1

        mean_prob = prob_sum / ensemble_size
        remaining = pool[mean_prob[pool] <= cs]
        if len(remaining) == 0:
            logger.debug(f"Negative pool exhausted after iteration {iteration + 1}")
            break
        pool = remaining

    return rank_sum / n_models


def kinase_stream(seed: Optional[int], kinase: str) -> np.random.Generator:
    """Random stream for one kinase, derived from the run seed and the kinase name."""
    check_seed(seed)
    return np.random.default_rng(
        np.random.SeedSequence(entropy=seed, spawn_key=tuple(kinase.encode('utf-8')))
    )


def predict_substrates(
    scores: KinaseScores,
    top: int = 30,
    min_substrates: int = 3,
    seed: Optional[int] = 0,
    ensemble_size: int = 10,
    n_iter: int = 5,
    cs: float = 0.8,
    n_strata: int = 5,
    manifest: Optional[ExclusionManifest] = None,
) -> SubstratePrediction:
    """
    Predict substrates for every kinase with enough known substrates.

    Args:
        scores: KinaseScores from score_kinases
        top: Sites marked as predicted substrates per kinase
        min_substrates: Known substrates a kinase needs to be modelled
        seed: Seed for all negative sampling; per-kinase streams are derived
            from it and the kinase name, so results do not depend on kinase order
        ensemble_size, n_iter, cs, n_strata: See pu_learning_scores
        manifest: Exclusion manifest to record skipped kinases

    Returns:
        SubstratePrediction (skipped kinases are absent from the columns)
    """
    check_seed(seed)
    if manifest is None:
        manifest = ExclusionManifest()

    combined = scores.combined
    usable = scores.kinases
    # fixed feature order so results do not depend on column order
    features = combined[sorted(usable)].fillna(0.0).to_numpy(dtype=float)
    sites = combined.index

    rank_cols = {}
    pred_cols = {}
    excluded: Dict[str, str] = {}
    for kinase in usable:
        known = set(scores.substrate_sites.get(kinase, []))
        positives = sites.isin(known)
        n_pos = int(positives.sum())

        if n_pos < min_substrates:
            reason = f"{n_pos} known substrates quantified (minimum {min_substrates})"
        elif n_pos == len(sites):
            reason = "all sites are known substrates; no unlabeled sites"
        else:
            reason = None

        if reason is not None:
            excluded[kinase] = reason
            manifest.add(STAGE, kinase, reason)
            continue

        rank = pu_learning_scores(
            features,
            positives,
            seed=kinase_stream(seed, kinase),
            ensemble_size=ensemble_size,
            n_iter=n_iter,
            cs=cs,
            n_strata=n_strata,
            anchor=combined[kinase].fillna(0.0).to_numpy(),
        )
        order = np.argsort(-rank, kind='stable')[:min(top, len(sites))]
        selected = np.zeros(len(sites), dtype=bool)
        selected[order] = True

        rank_cols[kinase] = rank
        pred_cols[kinase] = selected
        logger.debug(f"{kinase}: {n_pos} positives, top {int(selected.sum())} sites predicted")

    logger.info(f"Predicted substrates for {len(pred_cols)} kinases "
                f"({len(excluded)} skipped, top={top}, seed={seed})")

    return SubstratePrediction(
        predictions=pd.DataFrame(pred_cols, index=sites, dtype=bool),
        rank_scores=pd.DataFrame(rank_cols, index=sites, dtype=float),
        excluded=excluded,
        top=top,
        seed=seed,
    )
