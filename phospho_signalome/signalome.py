"""
Signalome construction: kinase-anchored modules of co-regulated proteins.

Modules are built per protein rather than per site. Each protein is
represented once, but the similarity between two proteins draws on all of
their regulated sites:

- kinase similarity: cosine similarity of the proteins' kinase regulation
  proportions (summed over their sites)
- profile similarity: mean correlation over all pairs of regulated sites
  from the two proteins, mapped to [0, 1]

For each kinase of interest the proteins carrying at least one predicted
substrate site are connected by these similarities and split into modules by
greedy modularity maximisation (networkx). ``module_res`` caps the number of
modules and ``resolution`` is the modularity resolution.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import networkx as nx
import numpy as np
import pandas as pd
from sklearn.metrics.pairwise import cosine_similarity

from .experiment import ExclusionManifest
from .kinase_scoring import KinaseScores
from .substrate_prediction import SubstratePrediction

logger = logging.getLogger(__name__)

STAGE = 'signalome'


@dataclass
class Signalome:
    """One module of a kinase's signalome."""
    kinase: str
    module: int
    proteins: List[str]
    sites: List[str]
    regulation: pd.Series = field(default_factory=lambda: pd.Series(dtype=float))

    @property
    def name(self) -> str:
        return f"{self.kinase}_module{self.module}"


def site_regulation(prediction: SubstratePrediction, scores: KinaseScores) -> pd.DataFrame:
    """Sites x kinases regulation weights: combined score where predicted, else 0."""
    kinases = prediction.kinases
    combined = scores.combined.reindex(index=prediction.predictions.index, columns=kinases)
    # predicted sites always carry some weight, even with an undefined score
    weights = combined.fillna(0.0).clip(lower=1e-6)
    return weights.where(prediction.predictions[kinases].astype(bool), 0.0)


def protein_kinase_proportions(regulation: pd.DataFrame, annotation: pd.DataFrame) -> pd.DataFrame:
    """
    Kinase regulation proportions per protein.

    Regulation weights of all sites of a protein are summed per kinase and
    normalised to sum to one. Proteins without regulated sites are dropped.
    """
    proteins = annotation['gene_symbol'].reindex(regulation.index)
    summed = regulation.groupby(proteins, sort=False).sum()
    totals = summed.sum(axis=1)
    summed = summed[totals > 0]
    return summed.div(totals[totals > 0], axis=0)


def protein_similarity(
    proteins: List[str],
    regulation: pd.DataFrame,
    standardised: pd.DataFrame,
    annotation: pd.DataFrame,
) -> pd.DataFrame:
    """
    Protein x protein similarity in [0, 1] from kinase proportions and profiles.

    Args:
        proteins: Proteins to compare
        regulation: Sites x kinases regulation weights
        standardised: Standardised sites x samples matrix
        annotation: Site annotation (gene_symbol per site)

    Returns:
        Symmetric similarity DataFrame
    """
    gene = annotation['gene_symbol'].reindex(regulation.index)
    regulated = regulation.index[(regulation > 0).any(axis=1)]
    site_groups = {p: [s for s in regulated if gene[s] == p] for p in proteins}

    proportions = protein_kinase_proportions(regulation, annotation).reindex(proteins).fillna(0.0)
    kinase_sim = cosine_similarity(proportions.to_numpy())

    all_sites = [s for p in proteins for s in site_groups[p]]
    site_corr = standardised.loc[all_sites].T.corr(min_periods=3)
    profile_sim = np.full((len(proteins), len(proteins)), np.nan)
    for i, p in enumerate(proteins):
        for j in range(i, len(proteins)):
            block = site_corr.loc[site_groups[p], site_groups[proteins[j]]].to_numpy()
            if i == j:
                block = block[~np.eye(len(block), dtype=bool)] if len(block) > 1 else np.array([1.0])
            r = np.nanmean(block) if np.isfinite(block).any() else np.nan
            profile_sim[i, j] = profile_sim[j, i] = (r + 1.0) / 2.0

    similarity = np.where(np.isnan(profile_sim), kinase_sim, (kinase_sim + profile_sim) / 2.0)
    return pd.DataFrame(similarity, index=proteins, columns=proteins)


def _cap_modules(modules: List[List[str]], module_res: int, names: List[str]) -> List[List[str]]:
    """Fold the smallest modules into one residual module so at most ``module_res`` remain."""
    modules = sorted(modules, key=lambda m: (-len(m), names.index(m[0])))
    limit = max(1, module_res)
    if len(modules) <= limit:
        return modules
    kept = modules[:limit - 1]
    residual = sorted((p for m in modules[limit - 1:] for p in m), key=names.index)
    return sorted(kept + [residual], key=lambda m: (-len(m), names.index(m[0])))


def _communities(similarity: pd.DataFrame, module_res: int, resolution: float,
                 min_similarity: float) -> List[List[str]]:
    graph = nx.Graph()
    graph.add_nodes_from(similarity.index)
    names = list(similarity.index)
    for i, a in enumerate(names):
        for b in names[i + 1:]:
            w = similarity.loc[a, b]
            if np.isfinite(w) and w > min_similarity:
                graph.add_edge(a, b, weight=float(w))

    if graph.number_of_edges() == 0:
        found = [{n} for n in graph.nodes]
    else:
        # best_n must not exceed the number of nodes
        found = nx.community.greedy_modularity_communities(
            graph,
            weight='weight',
            resolution=resolution,
            best_n=min(max(1, module_res), graph.number_of_nodes()),
        )

    # unconnected proteins can leave more communities than module_res
    return _cap_modules([sorted(c, key=names.index) for c in found], module_res, names)


def build_signalomes(
    scores: KinaseScores,
    prediction: SubstratePrediction,
    standardised: pd.DataFrame,
    annotation: pd.DataFrame,
    kinases_of_interest: Iterable[str],
    module_res: int = 6,
    resolution: float = 1.0,
    min_similarity: float = 0.0,
    manifest: Optional[ExclusionManifest] = None,
) -> List[Signalome]:
    """
    Build the signalome modules of each kinase of interest.

    Args:
        scores: KinaseScores
        prediction: SubstratePrediction
        standardised: Standardised sites x samples matrix
        annotation: Site annotation indexed by site key
        kinases_of_interest: Kinases to anchor signalomes on
        module_res: Maximum number of modules per kinase
        resolution: Modularity resolution (higher favours smaller modules)
        min_similarity: Protein pairs at or below this similarity are not linked
        manifest: Exclusion manifest to record kinases without predictions

    Returns:
        List of Signalome modules, grouped by kinase, largest module first
    """
    if manifest is None:
        manifest = ExclusionManifest()

    regulation = site_regulation(prediction, scores)
    gene = annotation['gene_symbol'].reindex(regulation.index)
    regulated = regulation.index[(regulation > 0).any(axis=1)]

    signalomes: List[Signalome] = []
    for kinase in kinases_of_interest:
        if kinase not in prediction.kinases:
            manifest.add(STAGE, kinase, 'no substrate predictions for this kinase')
            continue

        predicted = prediction.predictions.index[prediction.predictions[kinase]]
        proteins = list(dict.fromkeys(gene[predicted].dropna()))
        if not proteins:
            manifest.add(STAGE, kinase, 'predicted substrates have no protein annotation')
            continue

        similarity = protein_similarity(proteins, regulation, standardised, annotation)
        modules = _communities(similarity, module_res, resolution, min_similarity)

        for i, members in enumerate(modules, start=1):
            member_set = set(members)
            sites = [s for s in regulated if gene[s] in member_set]
            totals = regulation.loc[sites].sum()
            proportion = totals / totals.sum() if totals.sum() > 0 else totals
            signalomes.append(Signalome(
                kinase=kinase,
                module=i,
                proteins=members,
                sites=sites,
                regulation=proportion.rename(f"{kinase}_module{i}"),
            ))

        logger.info(f"{kinase} signalome: {len(proteins)} proteins in {len(modules)} modules")

    return signalomes


def module_kinase_table(signalomes: List[Signalome]) -> pd.DataFrame:
    """Module x kinase regulation proportions (balloon-map input)."""
    if not signalomes:
        return pd.DataFrame()
    return pd.DataFrame({s.name: s.regulation for s in signalomes}).T.fillna(0.0)


def signalome_table(signalomes: List[Signalome]) -> pd.DataFrame:
    """Long table with one row per (kinase, module, protein)."""
    rows = [
        {'kinase': s.kinase, 'module': s.module, 'protein': p, 'n_sites': len(s.sites)}
        for s in signalomes for p in s.proteins
    ]
    return pd.DataFrame(rows, columns=['kinase', 'module', 'protein', 'n_sites'])


def build_kinase_network(
    prediction: SubstratePrediction,
    threshold: float = 0.9,
) -> nx.Graph:
    """
    Kinase connectivity network.

    Kinases are linked when the correlation of their substrate rank scores
    across sites reaches ``threshold``; edge weight is the correlation.
    """
    graph = nx.Graph()
    graph.add_nodes_from(prediction.kinases)
    if len(prediction.kinases) < 2:
        return graph

    corr = prediction.rank_scores.corr()
    kinases = list(corr.columns)
    for i, a in enumerate(kinases):
        for b in kinases[i + 1:]:
            r = corr.loc[a, b]
            if np.isfinite(r) and r >= threshold:
                graph.add_edge(a, b, weight=float(r))

    logger.info(f"Kinase network: {graph.number_of_nodes()} kinases, {graph.number_of_edges()} links")
    return graph
