"""
End-to-end analysis of one phosphoproteomics experiment.

Pipeline stages:
1. Imputation (site-level, then tail)
2. Optional median scaling
3. Unwanted-variation removal with control sites (RUV-III)
4. Standardisation
5. Kinase-substrate scoring
6. Substrate prediction (positive-unlabeled learning)
7. Signalome construction for the kinases of interest

Every stage writes its own experiment layer. Entities skipped for lack of
evidence are collected in one ExclusionManifest returned with the outputs.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import networkx as nx
import pandas as pd

from .batch_correction import RUVResult, correct_experiment, match_controls
from .experiment import ExclusionManifest, PhosphoExperiment
from .imputation import ImputationResult, impute_experiment
from .kinase_scoring import KinaseReference, KinaseScores, score_kinases
from .normalization import scale_experiment, standardise_experiment
from .signalome import Signalome, build_kinase_network, build_signalomes
from .substrate_prediction import SubstratePrediction, predict_substrates
from .validation import CorrectionMetrics, evaluate_correction

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Results from the full analysis."""

    experiment: PhosphoExperiment
    imputation: ImputationResult
    correction: Optional[RUVResult]
    standardised: pd.DataFrame
    scores: KinaseScores
    prediction: SubstratePrediction
    signalomes: List[Signalome]
    kinase_network: nx.Graph
    manifest: ExclusionManifest
    method_log: List[str] = field(default_factory=list)
    correction_metrics: Optional[CorrectionMetrics] = None


def run_pipeline(
    experiment: PhosphoExperiment,
    library: Dict[str, KinaseReference],
    controls: Optional[Iterable[str]] = None,
    kinases_of_interest: Optional[Iterable[str]] = None,
    config: Optional[dict] = None,
) -> PipelineResult:
    """
    Run imputation through signalome construction on one experiment.

    Args:
        experiment: Experiment with a raw layer
        library: Kinase reference library
        controls: Control (stably phosphorylated) site keys; batch correction
            is skipped when None
        kinases_of_interest: Kinases to build signalomes for
        config: Nested configuration (see cli.load_config for the layout)

    Returns:
        PipelineResult
    """
    config = config or {}
    imp_cfg = config.get('imputation', {})
    norm_cfg = config.get('normalization', {})
    bc_cfg = config.get('batch_correction', {})
    score_cfg = config.get('scoring', {})
    pred_cfg = config.get('prediction', {})
    sig_cfg = config.get('signalome', {})
    seed = config.get('seed', 0)

    manifest = ExclusionManifest()
    method_log = []

    # =========================================================================
    # Stage 1: Imputation
    # =========================================================================
    logger.info("Imputing missing values...")
    imputation = impute_experiment(
        experiment,
        percent=imp_cfg.get('percent', 0.5),
        tail=imp_cfg.get('tail', True),
        m=imp_cfg.get('m', 1.6),
        s=imp_cfg.get('s', 0.6),
        min_observed=imp_cfg.get('min_observed', 3),
        seed=seed,
    )
    method_log.extend(imputation.method_log)
    current = 'imputed'

    # =========================================================================
    # Stage 2: Median scaling (optional)
    # =========================================================================
    if norm_cfg.get('median_scaling', False):
        scale_experiment(experiment, source_layer=current, layer_name='scaled',
                         scale=norm_cfg.get('scale', False))
        method_log.append("Median scaling")
        current = 'scaled'

    # =========================================================================
    # Stage 3: Batch correction
    # =========================================================================
    correction = None
    metrics = None
    if controls is not None and bc_cfg.get('enabled', True):
        logger.info("Removing unwanted variation...")
        controls = list(controls)
        correction = correct_experiment(
            experiment,
            controls,
            k=bc_cfg.get('k', 1),
            source_layer=current,
            layer_name='normalized',
            keep_imputed=bc_cfg.get('keep_imputed', False),
        )
        method_log.extend(correction.method_log)
        if bc_cfg.get('evaluate', True):
            metrics = evaluate_correction(
                experiment.layer(current),
                experiment.layer('normalized'),
                experiment.groups,
                match_controls(experiment.sites, controls),
            )
        current = 'normalized'
    else:
        logger.info("Skipping batch correction: no control sites")
        method_log.append("Batch correction: skipped")

    # =========================================================================
    # Stage 4: Standardisation
    # =========================================================================
    standardised = standardise_experiment(
        experiment,
        source_layer=current,
        average_groups=score_cfg.get('average_groups', False),
    )
    method_log.append(f"Standardised layer '{current}'")

    # =========================================================================
    # Stage 5-6: Kinase scoring and substrate prediction
    # =========================================================================
    logger.info("Scoring kinase-substrate associations...")
    scores = score_kinases(
        standardised,
        experiment.annotation,
        library,
        num_motif=score_cfg.get('num_motif', 5),
        num_sub=score_cfg.get('num_sub', 1),
        manifest=manifest,
    )
    method_log.append(f"Kinase scoring: {len(scores.kinases)} kinases")

    logger.info("Predicting kinase substrates...")
    prediction = predict_substrates(
        scores,
        top=pred_cfg.get('top', 30),
        min_substrates=pred_cfg.get('min_substrates', 3),
        seed=seed,
        ensemble_size=pred_cfg.get('ensemble_size', 10),
        n_iter=pred_cfg.get('n_iter', 5),
        cs=pred_cfg.get('cs', 0.8),
        manifest=manifest,
    )
    method_log.append(f"Substrate prediction: {len(prediction.kinases)} kinases, top {prediction.top}")

    # =========================================================================
    # Stage 7: Signalomes
    # =========================================================================
    signalomes = []
    if kinases_of_interest:
        signalomes = build_signalomes(
            scores,
            prediction,
            standardised,
            experiment.annotation,
            kinases_of_interest,
            module_res=sig_cfg.get('module_res', 6),
            resolution=sig_cfg.get('resolution', 1.0),
            manifest=manifest,
        )
        method_log.append(f"Signalomes: {len(signalomes)} modules")

    network = build_kinase_network(prediction, threshold=sig_cfg.get('network_threshold', 0.9))

    if len(manifest):
        logger.warning(f"{len(manifest)} entities excluded - see manifest")

    return PipelineResult(
        experiment=experiment,
        imputation=imputation,
        correction=correction,
        standardised=standardised,
        scores=scores,
        prediction=prediction,
        signalomes=signalomes,
        kinase_network=network,
        manifest=manifest,
        method_log=method_log,
        correction_metrics=metrics,
    )
