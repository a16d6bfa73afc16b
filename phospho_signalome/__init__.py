"""
phospho-signalome: kinase signalomes from quantitative phosphoproteomics

Missing-value imputation, discovery of stably phosphorylated control sites,
RUV-style removal of unwanted variation, kinase-substrate scoring and
positive-unlabeled substrate prediction, and signalome module construction
for site-level phosphoproteomics matrices.
"""

__version__ = "0.1.0"

from .experiment import (
    PhosphoExperiment,
    SiteAnnotation,
    ExclusionManifest,
    PhosphoSignalomeError,
    PreconditionError,
    InsufficientOverlapError,
    EstimationError,
    make_site_key,
    parse_site_key,
    base_site_key,
)
from .data_io import (
    load_phospho_matrix,
    load_sample_metadata,
    load_experiment,
    load_kinase_library,
    load_control_sites,
    save_control_sites,
    validate_phospho_table,
)
from .imputation import (
    impute,
    impute_experiment,
    site_impute,
    tail_impute,
    paired_tail_impute,
    ImputationResult,
)
from .normalization import (
    median_scaling,
    standardise,
    mean_abundance,
)
from .stable_sites import (
    find_stable_sites,
    check_dataset_overlap,
    StableSiteSet,
)
from .batch_correction import (
    ruv_correct,
    correct_experiment,
    make_design_matrix,
    RUVResult,
)
from .validation import (
    evaluate_correction,
    generate_qc_report,
)
from .kinase_scoring import (
    build_kinase_library,
    score_kinases,
    KinaseReference,
    KinaseScores,
)
from .substrate_prediction import (
    predict_substrates,
    pu_learning_scores,
    SubstratePrediction,
)
from .signalome import (
    build_signalomes,
    build_kinase_network,
    Signalome,
)
from .pipeline import (
    run_pipeline,
    PipelineResult,
)
