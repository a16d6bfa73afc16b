"""Command-line interface for phospho-signalome.

Imputation, control-site discovery, unwanted-variation removal and kinase
signalome analysis for site-level phosphoproteomics matrices.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

if TYPE_CHECKING:
    from .experiment import ExclusionManifest, PhosphoExperiment
    from .validation import CorrectionMetrics

from .batch_correction import correct_experiment, match_controls
from .data_io import (
    load_control_sites,
    load_experiment,
    load_kinase_library,
    load_phospho_matrix,
    load_sample_metadata,
    save_control_sites,
    write_table,
)
from .experiment import PhosphoSignalomeError
from .imputation import impute_experiment
from .pipeline import run_pipeline
from .signalome import module_kinase_table, signalome_table
from .stable_sites import find_stable_sites
from .validation import evaluate_correction, generate_qc_report

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'seed': 0,
        'imputation': {
            'percent': 0.5,
            'tail': True,  # Disable for ratio data
            'm': 1.6,
            's': 0.6,
            'min_observed': 3,
        },
        'normalization': {
            'median_scaling': False,
            'scale': False,
        },
        'stable_sites': {
            'num': 100,
            'min_group_fraction': 0.5,
        },
        'batch_correction': {
            'enabled': True,
            'k': 1,
            'keep_imputed': False,
            'evaluate': True,
        },
        'scoring': {
            'num_motif': 5,
            'num_sub': 1,
            'average_groups': False,
        },
        'prediction': {
            'top': 30,
            'min_substrates': 3,
            'ensemble_size': 10,
            'n_iter': 5,
            'cs': 0.8,
        },
        'signalome': {
            'kinases': [],
            'module_res': 6,
            'resolution': 1.0,
            'network_threshold': 0.9,
        },
        'output': {
            'format': 'parquet',
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config_from_provenance(provenance_path: Path) -> tuple[dict, dict]:
    """Rebuild a configuration from a metadata.json written by a previous run.

    Returns:
        (config, provenance) where config is the stored processing parameters
        merged over the current defaults

    Raises:
        ValueError: If the file has no processing_parameters section

    """
    with open(provenance_path) as f:
        provenance = json.load(f)

    if 'processing_parameters' not in provenance:
        raise ValueError(
            f"No processing_parameters in provenance file: {provenance_path}"
        )

    config = _deep_merge(load_config(None), provenance['processing_parameters'])
    return config, provenance


def _resolve_config(args: argparse.Namespace) -> tuple[dict, list[str]]:
    method_log = []
    if getattr(args, 'from_provenance', None):
        config, _ = load_config_from_provenance(Path(args.from_provenance))
        method_log.append(f"Configuration loaded from provenance: {args.from_provenance}")
        if args.config:
            yaml_config = load_config(Path(args.config))
            config = _deep_merge(config, yaml_config)
            method_log.append(f"Configuration overrides from: {args.config}")
    else:
        config = load_config(Path(args.config) if args.config else None)
    if getattr(args, 'seed', None) is not None:
        config['seed'] = args.seed
    return config, method_log


def _output_path(output_dir: Path, stem: str, output_format: str) -> Path:
    return output_dir / f"{stem}.{output_format}"


def generate_pipeline_metadata(
    config: dict,
    experiment: PhosphoExperiment,
    method_log: list[str],
    input_files: list[str],
    manifest: ExclusionManifest | None = None,
    validation_metrics: CorrectionMetrics | None = None,
) -> dict:
    """Generate pipeline metadata JSON for reproducibility and provenance.

    Creates a metadata dictionary containing:
    - Package version and processing timestamp
    - Input file information
    - Sample and group summary
    - All processing parameters from config
    - Exclusions and correction metrics if available

    Args:
        config: Pipeline configuration dictionary
        experiment: Processed experiment
        method_log: List of processing steps performed
        input_files: List of input file paths
        manifest: Exclusion manifest of the run
        validation_metrics: Batch correction metrics

    Returns:
        Dictionary with complete pipeline metadata

    """
    from importlib.metadata import PackageNotFoundError, version
    try:
        pipeline_version = version('phospho-signalome')
    except PackageNotFoundError:
        pipeline_version = 'development'

    group_counts = experiment.groups.value_counts().to_dict()
    sample_metadata = {
        'n_samples': len(experiment.samples),
        'n_sites': len(experiment.sites),
        'groups': {str(k): int(v) for k, v in group_counts.items()},
        'samples': [str(s) for s in experiment.samples],
        'layers': experiment.layer_names,
    }

    metrics = {}
    warnings = []
    if validation_metrics is not None:
        metrics = {
            'control_sd_before': validation_metrics.control_sd_before,
            'control_sd_after': validation_metrics.control_sd_after,
            'control_sd_improvement': validation_metrics.control_sd_improvement,
            'separation_ratio': validation_metrics.separation_ratio,
            'passed': validation_metrics.passed,
        }
        warnings.extend(validation_metrics.warnings)

    metadata = {
        'pipeline_version': pipeline_version,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'sample_metadata': sample_metadata,
        'processing_parameters': config,
        'method_log': method_log,
        'exclusions': manifest.to_frame().to_dict(orient='records') if manifest is not None else [],
        'validation_metrics': metrics,
        'warnings': warnings,
    }

    return metadata


def _write_metadata(metadata: dict, output_dir: Path) -> None:
    metadata_output = output_dir / "metadata.json"
    with open(metadata_output, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {metadata_output}")


def cmd_impute(args: argparse.Namespace) -> int:
    """Impute missing values in a site-level matrix."""
    config, method_log = _resolve_config(args)
    imp = config['imputation']

    experiment = load_experiment(Path(args.input), Path(args.metadata))
    result = impute_experiment(
        experiment,
        percent=imp.get('percent', 0.5),
        tail=not args.no_tail and imp.get('tail', True),
        m=imp.get('m', 1.6),
        s=imp.get('s', 0.6),
        min_observed=imp.get('min_observed', 3),
        seed=config.get('seed', 0),
    )
    method_log.extend(result.method_log)

    output_path = Path(args.output)
    write_table(experiment.layer('imputed'), output_path,
                output_format=config['output'].get('format', 'parquet'))
    logger.info(f"Saved imputed matrix to {output_path}")

    for step in method_log:
        logger.info(f"  {step}")
    return 0


def cmd_stable_sites(args: argparse.Namespace) -> int:
    """Find stably phosphorylated control sites across datasets."""
    config, _ = _resolve_config(args)
    sps = config['stable_sites']

    if len(args.metadata) != len(args.datasets):
        logger.error(f"Got {len(args.datasets)} datasets but {len(args.metadata)} metadata files")
        return 1

    matrices = []
    groups = []
    for data_path, meta_path in zip(args.datasets, args.metadata):
        matrix, _ = load_phospho_matrix(Path(data_path))
        matrices.append(matrix)
        groups.append(load_sample_metadata(Path(meta_path))['group'])

    stable = find_stable_sites(
        matrices,
        groups,
        num=args.num or sps.get('num', 100),
        min_group_fraction=sps.get('min_group_fraction', 0.5),
        name=args.name,
    )
    save_control_sites(stable.sites, Path(args.output))
    return 0


def cmd_correct(args: argparse.Namespace) -> int:
    """Impute and batch-correct a matrix with a control-site resource."""
    config, method_log = _resolve_config(args)
    imp = config['imputation']
    bc = config['batch_correction']

    experiment = load_experiment(Path(args.input), Path(args.metadata))
    controls = load_control_sites(Path(args.controls))

    imputation = impute_experiment(
        experiment,
        percent=imp.get('percent', 0.5),
        tail=imp.get('tail', True),
        m=imp.get('m', 1.6),
        s=imp.get('s', 0.6),
        min_observed=imp.get('min_observed', 3),
        seed=config.get('seed', 0),
    )
    method_log.extend(imputation.method_log)

    k = args.k if args.k is not None else bc.get('k', 1)
    result = correct_experiment(
        experiment,
        controls.sites,
        k=k,
        keep_imputed=bc.get('keep_imputed', False),
    )
    method_log.extend(result.method_log)

    output_path = Path(args.output)
    write_table(experiment.layer('normalized'), output_path,
                output_format=config['output'].get('format', 'parquet'))
    logger.info(f"Saved corrected matrix to {output_path}")

    if args.report:
        metrics = evaluate_correction(
            experiment.layer('imputed'),
            experiment.layer('normalized'),
            experiment.groups,
            match_controls(experiment.sites, controls.sites),
        )
        generate_qc_report(metrics, method_log, args.report)
        return 0 if metrics.passed else 1

    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full analysis: imputation through signalomes.

    Pipeline stages:
    1. Load matrix, sample metadata, kinase library, control sites
    2. Imputation
    3. Batch correction (when control sites are given)
    4. Kinase scoring
    5. Substrate prediction
    6. Signalome construction for the kinases of interest
    """
    config, method_log = _resolve_config(args)
    output_format = config['output'].get('format', 'parquet')

    # =========================================================================
    # Stage 0: Load inputs
    # =========================================================================
    input_files = [args.input, args.metadata, args.library]
    experiment = load_experiment(Path(args.input), Path(args.metadata))
    library = load_kinase_library(Path(args.library))
    method_log.append(f"Loaded {len(experiment.sites)} sites x {len(experiment.samples)} samples")

    controls = None
    if args.controls:
        controls = load_control_sites(Path(args.controls)).sites
        input_files.append(args.controls)

    kinases = args.kinases or config['signalome'].get('kinases') or []
    if args.stage in ('score', 'predict'):
        kinases = []

    result = run_pipeline(
        experiment,
        library,
        controls=controls,
        kinases_of_interest=kinases,
        config=config,
    )
    method_log.extend(result.method_log)

    # =========================================================================
    # Outputs
    # =========================================================================
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    if result.correction is not None:
        write_table(experiment.layer('normalized'), _output_path(output_dir, 'normalized', output_format),
                    output_format=output_format)
    else:
        write_table(experiment.layer('imputed'), _output_path(output_dir, 'imputed', output_format),
                    output_format=output_format)

    for name in ('motif', 'profile', 'combined'):
        write_table(getattr(result.scores, name), _output_path(output_dir, f'{name}_scores', output_format),
                    output_format=output_format)

    if args.stage in ('predict', 'signalome', 'run'):
        write_table(result.prediction.predictions.astype(int),
                    _output_path(output_dir, 'predictions', output_format), output_format=output_format)
        write_table(result.prediction.rank_scores,
                    _output_path(output_dir, 'rank_scores', output_format), output_format=output_format)

    if result.signalomes:
        write_table(signalome_table(result.signalomes), output_dir / 'signalomes.tsv',
                    output_format='tsv', index=False)
        write_table(module_kinase_table(result.signalomes), output_dir / 'module_kinases.tsv',
                    output_format='tsv')

    write_table(result.manifest.to_frame(), output_dir / 'manifest.tsv', output_format='tsv', index=False)

    if args.report and result.correction_metrics is not None:
        generate_qc_report(result.correction_metrics, method_log, str(output_dir / 'qc_report.html'))

    metadata = generate_pipeline_metadata(
        config,
        experiment,
        method_log,
        input_files,
        manifest=result.manifest,
        validation_metrics=result.correction_metrics,
    )
    _write_metadata(metadata, output_dir)

    # Log summary
    logger.info("=" * 60)
    logger.info("Analysis complete")
    logger.info("=" * 60)
    for step in method_log:
        logger.info(f"  {step}")
    logger.info(f"Output directory: {output_dir}")

    return 0


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('-c', '--config', help='Configuration YAML file')
    parser.add_argument('--from-provenance', help='Reuse the parameters of a previous metadata.json')
    parser.add_argument('--seed', type=int, help='Random seed (overrides config)')


def _add_analysis_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('-i', '--input', required=True, help='Site-level matrix (CSV/TSV/parquet)')
    parser.add_argument('-m', '--metadata', required=True, help='Sample metadata with sample and group columns')
    parser.add_argument('-l', '--library', required=True, help='Kinase-substrate table')
    parser.add_argument('-o', '--output-dir', required=True, help='Output directory for results')
    parser.add_argument('--controls', help='Control-site list; batch correction is skipped without it')
    parser.add_argument('--report', action='store_true', help='Write an HTML batch correction QC report')
    _add_config_args(parser)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='phospho-signalome',
        description='phospho-signalome: kinase signalomes from phosphoproteomics data\n\n'
                    'Imputation, stably phosphorylated control sites, RUV batch correction,\n'
                    'kinase-substrate scoring and prediction, and signalome modules.\n\n'
                    'Primary usage:\n'
                    '  phospho-signalome run -i sites.tsv -m samples.tsv -l library.tsv \\\n'
                    '      --controls sps.txt -o results/ -c config.yaml',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version='%(prog)s 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Run command (primary) - executes full analysis
    run_parser = subparsers.add_parser(
        'run',
        help='Run the full analysis (recommended)',
        description='Impute, batch-correct, score kinases, predict substrates and build signalomes.',
    )
    _add_analysis_args(run_parser)
    run_parser.add_argument('-k', '--kinases', nargs='+', help='Kinases of interest for signalomes')

    score_parser = subparsers.add_parser('score', help='Stop after kinase scoring')
    _add_analysis_args(score_parser)

    predict_parser = subparsers.add_parser('predict', help='Stop after substrate prediction')
    _add_analysis_args(predict_parser)

    sig_parser = subparsers.add_parser('signalome', help='Build signalomes for the given kinases')
    _add_analysis_args(sig_parser)
    sig_parser.add_argument('-k', '--kinases', nargs='+', required=True, help='Kinases of interest')

    # Single-stage utilities
    imp_parser = subparsers.add_parser('impute', help='Impute missing values only')
    imp_parser.add_argument('-i', '--input', required=True, help='Site-level matrix')
    imp_parser.add_argument('-m', '--metadata', required=True, help='Sample metadata')
    imp_parser.add_argument('-o', '--output', required=True, help='Output matrix path')
    imp_parser.add_argument('--no-tail', action='store_true', help='Skip tail imputation (ratio data)')
    _add_config_args(imp_parser)

    sps_parser = subparsers.add_parser('stable-sites', help='Find stably phosphorylated sites across datasets')
    sps_parser.add_argument('datasets', nargs='+', help='Site-level matrices (two or more)')
    sps_parser.add_argument('-m', '--metadata', nargs='+', required=True,
                            help='Sample metadata per dataset, in the same order')
    sps_parser.add_argument('-o', '--output', required=True, help='Output control-site list')
    sps_parser.add_argument('-n', '--num', type=int, help='Number of sites to select')
    sps_parser.add_argument('--name', default='SPS', help='Name of the site set')
    _add_config_args(sps_parser)

    corr_parser = subparsers.add_parser('correct', help='Impute and remove unwanted variation only')
    corr_parser.add_argument('-i', '--input', required=True, help='Site-level matrix')
    corr_parser.add_argument('-m', '--metadata', required=True, help='Sample metadata')
    corr_parser.add_argument('--controls', required=True, help='Control-site list')
    corr_parser.add_argument('-o', '--output', required=True, help='Output matrix path')
    corr_parser.add_argument('-k', type=int, help='Number of unwanted factors (overrides config)')
    corr_parser.add_argument('--report', help='Output HTML report path')
    _add_config_args(corr_parser)

    args = parser.parse_args()

    setup_logging(args.verbose)

    try:
        if args.command in ('run', 'score', 'predict', 'signalome'):
            args.stage = args.command
            if not hasattr(args, 'kinases'):
                args.kinases = None
            return cmd_run(args)
        elif args.command == 'impute':
            return cmd_impute(args)
        elif args.command == 'stable-sites':
            return cmd_stable_sites(args)
        elif args.command == 'correct':
            return cmd_correct(args)
        else:
            parser.print_help()
            return 1
    except PhosphoSignalomeError as e:
        logger.error(str(e))
        return 2


if __name__ == '__main__':
    sys.exit(main())
