"""
Validation module for assessing unwanted-variation removal.

Uses the control design:
- Control sites (stably phosphorylated): spread across samples should shrink
- Condition groups: should stay separated after correction
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from .experiment import group_columns

logger = logging.getLogger(__name__)


@dataclass
class CorrectionMetrics:
    """Metrics for assessing correction quality."""

    # Spread metrics (median per-site SD across samples)
    control_sd_before: float
    control_sd_after: float
    within_group_sd_before: float
    within_group_sd_after: float

    # Spread improvement
    control_sd_improvement: float  # (before - after) / before
    within_group_sd_improvement: float

    # PCA metrics
    group_separation_before: float
    group_separation_after: float
    separation_ratio: float  # after / before (should not collapse)

    # Warnings
    warnings: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """Check if validation passed basic criteria."""
        return (
            self.control_sd_improvement >= 0 and  # Controls did not get noisier
            (np.isnan(self.separation_ratio) or self.separation_ratio > 0.5)  # Groups kept apart
        )


def median_site_sd(matrix: pd.DataFrame) -> float:
    """Median across sites of the SD across samples."""
    sd = matrix.std(axis=1, ddof=1, skipna=True)
    return float(sd.median()) if len(sd) else np.nan


def within_group_sd(matrix: pd.DataFrame, groups: pd.Series) -> float:
    """Median within-group SD, pooled over groups."""
    sds = [matrix[c].std(axis=1, ddof=1, skipna=True) for c in group_columns(groups, matrix.columns).values()
           if len(c) > 1]
    if not sds:
        return np.nan
    return float(pd.concat(sds).median())


def calculate_group_separation(
    matrix: pd.DataFrame,
    groups: pd.Series,
    n_components: int = 2,
) -> float:
    """
    Separation of condition groups in PCA space.

    Ratio of the mean distance between group centroids to the mean distance
    of samples from their own centroid.

    Args:
        matrix: Sites x samples matrix
        groups: Group label per sample
        n_components: Number of PCA components

    Returns:
        Separation ratio (NaN when PCA is not possible)
    """
    # Samples as rows, sites as columns
    data = matrix.T

    # Handle missing values - drop sites with too many missing
    data = data.dropna(axis=1, thresh=int(np.ceil(len(data) * 0.5)))
    data = data.fillna(data.median())
    n_comp = min(n_components, data.shape[0], data.shape[1])
    if n_comp < 1 or data.shape[1] < 2:
        logger.warning(f"Too few complete sites for PCA: {data.shape[1]}")
        return np.nan

    pca = PCA(n_components=n_comp)
    scores = pd.DataFrame(pca.fit_transform(data.to_numpy()), index=data.index)

    labels = groups.loc[scores.index].astype(str)
    centroids = scores.groupby(labels).mean()
    if len(centroids) < 2:
        return np.nan

    within = np.mean([
        np.sqrt(((scores.loc[labels == g] - centroids.loc[g]) ** 2).sum(axis=1)).mean()
        for g in centroids.index
    ])
    c = centroids.to_numpy()
    between = np.mean([
        np.sqrt(((c[i] - c[j]) ** 2).sum())
        for i in range(len(c)) for j in range(i + 1, len(c))
    ])
    return float(between / within) if within > 0 else np.inf


def evaluate_correction(
    before: pd.DataFrame,
    after: pd.DataFrame,
    groups: pd.Series,
    controls: Iterable[str],
) -> CorrectionMetrics:
    """
    Assess whether correction removed nuisance variation without erasing biology.

    Args:
        before: Matrix before correction
        after: Matrix after correction
        groups: Group label per sample
        controls: Control site keys used for correction

    Returns:
        CorrectionMetrics with assessment results
    """
    logger.info("Validating batch correction")

    warnings = []
    ctl = [c for c in controls if c in before.index and c in after.index]

    ctl_before = median_site_sd(before.loc[ctl])
    ctl_after = median_site_sd(after.loc[ctl])
    wg_before = within_group_sd(before, groups)
    wg_after = within_group_sd(after, groups)

    ctl_improvement = (ctl_before - ctl_after) / ctl_before if ctl_before > 0 else 0
    wg_improvement = (wg_before - wg_after) / wg_before if wg_before > 0 else 0

    if ctl_improvement < 0:
        warnings.append("Control-site spread increased after correction")
    if wg_improvement < 0:
        warnings.append("Within-group spread increased after correction")

    sep_before = calculate_group_separation(before, groups)
    sep_after = calculate_group_separation(after, groups)
    ratio = sep_after / sep_before if sep_before and sep_before > 0 else np.nan

    if ratio < 0.5:
        warnings.append(f"Group separation in PCA space decreased by {(1 - ratio) * 100:.1f}% - "
                        "biological signal may have been removed")

    metrics = CorrectionMetrics(
        control_sd_before=ctl_before,
        control_sd_after=ctl_after,
        within_group_sd_before=wg_before,
        within_group_sd_after=wg_after,
        control_sd_improvement=ctl_improvement,
        within_group_sd_improvement=wg_improvement,
        group_separation_before=sep_before,
        group_separation_after=sep_after,
        separation_ratio=ratio,
        warnings=warnings,
    )

    logger.info(f"Control-site SD: {ctl_before:.3f} -> {ctl_after:.3f} "
                f"({ctl_improvement * 100:.1f}% improvement)")
    logger.info(f"Within-group SD: {wg_before:.3f} -> {wg_after:.3f}")
    logger.info(f"Group separation ratio: {ratio:.2f}")

    for w in warnings:
        logger.warning(w)

    if metrics.passed:
        logger.info("Validation PASSED")
    else:
        logger.warning("Validation FAILED - review warnings")

    return metrics


def generate_qc_report(
    metrics: CorrectionMetrics,
    method_log: List[str],
    output_path: str,
) -> None:
    """
    Generate HTML QC report.

    Args:
        metrics: CorrectionMetrics from evaluate_correction
        method_log: List of processing steps applied
        output_path: Path to save HTML report
    """
    html = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>Batch Correction QC Report</title>
        <style>
            body {{ font-family: Arial, sans-serif; margin: 40px; }}
            h1 {{ color: #333; }}
            h2 {{ color: #666; border-bottom: 1px solid #ccc; }}
            .metric {{ margin: 10px 0; }}
            .metric-name {{ font-weight: bold; }}
            .metric-value {{ color: #0066cc; }}
            .warning {{ color: #cc6600; background: #fff3e0; padding: 10px; margin: 5px 0; }}
            .passed {{ color: #006600; background: #e0ffe0; padding: 10px; }}
            .failed {{ color: #cc0000; background: #ffe0e0; padding: 10px; }}
            table {{ border-collapse: collapse; margin: 20px 0; }}
            th, td {{ border: 1px solid #ccc; padding: 8px; text-align: left; }}
            th {{ background: #f0f0f0; }}
        </style>
    </head>
    <body>
        <h1>Batch Correction QC Report</h1>

        <h2>Validation Status</h2>
        <div class="{'passed' if metrics.passed else 'failed'}">
            {'PASSED' if metrics.passed else 'FAILED'} -
            {'All validation criteria met' if metrics.passed else 'Review warnings below'}
        </div>

        <h2>Spread Metrics</h2>
        <table>
            <tr>
                <th>Sites</th>
                <th>SD Before</th>
                <th>SD After</th>
                <th>Improvement</th>
            </tr>
            <tr>
                <td>Control sites</td>
                <td>{metrics.control_sd_before:.3f}</td>
                <td>{metrics.control_sd_after:.3f}</td>
                <td>{metrics.control_sd_improvement * 100:.1f}%</td>
            </tr>
            <tr>
                <td>All sites (within group)</td>
                <td>{metrics.within_group_sd_before:.3f}</td>
                <td>{metrics.within_group_sd_after:.3f}</td>
                <td>{metrics.within_group_sd_improvement * 100:.1f}%</td>
            </tr>
        </table>

        <h2>PCA Metrics</h2>
        <div class="metric">
            <span class="metric-name">Group Separation Before:</span>
            <span class="metric-value">{metrics.group_separation_before:.2f}</span>
        </div>
        <div class="metric">
            <span class="metric-name">Group Separation After:</span>
            <span class="metric-value">{metrics.group_separation_after:.2f}</span>
        </div>
        <div class="metric">
            <span class="metric-name">Separation Ratio:</span>
            <span class="metric-value">{metrics.separation_ratio:.2f}</span>
            <br><small>(Should not drop far below 1.0; that suggests biological groups are collapsing)</small>
        </div>

        <h2>Warnings</h2>
        {''.join(f'<div class="warning">{w}</div>' for w in metrics.warnings) if metrics.warnings else '<p>No warnings</p>'}

        <h2>Processing Steps</h2>
        <ol>
            {''.join(f'<li>{step}</li>' for step in method_log)}
        </ol>

    </body>
    </html>
    """

    with open(output_path, 'w') as f:
        f.write(html)

    logger.info(f"QC report saved to {output_path}")
