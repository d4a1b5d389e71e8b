"""
Data-quality checks run on the standardized analysis data.

Each analysis type registers an ordered list of independent checks in
`DIAGNOSTIC_CHECKS`. A check reads the `AnalysisData` record and returns a
`CheckResult`; triggered checks contribute a warning in declaration order.
Checks run after the LLM call and never influence the prompt.

Factor analysis checks:
    cross_loadings, orphaned_variables, emergency_rule, undefined_factors.
Gaussian mixture checks:
    small_clusters, unbalanced_sizes, high_uncertainty, uncertain_share,
    poor_separation.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from . import constants
from .exceptions import DiagnosticWarning
from .models import (
    AnalysisData,
    CheckResult,
    Diagnostics,
    FactorAnalysisData,
    MixtureAnalysisData,
)
from .prompts import format_loading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticCheck:
    name: str
    run: Callable[[Any], CheckResult]


def _not_triggered() -> CheckResult:
    return CheckResult(triggered=False)


# =============================================================================
# FACTOR ANALYSIS CHECKS
# =============================================================================
def find_cross_loadings(loadings: pd.DataFrame, cutoff: float) -> Dict[str, List[str]]:
    """Variables loading at or above the cutoff on more than one factor."""
    found = {}
    for var, row in loadings.iterrows():
        high = [f"{cid} ({format_loading(v)})" for cid, v in row.items() if abs(v) >= cutoff]
        if len(high) > 1:
            found[str(var)] = high
    return found


def find_no_loadings(loadings: pd.DataFrame, cutoff: float) -> Dict[str, str]:
    """Variables loading on no factor, with their highest absolute loading."""
    found = {}
    for var, row in loadings.iterrows():
        magnitudes = row.abs()
        if (magnitudes >= cutoff).any():
            continue
        best = magnitudes.idxmax()
        found[str(var)] = f"{best} = {format_loading(magnitudes[best])}"
    return found


def _check_cross_loadings(data: FactorAnalysisData) -> CheckResult:
    found = find_cross_loadings(data.loadings, data.cutoff)
    if not found:
        return _not_triggered()
    listing = "; ".join(f"{var}: {', '.join(factors)}" for var, factors in found.items())
    return CheckResult(
        triggered=True,
        affected=tuple(found),
        details={"cross_loadings": found},
        message=f"{len(found)} variable(s) load on more than one factor (>= {data.cutoff}): {listing}",
    )


def _check_orphaned_variables(data: FactorAnalysisData) -> CheckResult:
    found = find_no_loadings(data.loadings, data.cutoff)
    if not found:
        return _not_triggered()
    listing = "; ".join(f"{var} (highest: {best})" for var, best in found.items())
    return CheckResult(
        triggered=True,
        affected=tuple(found),
        details={"no_loadings": found},
        message=f"{len(found)} variable(s) do not load on any factor (>= {data.cutoff}): {listing}",
    )


def _check_emergency_rule(data: FactorAnalysisData) -> CheckResult:
    used = {
        cid: len(s.indicators)
        for cid, s in data.factor_summaries.items()
        if s.used_emergency_rule
    }
    if not used:
        return _not_triggered()
    listing = ", ".join(f"{cid} (top {n})" for cid, n in used.items())
    return CheckResult(
        triggered=True,
        affected=tuple(used),
        message=(
            f"Emergency rule applied to {listing}: no loading reaches the cutoff of "
            f"{data.cutoff}, so the strongest loading variables were used. These "
            f"interpretations are marked{constants.NOT_SIGNIFICANT_SUFFIX} and should be "
            "treated with caution."
        ),
    )


def _check_undefined_factors(data: FactorAnalysisData) -> CheckResult:
    undefined = [
        cid
        for cid, s in data.factor_summaries.items()
        if s.status == constants.STATUS_UNDEFINED
    ]
    if not undefined:
        return _not_triggered()
    return CheckResult(
        triggered=True,
        affected=tuple(undefined),
        message=(
            f"{', '.join(undefined)} have no loading at or above {data.cutoff} and were left "
            "undefined."
        ),
    )


# =============================================================================
# GAUSSIAN MIXTURE CHECKS
# =============================================================================
def cluster_separation(data: MixtureAnalysisData) -> Optional[np.ndarray]:
    """
    Pairwise Mahalanobis distances between cluster means.

    Each pair uses the average of the two cluster covariances. When that
    matrix is singular the Euclidean distance is used instead.

    Returns:
        A symmetric (k, k) matrix, or None for fewer than two clusters.
    """
    k = data.n_components
    if k < 2:
        return None
    means = data.means.to_numpy()
    distances = np.zeros((k, k))
    for i in range(k - 1):
        for j in range(i + 1, k):
            diff = means[:, i] - means[:, j]
            avg_cov = (data.covariances[i] + data.covariances[j]) / 2
            try:
                distance = float(np.sqrt(max(0.0, diff @ np.linalg.solve(avg_cov, diff))))
            except np.linalg.LinAlgError:
                distance = float(np.linalg.norm(diff))
            distances[i, j] = distances[j, i] = distance
    return distances


def _check_small_clusters(data: MixtureAnalysisData) -> CheckResult:
    sizes = data.cluster_sizes()
    if sizes is None:
        return _not_triggered()
    small = [
        (cid, size)
        for cid, size in zip(data.component_ids, sizes)
        if size < data.min_cluster_size
    ]
    if not small:
        return _not_triggered()
    listing = ", ".join(f"{cid} (n={round(size)})" for cid, size in small)
    return CheckResult(
        triggered=True,
        affected=tuple(cid for cid, _ in small),
        details={"sizes": {cid: float(size) for cid, size in small}},
        message=f"Small clusters detected: {listing}",
    )


def _check_unbalanced_sizes(data: MixtureAnalysisData) -> CheckResult:
    smallest = float(np.min(data.proportions))
    ratio = float("inf") if smallest <= 0 else float(np.max(data.proportions)) / smallest
    if ratio <= constants.UNBALANCED_RATIO_LIMIT:
        return _not_triggered()
    return CheckResult(
        triggered=True,
        affected=(data.component_ids[int(np.argmin(data.proportions))],),
        details={"ratio": ratio},
        message=f"Highly unbalanced cluster sizes (ratio: {ratio:.1f}:1)",
    )


def _check_high_uncertainty(data: MixtureAnalysisData) -> CheckResult:
    if data.uncertainty is None:
        return _not_triggered()
    average = float(np.nanmean(data.uncertainty))
    if average <= data.separation_threshold:
        return _not_triggered()
    return CheckResult(
        triggered=True,
        details={"average_uncertainty": average},
        message=f"High average uncertainty ({average:.3f}) suggests overlapping clusters",
    )


def _check_uncertain_share(data: MixtureAnalysisData) -> CheckResult:
    if data.uncertainty is None:
        return _not_triggered()
    share = float(np.nanmean(data.uncertainty > data.separation_threshold))
    if share <= constants.UNCERTAIN_SHARE_LIMIT:
        return _not_triggered()
    return CheckResult(
        triggered=True,
        details={"uncertain_share": share},
        message=f"{share * 100:.1f}% of observations have uncertain cluster assignments",
    )


def _check_poor_separation(data: MixtureAnalysisData) -> CheckResult:
    distances = cluster_separation(data)
    if distances is None:
        return _not_triggered()
    upper = np.triu_indices(data.n_components, k=1)
    minimum = float(distances[upper].min())
    if minimum >= constants.SEPARATION_DISTANCE_LIMIT:
        return _not_triggered()
    pairs = [
        f"{data.component_ids[i]}-{data.component_ids[j]}"
        for i, j in zip(*upper)
        if distances[i, j] < constants.SEPARATION_DISTANCE_LIMIT
    ]
    return CheckResult(
        triggered=True,
        affected=tuple(pairs),
        details={"min_separation": minimum},
        message=(
            f"Poor cluster separation detected (minimum distance: {minimum:.2f}); "
            f"overlapping cluster pairs: {', '.join(pairs)}"
        ),
    )


# =============================================================================
# AUXILIARY INFORMATION
# =============================================================================
def distinguishing_variables(data: MixtureAnalysisData, top_n: int = 3) -> Dict[str, List[str]]:
    """
    Variables that set each cluster apart.

    The score of a variable is its distance from the overall mean plus its
    distance from the mean of the other clusters.
    """
    means = data.means
    overall = means.mean(axis=1)
    result = {}
    for cid in data.component_ids:
        others = means.drop(columns=cid)
        other_mean = others.mean(axis=1) if not others.empty else overall
        score = (means[cid] - overall).abs() + (means[cid] - other_mean).abs()
        top = score.sort_values(ascending=False, kind="mergesort").index[:top_n]
        result[cid] = [str(v) for v in top]
    return result


def _fa_info(data: FactorAnalysisData) -> Dict[str, Any]:
    return {
        "cross_loadings": find_cross_loadings(data.loadings, data.cutoff),
        "no_loadings": find_no_loadings(data.loadings, data.cutoff),
        "variance_explained": {
            cid: s.variance_explained for cid, s in data.factor_summaries.items()
        },
    }


def _gm_info(data: MixtureAnalysisData) -> Dict[str, Any]:
    statistics: Dict[str, Any] = {"n_clusters": data.n_components}
    statistics.update({k: round(v, 2) for k, v in data.fit_statistics.items()})
    if data.uncertainty is not None:
        statistics["avg_uncertainty"] = round(float(np.nanmean(data.uncertainty)), 3)
    distances = cluster_separation(data)
    if distances is not None:
        upper = np.triu_indices(data.n_components, k=1)
        statistics["min_separation"] = round(float(distances[upper].min()), 2)

    notes = []
    averages = data.average_uncertainty()
    if averages is not None:
        uncertain = [
            f"{cid} ({avg:.3f})"
            for cid, avg in zip(data.component_ids, averages)
            if not np.isnan(avg) and avg > data.separation_threshold
        ]
        if uncertain:
            notes.append(f"Clusters with high uncertainty: {', '.join(uncertain)}")
    if data.covariance_type == "full":
        notes.append(
            "Using the most complex covariance structure (full); consider simpler "
            "models if overfitting"
        )
    elif data.covariance_type == "spherical":
        notes.append("Using a spherical covariance structure; clusters are assumed round")
    return {
        "statistics": statistics,
        "notes": notes,
        "distinguishing_variables": distinguishing_variables(data),
    }


# =============================================================================
# REGISTRY AND ENTRY POINT
# =============================================================================
DIAGNOSTIC_CHECKS: Dict[str, List[DiagnosticCheck]] = {
    constants.FA: [
        DiagnosticCheck("cross_loadings", _check_cross_loadings),
        DiagnosticCheck("orphaned_variables", _check_orphaned_variables),
        DiagnosticCheck("emergency_rule", _check_emergency_rule),
        DiagnosticCheck("undefined_factors", _check_undefined_factors),
    ],
    constants.GM: [
        DiagnosticCheck("small_clusters", _check_small_clusters),
        DiagnosticCheck("unbalanced_sizes", _check_unbalanced_sizes),
        DiagnosticCheck("high_uncertainty", _check_high_uncertainty),
        DiagnosticCheck("uncertain_share", _check_uncertain_share),
        DiagnosticCheck("poor_separation", _check_poor_separation),
    ],
}

INFO_BUILDERS: Dict[str, Callable[[Any], Dict[str, Any]]] = {
    constants.FA: _fa_info,
    constants.GM: _gm_info,
}


def diagnose(data: AnalysisData, *, stacklevel: int = 2) -> Diagnostics:
    """
    Runs every registered check for the analysis type of `data`.

    Args:
        data: The standardized analysis record; it is only read.
        stacklevel: Passed to `warnings.warn` so warnings point at the caller.

    Returns:
        A `Diagnostics` record with warnings in check declaration order.
    """
    results: Dict[str, CheckResult] = {}
    messages: List[str] = []
    for check in DIAGNOSTIC_CHECKS.get(data.analysis_type, []):
        result = check.run(data)
        results[check.name] = result
        if result.triggered:
            messages.append(result.message)
            logger.info(f"Diagnostic '{check.name}': {result.message}")
            warnings.warn(result.message, DiagnosticWarning, stacklevel=stacklevel)
    info_builder = INFO_BUILDERS.get(data.analysis_type)
    info = info_builder(data) if info_builder else {}
    return Diagnostics(
        has_warnings=bool(messages),
        warnings=tuple(messages),
        info=info,
        checks=results,
    )
