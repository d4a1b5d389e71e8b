"""
Conversion of fitted models and plain records into standardized analysis data.

Extraction is a two-step process:

1.  **Strategy lookup**: A dispatch table keyed on (analysis type, input class)
    selects the function that pulls raw numeric structures out of the input.
    Entries are checked in registration order with `isinstance`, so more
    specific classes are registered first. New input shapes are added with
    the `register_extractor` decorator.
2.  **Post-processing**: The raw structures are cross-validated against the
    variable descriptions and turned into a `FactorAnalysisData` or
    `MixtureAnalysisData` record, including per-factor indicator selection
    with the emergency rule.

Supported inputs:
    fa: sklearn `FactorAnalysis` and `PCA`, `pandas.DataFrame`,
        `numpy.ndarray` and dicts with a 'loadings' entry.
    gm: sklearn `GaussianMixture`, dicts holding a fitted mixture under
        'model' (optionally with 'data' to score) and dicts with 'means'.
"""

# =============================================================================
# HEADER (Imports, Logger)
# =============================================================================
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA, FactorAnalysis
from sklearn.mixture import GaussianMixture

from . import constants
from .config import (
    FAInterpretationArgs,
    GMInterpretationArgs,
    InterpretationArgs,
    build_interpretation_args,
)
from .exceptions import DataMismatchError, ParameterValidationError
from .models import (
    AnalysisData,
    FactorAnalysisData,
    FactorSummary,
    MixtureAnalysisData,
    component_ids,
)
from .registry import validate_analysis_type

logger = logging.getLogger(__name__)

FA_RECORD_KEYS = ("loadings", "factor_cor_mat", "Phi", "variable_names")
GM_RECORD_KEYS = (
    "means",
    "covariances",
    "proportions",
    "memberships",
    "classification",
    "uncertainty",
    "n_observations",
    "covariance_type",
    "variable_names",
    "bic",
    "loglik",
    "icl",
)


# =============================================================================
# DISPATCH TABLE
# =============================================================================
@dataclass(frozen=True)
class ExtractorEntry:
    analysis_type: str
    input_type: type
    extract: Callable[[Any], Dict[str, Any]]


EXTRACTORS: List[ExtractorEntry] = []


def register_extractor(analysis_type: str, input_type: type):
    """Registers a raw extraction function for an (analysis type, input class) pair."""

    def decorator(func: Callable[[Any], Dict[str, Any]]):
        EXTRACTORS.append(ExtractorEntry(analysis_type, input_type, func))
        return func

    return decorator


def resolve_extractor(analysis_type: str, fit_results: Any) -> ExtractorEntry:
    """
    Finds the extraction strategy for an input.

    Raises:
        ParameterValidationError: If no strategy handles the input class.
    """
    for entry in EXTRACTORS:
        if entry.analysis_type == analysis_type and isinstance(
            fit_results, entry.input_type
        ):
            return entry
    supported = ", ".join(
        e.input_type.__name__ for e in EXTRACTORS if e.analysis_type == analysis_type
    )
    raise ParameterValidationError(
        f"Cannot extract '{analysis_type}' data from an object of type "
        f"{type(fit_results).__name__}. Supported inputs: {supported}."
    )


def infer_analysis_type(fit_results: Any) -> Optional[str]:
    """Guesses the analysis type from a known model class or record layout."""
    if isinstance(fit_results, (FactorAnalysis, PCA)):
        return constants.FA
    if isinstance(fit_results, GaussianMixture):
        return constants.GM
    if isinstance(fit_results, Mapping):
        if "loadings" in fit_results:
            return constants.FA
        if "means" in fit_results or isinstance(
            fit_results.get("model"), GaussianMixture
        ):
            return constants.GM
    # Bare matrices and other inputs only one analysis type accepts.
    matches = {
        entry.analysis_type
        for entry in EXTRACTORS
        if isinstance(fit_results, entry.input_type)
    }
    if len(matches) == 1:
        return matches.pop()
    return None


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================
def _ignore_unknown_keys(record: Mapping[str, Any], known: Sequence[str]) -> None:
    unknown = [k for k in record if k not in known]
    if unknown:
        logger.warning(f"Ignoring unrecognized keys in input record: {unknown}")


def _cluster_labels(classification: Any, n_clusters: int) -> np.ndarray:
    """Validates hard assignments as 0-based integer cluster indices."""
    labels = np.asarray(classification, dtype=float).ravel()
    if labels.size and not np.all(np.isfinite(labels) & (labels == np.round(labels))):
        raise DataMismatchError("Classification must contain integer cluster indices.")
    labels = labels.astype(int)
    if labels.size and (labels.min() < 0 or labels.max() >= n_clusters):
        raise DataMismatchError(
            f"Classification values must lie in 0..{n_clusters - 1}, got "
            f"{labels.min()}..{labels.max()}. Labels are 0-based cluster indices."
        )
    return labels


def _check_fitted(model: Any, attribute: str) -> None:
    if not hasattr(model, attribute):
        raise ParameterValidationError(
            f"{type(model).__name__} has not been fitted (missing '{attribute}')."
        )


def _feature_names(model: Any) -> Optional[List[str]]:
    names = getattr(model, "feature_names_in_", None)
    return [str(n) for n in names] if names is not None else None


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if not isinstance(value, str) and pd.isna(value):
        return True
    return not str(value).strip()


def normalize_variable_info(variable_info: Any) -> pd.DataFrame:
    """
    Returns variable descriptions as a 'variable'/'description' DataFrame.

    A {variable: description} dict is accepted as a shortcut.

    Raises:
        DataMismatchError: On missing columns, duplicates or blank descriptions.
        ParameterValidationError: If the input is neither a DataFrame nor a dict.
    """
    if isinstance(variable_info, Mapping):
        info = pd.DataFrame(
            {
                "variable": list(variable_info.keys()),
                "description": list(variable_info.values()),
            }
        )
    elif isinstance(variable_info, pd.DataFrame):
        missing = [c for c in ("variable", "description") if c not in variable_info]
        if missing:
            raise DataMismatchError(
                f"variable_info must contain 'variable' and 'description' columns; "
                f"missing: {', '.join(missing)}."
            )
        info = variable_info[["variable", "description"]].copy()
    else:
        raise ParameterValidationError(
            "variable_info must be a DataFrame with 'variable' and 'description' "
            f"columns or a dict, got {type(variable_info).__name__}."
        )

    if info.empty:
        raise DataMismatchError("variable_info is empty.")
    info["variable"] = info["variable"].astype(str)
    duplicated = info["variable"][info["variable"].duplicated()].tolist()
    if duplicated:
        raise DataMismatchError(f"Duplicate variables in variable_info: {duplicated}.")
    blank = [
        var for var, desc in zip(info["variable"], info["description"]) if _is_blank(desc)
    ]
    if blank:
        raise DataMismatchError(f"Blank descriptions in variable_info for: {blank}.")
    info["description"] = info["description"].astype(str)
    return info.reset_index(drop=True)


def align_variable_info(
    info: pd.DataFrame, variable_names: Optional[Sequence[str]], n_variables: int
) -> Tuple[List[str], pd.DataFrame]:
    """
    Cross-validates descriptions against the model's variables.

    Args:
        info: Normalized variable descriptions.
        variable_names: Variable names carried by the model, if any.
        n_variables: Dimensionality of the extracted data.

    Returns:
        The variable names in model order and the descriptions reordered to match.

    Raises:
        DataMismatchError: If the row count or the variable names disagree.
    """
    if len(info) != n_variables:
        raise DataMismatchError(
            f"variable_info has {len(info)} rows but the model has "
            f"{n_variables} variables."
        )
    if variable_names is None:
        return info["variable"].tolist(), info

    names = [str(n) for n in variable_names]
    described = set(info["variable"])
    not_described = [n for n in names if n not in described]
    not_in_model = [v for v in info["variable"] if v not in set(names)]
    if not_described or not_in_model:
        parts = []
        if not_described:
            parts.append(f"variables without description: {not_described}")
        if not_in_model:
            parts.append(f"described variables not in the model: {not_in_model}")
        raise DataMismatchError("variable_info does not match the model; " + "; ".join(parts) + ".")
    aligned = info.set_index("variable").loc[names].reset_index()
    return names, aligned


def _model_names(raw: Dict[str, Any], row_names: Optional[List[str]]) -> Optional[List[str]]:
    names = raw.get("variable_names")
    if names is None:
        return row_names
    return [str(n) for n in names]


def _as_matrix(values: Any, what: str) -> Tuple[np.ndarray, Optional[List[str]], Optional[List[str]]]:
    """Returns a 2-D float array with row and column labels when available."""
    rows: Optional[List[str]] = None
    cols: Optional[List[str]] = None
    if isinstance(values, pd.DataFrame):
        if not isinstance(values.index, pd.RangeIndex):
            rows = [str(i) for i in values.index]
        if not isinstance(values.columns, pd.RangeIndex):
            cols = [str(c) for c in values.columns]
        values = values.to_numpy()
    matrix = np.asarray(values, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix.reshape(-1, 1)
    if matrix.ndim != 2 or matrix.size == 0:
        raise ParameterValidationError(f"{what} must be a non-empty 2-D matrix.")
    if not np.all(np.isfinite(matrix)):
        raise ParameterValidationError(f"{what} contains missing or infinite values.")
    return matrix, rows, cols


# =============================================================================
# FACTOR ANALYSIS STRATEGIES
# =============================================================================
@register_extractor(constants.FA, FactorAnalysis)
def _extract_sklearn_factor_analysis(model: FactorAnalysis) -> Dict[str, Any]:
    _check_fitted(model, "components_")
    return {"loadings": model.components_.T, "variable_names": _feature_names(model)}


@register_extractor(constants.FA, PCA)
def _extract_sklearn_pca(model: PCA) -> Dict[str, Any]:
    _check_fitted(model, "components_")
    # Scaling eigenvectors by the root eigenvalues gives component loadings.
    loadings = model.components_.T * np.sqrt(model.explained_variance_)
    return {"loadings": loadings, "variable_names": _feature_names(model)}


@register_extractor(constants.FA, pd.DataFrame)
def _extract_loadings_frame(loadings: pd.DataFrame) -> Dict[str, Any]:
    return {"loadings": loadings}


@register_extractor(constants.FA, np.ndarray)
def _extract_loadings_array(loadings: np.ndarray) -> Dict[str, Any]:
    return {"loadings": loadings}


@register_extractor(constants.FA, dict)
def _extract_fa_record(record: Dict[str, Any]) -> Dict[str, Any]:
    if "loadings" not in record:
        raise ParameterValidationError("Factor analysis record must contain 'loadings'.")
    _ignore_unknown_keys(record, FA_RECORD_KEYS)
    correlations = record.get("factor_cor_mat")
    if correlations is None:
        correlations = record.get("Phi")
    return {
        "loadings": record["loadings"],
        "variable_names": record.get("variable_names"),
        "factor_correlations": correlations,
    }


# =============================================================================
# GAUSSIAN MIXTURE STRATEGIES
# =============================================================================
def expand_covariances(
    covariances: np.ndarray, covariance_type: str, n_clusters: int, n_variables: int
) -> np.ndarray:
    """Expands sklearn's compact covariance storage to (k, d, d)."""
    cov = np.asarray(covariances, dtype=float)
    if covariance_type == "full":
        return cov
    if covariance_type == "tied":
        return np.repeat(cov[np.newaxis, :, :], n_clusters, axis=0)
    if covariance_type == "diag":
        return np.stack([np.diag(row) for row in cov])
    if covariance_type == "spherical":
        return np.stack([np.eye(n_variables) * var for var in cov])
    raise ParameterValidationError(f"Unknown covariance_type '{covariance_type}'.")


@register_extractor(constants.GM, GaussianMixture)
def _extract_sklearn_mixture(model: GaussianMixture) -> Dict[str, Any]:
    _check_fitted(model, "means_")
    n_clusters, n_variables = model.means_.shape
    return {
        "means": model.means_.T,
        "covariances": expand_covariances(
            model.covariances_, model.covariance_type, n_clusters, n_variables
        ),
        "proportions": model.weights_,
        "covariance_type": model.covariance_type,
        "variable_names": _feature_names(model),
    }


def _score_mixture(model: GaussianMixture, data: Any) -> Dict[str, Any]:
    """Adds memberships and fit statistics computed on the training data."""
    raw = _extract_sklearn_mixture(model)
    if isinstance(data, pd.DataFrame) and raw["variable_names"] is None:
        raw["variable_names"] = [str(c) for c in data.columns]
    memberships = model.predict_proba(data)
    n_obs = memberships.shape[0]
    raw.update(
        {
            "memberships": memberships,
            "n_observations": n_obs,
            "bic": float(model.bic(data)),
            "loglik": float(model.score(data) * n_obs),
        }
    )
    return raw


@register_extractor(constants.GM, dict)
def _extract_gm_record(record: Dict[str, Any]) -> Dict[str, Any]:
    model = record.get("model")
    if model is not None:
        if not isinstance(model, GaussianMixture):
            raise ParameterValidationError(
                f"'model' must be a fitted GaussianMixture, got {type(model).__name__}."
            )
        _ignore_unknown_keys(record, ("model", "data"))
        if record.get("data") is None:
            return _extract_sklearn_mixture(model)
        return _score_mixture(model, record["data"])

    if "means" not in record:
        raise ParameterValidationError(
            "Gaussian mixture record must contain 'means' or a fitted 'model'."
        )
    _ignore_unknown_keys(record, GM_RECORD_KEYS)
    return {key: record.get(key) for key in GM_RECORD_KEYS}


# =============================================================================
# POST-PROCESSING
# =============================================================================
def summarize_factor(
    loadings: pd.Series,
    descriptions: Mapping[str, str],
    cutoff: float,
    n_emergency: int,
    sort_loadings: bool = True,
) -> FactorSummary:
    """
    Selects the indicators used to interpret one factor.

    Variables with |loading| >= cutoff are indicators. When none qualifies,
    the emergency rule takes the top `n_emergency` variables by absolute
    loading; with `n_emergency == 0` the factor is marked undefined and left
    without indicators.

    Args:
        loadings: Loadings of one factor, indexed by variable name.
        descriptions: Variable name -> description.
        cutoff: Minimum absolute loading counted as significant.
        n_emergency: Number of indicators used by the emergency rule.
        sort_loadings: Whether to order indicators by absolute loading.

    Returns:
        A `FactorSummary` for the factor.
    """
    n_variables = len(loadings)
    variance = float((loadings**2).sum() / n_variables)
    magnitude = loadings.abs()
    selected = loadings[magnitude >= cutoff]
    used_emergency = False
    status = constants.STATUS_DEFINED

    if selected.empty:
        if n_emergency == 0:
            status = constants.STATUS_UNDEFINED
        else:
            top = magnitude.sort_values(ascending=False, kind="mergesort").index
            selected = loadings.loc[top[: min(n_emergency, n_variables)]]
            used_emergency = True
            status = constants.STATUS_EMERGENCY

    if sort_loadings:
        order = selected.abs().sort_values(ascending=False, kind="mergesort").index
        selected = selected.loc[order]
    else:
        selected = selected.loc[[v for v in loadings.index if v in selected.index]]

    indicators = pd.DataFrame(
        {
            "variable": list(selected.index),
            "loading": selected.to_numpy(dtype=float),
            "description": [descriptions[v] for v in selected.index],
        }
    )
    return FactorSummary(
        indicators=indicators,
        used_emergency_rule=used_emergency,
        variance_explained=variance,
        status=status,
    )


def _build_fa_data(
    raw: Dict[str, Any], info: pd.DataFrame, args: FAInterpretationArgs
) -> FactorAnalysisData:
    matrix, row_names, col_names = _as_matrix(raw["loadings"], "loadings")
    n_variables, n_factors = matrix.shape
    names, info = align_variable_info(info, _model_names(raw, row_names), n_variables)
    ids = component_ids(constants.FA, n_factors)
    labels = tuple(col_names) if col_names else tuple(ids)
    loadings = pd.DataFrame(matrix, index=names, columns=ids)

    descriptions = dict(zip(info["variable"], info["description"]))
    summaries = {
        cid: summarize_factor(
            loadings[cid], descriptions, args.cutoff, args.n_emergency, args.sort_loadings
        )
        for cid in ids
    }
    for cid, summary in summaries.items():
        if summary.status == constants.STATUS_EMERGENCY:
            logger.info(
                f"{cid}: no loading reaches the cutoff of {args.cutoff}; "
                f"using the top {len(summary.indicators)} variables."
            )
        elif summary.status == constants.STATUS_UNDEFINED:
            logger.info(f"{cid}: no loading reaches the cutoff of {args.cutoff}; factor is undefined.")

    correlations = None
    if raw.get("factor_correlations") is not None:
        phi, _, _ = _as_matrix(raw["factor_correlations"], "factor correlation matrix")
        if phi.shape != (n_factors, n_factors):
            raise DataMismatchError(
                f"Factor correlation matrix has shape {phi.shape}, expected "
                f"({n_factors}, {n_factors})."
            )
        correlations = pd.DataFrame(phi, index=ids, columns=ids)

    return FactorAnalysisData(
        analysis_type=constants.FA,
        component_ids=tuple(ids),
        variable_names=tuple(names),
        variable_info=info,
        loadings=loadings,
        factor_summaries=summaries,
        factor_correlations=correlations,
        component_labels=labels,
        cutoff=args.cutoff,
        n_emergency=args.n_emergency,
        hide_low_loadings=args.hide_low_loadings,
        sort_loadings=args.sort_loadings,
    )


def _mixture_covariances(raw_cov: Any, n_clusters: int, n_variables: int) -> np.ndarray:
    if raw_cov is None:
        logger.info("No covariances supplied; using identity matrices.")
        return np.repeat(np.eye(n_variables)[np.newaxis, :, :], n_clusters, axis=0)
    cov = np.asarray(raw_cov, dtype=float)
    if cov.shape == (n_clusters, n_variables, n_variables):
        return cov
    if cov.shape == (n_variables, n_variables, n_clusters):
        # Variables-first layout, one slice per cluster along the last axis.
        return np.moveaxis(cov, -1, 0)
    raise DataMismatchError(
        f"Covariances have shape {cov.shape}, expected "
        f"({n_clusters}, {n_variables}, {n_variables})."
    )


def _build_gm_data(
    raw: Dict[str, Any], info: pd.DataFrame, args: GMInterpretationArgs
) -> MixtureAnalysisData:
    matrix, row_names, _ = _as_matrix(raw["means"], "means")
    n_variables, n_clusters = matrix.shape
    names, info = align_variable_info(info, _model_names(raw, row_names), n_variables)
    ids = component_ids(constants.GM, n_clusters)

    if args.n_clusters is not None and args.n_clusters != n_clusters:
        raise ParameterValidationError(
            f"n_clusters is {args.n_clusters} but the model has {n_clusters} clusters."
        )

    covariances = _mixture_covariances(raw.get("covariances"), n_clusters, n_variables)

    if raw.get("proportions") is None:
        proportions = np.full(n_clusters, 1.0 / n_clusters)
    else:
        proportions = np.asarray(raw["proportions"], dtype=float).ravel()
        if proportions.shape[0] != n_clusters:
            raise DataMismatchError(
                f"Got {proportions.shape[0]} proportions for {n_clusters} clusters."
            )
        if abs(proportions.sum() - 1.0) > 0.01:
            logger.warning(f"Cluster proportions sum to {proportions.sum():.3f}, not 1.")

    memberships = raw.get("memberships")
    classification = raw.get("classification")
    uncertainty = raw.get("uncertainty")
    if memberships is not None:
        memberships = np.asarray(memberships, dtype=float)
        if memberships.ndim != 2 or memberships.shape[1] != n_clusters:
            raise DataMismatchError(
                f"Memberships must have {n_clusters} columns, got shape {memberships.shape}."
            )
        if classification is None:
            classification = memberships.argmax(axis=1)
        if uncertainty is None:
            uncertainty = 1.0 - memberships.max(axis=1)
    if classification is not None:
        classification = _cluster_labels(classification, n_clusters)
    if uncertainty is not None:
        uncertainty = np.asarray(uncertainty, dtype=float).ravel()
    lengths = {
        name: len(values)
        for name, values in (
            ("memberships", memberships),
            ("classification", classification),
            ("uncertainty", uncertainty),
        )
        if values is not None
    }
    if len(set(lengths.values())) > 1:
        raise DataMismatchError(
            f"Observation-level arrays disagree in length: {lengths}."
        )

    n_observations = raw.get("n_observations")
    if n_observations is None:
        for values in (memberships, classification, uncertainty):
            if values is not None:
                n_observations = len(values)
                break

    covariance_type = raw.get("covariance_type")
    if args.covariance_type and covariance_type and args.covariance_type != covariance_type:
        logger.warning(
            f"covariance_type '{args.covariance_type}' differs from the model's "
            f"'{covariance_type}'; using the model's."
        )
    covariance_type = covariance_type or args.covariance_type

    if args.profile_variables is not None:
        unknown = [v for v in args.profile_variables if v not in names]
        if unknown:
            raise DataMismatchError(f"profile_variables not found in the model: {unknown}.")

    fit_statistics = {
        key: float(raw[key]) for key in ("bic", "loglik", "icl") if raw.get(key) is not None
    }

    return MixtureAnalysisData(
        analysis_type=constants.GM,
        component_ids=tuple(ids),
        variable_names=tuple(names),
        variable_info=info,
        means=pd.DataFrame(matrix, index=names, columns=ids),
        covariances=covariances,
        proportions=proportions,
        memberships=memberships,
        classification=classification,
        uncertainty=uncertainty,
        covariance_type=covariance_type,
        n_observations=int(n_observations) if n_observations is not None else None,
        fit_statistics=fit_statistics,
        min_cluster_size=args.min_cluster_size,
        separation_threshold=args.separation_threshold,
        profile_variables=args.profile_variables,
        weight_by_uncertainty=args.weight_by_uncertainty,
    )


BUILDERS: Dict[str, Callable[..., AnalysisData]] = {
    constants.FA: _build_fa_data,
    constants.GM: _build_gm_data,
}

ARGS_TYPES = {FAInterpretationArgs: constants.FA, GMInterpretationArgs: constants.GM}


# =============================================================================
# ENTRY POINT
# =============================================================================
def extract(
    fit_results: Any,
    variable_info: Any,
    config: Optional[InterpretationArgs] = None,
    analysis_type: Optional[str] = None,
) -> AnalysisData:
    """
    Builds the standardized analysis record for a fitted model or record.

    Args:
        fit_results: The model object or structured record to extract from.
        variable_info: Variable descriptions (DataFrame or dict).
        config: Resolved interpretation arguments; defaults are used when omitted.
        analysis_type: The analysis type; taken from `config` or inferred
            from the input when omitted.

    Returns:
        A `FactorAnalysisData` or `MixtureAnalysisData` record.

    Raises:
        ParameterValidationError: If the input shape or configuration is invalid.
        DataMismatchError: If variable descriptions disagree with the model.
    """
    if analysis_type is None and config is not None:
        analysis_type = ARGS_TYPES.get(type(config))
    if analysis_type is None:
        analysis_type = infer_analysis_type(fit_results)
    if analysis_type is None:
        raise ParameterValidationError(
            f"Cannot infer analysis_type for input of type {type(fit_results).__name__}; "
            "pass analysis_type explicitly."
        )
    analysis_type = validate_analysis_type(analysis_type)
    if config is None:
        config = build_interpretation_args(analysis_type)
    elif ARGS_TYPES.get(type(config)) != analysis_type:
        raise ParameterValidationError(
            f"{type(config).__name__} cannot configure analysis_type '{analysis_type}'."
        )

    entry = resolve_extractor(analysis_type, fit_results)
    info = normalize_variable_info(variable_info)
    raw = entry.extract(fit_results)
    data = BUILDERS[analysis_type](raw, info, config)
    logger.info(
        f"Extracted {data.n_components} {data.component_kind.lower()}(s) over "
        f"{data.n_variables} variables from {type(fit_results).__name__}."
    )
    return data
