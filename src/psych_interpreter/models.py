"""
Standardized records passed between the stages of the interpretation pipeline.

`AnalysisData` subclasses are built once by the extractor and then only read.
`ParsedResult`, `Diagnostics` and `Interpretation` carry the outputs of the
later stages. All records are frozen dataclasses; the chat session referenced
by an `Interpretation` is the only mutable object involved.
"""

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from . import constants

if TYPE_CHECKING:
    from .chat import ChatSession


def component_ids(analysis_type: str, n_components: int) -> List[str]:
    """Returns the canonical ids, e.g. ['Factor_1', 'Factor_2']."""
    kind = constants.COMPONENT_KINDS[analysis_type]
    return [f"{kind}_{i}" for i in range(1, n_components + 1)]


# =============================================================================
# ANALYSIS DATA
# =============================================================================
@dataclass(frozen=True)
class AnalysisData:
    """
    Fields shared by every analysis type.

    Attributes:
        analysis_type: The analysis type tag ('fa' or 'gm').
        component_ids: Canonical component ids in index order.
        variable_names: Observed variable names in model order.
        variable_info: DataFrame with 'variable' and 'description' columns,
            aligned with `variable_names`.
    """

    analysis_type: str
    component_ids: Tuple[str, ...]
    variable_names: Tuple[str, ...]
    variable_info: pd.DataFrame

    @property
    def n_components(self) -> int:
        return len(self.component_ids)

    @property
    def n_variables(self) -> int:
        return len(self.variable_names)

    @property
    def component_kind(self) -> str:
        return constants.COMPONENT_KINDS[self.analysis_type]

    def descriptions(self) -> Dict[str, str]:
        return dict(zip(self.variable_info["variable"], self.variable_info["description"]))

    def display_label(self, component_id: str) -> str:
        """'Factor_2' -> 'Factor 2'."""
        return component_id.replace("_", " ")


@dataclass(frozen=True)
class FactorSummary:
    """
    Per-factor indicator selection.

    Attributes:
        indicators: DataFrame with 'variable', 'loading' and 'description'
            columns holding the variables used to interpret the factor.
        used_emergency_rule: Whether indicators below the cutoff were used.
        variance_explained: Sum of squared loadings divided by the number of variables.
        status: One of 'defined', 'emergency' or 'undefined'.
    """

    indicators: pd.DataFrame
    used_emergency_rule: bool
    variance_explained: float
    status: str = constants.STATUS_DEFINED


@dataclass(frozen=True)
class FactorAnalysisData(AnalysisData):
    """
    Standardized factor analysis results.

    `loadings` is indexed by variable name with one column per component id.
    `component_labels` keeps the labels of the source model (e.g. 'MR1').
    """

    loadings: pd.DataFrame = None
    factor_summaries: Dict[str, FactorSummary] = field(default_factory=dict)
    factor_correlations: Optional[pd.DataFrame] = None
    component_labels: Tuple[str, ...] = ()
    cutoff: float = 0.3
    n_emergency: int = 2
    hide_low_loadings: bool = False
    sort_loadings: bool = True


@dataclass(frozen=True)
class MixtureAnalysisData(AnalysisData):
    """
    Standardized Gaussian mixture results.

    `means` is indexed by variable name with one column per cluster id.
    `covariances` has shape (n_clusters, n_variables, n_variables).
    """

    means: pd.DataFrame = None
    covariances: np.ndarray = None
    proportions: np.ndarray = None
    memberships: Optional[np.ndarray] = None
    classification: Optional[np.ndarray] = None
    uncertainty: Optional[np.ndarray] = None
    covariance_type: Optional[str] = None
    n_observations: Optional[int] = None
    fit_statistics: Dict[str, float] = field(default_factory=dict)
    min_cluster_size: int = 5
    separation_threshold: float = 0.3
    profile_variables: Optional[Tuple[str, ...]] = None
    weight_by_uncertainty: bool = False

    def cluster_sizes(self) -> Optional[np.ndarray]:
        """Expected member counts per cluster, when the sample size is known."""
        if self.n_observations is None:
            return None
        return self.proportions * self.n_observations

    def average_uncertainty(self) -> Optional[np.ndarray]:
        """Mean classification uncertainty of each cluster's members."""
        if self.uncertainty is None or self.classification is None:
            return None
        averages = np.full(self.n_components, np.nan)
        for i in range(self.n_components):
            mask = self.classification == i
            if mask.any():
                averages[i] = float(np.mean(self.uncertainty[mask]))
        return averages


# =============================================================================
# STAGE OUTPUTS
# =============================================================================
@dataclass(frozen=True)
class ParsedComponent:
    name: str
    interpretation: str


@dataclass(frozen=True)
class ParsedResult:
    """
    Component id -> name and interpretation, in component order.

    Attributes:
        components: Mapping from canonical component id to `ParsedComponent`.
        tier: Name of the parse attempt that produced the result.
        warnings: Parse warnings, e.g. for placeholder text.
    """

    components: Dict[str, ParsedComponent]
    tier: str
    warnings: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.components)

    def __getitem__(self, component_id: str) -> ParsedComponent:
        return self.components[component_id]

    def keys(self):
        return self.components.keys()

    @property
    def degraded(self) -> bool:
        return self.tier == "default"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single diagnostic check."""

    triggered: bool
    affected: Tuple[str, ...] = ()
    details: Dict[str, Any] = field(default_factory=dict)
    message: str = ""


@dataclass(frozen=True)
class Diagnostics:
    """
    Data-quality findings.

    Attributes:
        has_warnings: True when at least one check triggered.
        warnings: Human-readable warnings in check declaration order.
        info: Auxiliary, non-warning information (e.g. fit statistics).
        checks: Full result of every check, keyed by check name.
    """

    has_warnings: bool
    warnings: Tuple[str, ...] = ()
    info: Dict[str, Any] = field(default_factory=dict)
    checks: Dict[str, CheckResult] = field(default_factory=dict)


@dataclass(frozen=True)
class Interpretation:
    """
    The result of one interpretation call.

    Attributes:
        analysis_data: The standardized model data.
        parsed: Component names and interpretations.
        diagnostics: Data-quality findings.
        session: The chat session used; it may be mutated by later calls.
        elapsed_time: Wall-clock seconds spent on the call.
        input_tokens: Input tokens used by this call.
        output_tokens: Output tokens used by this call.
        system_prompt: The system prompt of the session.
        main_prompt: The prompt sent for this call.
        raw_response: The unparsed LLM reply.
        report: The rendered report text.
    """

    analysis_data: AnalysisData
    parsed: ParsedResult
    diagnostics: Diagnostics
    session: "ChatSession"
    elapsed_time: float
    input_tokens: int
    output_tokens: int
    system_prompt: str
    main_prompt: str
    raw_response: str
    llm_model: Optional[str] = None
    report: str = ""

    @property
    def analysis_type(self) -> str:
        return self.analysis_data.analysis_type

    @property
    def component_names(self) -> Dict[str, str]:
        return {cid: comp.name for cid, comp in self.parsed.components.items()}

    @property
    def component_interpretations(self) -> Dict[str, str]:
        return {
            cid: comp.interpretation for cid, comp in self.parsed.components.items()
        }

    def with_report(self, report: str) -> "Interpretation":
        return replace(self, report=report)

    def __str__(self) -> str:
        return self.report
