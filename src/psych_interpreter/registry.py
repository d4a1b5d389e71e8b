"""
Central registry of every configurable parameter of the interpretation pipeline.

Each parameter is declared once as a `ParameterSpec` carrying its default
value, the argument group it belongs to (`llm_args`, `output_args` or
`interpretation_args`), the analysis types it applies to and a validator.
The registry offers two operations:

1.  **validate**: Checks a single value and returns a `ValidationResult`
    verdict instead of raising, so callers can report or collect problems.
2.  **merge**: Combines ordered partial parameter maps (highest precedence
    first), fills the gaps from registry defaults and validates the result,
    raising `ParameterValidationError` with a specific message on failure.

The registry is an explicitly constructed table. `build_default_registry()`
creates the standard one and `DEFAULT_REGISTRY` holds the instance shared by
the configuration models; callers may build and inject their own.
"""

# =============================================================================
# HEADER (Imports, Logger)
# =============================================================================
import logging
import math
import numbers
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from . import constants
from .exceptions import ParameterValidationError

logger = logging.getLogger(__name__)

LLM_ARGS = "llm_args"
OUTPUT_ARGS = "output_args"
INTERPRETATION_ARGS = "interpretation_args"
PARAMETER_GROUPS = (LLM_ARGS, OUTPUT_ARGS, INTERPRETATION_ARGS)


# =============================================================================
# DATA STRUCTURES
# =============================================================================
@dataclass(frozen=True)
class ValidationResult:
    """Verdict for a single parameter value."""

    valid: bool
    message: str = ""
    normalized: Any = None


Validator = Callable[[Any], ValidationResult]


@dataclass(frozen=True)
class ParameterSpec:
    """
    Declaration of one configurable parameter.

    Attributes:
        name: The parameter name as used in keyword arguments.
        default: The value used when no source provides one.
        group: The argument group the parameter belongs to.
        validator: Callable returning a `ValidationResult` for a raw value.
        analysis_types: Analysis types the parameter applies to; empty means all.
        description: Short human-readable description.
    """

    name: str
    default: Any
    group: str
    validator: Validator
    analysis_types: Tuple[str, ...] = ()
    description: str = ""

    def applies_to(self, analysis_type: Optional[str]) -> bool:
        if not self.analysis_types or analysis_type is None:
            return True
        return analysis_type in self.analysis_types


# =============================================================================
# VALIDATOR FACTORIES
# =============================================================================
def _ok(value: Any) -> ValidationResult:
    return ValidationResult(True, "", value)


def _fail(message: str) -> ValidationResult:
    return ValidationResult(False, message, None)


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def number_in_range(
    low: float,
    high: float,
    integer: bool = False,
    nullable: bool = False,
    low_inclusive: bool = True,
) -> Validator:
    """Builds a validator for a numeric value inside [low, high]."""
    kind = "an integer" if integer else "a number"

    def _validate(value: Any) -> ValidationResult:
        if value is None:
            return _ok(None) if nullable else _fail(f"must be {kind}, got None")
        if not _is_number(value):
            return _fail(f"must be {kind}, got {type(value).__name__}")
        if math.isnan(value):
            return _fail(f"must be {kind}, got NaN")
        if integer:
            if not float(value).is_integer():
                return _fail(f"must be {kind}, got {value}")
            value = int(value)
        else:
            value = float(value)
        below = value < low if low_inclusive else value <= low
        if below or value > high:
            left = "[" if low_inclusive else "("
            return _fail(f"must be in {left}{low}, {high}], got {value}")
        return _ok(value)

    return _validate


def one_of(options: Iterable[str], nullable: bool = False) -> Validator:
    """Builds a validator for a case-insensitive choice among string options."""
    allowed = tuple(options)

    def _validate(value: Any) -> ValidationResult:
        if value is None and nullable:
            return _ok(None)
        if not isinstance(value, str) or value.lower() not in allowed:
            return _fail(f"must be one of {', '.join(allowed)}, got {value!r}")
        return _ok(value.lower())

    return _validate


def boolean() -> Validator:
    def _validate(value: Any) -> ValidationResult:
        if not isinstance(value, bool):
            return _fail(f"must be True or False, got {value!r}")
        return _ok(value)

    return _validate


def text(nullable: bool = True) -> Validator:
    """Builds a validator for a non-empty string."""

    def _validate(value: Any) -> ValidationResult:
        if value is None:
            return _ok(None) if nullable else _fail("is required")
        if not isinstance(value, str) or not value.strip():
            return _fail(f"must be a non-empty string, got {value!r}")
        return _ok(value)

    return _validate


def mapping(nullable: bool = True) -> Validator:
    def _validate(value: Any) -> ValidationResult:
        if value is None and nullable:
            return _ok(None)
        if not isinstance(value, Mapping):
            return _fail(f"must be a dictionary, got {type(value).__name__}")
        return _ok(dict(value))

    return _validate


def string_list(nullable: bool = True) -> Validator:
    """Builds a validator for a non-empty list of strings, normalized to a tuple."""

    def _validate(value: Any) -> ValidationResult:
        if value is None and nullable:
            return _ok(None)
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)) or not value:
            return _fail("must be a non-empty list of variable names")
        if not all(isinstance(v, str) for v in value):
            return _fail("must contain only strings")
        return _ok(tuple(value))

    return _validate


def silent_level() -> Validator:
    """Accepts 0, 1, 2 or a boolean (True maps to 2, False to 0)."""

    def _validate(value: Any) -> ValidationResult:
        if isinstance(value, bool):
            return _ok(2 if value else 0)
        if _is_number(value) and value in (0, 1, 2):
            return _ok(int(value))
        return _fail(f"must be 0, 1, 2 or a boolean, got {value!r}")

    return _validate


# =============================================================================
# REGISTRY
# =============================================================================
class ParameterRegistry:
    """
    Read-mostly table of `ParameterSpec` entries.

    Attributes:
        specs (Dict[str, ParameterSpec]): Registered parameters keyed by name.
    """

    def __init__(self, specs: Iterable[ParameterSpec] = ()):
        self.specs: Dict[str, ParameterSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ParameterSpec) -> None:
        if spec.group not in PARAMETER_GROUPS:
            raise ValueError(f"Unknown parameter group '{spec.group}'.")
        if spec.name in self.specs:
            raise ValueError(f"Parameter '{spec.name}' is already registered.")
        self.specs[spec.name] = spec

    def __contains__(self, name: object) -> bool:
        return name in self.specs

    def get(self, name: str) -> ParameterSpec:
        try:
            return self.specs[name]
        except KeyError:
            raise ParameterValidationError(f"Unknown parameter '{name}'.") from None

    def default(self, name: str) -> Any:
        return self.get(name).default

    def names(
        self, group: Optional[str] = None, analysis_type: Optional[str] = None
    ) -> List[str]:
        """Lists parameter names, optionally restricted to a group and analysis type."""
        return [
            spec.name
            for spec in self.specs.values()
            if (group is None or spec.group == group)
            and spec.applies_to(analysis_type)
        ]

    def validate(self, name: str, value: Any) -> ValidationResult:
        """
        Validates a single parameter value.

        Ordinary violations, including unknown names, are reported through the
        returned verdict rather than raised.

        Args:
            name: The parameter name.
            value: The raw value to check.

        Returns:
            A `ValidationResult` with the normalized value when valid.
        """
        spec = self.specs.get(name)
        if spec is None:
            return _fail(f"Unknown parameter '{name}'.")
        result = spec.validator(value)
        if result.valid:
            return result
        return _fail(f"Parameter '{name}' {result.message}.")

    def merge(
        self,
        *sources: Optional[Mapping[str, Any]],
        group: str,
        analysis_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Resolves one fully validated parameter map from ordered partial maps.

        Sources are ordered from highest to lowest precedence. A key mapped to
        None counts as not provided. Keys missing from every source take the
        registry default.

        Args:
            *sources: Partial parameter maps, highest precedence first.
            group: The argument group being resolved.
            analysis_type: Restricts interpretation parameters to one type.

        Returns:
            A dictionary holding a validated value for every parameter of the group.

        Raises:
            ParameterValidationError: If a key is unknown, belongs to another
                group or analysis type, or holds an invalid value.
        """
        allowed = self.names(group, analysis_type)
        errors: List[str] = []

        for source in sources:
            for key in source or {}:
                if key in allowed:
                    continue
                if key not in self.specs:
                    errors.append(f"Unknown parameter '{key}' in {group}.")
                elif self.specs[key].group != group:
                    errors.append(
                        f"Parameter '{key}' belongs to {self.specs[key].group}, not {group}."
                    )
                else:
                    errors.append(
                        f"Parameter '{key}' does not apply to analysis type '{analysis_type}'."
                    )

        resolved: Dict[str, Any] = {}
        for name in allowed:
            value = self.specs[name].default
            for source in sources:
                if source and source.get(name) is not None:
                    value = source[name]
                    break
            result = self.validate(name, value)
            if result.valid:
                resolved[name] = result.normalized
            else:
                errors.append(result.message)

        if errors:
            message = " ".join(errors)
            logger.error(f"Invalid {group}: {message}")
            raise ParameterValidationError(message)
        return resolved


def validate_analysis_type(analysis_type: Any) -> str:
    """
    Normalizes an analysis type tag.

    Raises:
        ParameterValidationError: If the tag is unknown or not yet implemented.
    """
    if not isinstance(analysis_type, str):
        raise ParameterValidationError(
            f"analysis_type must be a string, got {type(analysis_type).__name__}."
        )
    tag = analysis_type.lower()
    if tag not in constants.KNOWN_ANALYSIS_TYPES:
        raise ParameterValidationError(
            f"Unknown analysis_type '{analysis_type}'. "
            f"Expected one of: {', '.join(constants.KNOWN_ANALYSIS_TYPES)}."
        )
    if tag not in constants.IMPLEMENTED_ANALYSIS_TYPES:
        raise ParameterValidationError(
            f"analysis_type '{tag}' ({constants.ANALYSIS_DISPLAY_NAMES[tag]}) "
            "is not yet implemented."
        )
    return tag


# =============================================================================
# DEFAULT REGISTRY
# =============================================================================
def build_default_registry() -> ParameterRegistry:
    """Creates the registry holding every standard pipeline parameter."""
    fa = (constants.FA,)
    gm = (constants.GM,)
    specs = [
        # --- LLM arguments ---
        ParameterSpec("llm_provider", None, LLM_ARGS, one_of(constants.SUPPORTED_PROVIDERS, nullable=True),
                      description="LLM provider ('gemini' or 'ollama')."),
        ParameterSpec("llm_model", None, LLM_ARGS, text(),
                      description="Model name; provider default when omitted."),
        ParameterSpec("system_prompt", None, LLM_ARGS, text(),
                      description="Custom system prompt replacing the built-in one."),
        ParameterSpec("params", None, LLM_ARGS, mapping(),
                      description="Extra keyword arguments for the chat model."),
        ParameterSpec("word_limit", 150, LLM_ARGS, number_in_range(20, 500, integer=True),
                      description="Upper bound of words per component interpretation."),
        ParameterSpec("interpretation_guidelines", None, LLM_ARGS, text(),
                      description="Custom guidelines replacing the default ones."),
        ParameterSpec("additional_info", None, LLM_ARGS, text(),
                      description="Free-text study context added to the prompt."),
        ParameterSpec("echo", "none", LLM_ARGS, one_of(constants.ECHO_MODES),
                      description="Print nothing, the response, or prompts and response."),
        # --- Output arguments ---
        ParameterSpec("format", "cli", OUTPUT_ARGS, one_of(constants.OUTPUT_FORMATS),
                      description="Report format ('cli' or 'markdown')."),
        ParameterSpec("heading_level", 1, OUTPUT_ARGS, number_in_range(1, 6, integer=True),
                      description="Markdown level of the top report heading."),
        ParameterSpec("suppress_heading", False, OUTPUT_ARGS, boolean(),
                      description="Omit the report title."),
        ParameterSpec("max_line_length", 80, OUTPUT_ARGS, number_in_range(40, 300, integer=True),
                      description="Wrap width of cli reports."),
        ParameterSpec("silent", 0, OUTPUT_ARGS, silent_level(),
                      description="0 prints everything, 1 suppresses the report, 2 is quiet."),
        # --- Interpretation arguments (all types) ---
        ParameterSpec("min_coverage", constants.DEFAULT_MIN_COVERAGE, INTERPRETATION_ARGS,
                      number_in_range(0.0, 1.0, low_inclusive=False),
                      description="Fraction of components a parse must cover to be accepted."),
        # --- Factor analysis ---
        ParameterSpec("cutoff", 0.3, INTERPRETATION_ARGS, number_in_range(0.0, 1.0), fa,
                      "Minimum absolute loading counted as significant."),
        ParameterSpec("n_emergency", 2, INTERPRETATION_ARGS,
                      number_in_range(0, float("inf"), integer=True), fa,
                      "Top loadings used when none reach the cutoff; 0 marks the factor undefined."),
        ParameterSpec("hide_low_loadings", False, INTERPRETATION_ARGS, boolean(), fa,
                      "Send only significant loadings to the LLM."),
        ParameterSpec("sort_loadings", True, INTERPRETATION_ARGS, boolean(), fa,
                      "Sort indicators by absolute loading."),
        # --- Gaussian mixture ---
        ParameterSpec("n_clusters", None, INTERPRETATION_ARGS,
                      number_in_range(1, float("inf"), integer=True, nullable=True), gm,
                      "Expected number of clusters, checked against the model."),
        ParameterSpec("covariance_type", None, INTERPRETATION_ARGS,
                      one_of(constants.COVARIANCE_TYPES, nullable=True), gm,
                      "Covariance structure of the mixture."),
        ParameterSpec("min_cluster_size", 5, INTERPRETATION_ARGS,
                      number_in_range(1, float("inf"), integer=True), gm,
                      "Clusters with fewer expected members are flagged."),
        ParameterSpec("separation_threshold", 0.3, INTERPRETATION_ARGS,
                      number_in_range(0.0, 1.0), gm,
                      "Average uncertainty above which clusters count as poorly separated."),
        ParameterSpec("profile_variables", None, INTERPRETATION_ARGS, string_list(), gm,
                      "Subset of variables shown in cluster profiles."),
        ParameterSpec("weight_by_uncertainty", False, INTERPRETATION_ARGS, boolean(), gm,
                      "Report uncertainty-weighted cluster sizes."),
    ]
    return ParameterRegistry(specs)


DEFAULT_REGISTRY = build_default_registry()
