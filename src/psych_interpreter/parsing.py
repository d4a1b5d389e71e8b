"""
Cascading parser turning raw LLM replies into component names and interpretations.

Small and local models frequently return almost-JSON: prose around the
object, missing or trailing commas, single quotes or truncated output. The
parser therefore tries an explicit, ordered list of attempts, each returning
a `ParseAttempt` instead of raising:

1.  **cleaned_json**: Isolates the outermost brace-delimited object, repairs
    common defects (newlines, missing commas, trailing commas) and parses it.
2.  **raw_json**: Parses the untouched reply, in case cleaning damaged it.
3.  **pattern**: Extracts each expected component with regular expressions
    accepting double-quoted, single-quoted and unquoted values.
4.  **default**: Terminal step that never fails; every component receives a
    placeholder text and a `ParseDegradationWarning` is issued.

Attempts 1-3 are accepted when at least `min_coverage` of the expected
components have usable values; the remaining ones get placeholder text.
Keys are matched case-insensitively and may use spaces instead of
underscores or the labels of the source model (e.g. 'MR1'). Unexpected keys
are logged and ignored.
"""

import json
import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import constants
from .exceptions import ParseDegradationWarning
from .models import AnalysisData, FactorAnalysisData, MixtureAnalysisData, ParsedComponent, ParsedResult

logger = logging.getLogger(__name__)

# Parsed values are {"name": Optional[str], "interpretation": Optional[str]}.
ComponentValues = Dict[str, Dict[str, Optional[str]]]


@dataclass(frozen=True)
class ParseAttempt:
    """Outcome of one parse attempt."""

    success: bool
    values: ComponentValues = field(default_factory=dict)
    reason: str = ""


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================
def clean_json_response(response: str) -> Optional[str]:
    """
    Isolates and repairs the JSON object in an LLM reply.

    Returns:
        The cleaned object text, or None if the reply holds no braces.
    """
    start = response.find("{")
    end = response.rfind("}")
    if start == -1 or end <= start:
        return None
    cleaned = response[start : end + 1]
    cleaned = re.sub(r"\n\s*", " ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    # Missing comma between a closed object and the next key.
    cleaned = re.sub(r'(\})\s*("\w+")\s*:', r"\1, \2:", cleaned)
    # Missing comma between a string value and the next field.
    cleaned = re.sub(r'(")\s+("(?:name|interpretation)"\s*:)', r"\1, \2", cleaned)
    cleaned = re.sub(r",\s*}", "}", cleaned)
    cleaned = re.sub(r",\s*]", "]", cleaned)
    return cleaned.strip()


def _normalize_key(key: str) -> str:
    return re.sub(r"[\s_\-]+", "", key.strip().lower())


def _key_lookup(data: AnalysisData) -> Dict[str, str]:
    """Maps normalized key spellings to canonical component ids."""
    lookup: Dict[str, str] = {}
    labels = getattr(data, "component_labels", ()) or data.component_ids
    for cid, label in zip(data.component_ids, labels):
        lookup[_normalize_key(cid)] = cid
        lookup.setdefault(_normalize_key(label), cid)
    return lookup


def _aliases(data: AnalysisData, cid: str) -> List[str]:
    names = [cid]
    labels = getattr(data, "component_labels", ())
    if labels:
        label = labels[data.component_ids.index(cid)]
        if label != cid:
            names.append(label)
    return names


def _clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = re.sub(r"\s+", " ", value).strip()
    return value or None


def _component_value(value: Any) -> Optional[Dict[str, Optional[str]]]:
    """Reads a nested {name, interpretation} object or a flat string."""
    if isinstance(value, dict):
        lowered = {str(k).lower(): v for k, v in value.items()}
        entry = {
            "name": _clean_text(lowered.get("name")),
            "interpretation": _clean_text(lowered.get("interpretation")),
        }
    else:
        entry = {"name": None, "interpretation": _clean_text(value)}
    if entry["name"] is None and entry["interpretation"] is None:
        return None
    return entry


def _coverage_ok(values: ComponentValues, data: AnalysisData, min_coverage: float) -> bool:
    return len(values) / data.n_components >= min_coverage


def _values_from_object(parsed: Any, data: AnalysisData, min_coverage: float) -> ParseAttempt:
    """Validates the shape of a decoded JSON object."""
    if not isinstance(parsed, dict) or not parsed:
        return ParseAttempt(False, reason="decoded value is not a non-empty object")
    lookup = _key_lookup(data)
    values: ComponentValues = {}
    unexpected = []
    for key, value in parsed.items():
        cid = lookup.get(_normalize_key(str(key)))
        if cid is None:
            unexpected.append(key)
            continue
        entry = _component_value(value)
        if entry is not None and cid not in values:
            values[cid] = entry
    if unexpected:
        logger.info(f"Ignoring unexpected keys in LLM response: {unexpected}")
    if not _coverage_ok(values, data, min_coverage):
        return ParseAttempt(
            False,
            values,
            f"only {len(values)} of {data.n_components} components found",
        )
    return ParseAttempt(True, values)


def _decode(text: Optional[str]) -> Tuple[Any, str]:
    if not text:
        return None, "no JSON object found"
    try:
        return json.loads(text), ""
    except ValueError as e:
        return None, f"invalid JSON: {e}"


# =============================================================================
# PARSE ATTEMPTS
# =============================================================================
def _parse_cleaned_json(response: str, data: AnalysisData, min_coverage: float) -> ParseAttempt:
    parsed, error = _decode(clean_json_response(response))
    if error:
        return ParseAttempt(False, reason=error)
    return _values_from_object(parsed, data, min_coverage)


def _parse_raw_json(response: str, data: AnalysisData, min_coverage: float) -> ParseAttempt:
    parsed, error = _decode(response.strip())
    if error:
        return ParseAttempt(False, reason=error)
    return _values_from_object(parsed, data, min_coverage)


_DOUBLE_QUOTED = r'"((?:[^"\\]|\\.)*)"'
_SINGLE_QUOTED = r"'((?:[^'\\]|\\.)*)'"
_UNQUOTED = r"([^,}\s\"'{][^,}\n]*)"
# Reply cut off inside the last string value.
_UNTERMINATED = r'"((?:[^"\\]|\\.)+)$'


def _unescape(value: str, quote: str) -> str:
    if quote == '"':
        try:
            return json.loads(f'"{value}"')
        except ValueError:
            return value
    return value.replace("\\'", "'")


def _field_value(field_name: str, text: str) -> Optional[str]:
    """Finds `field_name: value` with any quoting convention."""
    key = rf"""(?<![\w])["']?{field_name}["']?\s*:\s*"""
    patterns = (
        (_DOUBLE_QUOTED, '"'),
        (_SINGLE_QUOTED, "'"),
        (_UNQUOTED, ""),
        (_UNTERMINATED, '"'),
    )
    for value_pattern, quote in patterns:
        match = re.search(key + value_pattern, text, flags=re.IGNORECASE)
        if match:
            value = _unescape(match.group(1), quote) if quote else match.group(1)
            cleaned = _clean_text(value)
            if cleaned:
                return cleaned
    return None


def _key_pattern(alias: str) -> str:
    return re.escape(alias).replace("_", r"[\s_]?")


def _pattern_component(response: str, alias: str) -> Optional[Dict[str, Optional[str]]]:
    key = _key_pattern(alias)
    nested = re.search(
        rf"""(?<![\w])["']?{key}["']?\s*:\s*\{{([^{{}}]*)\}}?""",
        response,
        flags=re.IGNORECASE,
    )
    if nested:
        entry = {
            "name": _field_value("name", nested.group(1)),
            "interpretation": _field_value("interpretation", nested.group(1)),
        }
        if entry["name"] or entry["interpretation"]:
            return entry

    flat = _field_value(key, response)
    if flat is None:
        # Markdown style, e.g. "**Cluster 1**: text".
        line = re.search(
            rf"(?<![\w])\**{key}\**\s*:\s*([^\n]+)", response, flags=re.IGNORECASE
        )
        if line:
            flat = _clean_text(line.group(1).strip(" *\"'"))
    if flat and len(flat) > 10:
        return {"name": None, "interpretation": flat}
    return None


def _parse_by_pattern(response: str, data: AnalysisData, min_coverage: float) -> ParseAttempt:
    values: ComponentValues = {}
    for cid in data.component_ids:
        for alias in _aliases(data, cid):
            entry = _pattern_component(response, alias)
            if entry is not None:
                values[cid] = entry
                break
    if not values:
        return ParseAttempt(False, reason="no component found by pattern")
    if not _coverage_ok(values, data, min_coverage):
        return ParseAttempt(
            False, values, f"only {len(values)} of {data.n_components} components found"
        )
    return ParseAttempt(True, values)


ParseFunction = Callable[[str, AnalysisData, float], ParseAttempt]

PARSE_TIERS: List[Tuple[str, ParseFunction]] = [
    ("cleaned_json", _parse_cleaned_json),
    ("raw_json", _parse_raw_json),
    ("pattern", _parse_by_pattern),
]


# =============================================================================
# DEFAULTS AND FINALIZATION
# =============================================================================
def default_name(data: AnalysisData, cid: str) -> str:
    return data.display_label(cid)


def _gm_default_interpretation(data: MixtureAnalysisData, cid: str) -> str:
    share = data.proportions[data.component_ids.index(cid)] * 100
    size = "large" if share > 40 else "moderate-sized" if share > 20 else "small"
    return (
        f"This {size} cluster represents a distinct profile in the data. "
        "Interpretation could not be generated automatically. Please review the "
        "cluster means to understand its characteristics."
    )


def default_interpretation(data: AnalysisData, cid: str) -> str:
    """Placeholder text used when the reply could not be parsed at all."""
    if isinstance(data, MixtureAnalysisData):
        return _gm_default_interpretation(data, cid)
    return constants.LLM_ERROR_INTERPRETATION


def _finalize_fa(data: FactorAnalysisData, components: Dict[str, ParsedComponent]) -> None:
    for cid, component in components.items():
        status = data.factor_summaries[cid].status
        if status == constants.STATUS_UNDEFINED:
            components[cid] = ParsedComponent(
                constants.UNDEFINED_NAME, constants.UNDEFINED_INTERPRETATION
            )
        elif status == constants.STATUS_EMERGENCY and not component.name.endswith(
            constants.NOT_SIGNIFICANT_SUFFIX
        ):
            components[cid] = ParsedComponent(
                component.name + constants.NOT_SIGNIFICANT_SUFFIX, component.interpretation
            )


FINALIZERS: Dict[str, Callable[[Any, Dict[str, ParsedComponent]], None]] = {
    constants.FA: _finalize_fa,
}


def _build_result(
    values: ComponentValues, data: AnalysisData, tier: str, warnings_: List[str]
) -> ParsedResult:
    components: Dict[str, ParsedComponent] = {}
    missing = []
    for cid in data.component_ids:
        entry = values.get(cid)
        if entry is None:
            missing.append(cid)
            components[cid] = ParsedComponent(
                default_name(data, cid), constants.MISSING_INTERPRETATION
            )
            continue
        components[cid] = ParsedComponent(
            entry["name"] or default_name(data, cid),
            entry["interpretation"] or "Unable to generate interpretation",
        )
    if missing:
        warnings_.append(
            f"The LLM response did not cover {', '.join(missing)}; placeholder text was used."
        )
    finalize = FINALIZERS.get(data.analysis_type)
    if finalize is not None:
        finalize(data, components)
    return ParsedResult(components=components, tier=tier, warnings=tuple(warnings_))


# =============================================================================
# ENTRY POINT
# =============================================================================
def parse_response(
    raw_text: Optional[str],
    data: AnalysisData,
    min_coverage: float = constants.DEFAULT_MIN_COVERAGE,
    *,
    stacklevel: int = 2,
) -> ParsedResult:
    """
    Parses an LLM reply into one name and interpretation per component.

    This function never raises for malformed replies and always returns
    exactly one entry per component id.

    Args:
        raw_text: The reply text; None or empty is treated as a failed reply.
        data: The analysis data defining the expected component ids.
        min_coverage: Fraction of components an attempt must cover to be accepted.
        stacklevel: Passed to `warnings.warn` so warnings point at the caller.

    Returns:
        A `ParsedResult` recording which attempt succeeded.
    """
    response = raw_text if isinstance(raw_text, str) else ""
    if response.strip():
        for tier, attempt_fn in PARSE_TIERS:
            attempt = attempt_fn(response, data, min_coverage)
            if attempt.success:
                logger.info(f"Parsed LLM response ({tier}).")
                return _build_result(attempt.values, data, tier, [])
            logger.debug(f"Parse attempt '{tier}' failed: {attempt.reason}")
        logger.info("Standard JSON parsing failed; no pattern matched enough components.")

    message = (
        "Could not parse the LLM response; placeholder interpretations were used. "
        "Consider using a larger model for better JSON generation."
    )
    warnings.warn(message, ParseDegradationWarning, stacklevel=stacklevel)
    values = {
        cid: {"name": None, "interpretation": default_interpretation(data, cid)}
        for cid in data.component_ids
    }
    return _build_result(values, data, "default", [message])
