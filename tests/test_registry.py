import pytest

from psych_interpreter.exceptions import ParameterValidationError
from psych_interpreter.registry import (
    DEFAULT_REGISTRY,
    INTERPRETATION_ARGS,
    LLM_ARGS,
    OUTPUT_ARGS,
    ParameterRegistry,
    ParameterSpec,
    number_in_range,
    validate_analysis_type,
)


def test_validate_accepts_and_normalizes():
    """Tests that valid values pass and are normalized."""
    result = DEFAULT_REGISTRY.validate("word_limit", 100.0)
    assert result.valid
    assert result.normalized == 100
    assert isinstance(result.normalized, int)
    assert DEFAULT_REGISTRY.validate("format", "MARKDOWN").normalized == "markdown"


def test_validate_reports_instead_of_raising():
    """Tests that invalid and unknown parameters yield an invalid verdict."""
    result = DEFAULT_REGISTRY.validate("cutoff", 1.5)
    assert not result.valid
    assert "cutoff" in result.message
    assert not DEFAULT_REGISTRY.validate("no_such_parameter", 1).valid


@pytest.mark.parametrize("value", [True, "0.3", float("nan"), None])
def test_numeric_validator_rejects_non_numbers(value):
    """Tests that booleans, strings, NaN and None are rejected as cutoffs."""
    assert not DEFAULT_REGISTRY.validate("cutoff", value).valid


def test_integer_validator_rejects_fractions():
    """Tests that integer parameters reject non-integral numbers."""
    assert not DEFAULT_REGISTRY.validate("n_emergency", 1.5).valid
    assert DEFAULT_REGISTRY.validate("n_emergency", 0).valid


def test_silent_accepts_booleans():
    """Tests that silent maps booleans to quiet levels."""
    assert DEFAULT_REGISTRY.validate("silent", True).normalized == 2
    assert DEFAULT_REGISTRY.validate("silent", False).normalized == 0
    assert not DEFAULT_REGISTRY.validate("silent", 3).valid


def test_min_coverage_excludes_zero():
    """Tests that the coverage fraction must be strictly positive."""
    assert not DEFAULT_REGISTRY.validate("min_coverage", 0).valid
    assert DEFAULT_REGISTRY.validate("min_coverage", 1).valid


def test_merge_precedence_and_defaults():
    """Tests that earlier sources win and gaps are filled with defaults."""
    merged = DEFAULT_REGISTRY.merge(
        {"word_limit": 100}, {"word_limit": 300, "echo": "output"}, group=LLM_ARGS
    )
    assert merged["word_limit"] == 100
    assert merged["echo"] == "output"
    assert merged["llm_provider"] is None


def test_merge_treats_none_as_not_provided():
    """Tests that a None value falls through to the next source."""
    merged = DEFAULT_REGISTRY.merge({"heading_level": None}, {"heading_level": 3}, group=OUTPUT_ARGS)
    assert merged["heading_level"] == 3


def test_merge_collects_all_errors():
    """Tests that merge reports every invalid key in one error."""
    with pytest.raises(ParameterValidationError) as excinfo:
        DEFAULT_REGISTRY.merge({"word_limit": 5, "bogus": 1}, group=LLM_ARGS)
    message = str(excinfo.value)
    assert "word_limit" in message
    assert "bogus" in message


def test_merge_rejects_wrong_group_and_type():
    """Tests that parameters of another group or analysis type are rejected."""
    with pytest.raises(ParameterValidationError, match="belongs to"):
        DEFAULT_REGISTRY.merge({"cutoff": 0.4}, group=LLM_ARGS)
    with pytest.raises(ParameterValidationError, match="does not apply"):
        DEFAULT_REGISTRY.merge({"cutoff": 0.4}, group=INTERPRETATION_ARGS, analysis_type="gm")


def test_names_filter_by_analysis_type():
    """Tests that interpretation parameters are listed per analysis type."""
    fa_names = DEFAULT_REGISTRY.names(INTERPRETATION_ARGS, "fa")
    gm_names = DEFAULT_REGISTRY.names(INTERPRETATION_ARGS, "gm")
    assert "cutoff" in fa_names and "cutoff" not in gm_names
    assert "n_clusters" in gm_names and "n_clusters" not in fa_names
    assert "min_coverage" in fa_names and "min_coverage" in gm_names


def test_custom_registry():
    """Tests that a registry can be built and queried independently."""
    registry = ParameterRegistry(
        [ParameterSpec("depth", 2, OUTPUT_ARGS, number_in_range(1, 5, integer=True))]
    )
    assert "depth" in registry
    assert registry.default("depth") == 2
    with pytest.raises(ParameterValidationError):
        registry.get("width")
    with pytest.raises(ValueError):
        registry.register(ParameterSpec("depth", 1, OUTPUT_ARGS, number_in_range(1, 5)))


def test_validate_analysis_type():
    """Tests that analysis type tags are normalized and checked."""
    assert validate_analysis_type("FA") == "fa"
    with pytest.raises(ParameterValidationError, match="not yet implemented"):
        validate_analysis_type("irt")
    with pytest.raises(ParameterValidationError, match="Unknown analysis_type"):
        validate_analysis_type("pca")
