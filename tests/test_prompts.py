import numpy as np
import pytest

from psych_interpreter.config import LLMArgs, build_interpretation_args
from psych_interpreter.exceptions import ParameterValidationError
from psych_interpreter.extraction import extract
from psych_interpreter.prompts import (
    build_main_prompt,
    build_system_prompt,
    format_loading,
    magnitude_hint,
    word_band,
)


def test_format_loading():
    """Tests that loadings are printed without a leading zero."""
    assert format_loading(0.812) == ".812"
    assert format_loading(-0.12) == "-.120"
    assert format_loading(1.0) == "1.000"
    assert format_loading(0.3, digits=2) == ".30"


def test_word_band():
    """Tests the 80%-100% target band."""
    assert word_band(150) == "120-150"
    assert word_band(100) == "80-100"


def test_magnitude_hint():
    """Tests labels for standardized means."""
    assert magnitude_hint(2.5) == " (very high)"
    assert magnitude_hint(1.2) == " (high)"
    assert magnitude_hint(-1.5) == " (low)"
    assert magnitude_hint(0.2) == ""


def test_system_prompts():
    """Tests the built-in system prompts and the custom override."""
    assert "psychometrician" in build_system_prompt("fa")
    assert "clustering" in build_system_prompt("gm")
    custom = LLMArgs(system_prompt="You are a careful analyst.")
    assert build_system_prompt("fa", custom) == "You are a careful analyst."


def test_fa_main_prompt_sections(fa_data):
    """Tests the content and order of the factor analysis prompt."""
    prompt = build_main_prompt("fa", fa_data)
    positions = [
        prompt.index("# INTERPRETATION GUIDELINES"),
        prompt.index("# VARIABLE DESCRIPTIONS"),
        prompt.index("# FACTOR LOADINGS"),
        prompt.index("# OUTPUT FORMAT"),
        prompt.index("# CRITICAL REQUIREMENTS"),
    ]
    assert positions == sorted(positions)
    assert "- v1: Enjoys parties" in prompt
    assert "Factor_1: v1=.800 v2=.700 v3=.100" in prompt
    assert '"Factor_2": {' in prompt
    assert "Factor_1, Factor_2" in prompt
    assert "120-150 words" in prompt
    assert "# FACTOR CORRELATIONS" not in prompt
    assert "# ADDITIONAL CONTEXT" not in prompt


def test_fa_prompt_options(fa_loadings, variable_info):
    """Tests hidden low loadings, correlations, guidelines and context."""
    record = {"loadings": fa_loadings, "Phi": [[1.0, 0.25], [0.25, 1.0]]}
    data = extract(record, variable_info, build_interpretation_args("fa", hide_low_loadings=True))
    llm_args = LLMArgs(
        interpretation_guidelines="Name factors after Big Five traits.",
        additional_info="Survey of 300 students.",
        word_limit=50,
    )
    prompt = build_main_prompt("fa", data, llm_args)
    assert "Factor_1: v1=.800 v2=.700\n" in prompt
    assert "Factor_1 with: Factor_2=.25" in prompt
    assert prompt.startswith("Name factors after Big Five traits.")
    assert "# INTERPRETATION GUIDELINES" not in prompt
    assert "# ADDITIONAL CONTEXT\nSurvey of 300 students." in prompt
    assert "40-50 words" in prompt


def test_fa_prompt_undefined_factors(variable_info):
    """Tests that undefined factors are announced when the emergency rule is off."""
    loadings = [[0.8, 0.1], [0.7, 0.2], [0.6, 0.1]]
    data = extract(
        np.array(loadings), variable_info, build_interpretation_args("fa", n_emergency=0)
    )
    prompt = build_main_prompt("fa", data)
    assert 'should receive "undefined" for name and "NA" for interpretation: Factor_2' in prompt


def test_gm_main_prompt(gm_data):
    """Tests the cluster profile section."""
    prompt = build_main_prompt("gm", gm_data)
    assert "# CLUSTER PROFILES" in prompt
    assert "Cluster_1 (50.0% of observations)" in prompt
    assert "v1: 1.500 (high)" in prompt
    assert "v3: 2.500 (very high)" in prompt
    assert "Covariance structure: full" in prompt
    assert "Average uncertainty: 0.100" in prompt
    assert '"Cluster_2": {' in prompt


def test_gm_profile_variables(gm_record, variable_info):
    """Tests that profile_variables restricts the variables shown."""
    args = build_interpretation_args("gm", profile_variables=["v1", "v3"])
    data = extract(gm_record, variable_info, args)
    prompt = build_main_prompt("gm", data)
    assert "v2:" not in prompt
    assert "- v2: Talks to strangers" not in prompt
    assert "v3: 2.500" in prompt


def test_main_prompt_type_mismatch(fa_data):
    """Tests that data of another analysis type is rejected."""
    with pytest.raises(ParameterValidationError):
        build_main_prompt("gm", fa_data)
