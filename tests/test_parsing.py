import numpy as np
import pytest

from psych_interpreter.config import build_interpretation_args
from psych_interpreter.exceptions import ParseDegradationWarning
from psych_interpreter.extraction import extract
from psych_interpreter.parsing import clean_json_response, parse_response


def test_clean_json_response():
    """Tests isolation and repair of almost-JSON replies."""
    raw = 'Here you go:\n{"a": {"name": "X"}\n"b": {"name": "Y",}}\nThanks!'
    assert clean_json_response(raw) == '{"a": {"name": "X"}, "b": {"name": "Y"}}'
    assert clean_json_response("no braces here") is None


def test_parse_valid_json(fa_data, json_reply):
    """Tests the first attempt on a well-formed reply."""
    raw = json_reply(
        {
            "Factor_1": ("Extraversion", "Sociable and outgoing behaviour."),
            "Factor_2": ("Neuroticism", "A tendency to worry."),
        }
    )
    parsed = parse_response(raw, fa_data)
    assert parsed.tier == "cleaned_json"
    assert parsed["Factor_1"].name == "Extraversion"
    assert parsed["Factor_2"].interpretation == "A tendency to worry."
    assert parsed.warnings == ()
    assert list(parsed.keys()) == ["Factor_1", "Factor_2"]


def test_parse_prose_wrapped_json(fa_data):
    """Tests a reply with prose around a fenced JSON object."""
    raw = (
        "Sure! Here is the interpretation:\n```json\n"
        '{"Factor_1": {"name": "Extraversion", "interpretation": "Outgoing."},\n'
        '"Factor_2": {"name": "Neuroticism", "interpretation": "Anxious."},}\n```\n'
        "Let me know if you need more."
    )
    parsed = parse_response(raw, fa_data)
    assert parsed.tier == "cleaned_json"
    assert parsed["Factor_2"].name == "Neuroticism"


def test_parse_alias_keys(fa_data):
    """Tests keys with spaces, other case or the source model labels."""
    raw = (
        '{"factor 1": {"Name": "Extraversion", "Interpretation": "Outgoing."}, '
        '"MR2": {"name": "Neuroticism", "interpretation": "Anxious."}, '
        '"Summary": "ignored"}'
    )
    parsed = parse_response(raw, fa_data)
    assert parsed["Factor_1"].name == "Extraversion"
    assert parsed["Factor_2"].name == "Neuroticism"


def test_parse_single_quoted(fa_data):
    """Tests the pattern attempt on a single-quoted reply."""
    raw = (
        "{'Factor_1': {'name': 'Extraversion', 'interpretation': 'Outgoing people.'}, "
        "'Factor_2': {'name': 'Neuroticism', 'interpretation': 'Anxious people.'}}"
    )
    parsed = parse_response(raw, fa_data)
    assert parsed.tier == "pattern"
    assert parsed["Factor_1"].name == "Extraversion"
    assert parsed["Factor_2"].interpretation == "Anxious people."


def test_parse_truncated_reply(fa_data):
    """Tests that a reply cut off mid-string still yields the components."""
    raw = (
        '{"Factor_1": {"name": "Extraversion", "interpretation": "Outgoing people."}, '
        '"Factor_2": {"name": "Neuroticism", "interpretation": "Anxious peo'
    )
    parsed = parse_response(raw, fa_data)
    assert parsed.tier == "pattern"
    assert parsed["Factor_1"].interpretation == "Outgoing people."
    assert parsed["Factor_2"].name == "Neuroticism"
    assert parsed["Factor_2"].interpretation == "Anxious peo"


def test_parse_markdown_reply(fa_data):
    """Tests the pattern attempt on a markdown list reply."""
    raw = (
        "**Factor 1**: Social energy and enjoyment of company.\n"
        "**Factor 2**: Emotional instability and frequent worry."
    )
    parsed = parse_response(raw, fa_data)
    assert parsed.tier == "pattern"
    assert parsed["Factor_1"].interpretation == "Social energy and enjoyment of company."
    assert parsed["Factor_1"].name == "Factor 1"


@pytest.mark.parametrize("raw", [None, "", "   ", "I cannot help with that."])
def test_parse_failure_uses_defaults(fa_data, raw):
    """Tests that unusable replies fall back to placeholders with a warning."""
    with pytest.warns(ParseDegradationWarning):
        parsed = parse_response(raw, fa_data)
    assert parsed.tier == "default"
    assert parsed.degraded
    assert len(parsed) == 2
    assert parsed["Factor_1"].name == "Factor 1"
    assert parsed["Factor_1"].interpretation == "Unable to generate interpretation due to LLM error"
    assert parsed.warnings


def test_parse_gm_defaults(gm_data):
    """Tests the size-based placeholder text for clusters."""
    with pytest.warns(ParseDegradationWarning):
        parsed = parse_response("", gm_data)
    assert parsed["Cluster_1"].name == "Cluster 1"
    assert parsed["Cluster_1"].interpretation.startswith("This large cluster")


def test_parse_partial_coverage(fa_data, json_reply):
    """Tests that a half-complete reply is accepted at the default coverage."""
    raw = json_reply({"Factor_1": ("Extraversion", "Outgoing.")})
    parsed = parse_response(raw, fa_data)
    assert parsed.tier == "cleaned_json"
    assert parsed["Factor_2"].interpretation == "Missing from LLM response"
    assert "Factor_2" in parsed.warnings[0]


def test_parse_coverage_threshold(fa_data, json_reply):
    """Tests that min_coverage can reject a partial reply."""
    raw = json_reply({"Factor_1": ("Extraversion", "Outgoing.")})
    with pytest.warns(ParseDegradationWarning):
        parsed = parse_response(raw, fa_data, min_coverage=1.0)
    assert parsed.tier == "default"


def test_parse_emergency_and_undefined(variable_info, json_reply):
    """Tests name suffixes for emergency factors and undefined factors."""
    loadings = np.array([[0.8, 0.1, 0.05], [0.7, 0.25, 0.1], [0.6, 0.1, 0.2]])
    emergency = extract(loadings, variable_info, analysis_type="fa")
    raw = json_reply(
        {
            "Factor_1": ("Extraversion", "Outgoing."),
            "Factor_2": ("Weak Factor", "Low loadings."),
            "Factor_3": ("Noise", "Nothing."),
        }
    )
    parsed = parse_response(raw, emergency)
    assert parsed["Factor_1"].name == "Extraversion"
    assert parsed["Factor_2"].name == "Weak Factor (n.s.)"

    undefined = extract(loadings, variable_info, build_interpretation_args("fa", n_emergency=0))
    parsed = parse_response(raw, undefined)
    assert parsed["Factor_2"].name == "undefined"
    assert parsed["Factor_2"].interpretation == "NA"
