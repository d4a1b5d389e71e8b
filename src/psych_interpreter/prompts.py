"""
Construction of the system and main prompts sent to the language model.

The system prompt fixes the persona and defines the statistical terms with
their numeric thresholds. It is built once per chat session.

The main prompt is built per call and always follows the same section order:

1.  Interpretation guidelines (replaced entirely by `interpretation_guidelines`).
2.  Additional context (only when `additional_info` is set).
3.  Variable descriptions.
4.  The analysis data in a compact text encoding.
5.  The output format, with a literal JSON example keyed by the real
    component ids and the list of hard requirements.

Small local models follow a concrete example far more reliably than an
abstract schema, which is why section 5 spells out every expected key.
Builders are looked up per analysis type in `SYSTEM_PROMPT_BUILDERS` and
`MAIN_PROMPT_BUILDERS`.
"""

import logging
from typing import Callable, Dict, List, Optional

import numpy as np

from . import constants
from .config import LLMArgs
from .exceptions import ParameterValidationError
from .models import AnalysisData, FactorAnalysisData, MixtureAnalysisData

logger = logging.getLogger(__name__)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================
def format_loading(value: float, digits: int = 3) -> str:
    """Formats a loading without the leading zero, e.g. 0.812 -> '.812'."""
    text = f"{value:.{digits}f}"
    if text.startswith("0."):
        return text[1:]
    if text.startswith("-0."):
        return "-" + text[2:]
    return text


def word_band(word_limit: int) -> str:
    """The 80%-100% target band for interpretation length."""
    return f"{round(word_limit * 0.8)}-{word_limit}"


def magnitude_hint(mean: float) -> str:
    """Labels standardized means far from zero."""
    if mean > 2:
        return " (very high)"
    if mean > 1:
        return " (high)"
    if mean < -2:
        return " (very low)"
    if mean < -1:
        return " (low)"
    return ""


def _variable_section(data: AnalysisData, variables: Optional[List[str]] = None) -> str:
    descriptions = data.descriptions()
    lines = ["# VARIABLE DESCRIPTIONS"]
    for var in variables or data.variable_names:
        lines.append(f"- {var}: {descriptions[var]}")
    return "\n".join(lines) + "\n"


def _output_format_section(
    data: AnalysisData, word_limit: int, extra_requirements: List[str]
) -> str:
    kind = data.component_kind.lower()
    entries = [
        f'  "{cid}": {{\n'
        f'    "name": "Generate name",\n'
        f'    "interpretation": "Generate interpretation"\n'
        f"  }}"
        for cid in data.component_ids
    ]
    lines = [
        "# OUTPUT FORMAT",
        f"Respond with ONLY valid JSON using {kind} ids as object keys:",
        "",
        "```json",
        "{",
        ",\n".join(entries),
        "}",
        "```",
        "",
        "# CRITICAL REQUIREMENTS",
        f"- Include ALL {data.n_components} {kind}s as object keys using their exact "
        f"names: {', '.join(data.component_ids)}",
        "- Valid JSON syntax (proper quotes, commas, brackets)",
        "- No additional text before or after JSON",
        f"- {data.component_kind} names: 2-4 words maximum",
        f"- {data.component_kind} interpretations: target {word_band(word_limit)} words "
        f"each (80%-100% of {word_limit} word limit)",
    ]
    lines.extend(extra_requirements)
    return "\n".join(lines) + "\n"


def _guidelines_or_default(llm_args: LLMArgs, default: str) -> str:
    if llm_args.interpretation_guidelines:
        return llm_args.interpretation_guidelines.rstrip() + "\n"
    return default


def _context_section(llm_args: LLMArgs) -> Optional[str]:
    if llm_args.additional_info:
        return f"# ADDITIONAL CONTEXT\n{llm_args.additional_info}\n"
    return None


def _assemble(sections: List[Optional[str]]) -> str:
    return "\n".join(s for s in sections if s)


# =============================================================================
# FACTOR ANALYSIS
# =============================================================================
def _fa_system_prompt(llm_args: LLMArgs) -> str:
    return (
        "# ROLE\n"
        "You are an expert psychometrician specializing in exploratory factor analysis.\n\n"
        "# TASK\n"
        "Provide comprehensive factor analysis interpretation by: (1) identifying and "
        "naming meaningful constructs, (2) explaining factor composition and boundaries, "
        "and (3) analyzing relationships between factors.\n\n"
        "# KEY DEFINITIONS\n"
        "- **Loading**: Correlation coefficient (-1 to +1) between variable and factor\n"
        "- **Significant loading**: Loading with absolute value >= cutoff threshold\n"
        "- **Convergent validity**: Variables measuring similar constructs should load "
        "together\n"
        "- **Discriminant validity**: Factors should represent meaningfully distinct "
        "constructs; correlations near zero indicate distinct factors\n"
        "- **Factor correlation**: Correlation between factors indicating relationship "
        "strength\n"
        "- **Variance explained**: Percentage of total data variance captured by each factor\n"
        "- **Emergency rule**: Use highest absolute loadings when none meet cutoff\n"
    )


def _fa_guidelines(word_limit: int) -> str:
    return (
        "# INTERPRETATION GUIDELINES\n\n"
        "## Factor Naming\n"
        "- **Construct identification**: Identify the underlying construct each factor "
        "represents\n"
        "- **Name creation**: Create 2-4 word names capturing the essence of each factor\n"
        "- **Theoretical grounding**: Base names on domain knowledge and additional context\n\n"
        "## Factor Interpretation\n"
        "- **Convergent validity**: Explain why significantly loading variables belong "
        "together conceptually\n"
        "- **Loading patterns**: Examine both strong positive/negative loadings and notable "
        "weak loadings\n"
        "- **Construct meaning**: Describe what the factor measures and represents\n"
        "- **Factor relationships**: Use the correlation matrix and cross loadings to "
        "understand how factors relate to each other\n\n"
        "## Output Requirements\n"
        f"- **Word target (Interpretation)**: Aim for {word_band(word_limit)} words per "
        "interpretation (80%-100% of limit)\n"
        "- **Writing style**: Be concise, precise, and domain-appropriate\n"
    )


def _fa_loadings_section(data: FactorAnalysisData) -> str:
    lines = [
        "# FACTOR LOADINGS",
        f"**Cutoff threshold**: {data.cutoff} (absolute value >= {data.cutoff} "
        "considered significant)",
        f"**Emergency rule**: Use top {data.n_emergency} variables if no significant "
        "loadings",
        "",
    ]
    for cid in data.component_ids:
        column = data.loadings[cid]
        pairs = [
            f"{var}={format_loading(value)}"
            for var, value in column.items()
            if not (data.hide_low_loadings and abs(value) < data.cutoff)
        ]
        lines.append(f"{cid}: {' '.join(pairs)}")
    variance = " ".join(
        f"{cid}={data.factor_summaries[cid].variance_explained * 100:.1f}%"
        for cid in data.component_ids
    )
    lines.extend(["", f"**Variance Explained**: {variance}"])
    return "\n".join(lines) + "\n"


def _fa_correlations_section(data: FactorAnalysisData) -> Optional[str]:
    phi = data.factor_correlations
    if phi is None or data.n_components < 2:
        return None
    lines = [
        "# FACTOR CORRELATIONS",
        "Factor correlations help understand relationships between factors:",
    ]
    for cid in data.component_ids:
        others = " ".join(
            f"{other}={format_loading(phi.loc[cid, other], digits=2)}"
            for other in data.component_ids
            if other != cid
        )
        lines.append(f"{cid} with: {others}")
    return "\n".join(lines) + "\n"


def _fa_main_prompt(data: FactorAnalysisData, llm_args: LLMArgs) -> str:
    requirements = []
    if data.n_emergency == 0:
        requirements.append(
            '- For factors with no significant loadings: respond with "undefined" for '
            'name and "NA" for interpretation'
        )
    else:
        requirements.append(
            f"- Emergency rule: Use top {data.n_emergency} variables if no significant "
            "loadings"
        )
    undefined = [
        cid
        for cid in data.component_ids
        if data.factor_summaries[cid].status == constants.STATUS_UNDEFINED
    ]
    if undefined:
        requirements.append(
            "- The following factors have no significant loadings and should receive "
            f'"undefined" for name and "NA" for interpretation: {", ".join(undefined)}'
        )
    return _assemble(
        [
            _guidelines_or_default(llm_args, _fa_guidelines(llm_args.word_limit)),
            _context_section(llm_args),
            _variable_section(data),
            _fa_loadings_section(data),
            _fa_correlations_section(data),
            _output_format_section(data, llm_args.word_limit, requirements),
        ]
    )


# =============================================================================
# GAUSSIAN MIXTURE
# =============================================================================
def _gm_system_prompt(llm_args: LLMArgs) -> str:
    return (
        "# ROLE\n"
        "You are an expert in clustering analysis, Gaussian mixture models and "
        "psychological profiling.\n\n"
        "# TASK\n"
        "Interpret cluster profiles based on the mean values of variables in each "
        "cluster, naming each cluster and describing what makes it unique.\n\n"
        "# KEY DEFINITIONS\n"
        "- **Cluster mean**: Average standardized value of a variable among cluster "
        "members\n"
        "- **High / low**: Standardized means above 1 or below -1; beyond +/-2 is very "
        "high / very low\n"
        "- **Cluster size**: Proportion of observations assigned to the cluster\n"
        "- **Uncertainty**: 1 minus the highest membership probability (0 = certain "
        "assignment, values above 0.3 indicate poorly separated clusters)\n"
    )


def _gm_guidelines(word_limit: int, weighted: bool) -> str:
    lines = [
        "# INTERPRETATION GUIDELINES",
        "",
        "## Cluster Naming",
        "- **Profile identification**: Identify the psychological or behavioral pattern "
        "that defines each group",
        "- **Name creation**: Create 2-4 word names capturing the essence of each cluster",
        "",
        "## Cluster Interpretation",
        "- **Distinguishing characteristics**: Focus on what distinguishes each cluster "
        "from the others",
        "- **Relative comparisons**: Use differences between clusters rather than "
        "absolute values",
        "- **Practical significance**: Consider the size of differences, not just their "
        "direction",
        "- **Accessible language**: Avoid statistical jargon",
    ]
    if weighted:
        lines.append(
            "- **Assignment certainty**: Give more confidence to clusters with lower "
            "uncertainty"
        )
    lines.extend(
        [
            "",
            "## Output Requirements",
            f"- **Word target (Interpretation)**: Aim for {word_band(word_limit)} words per "
            "interpretation (80%-100% of limit)",
            "- **Writing style**: Be specific and concrete rather than vague or generic",
        ]
    )
    return "\n".join(lines) + "\n"


def _gm_profile_section(data: MixtureAnalysisData) -> str:
    variables = list(data.profile_variables or data.variable_names)
    n_obs = data.n_observations if data.n_observations is not None else "an unknown number of"
    lines = [
        "# CLUSTER PROFILES",
        f"{data.n_components} clusters over {data.n_variables} variables and {n_obs} "
        "observations.",
    ]
    if data.covariance_type:
        lines.append(f"Covariance structure: {data.covariance_type}")
    lines.append("")

    uncertainty = data.average_uncertainty()
    for i, cid in enumerate(data.component_ids):
        lines.append(f"{cid} ({data.proportions[i] * 100:.1f}% of observations)")
        if uncertainty is not None and not np.isnan(uncertainty[i]):
            lines.append(f"  Average uncertainty: {uncertainty[i]:.3f}")
        lines.append("  Variable means:")
        for var in variables:
            mean = float(data.means.loc[var, cid])
            lines.append(f"    {var}: {mean:.3f}{magnitude_hint(mean)}")
        lines.append("")
    if data.n_components > 1:
        lines.append(
            "Note: Values represent standardized means. Focus on variables with the "
            "largest differences between clusters."
        )
    return "\n".join(lines) + "\n"


def _gm_main_prompt(data: MixtureAnalysisData, llm_args: LLMArgs) -> str:
    weighted = data.weight_by_uncertainty and data.uncertainty is not None
    requirements = [
        "- Describe each profile in terms of psychological or behavioral characteristics",
        "- Use the variable descriptions to inform meaningful interpretations",
    ]
    variables = list(data.profile_variables) if data.profile_variables else None
    return _assemble(
        [
            _guidelines_or_default(llm_args, _gm_guidelines(llm_args.word_limit, weighted)),
            _context_section(llm_args),
            _variable_section(data, variables),
            _gm_profile_section(data),
            _output_format_section(data, llm_args.word_limit, requirements),
        ]
    )


# =============================================================================
# DISPATCH
# =============================================================================
SYSTEM_PROMPT_BUILDERS: Dict[str, Callable[[LLMArgs], str]] = {
    constants.FA: _fa_system_prompt,
    constants.GM: _gm_system_prompt,
}

MAIN_PROMPT_BUILDERS: Dict[str, Callable[..., str]] = {
    constants.FA: _fa_main_prompt,
    constants.GM: _gm_main_prompt,
}


def build_system_prompt(analysis_type: str, llm_args: Optional[LLMArgs] = None) -> str:
    """
    Builds the system prompt for an analysis type.

    A custom `system_prompt` in `llm_args` replaces the built-in one.

    Raises:
        ParameterValidationError: If no builder exists for the analysis type.
    """
    llm_args = llm_args or LLMArgs()
    if llm_args.system_prompt:
        return llm_args.system_prompt
    if analysis_type not in SYSTEM_PROMPT_BUILDERS:
        raise ParameterValidationError(f"No system prompt for analysis type '{analysis_type}'.")
    return SYSTEM_PROMPT_BUILDERS[analysis_type](llm_args)


def build_main_prompt(
    analysis_type: str, data: AnalysisData, llm_args: Optional[LLMArgs] = None
) -> str:
    """
    Builds the per-call prompt from the standardized analysis data.

    Args:
        analysis_type: The analysis type tag.
        data: The standardized analysis record, including variable descriptions.
        llm_args: Resolved LLM arguments (word limit, guidelines, context).

    Returns:
        The prompt text.

    Raises:
        ParameterValidationError: If no builder exists or the data type disagrees.
    """
    llm_args = llm_args or LLMArgs()
    if analysis_type not in MAIN_PROMPT_BUILDERS:
        raise ParameterValidationError(f"No main prompt for analysis type '{analysis_type}'.")
    if data.analysis_type != analysis_type:
        raise ParameterValidationError(
            f"Analysis data is of type '{data.analysis_type}', not '{analysis_type}'."
        )
    prompt = MAIN_PROMPT_BUILDERS[analysis_type](data, llm_args)
    logger.debug(f"Built {analysis_type} prompt with {len(prompt)} characters.")
    return prompt
