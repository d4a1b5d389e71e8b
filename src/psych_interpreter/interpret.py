"""
Entry point sequencing the whole interpretation pipeline.

`interpret()` runs, in order:

1.  Resolve the analysis type (argument, chat session or model class) and
    reject a chat session opened for another type.
2.  Resolve and validate all configuration (config objects > inline > defaults).
3.  Extract the standardized analysis data. Configuration and data problems
    are raised here, before any tokens are spent.
4.  Reuse the given chat session or open an ephemeral one.
5.  Build the main prompt and make exactly one LLM call.
6.  Parse the reply, run the diagnostics and render the report.

Execution:
    >>> from psych_interpreter import interpret
    >>> result = interpret(fa_model, variable_info, llm_provider="ollama",
    ...                    llm_model="gpt-oss:20b", word_limit=100)
    >>> print(result)
"""

# =============================================================================
# HEADER (Imports, Logger)
# =============================================================================
import logging
import time
from typing import Any, Optional

from .chat import ChatBackend, ChatSession
from .config import (
    ConfigSource,
    build_interpretation_args,
    build_llm_args,
    build_output_args,
    split_inline_args,
)
from .diagnostics import diagnose
from .exceptions import ParameterValidationError
from .extraction import extract, infer_analysis_type
from .models import Interpretation
from .parsing import parse_response
from .prompts import build_main_prompt
from .registry import (
    DEFAULT_REGISTRY,
    INTERPRETATION_ARGS,
    LLM_ARGS,
    OUTPUT_ARGS,
    ParameterRegistry,
    validate_analysis_type,
)
from .reporting import build_report

logger = logging.getLogger(__name__)


def _progress(message: str, silent: int) -> None:
    if silent < 2:
        logger.info(message)


def interpret(
    fit_results: Any,
    variable_info: Any,
    analysis_type: Optional[str] = None,
    *,
    chat_session: Optional[ChatSession] = None,
    llm_args: ConfigSource = None,
    output_args: ConfigSource = None,
    interpretation_args: ConfigSource = None,
    backend: Optional[ChatBackend] = None,
    registry: ParameterRegistry = DEFAULT_REGISTRY,
    **inline: Any,
) -> Interpretation:
    """
    Interprets a fitted model with a language model.

    Args:
        fit_results: A fitted model or structured record (see `extract`).
        variable_info: Variable descriptions, a DataFrame with 'variable' and
            'description' columns or a {variable: description} dict.
        analysis_type: 'fa' or 'gm'; taken from `chat_session` or inferred
            from `fit_results` when omitted.
        chat_session: A session to reuse; its counters are updated in place.
        llm_args: `LLMArgs` or dict; explicit values override inline ones.
        output_args: `OutputArgs` or dict.
        interpretation_args: Interpretation arguments for the analysis type.
        backend: A chat backend used when opening an ephemeral session.
        registry: The parameter registry used for validation and defaults.
        **inline: Any registered parameter, e.g. `llm_provider`, `cutoff`,
            `word_limit` or `format`.

    Returns:
        The `Interpretation`, whose `report` holds the rendered text.

    Raises:
        ParameterValidationError: On invalid configuration or input shape.
        DataMismatchError: If variable descriptions disagree with the model.
        LLMTransportError: If the LLM call fails.
    """
    start = time.perf_counter()

    # --- 1. Analysis type ---
    if analysis_type is None:
        if chat_session is not None:
            analysis_type = chat_session.analysis_type
        else:
            analysis_type = infer_analysis_type(fit_results)
    if analysis_type is None:
        raise ParameterValidationError(
            f"Cannot infer analysis_type for input of type {type(fit_results).__name__}; "
            "pass analysis_type explicitly."
        )
    analysis_type = validate_analysis_type(analysis_type)
    if chat_session is not None:
        chat_session.check_analysis_type(analysis_type)

    # --- 2. Configuration ---
    groups = split_inline_args(inline, registry)
    llm = build_llm_args(llm_args, registry, **groups[LLM_ARGS])
    output = build_output_args(output_args, registry, **groups[OUTPUT_ARGS])
    settings = build_interpretation_args(
        analysis_type, interpretation_args, registry, **groups[INTERPRETATION_ARGS]
    )
    if chat_session is None and backend is None and not llm.llm_provider:
        raise ParameterValidationError(
            "llm_provider is required when no chat_session is given (e.g. 'gemini' or 'ollama')."
        )

    # --- 3. Extraction ---
    data = extract(fit_results, variable_info, settings, analysis_type)
    _progress(
        f"Interpreting {data.n_components} {data.component_kind.lower()}(s) "
        f"over {data.n_variables} variables.",
        output.silent,
    )

    # --- 4. Chat session ---
    if chat_session is None:
        session = ChatSession.open(analysis_type, llm, backend=backend)
    else:
        session = chat_session
        if llm.llm_provider and llm.llm_provider != session.provider:
            logger.warning(
                f"llm_provider '{llm.llm_provider}' is ignored; the chat session uses "
                f"'{session.provider}'."
            )

    # --- 5. LLM call ---
    main_prompt = build_main_prompt(analysis_type, data, llm)
    _progress("Sending prompt to the LLM...", output.silent)
    reply = session.send(main_prompt, echo=llm.echo if llm.echo != "none" else None)
    _progress(
        f"Received response ({reply.input_tokens} input / {reply.output_tokens} output tokens).",
        output.silent,
    )

    # --- 6. Parse, diagnose, report ---
    parsed = parse_response(reply.text, data, settings.min_coverage, stacklevel=3)
    diagnostics = diagnose(data, stacklevel=3)
    interpretation = Interpretation(
        analysis_data=data,
        parsed=parsed,
        diagnostics=diagnostics,
        session=session,
        elapsed_time=time.perf_counter() - start,
        input_tokens=reply.input_tokens,
        output_tokens=reply.output_tokens,
        system_prompt=session.system_prompt,
        main_prompt=main_prompt,
        raw_response=reply.text,
        llm_model=session.model or llm.llm_model,
    )
    interpretation = interpretation.with_report(build_report(interpretation, output))
    _progress(
        f"Interpretation finished in {interpretation.elapsed_time:.2f} s.", output.silent
    )
    if output.silent == 0:
        print(interpretation.report)
    return interpretation
