"""
psych_interpreter: LLM-assisted interpretation of factor analysis and
Gaussian mixture results.

The package turns fitted models (scikit-learn or plain loading/mean records)
plus variable descriptions into named components with narrative
interpretations, data-quality diagnostics and a cli or markdown report.
"""

from .chat import ChatBackend, ChatSession, LangChainChatBackend, create_chat_model
from .config import (
    FAInterpretationArgs,
    GMInterpretationArgs,
    LLMArgs,
    OutputArgs,
    load_config,
)
from .diagnostics import diagnose
from .exceptions import (
    DataMismatchError,
    DiagnosticWarning,
    InterpretationError,
    LLMTransportError,
    ParameterValidationError,
    ParseDegradationWarning,
)
from .extraction import extract
from .interpret import interpret
from .models import Interpretation
from .parsing import parse_response
from .prompts import build_main_prompt, build_system_prompt
from .registry import DEFAULT_REGISTRY, ParameterRegistry, build_default_registry
from .reporting import build_report, render_html

__all__ = [
    "ChatBackend",
    "ChatSession",
    "DEFAULT_REGISTRY",
    "DataMismatchError",
    "DiagnosticWarning",
    "FAInterpretationArgs",
    "GMInterpretationArgs",
    "Interpretation",
    "InterpretationError",
    "LLMArgs",
    "LLMTransportError",
    "LangChainChatBackend",
    "OutputArgs",
    "ParameterRegistry",
    "ParameterValidationError",
    "ParseDegradationWarning",
    "build_default_registry",
    "build_main_prompt",
    "build_report",
    "build_system_prompt",
    "create_chat_model",
    "diagnose",
    "extract",
    "interpret",
    "load_config",
    "parse_response",
    "render_html",
]
