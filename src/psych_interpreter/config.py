"""
Pydantic configuration models and their resolution against the registry.

Each argument group has a frozen model (`LLMArgs`, `OutputArgs` and one
interpretation model per analysis type). Field values are checked by the same
validators the parameter registry uses, so a hand-built model and a merged
one obey identical rules.

Resolution follows a strict precedence, highest first:

1.  Fields explicitly set on a configuration object (or keys of a plain dict).
2.  Inline keyword arguments.
3.  Registry defaults.

Settings can also be read from a YAML file with `load_config`.
"""

# =============================================================================
# HEADER (Imports, Logger)
# =============================================================================
import logging
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import constants
from .exceptions import ParameterValidationError
from .registry import (
    DEFAULT_REGISTRY,
    INTERPRETATION_ARGS,
    LLM_ARGS,
    OUTPUT_ARGS,
    ParameterRegistry,
    validate_analysis_type,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION MODELS (Pydantic)
# =============================================================================
class _RegistryCheckedArgs(BaseModel):
    """Base model whose fields are validated by the default parameter registry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("*", mode="before")
    @classmethod
    def _check_with_registry(cls, value: Any, info) -> Any:
        result = DEFAULT_REGISTRY.validate(info.field_name, value)
        if not result.valid:
            raise ValueError(result.message)
        return result.normalized


class LLMArgs(_RegistryCheckedArgs):
    """Settings for the language model and the prompt it receives."""

    llm_provider: Optional[str] = Field(
        default=None, description="The LLM provider to use ('gemini' or 'ollama')."
    )
    llm_model: Optional[str] = None
    system_prompt: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    word_limit: int = DEFAULT_REGISTRY.default("word_limit")
    interpretation_guidelines: Optional[str] = None
    additional_info: Optional[str] = None
    echo: str = DEFAULT_REGISTRY.default("echo")


class OutputArgs(_RegistryCheckedArgs):
    """Settings for report rendering and console output."""

    format: str = DEFAULT_REGISTRY.default("format")
    heading_level: int = DEFAULT_REGISTRY.default("heading_level")
    suppress_heading: bool = DEFAULT_REGISTRY.default("suppress_heading")
    max_line_length: int = DEFAULT_REGISTRY.default("max_line_length")
    silent: int = DEFAULT_REGISTRY.default("silent")


class FAInterpretationArgs(_RegistryCheckedArgs):
    """Factor analysis specific interpretation settings."""

    min_coverage: float = DEFAULT_REGISTRY.default("min_coverage")
    cutoff: float = DEFAULT_REGISTRY.default("cutoff")
    n_emergency: int = DEFAULT_REGISTRY.default("n_emergency")
    hide_low_loadings: bool = DEFAULT_REGISTRY.default("hide_low_loadings")
    sort_loadings: bool = DEFAULT_REGISTRY.default("sort_loadings")


class GMInterpretationArgs(_RegistryCheckedArgs):
    """Gaussian mixture specific interpretation settings."""

    min_coverage: float = DEFAULT_REGISTRY.default("min_coverage")
    n_clusters: Optional[int] = None
    covariance_type: Optional[str] = None
    min_cluster_size: int = DEFAULT_REGISTRY.default("min_cluster_size")
    separation_threshold: float = DEFAULT_REGISTRY.default("separation_threshold")
    profile_variables: Optional[Tuple[str, ...]] = None
    weight_by_uncertainty: bool = DEFAULT_REGISTRY.default("weight_by_uncertainty")


InterpretationArgs = Union[FAInterpretationArgs, GMInterpretationArgs]

INTERPRETATION_ARGS_MODELS: Dict[str, Type[BaseModel]] = {
    constants.FA: FAInterpretationArgs,
    constants.GM: GMInterpretationArgs,
}


class InterpretationSettings(BaseModel):
    """Aggregates all argument groups as read from a settings file."""

    llm: LLMArgs = Field(default_factory=LLMArgs)
    output: OutputArgs = Field(default_factory=OutputArgs)
    interpretation: Dict[str, Any] = Field(
        default_factory=dict,
        description="Interpretation arguments, checked once the analysis type is known.",
    )


ConfigSource = Optional[Union[BaseModel, Mapping[str, Any]]]


# =============================================================================
# RESOLUTION
# =============================================================================
def _explicit_fields(config: ConfigSource, group: str) -> Dict[str, Any]:
    """Returns only the values a caller deliberately set on a config object."""
    if config is None:
        return {}
    if isinstance(config, BaseModel):
        return config.model_dump(exclude_unset=True)
    if isinstance(config, Mapping):
        return dict(config)
    raise ParameterValidationError(
        f"{group} must be a configuration object or a dictionary, "
        f"got {type(config).__name__}."
    )


def _resolve(
    model_cls: Type[BaseModel],
    group: str,
    config: ConfigSource,
    inline: Mapping[str, Any],
    registry: ParameterRegistry,
    analysis_type: Optional[str] = None,
) -> Any:
    merged = registry.merge(
        _explicit_fields(config, group),
        dict(inline),
        group=group,
        analysis_type=analysis_type,
    )
    try:
        return model_cls(**merged)
    except ValidationError as e:
        raise ParameterValidationError(f"Invalid {group}: {e}") from e


def build_llm_args(
    config: ConfigSource = None,
    registry: ParameterRegistry = DEFAULT_REGISTRY,
    **inline: Any,
) -> LLMArgs:
    """
    Resolves the LLM argument group.

    Args:
        config: An `LLMArgs` object or a dict; its explicit values win.
        registry: The parameter registry supplying defaults and validators.
        **inline: Keyword arguments, used where the config object is silent.

    Returns:
        A frozen, fully populated `LLMArgs`.

    Raises:
        ParameterValidationError: If any value is unknown or invalid.
    """
    return _resolve(LLMArgs, LLM_ARGS, config, inline, registry)


def build_output_args(
    config: ConfigSource = None,
    registry: ParameterRegistry = DEFAULT_REGISTRY,
    **inline: Any,
) -> OutputArgs:
    """Resolves the output argument group with the same precedence as `build_llm_args`."""
    return _resolve(OutputArgs, OUTPUT_ARGS, config, inline, registry)


def build_interpretation_args(
    analysis_type: str,
    config: ConfigSource = None,
    registry: ParameterRegistry = DEFAULT_REGISTRY,
    **inline: Any,
) -> InterpretationArgs:
    """
    Resolves the interpretation arguments for one analysis type.

    Parameters of other analysis types are rejected rather than ignored.
    """
    analysis_type = validate_analysis_type(analysis_type)
    model_cls = INTERPRETATION_ARGS_MODELS[analysis_type]
    return _resolve(
        model_cls, INTERPRETATION_ARGS, config, inline, registry, analysis_type
    )


def split_inline_args(
    inline: Mapping[str, Any], registry: ParameterRegistry = DEFAULT_REGISTRY
) -> Dict[str, Dict[str, Any]]:
    """
    Sorts flat keyword arguments into their argument groups.

    Raises:
        ParameterValidationError: If a keyword is not a registered parameter.
    """
    groups: Dict[str, Dict[str, Any]] = {
        LLM_ARGS: {},
        OUTPUT_ARGS: {},
        INTERPRETATION_ARGS: {},
    }
    for key, value in inline.items():
        if key not in registry:
            raise ParameterValidationError(f"Unknown argument '{key}'.")
        groups[registry.get(key).group][key] = value
    return groups


# =============================================================================
# SETTINGS FILE
# =============================================================================
def load_config(config_path: str) -> InterpretationSettings:
    """
    Loads and validates interpretation settings from a YAML file.

    The file may contain `llm`, `output` and `interpretation` sections. Only
    the values present in the file count as explicitly set, so inline
    arguments still apply to everything the file leaves out.

    Args:
        config_path: The path to the YAML configuration file.

    Returns:
        A validated `InterpretationSettings` object.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file is empty.
        yaml.YAMLError: If the file is not valid YAML.
        ValidationError: If the file content does not match the settings model.
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
            if not config_data:
                raise ValueError("Configuration file is empty.")
        return InterpretationSettings(**config_data)
    except FileNotFoundError:
        logger.error(f"Configuration file not found at {config_path}.")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Error parsing configuration YAML file '{config_path}': {e}")
        raise
    except ValidationError as e:
        logger.error(f"Error validating configuration from '{config_path}':\n{e}")
        raise
    except Exception as e:
        logger.error(
            f"An unexpected error occurred while loading config '{config_path}': {e}"
        )
        raise
