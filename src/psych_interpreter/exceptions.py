"""
Exception and warning types raised by the interpretation pipeline.

Fatal errors derive from `InterpretationError` and also from the builtin they
specialise, so callers can catch either. Non-fatal findings are issued as
`UserWarning` subclasses through the `warnings` module.
"""


class InterpretationError(Exception):
    """Base class for all fatal pipeline errors."""


class ParameterValidationError(InterpretationError, ValueError):
    """Raised when a configuration value or input shape is invalid."""


class DataMismatchError(InterpretationError, ValueError):
    """Raised when variable descriptions disagree with the extracted model data."""


class LLMTransportError(InterpretationError, RuntimeError):
    """Raised when the round trip to the language model fails."""


class ParseDegradationWarning(UserWarning):
    """The LLM response could not be parsed and placeholders were used."""


class DiagnosticWarning(UserWarning):
    """A data-quality finding about the analysed model."""
