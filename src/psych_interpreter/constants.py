"""
Centralized definitions for all package-wide constants.

This module consolidates analysis type tags, component naming conventions,
placeholder texts and default policy values so that the extractor, parser,
diagnostics and report builder agree on them.

Attributes:
    FA (str): Tag for factor analysis.
    GM (str): Tag for Gaussian mixture clustering.
    IMPLEMENTED_ANALYSIS_TYPES (tuple): Analysis types with a full pipeline.
    KNOWN_ANALYSIS_TYPES (tuple): All recognised analysis type tags.
    COMPONENT_KINDS (dict): Maps an analysis type to its component kind label.
    DEFAULT_MIN_COVERAGE (float): Fraction of components a parse must cover.
    NOT_SIGNIFICANT_SUFFIX (str): Marker appended to emergency-rule names.
"""

# --- Analysis Types ---
FA = "fa"
GM = "gm"
IRT = "irt"
CDM = "cdm"

IMPLEMENTED_ANALYSIS_TYPES = (FA, GM)
KNOWN_ANALYSIS_TYPES = (FA, GM, IRT, CDM)

ANALYSIS_DISPLAY_NAMES = {
    FA: "Factor Analysis",
    GM: "Gaussian Mixture",
    IRT: "Item Response Theory",
    CDM: "Cognitive Diagnosis Model",
}

# --- Component Naming ---
# Component ids are "<Kind>_<index>", 1-indexed and contiguous.
COMPONENT_KINDS = {FA: "Factor", GM: "Cluster"}

# --- LLM Providers ---
SUPPORTED_PROVIDERS = ("gemini", "ollama")
GEMINI_DEFAULT_MODEL_NAME = "gemini-flash-latest"
ECHO_MODES = ("none", "output", "all")

# --- Output Formats ---
OUTPUT_FORMATS = ("cli", "markdown")

# --- Gaussian Mixture ---
COVARIANCE_TYPES = ("full", "tied", "diag", "spherical")
UNBALANCED_RATIO_LIMIT = 5.0
UNCERTAIN_SHARE_LIMIT = 0.3
SEPARATION_DISTANCE_LIMIT = 2.0

# --- Parsing ---
DEFAULT_MIN_COVERAGE = 0.5
NOT_SIGNIFICANT_SUFFIX = " (n.s.)"
UNDEFINED_NAME = "undefined"
UNDEFINED_INTERPRETATION = "NA"
LLM_ERROR_INTERPRETATION = "Unable to generate interpretation due to LLM error"
MISSING_INTERPRETATION = "Missing from LLM response"

# --- Factor Status Values ---
STATUS_DEFINED = "defined"
STATUS_EMERGENCY = "emergency"
STATUS_UNDEFINED = "undefined"
