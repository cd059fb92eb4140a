"""Response validation, sanitization and fallback handling for remote analyses."""

from .degraded_mode import DegradedModeController
from .fallback import FailureClassification, FallbackStrategy, user_message_for
from .local_metrics import calculate_all_metrics, generate_local_analysis
from .sanitizer import ContentSanitizer, sanitize
from .validator import ResponseValidator, ValidatedAnalysis

__all__ = [
    "ContentSanitizer",
    "DegradedModeController",
    "FailureClassification",
    "FallbackStrategy",
    "ResponseValidator",
    "ValidatedAnalysis",
    "calculate_all_metrics",
    "generate_local_analysis",
    "sanitize",
    "user_message_for",
]
