"""Summary extraction and terminal failure classification."""

from dataclasses import dataclass
from typing import Optional, Union

from rental_analysis.analysis.sanitizer import ContentSanitizer
from rental_analysis.analysis.validator import ValidatedAnalysis
from rental_analysis.exceptions import (
    FETCH_FAILURE_SIGNATURE,
    USER_ABORT_SIGNATURE,
    ResponseValidationError,
    SummaryMissingError,
)
from rental_analysis.models.data_models import AnalysisKind, ErrorKind


@dataclass(frozen=True)
class FailureClassification:
    error_kind: ErrorKind
    user_message: str


def _seconds(timeout_ms: int) -> str:
    return f"{timeout_ms / 1000:g}"


def user_message_for(
    error_kind: ErrorKind,
    message: str = "",
    timeout_ms: int = 0,
    max_attempts: int = 0,
    remaining_seconds: int = 0
) -> str:
    """Fixed, user-presentable text for each error kind."""
    templates = {
        ErrorKind.TIMEOUT: f"Request cancelled or timed out ({_seconds(timeout_ms)}s). Please try again.",
        ErrorKind.NETWORK_ERROR: "Cannot connect to the analysis server. Check that it is running.",
        ErrorKind.USER_CANCELLED: "The analysis request was cancelled by the user.",
        ErrorKind.MAX_RETRIES_EXCEEDED: f"Analysis failed after {max_attempts} attempts: {message}",
        ErrorKind.VALIDATION_ERROR: "The analysis service returned an unexpected response. Please try again later.",
        ErrorKind.SERVER_ERROR: f"The analysis service reported an error: {message}",
        ErrorKind.CIRCUIT_OPEN: (
            f"The analysis service is temporarily unavailable. Try again in {remaining_seconds}s."
        ),
        ErrorKind.INVALID_PAYLOAD: "Transactions or reservations are required for the analysis.",
    }
    return templates[error_kind]


class FallbackStrategy:
    """Turns validated responses into displayable text and failures into user messages."""

    def __init__(self, sanitizer: Optional[ContentSanitizer] = None):
        self.sanitizer = sanitizer or ContentSanitizer()

    def get_sanitized_summary(
        self,
        response: ValidatedAnalysis,
        expected_kind: Union[AnalysisKind, str]
    ) -> str:
        """
        Extract the narrative for ``expected_kind`` and sanitize it.

        Raises:
            SummaryMissingError: If the response has no narrative for the kind
        """
        kind = AnalysisKind(expected_kind)
        narrative = response.narrative if response.kind == kind else None
        if not narrative:
            raise SummaryMissingError(f"Validated {kind.value} response has no summary")
        return self.sanitizer.sanitize(narrative)

    def classify_terminal_failure(
        self,
        message: str,
        was_aborted: bool,
        timeout_ms: int,
        max_attempts: int
    ) -> FailureClassification:
        """
        Classify the last failure of an exhausted request.

        First match wins: timeout abort, fetch failure, user abort, then the
        generic MAX_RETRIES_EXCEEDED.
        """
        if was_aborted:
            kind = ErrorKind.TIMEOUT
        elif FETCH_FAILURE_SIGNATURE.lower() in message.lower():
            kind = ErrorKind.NETWORK_ERROR
        elif USER_ABORT_SIGNATURE in message.lower():
            kind = ErrorKind.USER_CANCELLED
        else:
            kind = ErrorKind.MAX_RETRIES_EXCEEDED
        return FailureClassification(
            error_kind=kind,
            user_message=user_message_for(
                kind, message=message, timeout_ms=timeout_ms, max_attempts=max_attempts
            ),
        )

    @staticmethod
    def is_validation_error(error: BaseException) -> bool:
        """True when the service answered but the answer is unusable; retrying cannot help."""
        return isinstance(error, (ResponseValidationError, SummaryMissingError))
