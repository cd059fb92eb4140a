"""Validation of untrusted analysis responses against the expected shape."""

import json
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union

import pydantic

from rental_analysis.analysis.schemas import (
    AnalysisReport,
    CombinedEnvelope,
    CombinedReport,
    ReportEnvelope,
    ResponseMetadata,
)
from rental_analysis.exceptions import ResponseValidationError, ValidationIssue
from rental_analysis.models.data_models import AnalysisKind
from rental_analysis.monitoring.logger import StructuredLogger


@dataclass(frozen=True)
class ValidatedAnalysis:
    """
    A remote response that passed schema validation.

    Instances are only built by ``ResponseValidator``. ``report`` is the
    kind-specific payload (``CombinedReport`` for combined, ``AnalysisReport``
    otherwise) and is ``None`` when the service answered ``success: false``.
    """
    kind: AnalysisKind
    success: bool
    report: Optional[Union[AnalysisReport, CombinedReport]] = None
    error: Optional[str] = None
    metadata: Optional[ResponseMetadata] = None

    @property
    def narrative(self) -> Optional[str]:
        if self.report is None:
            return None
        if isinstance(self.report, CombinedReport):
            return self.report.executive_summary
        return self.report.summary

    @property
    def insights(self) -> Tuple[str, ...]:
        if self.report is None:
            return ()
        if isinstance(self.report, CombinedReport):
            return tuple(self.report.analysis.insights)
        return tuple(self.report.insights)


def _issues_from(error: pydantic.ValidationError) -> List[ValidationIssue]:
    return [
        ValidationIssue(
            path=".".join(str(part) for part in item["loc"]) or "<root>",
            message=item["msg"],
            kind=item["type"],
        )
        for item in error.errors()
    ]


class ResponseValidator:
    """Checks decoded (or raw JSON text) responses for a requested analysis kind."""

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self.logger = logger

    def validate(self, raw: Any, expected_kind: Union[AnalysisKind, str] = AnalysisKind.COMBINED) -> ValidatedAnalysis:
        """
        Validate ``raw`` against the schema for ``expected_kind``.

        Args:
            raw: Decoded JSON value, or a JSON string to decode first
            expected_kind: Which response shape the caller asked for

        Returns:
            ValidatedAnalysis for the requested kind

        Raises:
            ResponseValidationError: On undecodable JSON or any schema mismatch;
                carries the original payload and the list of mismatches
        """
        kind = AnalysisKind(expected_kind)
        decoded = raw
        if isinstance(raw, (str, bytes, bytearray)):
            try:
                decoded = json.loads(raw)
            except ValueError:
                raise ResponseValidationError("Response is not valid JSON", raw) from None

        envelope_type = CombinedEnvelope if kind == AnalysisKind.COMBINED else ReportEnvelope
        try:
            envelope = envelope_type.model_validate(decoded)
        except pydantic.ValidationError as exc:
            raise ResponseValidationError(
                f"Validation failed for {kind.value} response",
                raw,
                _issues_from(exc),
            ) from exc

        return ValidatedAnalysis(
            kind=kind,
            success=envelope.success,
            report=envelope.data,
            error=envelope.error,
            metadata=envelope.metadata,
        )

    def safe_validate(self, raw: Any, expected_kind: Union[AnalysisKind, str] = AnalysisKind.COMBINED) -> Optional[ValidatedAnalysis]:
        """Best-effort variant of ``validate`` returning None instead of raising."""
        try:
            return self.validate(raw, expected_kind)
        except ResponseValidationError as exc:
            if self.logger:
                preview = raw[:200] if isinstance(raw, str) else raw
                self.logger.warning(
                    "response_validation_discarded",
                    expected_kind=AnalysisKind(expected_kind).value,
                    error=str(exc),
                    issues=[issue.path for issue in exc.issues],
                    response=preview,
                )
            return None
