"""Unit tests for response schema validation."""

import json
from unittest.mock import Mock

import pytest

from rental_analysis.analysis.schemas import AnalysisReport, CombinedReport
from rental_analysis.analysis.validator import ResponseValidator
from rental_analysis.exceptions import ResponseValidationError
from rental_analysis.models.data_models import AnalysisKind
from tests.fixtures.sample_data import combined_response, report_response


@pytest.fixture
def validator():
    return ResponseValidator()


class TestCombinedResponses:

    def test_valid_combined_response(self, validator):
        result = validator.validate(combined_response("<p>Good quarter</p>"), AnalysisKind.COMBINED)

        assert result.success is True
        assert result.kind == AnalysisKind.COMBINED
        assert isinstance(result.report, CombinedReport)
        assert result.narrative == "<p>Good quarter</p>"
        assert result.insights == ("Occupancy is rising",)
        assert result.metadata.model == "gemini-pro"
        assert result.metadata.usage.total_tokens == 480

    def test_accepts_json_text(self, validator):
        raw = json.dumps(combined_response())
        assert validator.validate(raw, "combined").narrative == "<p>Good quarter</p>"

    def test_missing_executive_summary(self, validator):
        body = combined_response()
        del body["data"]["executiveSummary"]

        with pytest.raises(ResponseValidationError) as exc_info:
            validator.validate(body, AnalysisKind.COMBINED)

        paths = [issue.path for issue in exc_info.value.issues]
        assert "data.executiveSummary" in paths
        assert exc_info.value.raw is body

    def test_empty_insights_rejected(self, validator):
        body = combined_response()
        body["data"]["analysis"]["insights"] = []

        with pytest.raises(ResponseValidationError):
            validator.validate(body, AnalysisKind.COMBINED)

    def test_confidence_out_of_range_rejected(self, validator):
        body = combined_response()
        body["data"]["analysis"]["confidence"] = 1.5

        with pytest.raises(ResponseValidationError):
            validator.validate(body, AnalysisKind.COMBINED)

    def test_wrong_types_are_not_coerced(self, validator):
        body = combined_response()
        body["data"]["executiveSummary"] = 123

        with pytest.raises(ResponseValidationError):
            validator.validate(body, AnalysisKind.COMBINED)

    def test_unknown_recommendation_priority_rejected(self, validator):
        body = combined_response()
        body["data"]["recommendations"][0]["priority"] = "urgent"

        with pytest.raises(ResponseValidationError):
            validator.validate(body, AnalysisKind.COMBINED)

    def test_unknown_fields_ignored(self, validator):
        body = combined_response()
        body["data"]["extra"] = {"anything": True}
        body["requestId"] = "abc"

        assert validator.validate(body, AnalysisKind.COMBINED).success is True


class TestSingleKindResponses:

    @pytest.mark.parametrize("kind", [AnalysisKind.FINANCIAL, AnalysisKind.RESERVATION])
    def test_valid_report(self, validator, kind):
        result = validator.validate(report_response(kind.value, "Steady income"), kind)

        assert isinstance(result.report, AnalysisReport)
        assert result.narrative == "Steady income"

    def test_missing_summary(self, validator):
        body = report_response("financial")
        del body["data"]["summary"]

        with pytest.raises(ResponseValidationError):
            validator.validate(body, AnalysisKind.FINANCIAL)

    def test_unknown_type_tag_rejected(self, validator):
        body = report_response("financial")
        body["data"]["type"] = "marketing"

        with pytest.raises(ResponseValidationError):
            validator.validate(body, AnalysisKind.FINANCIAL)

    def test_combined_body_fails_single_kind_schema(self, validator):
        with pytest.raises(ResponseValidationError):
            validator.validate(combined_response(), AnalysisKind.FINANCIAL)


class TestEnvelope:

    def test_failure_envelope_without_data(self, validator):
        result = validator.validate({"success": False, "error": "Quota exceeded"}, AnalysisKind.COMBINED)

        assert result.success is False
        assert result.error == "Quota exceeded"
        assert result.report is None
        assert result.narrative is None

    def test_success_requires_data(self, validator):
        with pytest.raises(ResponseValidationError):
            validator.validate({"success": True}, AnalysisKind.COMBINED)

    def test_success_flag_must_be_boolean(self, validator):
        body = combined_response()
        body["success"] = "true"

        with pytest.raises(ResponseValidationError):
            validator.validate(body, AnalysisKind.COMBINED)

    def test_invalid_json_text(self, validator):
        with pytest.raises(ResponseValidationError, match="not valid JSON") as exc_info:
            validator.validate("<html>502</html>", AnalysisKind.COMBINED)
        assert exc_info.value.raw == "<html>502</html>"

    @pytest.mark.parametrize("raw", [None, [], "null", 42])
    def test_non_object_payloads_rejected(self, validator, raw):
        with pytest.raises(ResponseValidationError):
            validator.validate(raw, AnalysisKind.COMBINED)


class TestDiagnostics:

    def test_detailed_string_includes_issues_and_payload(self, validator):
        body = combined_response()
        del body["data"]["executiveSummary"]

        with pytest.raises(ResponseValidationError) as exc_info:
            validator.validate(body, AnalysisKind.COMBINED)

        details = exc_info.value.to_detailed_string()
        assert "Validation Errors:" in details
        assert "data.executiveSummary" in details
        assert "Original Response:" in details
        assert "gemini-pro" in details

    def test_safe_validate_returns_none_and_logs(self):
        logger = Mock()
        validator = ResponseValidator(logger=logger)

        assert validator.safe_validate({"success": True}, AnalysisKind.COMBINED) is None
        logger.warning.assert_called_once()
        assert logger.warning.call_args.args[0] == "response_validation_discarded"

    def test_safe_validate_passes_valid_response(self):
        validator = ResponseValidator()
        assert validator.safe_validate(combined_response(), "combined").success is True
