"""Pydantic schemas for responses returned by the remote analysis service."""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class _ResponseModel(BaseModel):
    """Strict base: no coercion of untrusted values, unknown keys ignored."""
    model_config = ConfigDict(strict=True, populate_by_name=True, extra="ignore", frozen=True)


class UsageMetadata(_ResponseModel):
    prompt_tokens: Optional[int] = Field(default=None, alias="promptTokens")
    candidates_tokens: Optional[int] = Field(default=None, alias="candidatesTokens")
    total_tokens: Optional[int] = Field(default=None, alias="totalTokens")


class ResponseMetadata(_ResponseModel):
    model: str
    usage: Optional[UsageMetadata] = None


class AnalysisReport(_ResponseModel):
    """Single-domain analysis (also nested inside a combined report)."""
    id: Optional[str] = None
    timestamp: Optional[str] = None
    type: Literal["financial", "reservation", "combined"]
    summary: str
    insights: List[str]
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class AnalysisMetrics(_ResponseModel):
    total: float
    average: Optional[float] = None
    trend: Optional[Literal["up", "down", "stable"]] = None
    change: Optional[float] = None


class Recommendation(_ResponseModel):
    priority: Literal["high", "medium", "low"]
    action: str
    expected_outcome: str = Field(alias="expectedOutcome")
    timeline: Optional[str] = None


class CombinedReport(_ResponseModel):
    """Executive summary plus a tagged analysis record."""
    executive_summary: str = Field(alias="executiveSummary")
    analysis: AnalysisReport
    metrics: Optional[AnalysisMetrics] = None
    recommendations: Optional[List[Recommendation]] = None

    @field_validator("analysis")
    @classmethod
    def require_insights(cls, v: AnalysisReport) -> AnalysisReport:
        if not v.insights:
            raise ValueError("analysis.insights must contain at least one insight")
        return v


class _Envelope(_ResponseModel):
    success: bool
    error: Optional[str] = None
    metadata: Optional[ResponseMetadata] = None

    @model_validator(mode="after")
    def require_data_on_success(self):
        if self.success and getattr(self, "data", None) is None:
            raise ValueError("data is required when success is true")
        return self


class ReportEnvelope(_Envelope):
    """Envelope for financial-only or reservation-only responses."""
    data: Optional[AnalysisReport] = None


class CombinedEnvelope(_Envelope):
    """Envelope for responses covering both finances and reservations."""
    data: Optional[CombinedReport] = None
