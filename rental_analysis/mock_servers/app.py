"""FastAPI mock of the remote analysis service."""

import asyncio
import os
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from rental_analysis.analysis.local_metrics import LocalKPIs, build_recommendations, calculate_all_metrics
from rental_analysis.models.data_models import AnalysisKind, AnalysisPayload


class AnalyzeRequest(BaseModel):
    """Body of ``POST /api/analyze``."""
    transactions: List[Dict[str, Any]] = Field(default_factory=list)
    reservations: List[Dict[str, Any]] = Field(default_factory=list)


def _kpi_narrative(kpis: LocalKPIs) -> str:
    return (
        f"<p>Occupancy is {kpis.occupancy_rate}% with an ADR of ${kpis.adr} "
        f"and RevPAR of ${kpis.revpar}. Net profit is ${kpis.balance.net_profit:,.2f}.</p>"
    )


def _insights(kpis: LocalKPIs) -> List[str]:
    return [
        f"Occupancy: {kpis.occupancy_rate}%",
        f"Average stay: {kpis.avg_stay_duration} days",
        f"Profit margin: {kpis.balance.profit_margin:.1f}%",
    ]


def _report(kind: AnalysisKind, narrative: str, insights: List[str]) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "type": kind.value,
        "summary": narrative,
        "insights": insights,
        "confidence": 0.8,
    }


def create_mock_app(
    name: str = "analysis-mock",
    error_rate: float = 0.0,
    forced_status: Optional[int] = None,
    malformed: bool = False,
    narrative: Optional[str] = None,
    random_seed: Optional[int] = None,
    extra_latency_ms: int = 0,
    total_cabins: int = 3
) -> FastAPI:
    """
    Create a FastAPI mock of the analysis service with configurable behavior.

    Args:
        name: Server name reported by ``/health``
        error_rate: Probability of answering with a random 5xx (0.0-1.0)
        forced_status: Always answer with this status and an error body
        malformed: Answer 200 with a body missing the narrative field
        narrative: Fixed narrative; derived from the record KPIs when None
        random_seed: Seed for deterministic error injection
        extra_latency_ms: Delay before answering
        total_cabins: Capacity used for the occupancy KPI

    Returns:
        FastAPI application
    """
    app = FastAPI(title=f"Mock Analysis API - {name}")
    rng = random.Random(random_seed)
    app.state.requests = 0

    @app.post("/api/analyze")
    async def analyze(body: AnalyzeRequest):
        """Analyze business records."""
        app.state.requests += 1

        if extra_latency_ms > 0:
            await asyncio.sleep(extra_latency_ms / 1000.0)

        if forced_status is not None:
            return JSONResponse(
                status_code=forced_status,
                content={"success": False, "error": f"Simulated error ({forced_status})"},
            )

        if rng.random() < error_rate:
            status = rng.choice([500, 502, 503])
            return JSONResponse(status_code=status, content={"error": "Simulated upstream failure"})

        payload = AnalysisPayload(body.transactions, body.reservations)
        if not payload.is_well_formed():
            return JSONResponse(
                status_code=400,
                content={"success": False, "error": "Transactions or reservations are required"},
            )

        kind = payload.expected_kind()
        kpis = calculate_all_metrics(payload.transactions, payload.reservations, total_cabins)
        text = narrative if narrative is not None else _kpi_narrative(kpis)
        insights = _insights(kpis)
        metadata = {"model": "mock-analysis", "usage": {"promptTokens": 0, "totalTokens": 0}}

        if kind == AnalysisKind.COMBINED:
            data: Dict[str, Any] = {
                "executiveSummary": text,
                "analysis": _report(kind, text, insights),
                "metrics": {"total": float(kpis.balance.net_profit), "trend": "stable"},
                "recommendations": [
                    {"priority": "medium", "action": action, "expectedOutcome": "Improved KPIs"}
                    for action in build_recommendations(kpis)
                ],
            }
            if malformed:
                del data["executiveSummary"]
        else:
            data = _report(kind, text, insights)
            if malformed:
                del data["summary"]

        return {"success": True, "data": data, "metadata": metadata}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "server": name, "requests": app.state.requests}

    return app


def create_app() -> FastAPI:
    """
    Factory function for uvicorn --factory.

    Behavior is read from MOCK_ERROR_RATE, MOCK_FORCED_STATUS, MOCK_MALFORMED
    and RANDOM_SEED.
    """
    forced_status = os.getenv("MOCK_FORCED_STATUS")
    return create_mock_app(
        name=os.getenv("SERVER_NAME", "analysis-mock"),
        error_rate=float(os.getenv("MOCK_ERROR_RATE", 0.0)),
        forced_status=int(forced_status) if forced_status else None,
        malformed=os.getenv("MOCK_MALFORMED", "").lower() in ("1", "true", "yes"),
        random_seed=int(os.getenv("RANDOM_SEED", 42)),
        extra_latency_ms=int(os.getenv("EXTRA_LATENCY_MS", 0)),
    )


def run(host: str = "127.0.0.1", port: Optional[int] = None) -> None:
    """Serve the mock with uvicorn; behavior comes from the environment (see ``create_app``)."""
    uvicorn.run(create_app, factory=True, host=host, port=port or int(os.getenv("PORT", 3001)))


if __name__ == "__main__":
    run()
