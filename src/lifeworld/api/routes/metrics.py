"""
Metrics Routes
==============
Cognitive metrics, persisted history and anomaly evaluation.
"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse

from lifeworld.core.engine import ConvergenceEngine
from lifeworld.core.metrics import detect_anomalies, format_metrics_for_display
from lifeworld.core.models import MetricsSnapshot
from lifeworld.api.models import AnomalyRequest, AnomalyResponse

router = APIRouter(prefix="/metrics", tags=["Metrics"])


def get_engine(request: Request) -> ConvergenceEngine:
    return request.app.state.engine


@router.get("", summary="Compute the current metrics snapshot")
async def get_metrics(engine: ConvergenceEngine = Depends(get_engine)):
    result = await engine.get_metrics_with_history()
    previous = result["previous"]
    return {
        "ok": True,
        "metrics": result["current"].to_dict(),
        "previous": previous.to_dict() if previous else None,
        "trend": result["trend"],
        "warnings": result["warnings"],
    }


@router.get("/history", summary="Persisted metrics snapshots, newest first")
async def get_metrics_history(
    limit: int = Query(default=100, ge=1, le=1000),
    engine: ConvergenceEngine = Depends(get_engine),
):
    history = await engine.get_metrics_history(limit)
    return {"ok": True, "count": len(history), "history": [s.to_dict() for s in history]}


@router.get("/formatted", response_class=PlainTextResponse, summary="Metrics as a text panel")
async def get_metrics_formatted(engine: ConvergenceEngine = Depends(get_engine)):
    snapshot = await engine.get_metrics()
    return format_metrics_for_display(snapshot)


@router.post("/anomalies", response_model=AnomalyResponse, summary="Evaluate anomaly rules")
async def evaluate_anomalies(req: AnomalyRequest, engine: ConvergenceEngine = Depends(get_engine)):
    if req.metrics is None:
        snapshot = await engine.get_metrics()
    else:
        snapshot = MetricsSnapshot(**req.metrics.model_dump())
    return {"ok": True, "metrics": snapshot.to_dict(), "warnings": detect_anomalies(snapshot)}
