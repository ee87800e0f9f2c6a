"""
Predictive Routes
=================
Drift forecasting and early collapse.
"""

from fastapi import APIRouter, Depends, Request

from lifeworld.core.engine import ConvergenceEngine
from lifeworld.core.exceptions import ConceptNotFoundError
from lifeworld.api.models import PredictiveRunRequest

router = APIRouter(prefix="/predictive", tags=["Predictive Convergence"])


def get_engine(request: Request) -> ConvergenceEngine:
    return request.app.state.engine


@router.get("/state", summary="Entropy trend, stability and predicted convergences")
async def get_predictive_state(engine: ConvergenceEngine = Depends(get_engine)):
    state = await engine.get_predictive_state()
    return {"ok": True, "state": state.to_dict()}


@router.get("/forecast", summary="Discrete drift forecast")
async def get_drift_forecast(engine: ConvergenceEngine = Depends(get_engine)):
    forecast = await engine.get_drift_forecast()
    return {"ok": True, "forecast": forecast.to_dict()}


@router.get("/trajectory/{concept_id}", summary="Drift trajectory of one concept")
async def get_concept_trajectory(concept_id: int, engine: ConvergenceEngine = Depends(get_engine)):
    trajectory = await engine.predict_concept_trajectory(concept_id)
    if trajectory is None:
        raise ConceptNotFoundError(concept_id)
    return {"ok": True, "trajectory": trajectory.to_dict()}


@router.post("/run", summary="Collapse high-probability predicted pairs")
async def run_predictive_convergence(req: PredictiveRunRequest, engine: ConvergenceEngine = Depends(get_engine)):
    result = await engine.run_predictive_convergence(req.probability_threshold)
    return {"ok": True, "result": result.to_dict()}
