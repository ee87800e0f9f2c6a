"""
Convergence Routes
==================
Reactive (oracle-backed) convergence and ledger views.
"""

from fastapi import APIRouter, Depends, Query, Request

from lifeworld.core.engine import ConvergenceEngine
from lifeworld.api.models import ConvergenceRunRequest

router = APIRouter(prefix="/convergence", tags=["Convergence"])


def get_engine(request: Request) -> ConvergenceEngine:
    return request.app.state.engine


@router.post("/run", summary="Find and merge similar concepts")
async def run_convergence(req: ConvergenceRunRequest, engine: ConvergenceEngine = Depends(get_engine)):
    result = await engine.run_convergence(req.threshold)
    return {"ok": True, "result": result.to_dict()}


@router.get("/stats", summary="Concept totals and recent merge statistics")
async def get_convergence_stats(engine: ConvergenceEngine = Depends(get_engine)):
    stats = await engine.get_convergence_stats()
    return {"ok": True, "stats": stats.to_dict()}


@router.get("/history", summary="Merge ledger, newest first")
async def get_convergence_history(
    limit: int = Query(default=30, ge=1, le=500),
    engine: ConvergenceEngine = Depends(get_engine),
):
    events = await engine.get_convergence_history(limit)
    return {"ok": True, "count": len(events), "history": [e.to_dict() for e in events]}


@router.get("/invariants", summary="Concepts that have stabilized")
async def get_semantic_invariants(engine: ConvergenceEngine = Depends(get_engine)):
    invariants = await engine.identify_semantic_invariants()
    return {"ok": True, "count": len(invariants), "invariants": [c.to_dict() for c in invariants]}
