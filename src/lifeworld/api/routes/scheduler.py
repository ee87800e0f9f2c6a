"""
Scheduler Routes
================
"""

from fastapi import APIRouter, Depends, Request

from lifeworld.core.engine import ConvergenceEngine

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


def get_engine(request: Request) -> ConvergenceEngine:
    return request.app.state.engine


@router.get("/status", summary="Scheduled auto-convergence status")
async def get_scheduler_status(engine: ConvergenceEngine = Depends(get_engine)):
    status = await engine.get_scheduler_status()
    return {
        "ok": True,
        "status": status.to_dict(),
        "recent_runs": [r.to_dict() for r in engine.scheduler.get_run_history(10)],
    }


@router.post("/trigger", summary="Run scheduled convergence now")
async def trigger_convergence(engine: ConvergenceEngine = Depends(get_engine)):
    run = await engine.trigger_convergence()
    if run is None:
        return {"ok": False, "detail": "A convergence run is already in flight"}
    return {"ok": True, "run": run.to_dict()}
