"""
Health Routes
=============
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from loguru import logger

from lifeworld import __version__
from lifeworld.core.engine import ConvergenceEngine
from lifeworld.core.exceptions import StoreUnavailableError
from lifeworld.api.models import HealthResponse

router = APIRouter(tags=["Health"])


def get_engine(request: Request) -> ConvergenceEngine:
    return request.app.state.engine


@router.get("/health", response_model=HealthResponse)
async def health(engine: ConvergenceEngine = Depends(get_engine)):
    concepts = None
    try:
        concepts = await engine.store.count_concepts()
    except StoreUnavailableError as e:
        logger.warning(f"Health check: store unavailable: {e}")

    return {
        "status": "healthy" if concepts is not None else "degraded",
        "version": __version__,
        "store": engine.store.backend_name,
        "concepts": concepts,
        "scheduler_running": engine.scheduler.is_running,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
