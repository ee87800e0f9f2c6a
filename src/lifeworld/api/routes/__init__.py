"""
API Route Modules
=================
Routes are organized by functional area:
- health: liveness and store reachability
- metrics: cognitive metrics, history and anomaly evaluation
- convergence: reactive convergence runs and ledger views
- scheduler: scheduled auto-convergence status and manual trigger
- predictive: drift forecasting and early collapse
- concepts: concept reinforcement
"""

from .health import router as health_router
from .metrics import router as metrics_router
from .convergence import router as convergence_router
from .scheduler import router as scheduler_router
from .predictive import router as predictive_router
from .concepts import router as concepts_router

__all__ = [
    "health_router",
    "metrics_router",
    "convergence_router",
    "scheduler_router",
    "predictive_router",
    "concepts_router",
]
