"""
Lifeworld Core Module
=====================
Algorithms of the convergence engine.

Metrics:
    - MetricsEngine: six scalar health metrics from a graph snapshot
    - detect_anomalies: independent threshold rules over a snapshot

Convergence:
    - LLMSimilarityOracle: batched similarity judgments from a language model
    - MergeCoordinator: serialized, transactional merge + ledger append
    - ReactiveConvergenceEngine: oracle-backed merging
    - DriftForecaster: trajectory forecasting and early collapse
    - ConvergenceScheduler: ledger-gated periodic runs

Facade:
    - ConvergenceEngine

Example:
    from lifeworld.core import ConvergenceEngine

    engine = ConvergenceEngine.from_config()
    await engine.initialize()
    forecast = await engine.get_drift_forecast()
"""

from .config import LifeworldConfig, get_config, load_config, reset_config
from .exceptions import (
    LifeworldError,
    StorageError,
    StoreUnavailableError,
    OracleError,
    OracleCallError,
    OracleParseError,
    MergeIntegrityError,
    ConfigurationError,
    ValidationError,
    ConceptNotFoundError,
)
from .models import (
    Concept,
    ConceptEdge,
    UserConceptLink,
    MergeEvent,
    MetricsSnapshot,
    SimilarityCandidate,
)

# Components depend on lifeworld.storage, which imports this package; load them lazily.
_LAZY = {
    "ConvergenceEngine": ".engine",
    "MetricsEngine": ".metrics",
    "detect_anomalies": ".metrics",
    "format_metrics_for_display": ".metrics",
    "LLMSimilarityOracle": ".oracle",
    "SimilarityOracle": ".oracle",
    "MergeCoordinator": ".merge",
    "ReactiveConvergenceEngine": ".convergence",
    "DriftForecaster": ".predictive",
    "ConvergenceScheduler": ".scheduler",
}


def __getattr__(name):
    if name in _LAZY:
        import importlib

        module = importlib.import_module(_LAZY[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "LifeworldConfig",
    "get_config",
    "load_config",
    "reset_config",
    "LifeworldError",
    "StorageError",
    "StoreUnavailableError",
    "OracleError",
    "OracleCallError",
    "OracleParseError",
    "MergeIntegrityError",
    "ConfigurationError",
    "ValidationError",
    "ConceptNotFoundError",
    "Concept",
    "ConceptEdge",
    "UserConceptLink",
    "MergeEvent",
    "MetricsSnapshot",
    "SimilarityCandidate",
    *_LAZY,
]
