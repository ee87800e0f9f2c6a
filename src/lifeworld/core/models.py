"""
Concept graph records and engine result types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ._utils import clamp_density, utc_now


# ------------------------------------------------------------------ #
#  Graph records                                                      #
# ------------------------------------------------------------------ #

@dataclass
class Concept:
    """A node in the concept graph."""

    id: int
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    semantic_density: int = 50  # 0-100, "how fundamental/universal"
    occurrences: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.semantic_density = clamp_density(self.semantic_density)

    @property
    def cluster(self) -> str:
        """Category used for clustering; missing categories fall into 'general'."""
        return self.category or "general"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "semantic_density": self.semantic_density,
            "occurrences": self.occurrences,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ConceptEdge:
    """Directed relation between two concepts."""

    id: int
    source_id: int
    target_id: int
    relation_type: Optional[str] = None
    weight: int = 1


@dataclass
class UserConceptLink:
    """Association between a user and a concept (reinforcement counter)."""

    id: int
    user_id: int
    concept_id: int
    strength: int = 1
    conversation_id: Optional[int] = None


@dataclass(frozen=True)
class MergeEvent:
    """Immutable ledger row recording one convergence."""

    from_concept_id: int  # absorbed
    to_concept_id: int    # surviving
    similarity_score: int  # 0-100
    reason: str
    total_concepts_before: int
    total_concepts_after: int
    merged_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None

    @property
    def compression_rate(self) -> float:
        if self.total_concepts_before <= 0:
            return 0.0
        return (self.total_concepts_before - self.total_concepts_after) / self.total_concepts_before

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_concept_id": self.from_concept_id,
            "to_concept_id": self.to_concept_id,
            "similarity_score": self.similarity_score,
            "reason": self.reason,
            "total_concepts_before": self.total_concepts_before,
            "total_concepts_after": self.total_concepts_after,
            "merged_at": self.merged_at.isoformat(),
        }


@dataclass
class MetricsSnapshot:
    """Six scalar health metrics plus graph counts."""

    compression_rate: float = 0.0        # Cm, 0-1
    graph_entropy_change: float = 0.0    # dG, signed
    semantic_drift: float = 0.0          # sigma, 0-1
    curvature: float = 0.0               # kappa, 0-1
    adaptive_match_score: float = 0.5    # psi, 0-1
    lifeworld_complexity: float = 0.0    # lambda, unbounded
    node_count: int = 0
    edge_count: int = 0
    invariant_count: int = 0
    cluster_count: int = 0
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compression_rate": self.compression_rate,
            "graph_entropy_change": self.graph_entropy_change,
            "semantic_drift": self.semantic_drift,
            "curvature": self.curvature,
            "adaptive_match_score": self.adaptive_match_score,
            "lifeworld_complexity": self.lifeworld_complexity,
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "invariant_count": self.invariant_count,
            "cluster_count": self.cluster_count,
            "timestamp": self.timestamp.isoformat(),
        }


# ------------------------------------------------------------------ #
#  Oracle                                                             #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class SimilarityCandidate:
    """A pair the oracle judged similar enough to merge."""

    id1: int
    id2: int
    similarity: float  # 0-1
    reason: str = ""


# ------------------------------------------------------------------ #
#  Convergence results                                                #
# ------------------------------------------------------------------ #

@dataclass
class ConvergenceResult:
    merged_count: int
    total_concepts: int
    compression_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merged_count": self.merged_count,
            "total_concepts": self.total_concepts,
            "compression_rate": self.compression_rate,
        }


@dataclass
class ConvergenceStats:
    total_concepts: int
    invariant_count: int
    recent_merges: int
    avg_compression_rate: float
    trend: str  # "expanding" | "compressing" | "stable"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_concepts": self.total_concepts,
            "invariant_count": self.invariant_count,
            "recent_merges": self.recent_merges,
            "avg_compression_rate": self.avg_compression_rate,
            "trend": self.trend,
        }


# ------------------------------------------------------------------ #
#  Forecasting                                                        #
# ------------------------------------------------------------------ #

@dataclass
class DriftTrajectory:
    concept_id: int
    concept_name: str
    current_density: int
    predicted_density: float
    drift_velocity: float
    drift_acceleration: float
    stability_score: float
    convergence_probability: float
    predicted_merge_target: Optional[int]
    time_to_convergence: float  # -1 when not applicable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept_id": self.concept_id,
            "concept_name": self.concept_name,
            "current_density": self.current_density,
            "predicted_density": self.predicted_density,
            "drift_velocity": self.drift_velocity,
            "drift_acceleration": self.drift_acceleration,
            "stability_score": self.stability_score,
            "convergence_probability": self.convergence_probability,
            "predicted_merge_target": self.predicted_merge_target,
            "time_to_convergence": self.time_to_convergence,
        }


@dataclass
class PredictedConvergence:
    concept1: str
    concept2: str
    probability: float
    estimated_time: float
    concept1_id: Optional[int] = None
    concept2_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept1": self.concept1,
            "concept2": self.concept2,
            "probability": self.probability,
            "estimated_time": self.estimated_time,
        }


@dataclass
class PredictiveState:
    entropy_trend: str  # "increasing" | "decreasing" | "stable"
    drift_velocity: float
    system_stability: float
    predicted_convergences: List[PredictedConvergence] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entropy_trend": self.entropy_trend,
            "drift_velocity": self.drift_velocity,
            "system_stability": self.system_stability,
            "predicted_convergences": [p.to_dict() for p in self.predicted_convergences],
            "recommendations": list(self.recommendations),
        }


@dataclass
class DriftForecast:
    current_state: str  # "stable" | "drifting" | "fragmenting" | "converging"
    forecast: str
    confidence: float
    trajectories: List[DriftTrajectory] = field(default_factory=list)
    action_required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_state": self.current_state,
            "forecast": self.forecast,
            "confidence": self.confidence,
            "trajectories": [t.to_dict() for t in self.trajectories],
            "action_required": self.action_required,
        }


@dataclass
class PredictiveConvergenceResult:
    merged_count: int
    predictions: List[PredictedConvergence]
    early_collapses: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merged_count": self.merged_count,
            "predictions": [p.to_dict() for p in self.predictions],
            "early_collapses": list(self.early_collapses),
        }


# ------------------------------------------------------------------ #
#  Scheduling                                                         #
# ------------------------------------------------------------------ #

@dataclass
class ConvergenceRunMetrics:
    concept_count_before: int
    concept_count_after: int
    merge_count: int
    compression_rate: float
    timestamp: datetime
    duration_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept_count_before": self.concept_count_before,
            "concept_count_after": self.concept_count_after,
            "merge_count": self.merge_count,
            "compression_rate": self.compression_rate,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class TemporalCoherence:
    avg_compression_rate: float
    trend: str  # "accelerating" | "stabilizing" | "stagnant" | "insufficient_data"
    stability: float
    total_concept_reduction: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "avg_compression_rate": self.avg_compression_rate,
            "trend": self.trend,
            "stability": self.stability,
            "total_concept_reduction": self.total_concept_reduction,
        }


@dataclass
class SchedulerStatus:
    is_running: bool
    last_run: Optional[datetime]
    next_run_in: str
    stats: ConvergenceStats
    temporal_coherence: TemporalCoherence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run_in": self.next_run_in,
            "stats": self.stats.to_dict(),
            "temporal_coherence": self.temporal_coherence.to_dict(),
        }
