"""
Cognitive Metrics Engine
========================
Scalar health instrumentation for the concept graph.

    Cm  compression rate       1 - current/max_observed            [0, 1]
    dG  graph entropy change   H(now) - H(previous)                signed
    s   semantic drift         occurrence-weighted recent updates  [0, 1]
    k   curvature              CV of cluster sizes                 [0, 1]
    Psi adaptive match         mean link strength / max strength   [0, 1]
    L   lifeworld complexity   (I + C + H) * log2(C + 1)           unbounded

Reading the graph happens once per computation (``read_graph_snapshot``);
every metric is then a pure function of that snapshot plus the two persisted
scalars (running max size, previous entropy).

Usage:
    engine = MetricsEngine(store, config.metrics)
    snapshot = await engine.get_metrics()
    warnings = detect_anomalies(snapshot)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Sequence, TypeVar

import numpy as np
from loguru import logger

from ._utils import Clock, clamp, ensure_utc, utc_now
from .config import MetricsConfig
from .exceptions import StoreUnavailableError
from .models import Concept, MetricsSnapshot

from lifeworld.storage.base import (
    MAX_OBSERVED_CONCEPTS,
    ORDER_UPDATED,
    PREVIOUS_ENTROPY,
    ConceptStore,
)

T = TypeVar("T")

# Counter read failed; distinct from None, which means never written
_UNREAD: Any = object()

# Anomaly rule names (each warning string starts with one of these)
RUNAWAY_DRIFT = "runaway drift"
STAGNATION = "stagnation"
MODE_COLLAPSE = "mode collapse"
OVERFITTING = "overfitting"
FRAGMENTATION = "fragmentation"


# ------------------------------------------------------------------ #
#  Graph snapshot                                                     #
# ------------------------------------------------------------------ #

@dataclass
class GraphSnapshot:
    """Everything the metrics need, read from the store in one pass."""

    node_count: int = 0
    edge_count: int = 0
    categories: Dict[str, int] = field(default_factory=dict)
    invariant_count: int = 0
    recent_concepts: List[Concept] = field(default_factory=list)
    link_strengths: List[int] = field(default_factory=list)
    taken_at: datetime = field(default_factory=utc_now)

    @property
    def cluster_count(self) -> int:
        return len(self.categories)


async def _neutral(awaitable: Awaitable[T], default: T, what: str) -> T:
    """Read-path guard: an unreachable store yields a neutral default."""
    try:
        return await awaitable
    except StoreUnavailableError as e:
        logger.warning(f"Metrics read '{what}' fell back to neutral default: {e}")
        return default


async def read_graph_snapshot(
    store: ConceptStore,
    config: Optional[MetricsConfig] = None,
    clock: Optional[Clock] = None,
) -> GraphSnapshot:
    """Pull node/edge counts, the category histogram and the drift sample."""
    cfg = config or MetricsConfig()
    now = (clock or utc_now)()

    links = await _neutral(store.list_user_links(), [], "user_links")
    return GraphSnapshot(
        node_count=await _neutral(store.count_concepts(), 0, "node_count"),
        edge_count=await _neutral(store.count_edges(), 0, "edge_count"),
        categories=await _neutral(store.category_histogram(), {}, "categories"),
        invariant_count=await _neutral(
            store.count_concepts_with_density(cfg.complexity_invariant_density), 0, "invariants"
        ),
        recent_concepts=await _neutral(
            store.list_concepts(order_by=ORDER_UPDATED, limit=cfg.drift_sample_size), [], "recent"
        ),
        link_strengths=[link.strength for link in links],
        taken_at=now,
    )


# ------------------------------------------------------------------ #
#  Pure metric functions                                              #
# ------------------------------------------------------------------ #

def shannon_entropy(distribution: Sequence[float]) -> float:
    """Shannon entropy in bits; 0 for an empty or all-zero distribution."""
    counts = np.asarray([c for c in distribution if c > 0], dtype=np.float64)
    if counts.size == 0:
        return 0.0
    p = counts / counts.sum()
    return float(-(p * np.log2(p)).sum())


def compression_rate(current_size: int, max_observed: int) -> float:
    """Cm = 1 - current/max. 0 when the graph never shrank."""
    if max_observed <= 0:
        return 0.0
    return clamp(1.0 - current_size / max_observed)


def entropy_change(current_entropy: float, previous_entropy: Optional[float]) -> float:
    """dG against the single rolling memory cell; 0 when nothing was remembered yet."""
    if previous_entropy is None:
        return 0.0
    return current_entropy - previous_entropy


def semantic_drift(
    recent_concepts: Sequence[Concept],
    now: datetime,
    window_seconds: float = 3600,
) -> float:
    """
    Share of the sample that was re-touched (updated != created) within the
    window, each such concept weighted by min(1, occurrences/10).
    """
    if len(recent_concepts) < 2:
        return 0.0

    now = ensure_utc(now)
    weighted = 0.0
    for concept in recent_concepts:
        updated = ensure_utc(concept.updated_at)
        created = ensure_utc(concept.created_at)
        if (now - updated).total_seconds() <= window_seconds and updated != created:
            weighted += min(1.0, concept.occurrences / 10.0)

    return clamp(weighted / len(recent_concepts))


def curvature(cluster_sizes: Sequence[int]) -> float:
    """Coefficient of variation of cluster sizes, clamped to [0, 1]."""
    sizes = np.asarray(cluster_sizes, dtype=np.float64)
    if sizes.size == 0:
        return 0.0
    mean = sizes.mean()
    if mean <= 0:
        return 0.0
    return clamp(float(sizes.std() / mean))


def adaptive_match_score(strengths: Sequence[int], max_strength: float = 10.0) -> float:
    """Mean link strength normalised by ``max_strength``; neutral 0.5 without links."""
    if len(strengths) == 0:
        return 0.5
    return clamp(float(np.mean(strengths)) / max_strength)


def lifeworld_complexity(invariant_count: int, cluster_count: int, entropy: float) -> float:
    """L = (invariants + clusters + H) * log2(max(1, clusters) + 1)."""
    diversity = float(np.log2(max(1, cluster_count) + 1))
    return (invariant_count + cluster_count + entropy) * diversity


# ------------------------------------------------------------------ #
#  Anomalies & trend                                                  #
# ------------------------------------------------------------------ #

def detect_anomalies(metrics: MetricsSnapshot) -> List[str]:
    """
    Independent threshold rules; several may fire at once.
    """
    warnings: List[str] = []

    if metrics.semantic_drift > 0.8 and metrics.graph_entropy_change > 0.5:
        warnings.append(f"{RUNAWAY_DRIFT}: concepts changing too rapidly without stabilization")

    if (
        abs(metrics.graph_entropy_change) < 0.1
        and metrics.compression_rate < 0.1
        and metrics.lifeworld_complexity < 2
    ):
        warnings.append(f"{STAGNATION}: graph is not evolving or compressing")

    if (metrics.compression_rate > 0.7 and metrics.lifeworld_complexity < 3) or (
        metrics.curvature > 0.9 and metrics.lifeworld_complexity < 0.3
    ):
        warnings.append(f"{MODE_COLLAPSE} risk: over-compressing, losing diversity")

    if metrics.adaptive_match_score > 0.9 and metrics.semantic_drift < 0.1:
        warnings.append(f"{OVERFITTING} risk: too aligned with specific users")

    if metrics.curvature > 0.8 and metrics.graph_entropy_change < -0.3:
        warnings.append(f"{FRAGMENTATION}: clusters dissolving without reintegration")

    return warnings


def classify_metrics_trend(metrics: MetricsSnapshot) -> str:
    if metrics.lifeworld_complexity > 5 and metrics.graph_entropy_change > 0:
        return "expanding"
    if metrics.compression_rate > 0.3 and metrics.graph_entropy_change < 0:
        return "contracting"
    if metrics.curvature > 0.7 and metrics.semantic_drift > 0.5:
        return "fragmenting"
    return "stable"


def format_metrics_for_display(metrics: MetricsSnapshot) -> str:
    """Fixed-width text panel for terminals and logs."""
    sign = "+" if metrics.graph_entropy_change >= 0 else ""
    rows = [
        "LIFEWORLD COGNITIVE METRICS",
        "-" * 48,
        f"  L  (Lifeworld Complexity)   {metrics.lifeworld_complexity:>10.2f}",
        f"  dG (Graph Entropy Change)   {sign}{metrics.graph_entropy_change:>9.3f}",
        f"  Cm (Compression Rate)       {metrics.compression_rate * 100:>9.1f}%",
        "-" * 48,
        f"  k  (Curvature/Stability)    {metrics.curvature * 100:>9.1f}%",
        f"  s  (Semantic Drift)         {metrics.semantic_drift * 100:>9.1f}%",
        f"  Psi (Adaptive Match)        {metrics.adaptive_match_score * 100:>9.1f}%",
        "-" * 48,
        (
            f"  Nodes: {metrics.node_count}  Edges: {metrics.edge_count}  "
            f"Invariants: {metrics.invariant_count}  Clusters: {metrics.cluster_count}"
        ),
    ]
    return "\n".join(rows)


# ------------------------------------------------------------------ #
#  Engine                                                             #
# ------------------------------------------------------------------ #

class MetricsEngine:
    """
    Computes MetricsSnapshots on demand and maintains the two rolling scalars
    (running max concept count, previous entropy) plus the snapshot history.
    """

    def __init__(
        self,
        store: ConceptStore,
        config: Optional[MetricsConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.cfg = config or MetricsConfig()
        self.clock: Clock = clock or utc_now

    async def get_metrics(self, persist: Optional[bool] = None) -> MetricsSnapshot:
        """
        Compute all six metrics from a fresh graph snapshot.

        Args:
            persist: Append the snapshot to history (defaults to config).
        """
        graph = await read_graph_snapshot(self.store, self.cfg, self.clock)

        max_observed = await _neutral(
            self.store.read_aggregate_counter(MAX_OBSERVED_CONCEPTS), _UNREAD, "max_observed"
        )
        known_max = 0 if max_observed is None or max_observed is _UNREAD else int(max_observed)
        max_size = max(known_max, graph.node_count)

        entropy = shannon_entropy(list(graph.categories.values()))
        previous_entropy = await _neutral(
            self.store.read_aggregate_counter(PREVIOUS_ENTROPY), None, "previous_entropy"
        )

        snapshot = MetricsSnapshot(
            compression_rate=compression_rate(graph.node_count, max_size),
            graph_entropy_change=entropy_change(entropy, previous_entropy),
            semantic_drift=semantic_drift(
                graph.recent_concepts, graph.taken_at, self.cfg.drift_window_seconds
            ),
            curvature=curvature(list(graph.categories.values())),
            adaptive_match_score=adaptive_match_score(graph.link_strengths, self.cfg.max_link_strength),
            lifeworld_complexity=lifeworld_complexity(graph.invariant_count, graph.cluster_count, entropy),
            node_count=graph.node_count,
            edge_count=graph.edge_count,
            invariant_count=graph.invariant_count,
            cluster_count=graph.cluster_count,
            timestamp=graph.taken_at,
        )

        should_persist = self.cfg.persist_snapshots if persist is None else persist
        await self._record(graph.node_count, max_observed, entropy, snapshot, should_persist)
        return snapshot

    async def _record(
        self,
        node_count: int,
        max_observed: Optional[float],
        entropy: float,
        snapshot: MetricsSnapshot,
        persist: bool,
    ) -> None:
        # Rolling bookkeeping is best-effort; the caller still gets its snapshot.
        if max_observed is _UNREAD:
            # Compression was computed without the running max; keep it out of the
            # counter and the history.
            logger.warning("Running max unreadable; counter and history left untouched")
            persist = False
        try:
            if max_observed is not _UNREAD and (max_observed is None or node_count > max_observed):
                await self.store.write_aggregate_counter(MAX_OBSERVED_CONCEPTS, node_count)
            await self.store.write_aggregate_counter(PREVIOUS_ENTROPY, entropy)
            if persist:
                await self.store.append_metrics_snapshot(snapshot)
        except StoreUnavailableError as e:
            logger.warning(f"Metrics bookkeeping skipped, store unavailable: {e}")

    async def get_metrics_history(self, limit: int = 100) -> List[MetricsSnapshot]:
        return await _neutral(self.store.list_metrics_snapshots(limit), [], "metrics_history")

    async def get_metrics_with_history(self) -> Dict[str, Any]:
        """Current snapshot, the previous persisted one, trend and warnings."""
        history = await self.get_metrics_history(1)
        previous = history[0] if history else None
        current = await self.get_metrics()
        return {
            "current": current,
            "previous": previous,
            "trend": classify_metrics_trend(current),
            "warnings": detect_anomalies(current),
        }
