"""
Convergence Engine facade.

Wires the store, the oracle, the shared merge coordinator and the four
components (metrics, reactive convergence, drift forecaster, scheduler)
and exposes their operations to the API and CLI.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from loguru import logger

from ._utils import Clock, utc_now
from .config import LifeworldConfig, get_config
from .convergence import ReactiveConvergenceEngine
from .learning import reinforce_concept
from .merge import MergeCoordinator
from .metrics import MetricsEngine, detect_anomalies, format_metrics_for_display
from .models import (
    Concept,
    ConvergenceResult,
    ConvergenceRunMetrics,
    ConvergenceStats,
    DriftForecast,
    DriftTrajectory,
    MergeEvent,
    MetricsSnapshot,
    PredictiveConvergenceResult,
    PredictiveState,
    SchedulerStatus,
    TemporalCoherence,
)
from .oracle import LLMSimilarityOracle, SimilarityOracle
from .predictive import DriftForecaster
from .scheduler import ConvergenceScheduler, Sleeper

from lifeworld.storage import ConceptStore, build_store


class ConvergenceEngine:
    """Single entry point for callers (REST routes, CLI, embedding applications)."""

    def __init__(
        self,
        store: ConceptStore,
        oracle: SimilarityOracle,
        config: Optional[LifeworldConfig] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.config = config or get_config()
        self.clock: Clock = clock or utc_now
        self.store = store
        self.oracle = oracle

        self.merger = MergeCoordinator(
            store, absorption_factor=self.config.convergence.absorption_factor, clock=self.clock
        )
        self.metrics = MetricsEngine(store, self.config.metrics, self.clock)
        self.convergence = ReactiveConvergenceEngine(
            store, oracle, self.merger, self.config.convergence, self.config.oracle
        )
        self.forecaster = DriftForecaster(store, self.merger, self.config.predictive)
        self.scheduler = ConvergenceScheduler(
            self.convergence, store, self.config.scheduler, clock=self.clock, sleep=sleep
        )
        self._initialized = False

    @classmethod
    def from_config(cls, config: Optional[LifeworldConfig] = None, clock: Optional[Clock] = None) -> "ConvergenceEngine":
        config = config or get_config()
        return cls(
            store=build_store(config, clock=clock),
            oracle=LLMSimilarityOracle.from_config(config.oracle),
            config=config,
            clock=clock,
        )

    # ---- Lifecycle ----------------------------------------------- #

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.store.initialize()
        await self.scheduler.initialize()
        self._initialized = True
        logger.info(f"ConvergenceEngine initialized (store: {self.store.backend_name})")

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.store.close()
        self._initialized = False

    async def start_scheduler(self) -> None:
        await self.scheduler.start()

    async def stop_scheduler(self) -> None:
        await self.scheduler.stop()

    # ---- Metrics ------------------------------------------------- #

    async def get_metrics(self) -> MetricsSnapshot:
        return await self.metrics.get_metrics()

    @staticmethod
    def detect_anomalies(snapshot: MetricsSnapshot) -> List[str]:
        return detect_anomalies(snapshot)

    @staticmethod
    def format_metrics(snapshot: MetricsSnapshot) -> str:
        return format_metrics_for_display(snapshot)

    async def get_metrics_with_history(self) -> Dict[str, Any]:
        return await self.metrics.get_metrics_with_history()

    async def get_metrics_history(self, limit: int = 100) -> List[MetricsSnapshot]:
        return await self.metrics.get_metrics_history(limit)

    # ---- Reactive convergence ------------------------------------ #

    async def run_convergence(self, threshold: Optional[float] = None) -> ConvergenceResult:
        return await self.convergence.run_convergence(threshold)

    async def get_convergence_stats(self) -> ConvergenceStats:
        return await self.convergence.get_convergence_stats()

    async def get_convergence_history(self, limit: int = 30) -> List[MergeEvent]:
        return await self.convergence.get_convergence_history(limit)

    async def identify_semantic_invariants(self) -> List[Concept]:
        return await self.convergence.identify_semantic_invariants()

    # ---- Scheduler ----------------------------------------------- #

    async def get_scheduler_status(self) -> SchedulerStatus:
        return await self.scheduler.get_status()

    async def calculate_temporal_coherence(self) -> TemporalCoherence:
        return await self.scheduler.calculate_temporal_coherence()

    async def trigger_convergence(self) -> Optional[ConvergenceRunMetrics]:
        return await self.scheduler.trigger_now()

    # ---- Predictive ---------------------------------------------- #

    async def get_predictive_state(self) -> PredictiveState:
        return await self.forecaster.get_predictive_state()

    async def get_drift_forecast(self) -> DriftForecast:
        return await self.forecaster.get_drift_forecast()

    async def run_predictive_convergence(self, probability_threshold: Optional[float] = None) -> PredictiveConvergenceResult:
        return await self.forecaster.run_predictive_convergence(probability_threshold)

    async def predict_concept_trajectory(self, concept_id: int) -> Optional[DriftTrajectory]:
        return await self.forecaster.predict_concept_trajectory(concept_id)

    # ---- Learning ------------------------------------------------ #

    async def reinforce_concept(
        self,
        user_id: int,
        name: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        importance: int = 5,
        conversation_id: Optional[int] = None,
    ) -> Concept:
        return await reinforce_concept(
            self.store,
            user_id,
            name,
            description=description,
            category=category,
            importance=importance,
            conversation_id=conversation_id,
            lock=self.merger.lock,
        )
