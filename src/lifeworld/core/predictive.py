"""
Drift Forecaster (Predictive Convergence)
=========================================
Moves convergence from reactive to anticipatory:

1. Per-concept density kinematics (velocity, acceleration) from the merge ledger.
2. 24h density projection, stability score and convergence probability
   against the nearest same-cluster concept.
3. System entropy trend from persisted metrics snapshots.
4. Early collapse of high-probability pairs through the shared merge primitive,
   without consulting the oracle.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Set, Tuple

import numpy as np
from loguru import logger

from ._utils import clamp, hours_between
from .config import PredictiveConfig
from .exceptions import MergeIntegrityError, StoreUnavailableError
from .merge import MergeCoordinator
from .models import (
    Concept,
    DriftForecast,
    DriftTrajectory,
    MergeEvent,
    PredictedConvergence,
    PredictiveConvergenceResult,
    PredictiveState,
)

from lifeworld.storage.base import ORDER_DENSITY, ConceptStore

MAX_PREDICTIONS = 10
MAX_FORECAST_TRAJECTORIES = 10


# ------------------------------------------------------------------ #
#  Pure helpers                                                       #
# ------------------------------------------------------------------ #

def _split_halves(values: Sequence[float]) -> Tuple[List[float], List[float]]:
    """Newest-first series -> (recent half, older half); recent gets the extra element."""
    mid = math.ceil(len(values) / 2)
    return list(values[:mid]), list(values[mid:])


def drift_kinematics(history: Sequence[MergeEvent]) -> Tuple[float, float]:
    """
    Velocity and acceleration of similarity score per hour.

    ``history`` is newest first. Consecutive rows yield one rate each; rows
    sharing a timestamp are ignored. Fewer than two rows -> (0, 0).
    """
    if len(history) < 2:
        return 0.0, 0.0

    velocities: List[float] = []
    for newer, older in zip(history, history[1:]):
        hours = hours_between(newer.merged_at, older.merged_at)
        if hours > 0:
            velocities.append((newer.similarity_score - older.similarity_score) / hours)

    if not velocities:
        return 0.0, 0.0

    velocity = float(np.mean(velocities))
    acceleration = 0.0
    if len(velocities) >= 2:
        recent, older = _split_halves(velocities)
        acceleration = float(np.mean(recent) - np.mean(older))
    return velocity, acceleration


def classify_entropy_trend(entropy_changes: Sequence[float], deadband: float = 0.01) -> Tuple[str, float]:
    """
    Compare recent vs older halves of newest-first dG values.

    Returns ``(trend, mean dG)``; fewer than three values is "stable" with velocity 0.
    """
    if len(entropy_changes) < 3:
        return "stable", 0.0

    recent, older = _split_halves(entropy_changes)
    recent_avg, older_avg = float(np.mean(recent)), float(np.mean(older))
    velocity = float(np.mean(entropy_changes))

    if recent_avg > older_avg + deadband:
        return "increasing", velocity
    if recent_avg < older_avg - deadband:
        return "decreasing", velocity
    return "stable", velocity


def project_trajectory(
    concept: Concept,
    velocity: float,
    acceleration: float,
    nearest_peer: Optional[Concept],
    cfg: PredictiveConfig,
) -> DriftTrajectory:
    horizon = cfg.horizon_hours
    predicted = clamp(
        concept.semantic_density + velocity * horizon + 0.5 * acceleration * horizon ** 2,
        0.0,
        100.0,
    )
    stability = clamp(1.0 - abs(velocity) / 10.0 - abs(acceleration) / 5.0)

    probability = 0.0
    target: Optional[int] = None
    if nearest_peer is not None:
        gap = abs(nearest_peer.semantic_density - concept.semantic_density)
        probability = clamp((1.0 - gap / 50.0) * (1.0 + velocity * 0.1))
        if probability > cfg.merge_target_probability:
            target = nearest_peer.id

    eta = -1.0
    if velocity != 0 and probability > cfg.eta_probability:
        eta = abs((100 - concept.semantic_density) / velocity)

    return DriftTrajectory(
        concept_id=concept.id,
        concept_name=concept.name,
        current_density=concept.semantic_density,
        predicted_density=predicted,
        drift_velocity=velocity,
        drift_acceleration=acceleration,
        stability_score=stability,
        convergence_probability=probability,
        predicted_merge_target=target,
        time_to_convergence=eta,
    )


def build_recommendations(
    entropy_trend: str,
    entropy_velocity: float,
    stability: float,
    prediction_count: int,
) -> List[str]:
    recommendations: List[str] = []
    if entropy_trend == "increasing" and entropy_velocity > 0.05:
        recommendations.append("System entropy increasing rapidly. Consider triggering convergence.")
    if stability < 0.4:
        recommendations.append("Low system stability detected. Semantic drift may cause fragmentation.")
    if prediction_count > 3:
        recommendations.append(f"{prediction_count} convergences predicted. Early collapse recommended.")
    if entropy_trend == "decreasing" and stability > 0.7:
        recommendations.append("System stabilizing. Ontology approaching equilibrium.")
    return recommendations


def classify_forecast(state: PredictiveState) -> Tuple[str, str, float]:
    """Map a predictive state to ``(current_state, forecast text, confidence)``."""
    count = len(state.predicted_convergences)
    if state.system_stability < 0.3:
        return "fragmenting", "Warning: Ontology fragmenting. Immediate convergence recommended.", 0.8
    if state.entropy_trend == "increasing" and state.drift_velocity > 0.02:
        return (
            "drifting",
            f"Semantic drift detected. {count} potential convergences forming.",
            min(1.0, 0.6 + state.drift_velocity * 2),
        )
    if state.entropy_trend == "decreasing" and count > 0:
        return "converging", f"Natural convergence in progress. {count} merges predicted.", 0.7
    return (
        "stable",
        "System in equilibrium. No immediate action required.",
        min(1.0, state.system_stability),
    )


# ------------------------------------------------------------------ #
#  Forecaster                                                         #
# ------------------------------------------------------------------ #

class DriftForecaster:
    """Per-concept trajectories, system state and early-collapse execution."""

    def __init__(
        self,
        store: ConceptStore,
        merger: MergeCoordinator,
        config: Optional[PredictiveConfig] = None,
    ):
        self.store = store
        self.merger = merger
        self.cfg = config or PredictiveConfig()

    async def calculate_drift_velocity(self, concept_id: int) -> Tuple[float, float]:
        history = await self.store.list_merge_events(
            limit=self.cfg.velocity_history, concept_id=concept_id
        )
        return drift_kinematics(history)

    async def predict_concept_trajectory(self, concept_id: int) -> Optional[DriftTrajectory]:
        """Trajectory for one concept, or None if it does not exist."""
        concept = await self.store.get_concept(concept_id)
        if concept is None:
            return None
        return await self._trajectory(concept)

    async def _trajectory(self, concept: Concept) -> DriftTrajectory:
        velocity, acceleration = await self.calculate_drift_velocity(concept.id)
        peers = await self.store.list_category_peers(concept, limit=5)
        nearest = peers[0] if peers else None
        return project_trajectory(concept, velocity, acceleration, nearest, self.cfg)

    async def _trajectories(self, limit: int) -> List[DriftTrajectory]:
        concepts = await self.store.list_concepts(order_by=ORDER_DENSITY, limit=limit)
        return [await self._trajectory(c) for c in concepts]

    async def analyze_entropy_trend(self) -> Tuple[str, float]:
        try:
            history = await self.store.list_metrics_snapshots(self.cfg.entropy_window)
        except StoreUnavailableError as e:
            logger.warning(f"Entropy history unavailable, assuming stable: {e}")
            return "stable", 0.0
        return classify_entropy_trend([s.graph_entropy_change for s in history])

    async def get_predictive_state(self) -> PredictiveState:
        entropy_trend, entropy_velocity = await self.analyze_entropy_trend()
        trajectories = await self._trajectories(self.cfg.trajectory_limit)

        stability = (
            float(np.mean([t.stability_score for t in trajectories])) if trajectories else 0.5
        )

        predictions: List[PredictedConvergence] = []
        seen: Set[Tuple[int, int]] = set()
        for traj in trajectories:
            target_id = traj.predicted_merge_target
            if target_id is None or traj.convergence_probability <= self.cfg.merge_target_probability:
                continue
            key = (min(traj.concept_id, target_id), max(traj.concept_id, target_id))
            if key in seen:
                continue
            seen.add(key)
            target = await self.store.get_concept(target_id)
            if target is None:
                continue
            predictions.append(
                PredictedConvergence(
                    concept1=traj.concept_name,
                    concept2=target.name,
                    probability=traj.convergence_probability,
                    estimated_time=traj.time_to_convergence,
                    concept1_id=traj.concept_id,
                    concept2_id=target.id,
                )
            )

        predictions.sort(key=lambda p: p.probability, reverse=True)

        return PredictiveState(
            entropy_trend=entropy_trend,
            drift_velocity=entropy_velocity,
            system_stability=stability,
            predicted_convergences=predictions[:MAX_PREDICTIONS],
            recommendations=build_recommendations(
                entropy_trend, entropy_velocity, stability, len(predictions)
            ),
        )

    async def run_predictive_convergence(
        self, probability_threshold: Optional[float] = None
    ) -> PredictiveConvergenceResult:
        """
        Collapse predicted pairs at or above ``probability_threshold`` early.

        Pairs are re-resolved by name; a missing or already-merged concept is skipped.
        """
        threshold = (
            self.cfg.probability_threshold if probability_threshold is None else probability_threshold
        )
        logger.info(f"Running predictive convergence (threshold: {threshold})")

        state = await self.get_predictive_state()
        early_collapses: List[str] = []
        merged = 0

        for pred in state.predicted_convergences:
            if pred.probability < threshold:
                continue
            c1 = await self.store.find_concept_by_name(pred.concept1)
            c2 = await self.store.find_concept_by_name(pred.concept2)
            if c1 is None or c2 is None or c1.id == c2.id:
                continue
            try:
                await self.merger.merge_pair(
                    c1.id,
                    c2.id,
                    pred.probability,
                    f"Predictive collapse: {pred.probability * 100:.0f}% convergence probability",
                )
            except MergeIntegrityError as e:
                logger.debug(f"Early collapse skipped: {e}")
                continue
            merged += 1
            early_collapses.append(f"{pred.concept1} + {pred.concept2}")
            logger.info(
                f"Early collapse: '{pred.concept1}' + '{pred.concept2}' ({pred.probability * 100:.0f}%)"
            )

        logger.info(f"Predictive convergence complete: {merged} early collapses")
        return PredictiveConvergenceResult(
            merged_count=merged,
            predictions=state.predicted_convergences,
            early_collapses=early_collapses,
        )

    async def get_drift_forecast(self) -> DriftForecast:
        state = await self.get_predictive_state()
        current_state, forecast, confidence = classify_forecast(state)

        trajectories = await self._trajectories(self.cfg.forecast_limit)
        trajectories.sort(key=lambda t: t.convergence_probability, reverse=True)

        return DriftForecast(
            current_state=current_state,
            forecast=forecast,
            confidence=confidence,
            trajectories=trajectories[:MAX_FORECAST_TRAJECTORIES],
            action_required=current_state == "fragmenting" or len(state.recommendations) > 2,
        )
