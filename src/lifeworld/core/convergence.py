"""
Reactive Convergence Engine
===========================
Oracle-backed compression of the concept graph.

Algorithm per run:
  1. Read the top ``max_candidates`` concepts (density desc, occurrences desc).
  2. Partition into batches of ``batch_size`` and ask the oracle for pairs at
     similarity >= threshold.
  3. Resolve each pair only against its own batch; drop pairs with unknown ids.
  4. Merge every surviving pair through the shared MergeCoordinator.

A failing batch contributes zero candidates, and a pair whose concepts have
vanished is skipped. Store write failures propagate to the caller.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from loguru import logger

from .config import ConvergenceConfig, OracleConfig
from .exceptions import MergeIntegrityError
from .merge import MergeCoordinator
from .models import (
    Concept,
    ConvergenceResult,
    ConvergenceStats,
    MergeEvent,
    SimilarityCandidate,
)
from .oracle import SimilarityOracle

from lifeworld.storage.base import ORDER_DENSITY, ConceptStore


def event_compression_rates(events: Sequence[MergeEvent]) -> List[float]:
    return [e.compression_rate for e in events]


class ReactiveConvergenceEngine:
    def __init__(
        self,
        store: ConceptStore,
        oracle: SimilarityOracle,
        merger: MergeCoordinator,
        config: Optional[ConvergenceConfig] = None,
        oracle_config: Optional[OracleConfig] = None,
    ):
        self.store = store
        self.oracle = oracle
        self.merger = merger
        self.cfg = config or ConvergenceConfig()
        self.oracle_cfg = oracle_config or OracleConfig()

    # ---- Candidate discovery -------------------------------------- #

    async def find_similar_concepts(self, threshold: Optional[float] = None) -> List[SimilarityCandidate]:
        """Ask the oracle batch by batch; return pairs resolved within their batch."""
        threshold = self.cfg.similarity_threshold if threshold is None else threshold
        concepts = await self.store.list_concepts(
            order_by=ORDER_DENSITY, limit=self.oracle_cfg.max_candidates
        )
        if len(concepts) < 2:
            return []

        found: List[SimilarityCandidate] = []
        size = self.oracle_cfg.batch_size
        for start in range(0, len(concepts), size):
            batch = concepts[start:start + size]
            found.extend(await self._compare_batch(batch, threshold))
        return found

    async def _compare_batch(self, batch: List[Concept], threshold: float) -> List[SimilarityCandidate]:
        try:
            pairs = await self.oracle.compare(batch, threshold)
        except Exception as e:
            # The oracle contract forbids raising; a misbehaving adapter still only costs this batch.
            logger.warning(f"Similarity batch skipped ({len(batch)} concepts): {e}")
            return []

        ids = {c.id for c in batch}
        resolved = []
        for pair in pairs:
            if pair.id1 not in ids or pair.id2 not in ids or pair.id1 == pair.id2:
                logger.debug(f"Ignoring oracle pair outside batch: {pair.id1}/{pair.id2}")
                continue
            if pair.similarity < threshold:
                continue
            resolved.append(pair)
        return resolved

    # ---- Run ------------------------------------------------------ #

    async def run_convergence(self, threshold: Optional[float] = None) -> ConvergenceResult:
        """
        Find and merge similar concepts.

        Returns:
            ConvergenceResult with merges applied, resulting total and this
            run's compression rate ``(before - after) / before``.
        """
        threshold = self.cfg.similarity_threshold if threshold is None else threshold
        logger.info(f"Running auto-convergence (threshold: {threshold})")

        before = await self.store.count_concepts()
        candidates = await self.find_similar_concepts(threshold)

        merged = 0
        for pair in candidates:
            try:
                await self.merger.merge_pair(pair.id1, pair.id2, pair.similarity, pair.reason)
                merged += 1
            except MergeIntegrityError as e:
                logger.debug(f"Merge skipped: {e}")

        after = await self.store.count_concepts()
        rate = (before - after) / before if before > 0 else 0.0

        logger.info(
            f"Convergence complete: {before} -> {after} concepts "
            f"({merged} merges, {rate * 100:.1f}% compression)"
        )
        return ConvergenceResult(merged_count=merged, total_concepts=after, compression_rate=rate)

    # ---- Ledger views --------------------------------------------- #

    async def get_convergence_history(self, limit: int = 30) -> List[MergeEvent]:
        return await self.store.list_merge_events(limit=limit)

    async def identify_semantic_invariants(self, limit: int = 50) -> List[Concept]:
        """Concepts that have stabilized: high density and repeatedly reinforced."""
        concepts = await self.store.list_concepts(order_by=ORDER_DENSITY)
        invariants = [
            c for c in concepts
            if c.semantic_density >= self.cfg.invariant_density
            and c.occurrences >= self.cfg.invariant_min_occurrences
        ]
        return invariants[:limit]

    async def get_convergence_stats(self) -> ConvergenceStats:
        total = await self.store.count_concepts()
        invariant_count = await self.store.count_concepts_with_density(self.cfg.invariant_density)
        recent = await self.store.list_merge_events(limit=self.cfg.stats_window)

        rates = event_compression_rates(recent)
        avg_rate = sum(rates) / len(rates) if rates else 0.0

        trend = "stable"
        if len(recent) >= 2:
            newest, oldest = recent[0], recent[-1]
            if newest.total_concepts_after > oldest.total_concepts_after * 1.1:
                trend = "expanding"
            elif newest.total_concepts_after < oldest.total_concepts_after * 0.9:
                trend = "compressing"

        return ConvergenceStats(
            total_concepts=total,
            invariant_count=invariant_count,
            recent_merges=len(recent),
            avg_compression_rate=avg_rate,
            trend=trend,
        )
