"""
Merge Primitive
===============
The single write path shared by reactive convergence, predictive convergence
and the scheduler.

Every merge runs under one process-wide asyncio.Lock and inside one store
transaction:

    1. re-read both concepts (either missing -> MergeIntegrityError)
    2. keep the higher-density concept (tie -> lower id survives)
    3. density = min(100, keep + floor(remove * absorption)), occurrences summed
    4. rewrite edges and user links from the absorbed id to the survivor
    5. delete the absorbed concept
    6. append a MergeEvent with counts captured at this moment
"""

from __future__ import annotations

import asyncio
import math
from typing import Optional, Tuple

from loguru import logger

from ._utils import Clock, utc_now
from .exceptions import MergeIntegrityError
from .models import Concept, MergeEvent

from lifeworld.storage.base import ConceptStore


def merged_density(keep_density: int, remove_density: int, absorption_factor: float = 0.3) -> int:
    return min(100, keep_density + math.floor(remove_density * absorption_factor))


def choose_survivor(a: Concept, b: Concept) -> Tuple[Concept, Concept]:
    """Return ``(keep, remove)``: higher density wins, equal density keeps the lower id."""
    if a.semantic_density != b.semantic_density:
        return (a, b) if a.semantic_density > b.semantic_density else (b, a)
    return (a, b) if a.id < b.id else (b, a)


class MergeCoordinator:
    """Serializes merge + ledger append across all callers."""

    def __init__(
        self,
        store: ConceptStore,
        absorption_factor: float = 0.3,
        clock: Optional[Clock] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.store = store
        self.absorption_factor = absorption_factor
        self.clock: Clock = clock or utc_now
        self.lock = lock or asyncio.Lock()

    async def merge_pair(self, id_a: int, id_b: int, similarity: float, reason: str) -> MergeEvent:
        """
        Merge two concepts, choosing the survivor from their current densities.

        Raises:
            MergeIntegrityError: If either concept no longer exists (or both ids are equal).
            StoreUnavailableError: If any write fails; the transaction is rolled back.
        """
        if id_a == id_b:
            raise MergeIntegrityError(id_a, id_b, "cannot merge a concept with itself")

        async with self.lock:
            async with self.store.transaction():
                a = await self.store.get_concept(id_a)
                b = await self.store.get_concept(id_b)
                if a is None or b is None:
                    missing = id_a if a is None else id_b
                    raise MergeIntegrityError(id_a, id_b, f"concept {missing} no longer exists")
                keep, remove = choose_survivor(a, b)
                return await self._apply(keep, remove, similarity, reason)

    async def merge(self, keep_id: int, remove_id: int, similarity: float, reason: str) -> MergeEvent:
        """Merge with an explicit survivor."""
        if keep_id == remove_id:
            raise MergeIntegrityError(keep_id, remove_id, "cannot merge a concept with itself")

        async with self.lock:
            async with self.store.transaction():
                keep = await self.store.get_concept(keep_id)
                remove = await self.store.get_concept(remove_id)
                if keep is None or remove is None:
                    missing = keep_id if keep is None else remove_id
                    raise MergeIntegrityError(keep_id, remove_id, f"concept {missing} no longer exists")
                return await self._apply(keep, remove, similarity, reason)

    async def _apply(self, keep: Concept, remove: Concept, similarity: float, reason: str) -> MergeEvent:
        before = await self.store.count_concepts()

        await self.store.update_concept(
            keep.id,
            semantic_density=merged_density(
                keep.semantic_density, remove.semantic_density, self.absorption_factor
            ),
            occurrences=keep.occurrences + remove.occurrences,
        )
        await self.store.rewrite_edge_endpoint(remove.id, keep.id)
        await self.store.rewrite_user_link_concept(remove.id, keep.id)

        if not await self.store.delete_concept(remove.id):
            raise MergeIntegrityError(keep.id, remove.id, "absorbed concept vanished during merge")

        after = await self.store.count_concepts()
        event = await self.store.append_merge_event(
            MergeEvent(
                from_concept_id=remove.id,
                to_concept_id=keep.id,
                similarity_score=int(round(similarity * 100)),
                reason=reason,
                total_concepts_before=before,
                total_concepts_after=after,
                merged_at=self.clock(),
            )
        )

        logger.info(
            f"Merged: '{remove.name}' -> '{keep.name}' (similarity: {similarity * 100:.0f}%)"
        )
        return event
