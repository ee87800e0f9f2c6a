"""
Concept Store Port
==================
The engine's only view of persistence. Algorithms in ``lifeworld.core`` talk
to this interface; concrete backends live beside it (in-memory, SQLite).

Ordering conventions shared by every backend:
  - ``list_concepts("density")``: semantic_density DESC, occurrences DESC, id ASC
  - ``list_concepts("updated")``: updated_at DESC, id DESC
  - ``list_merge_events``: merged_at DESC, id DESC (newest first)
  - ``list_metrics_snapshots``: timestamp DESC (newest first)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Dict, Iterable, List, Optional

from lifeworld.core.models import (
    Concept,
    ConceptEdge,
    MergeEvent,
    MetricsSnapshot,
    UserConceptLink,
)

# Aggregate counter names
MAX_OBSERVED_CONCEPTS = "max_observed_concepts"
PREVIOUS_ENTROPY = "previous_entropy"

ORDER_DENSITY = "density"
ORDER_UPDATED = "updated"


class ConceptStore(ABC):
    """Abstract concept store (nodes, edges, user links, ledger, counters)."""

    backend_name: str = "abstract"

    # ---- Lifecycle ----------------------------------------------- #

    async def initialize(self) -> None:
        """Open connections / create schema. Idempotent."""

    async def close(self) -> None:
        """Release resources."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager:
        """
        All-or-nothing unit of work. Every write issued inside the block is
        rolled back if the block raises. Only the task that opened it may join
        it; other tasks wait until it commits or rolls back.
        """

    # ---- Concepts ------------------------------------------------- #

    @abstractmethod
    async def count_concepts(self) -> int: ...

    @abstractmethod
    async def list_concepts(self, order_by: str = ORDER_DENSITY, limit: Optional[int] = None) -> List[Concept]: ...

    @abstractmethod
    async def get_concept(self, concept_id: int) -> Optional[Concept]: ...

    @abstractmethod
    async def find_concept_by_name(self, name: str, case_insensitive: bool = False) -> Optional[Concept]:
        """First concept (lowest id) with this name."""

    @abstractmethod
    async def list_category_peers(self, concept: Concept, limit: int = 5) -> List[Concept]:
        """Other concepts in the same cluster, nearest semantic density first."""

    @abstractmethod
    async def insert_concept(
        self,
        name: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        semantic_density: int = 50,
        occurrences: int = 1,
    ) -> Concept: ...

    @abstractmethod
    async def update_concept(self, concept_id: int, **fields) -> Optional[Concept]:
        """Update fields and bump ``updated_at``. Returns None if missing."""

    @abstractmethod
    async def delete_concept(self, concept_id: int) -> bool: ...

    @abstractmethod
    async def category_histogram(self) -> Dict[str, int]:
        """Cluster name -> concept count (null categories count as 'general')."""

    @abstractmethod
    async def count_concepts_with_density(self, min_density: int, min_occurrences: int = 0) -> int: ...

    # ---- Edges ---------------------------------------------------- #

    @abstractmethod
    async def count_edges(self) -> int: ...

    @abstractmethod
    async def list_edges(self, endpoint_ids: Optional[Iterable[int]] = None) -> List[ConceptEdge]:
        """Edges whose source or target is in ``endpoint_ids`` (all when None)."""

    @abstractmethod
    async def insert_edge(
        self, source_id: int, target_id: int, relation_type: Optional[str] = None, weight: int = 1
    ) -> ConceptEdge: ...

    @abstractmethod
    async def rewrite_edge_endpoint(self, old_id: int, new_id: int) -> int:
        """Point every edge endpoint equal to ``old_id`` at ``new_id``. Returns rows touched."""

    # ---- User links ----------------------------------------------- #

    @abstractmethod
    async def list_user_links(self, concept_ids: Optional[Iterable[int]] = None) -> List[UserConceptLink]: ...

    @abstractmethod
    async def get_user_link(self, user_id: int, concept_id: int) -> Optional[UserConceptLink]: ...

    @abstractmethod
    async def insert_user_link(
        self, user_id: int, concept_id: int, strength: int = 1, conversation_id: Optional[int] = None
    ) -> UserConceptLink: ...

    @abstractmethod
    async def update_user_link_strength(self, link_id: int, strength: int) -> None: ...

    @abstractmethod
    async def rewrite_user_link_concept(self, old_id: int, new_id: int) -> int:
        """
        Move links from ``old_id`` to ``new_id``. A user already linked to
        ``new_id`` keeps one link whose strength is the sum of both.
        """

    # ---- Ledger --------------------------------------------------- #

    @abstractmethod
    async def append_merge_event(self, event: MergeEvent) -> MergeEvent: ...

    @abstractmethod
    async def list_merge_events(self, limit: int = 30, concept_id: Optional[int] = None) -> List[MergeEvent]:
        """Newest first; ``concept_id`` filters to rows where it is either side."""

    # ---- Aggregate counters & metrics history --------------------- #

    @abstractmethod
    async def read_aggregate_counter(self, name: str) -> Optional[float]: ...

    @abstractmethod
    async def write_aggregate_counter(self, name: str, value: float) -> None: ...

    @abstractmethod
    async def append_metrics_snapshot(self, snapshot: MetricsSnapshot) -> None: ...

    @abstractmethod
    async def list_metrics_snapshots(self, limit: int = 100) -> List[MetricsSnapshot]: ...
