"""
In-Memory Concept Store
=======================
Dict-backed implementation of the ConceptStore port. Used for the ``memory``
backend and throughout the test-suite.

Transactions run one at a time; each snapshots every table on entry and
restores it if the block raises. Writes from other tasks wait for the open
transaction to finish so a rollback never discards them.
Metrics history is held in a fixed-capacity RingBuffer.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import itertools
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from loguru import logger

from lifeworld.core._utils import Clock, RingBuffer, clamp_density, utc_now
from lifeworld.core.exceptions import StoreUnavailableError
from lifeworld.core.models import (
    Concept,
    ConceptEdge,
    MergeEvent,
    MetricsSnapshot,
    UserConceptLink,
)

from .base import ORDER_DENSITY, ORDER_UPDATED, ConceptStore

_UPDATABLE_FIELDS = {"name", "description", "category", "semantic_density", "occurrences"}


def _writes(method):
    """Run a mutator under the transaction lock unless this task already owns it."""
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        if self._tx_owner.get():
            return await method(self, *args, **kwargs)
        async with self._tx_lock:
            token = self._tx_owner.set(True)
            try:
                return await method(self, *args, **kwargs)
            finally:
                self._tx_owner.reset(token)
    return wrapper


class InMemoryConceptStore(ConceptStore):
    backend_name = "memory"

    def __init__(self, snapshot_capacity: int = 500, clock: Optional[Clock] = None):
        self.clock: Clock = clock or utc_now
        self._concepts: Dict[int, Concept] = {}
        self._edges: Dict[int, ConceptEdge] = {}
        self._links: Dict[int, UserConceptLink] = {}
        self._ledger: List[MergeEvent] = []
        self._counters: Dict[str, float] = {}
        self._snapshots: RingBuffer[MetricsSnapshot] = RingBuffer(snapshot_capacity)
        self._ids = {
            "concept": itertools.count(1),
            "edge": itertools.count(1),
            "link": itertools.count(1),
            "event": itertools.count(1),
        }
        self._closed = False
        self._tx_lock = asyncio.Lock()
        self._tx_owner: ContextVar[bool] = ContextVar(f"memory_tx_owner_{id(self)}", default=False)

    # ---- Lifecycle ----------------------------------------------- #

    async def initialize(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True

    def _check(self, operation: str) -> None:
        if self._closed:
            raise StoreUnavailableError(self.backend_name, f"store closed ({operation})")

    @asynccontextmanager
    async def transaction(self):
        self._check("transaction")
        if self._tx_owner.get():
            # Nested blocks in the owning task join the outer unit of work.
            yield self
            return

        async with self._tx_lock:
            self._check("transaction")
            saved = (
                copy.deepcopy(self._concepts),
                copy.deepcopy(self._edges),
                copy.deepcopy(self._links),
                list(self._ledger),
                dict(self._counters),
            )
            token = self._tx_owner.set(True)
            try:
                yield self
            except BaseException:
                (self._concepts, self._edges, self._links, self._ledger, self._counters) = saved
                logger.debug("In-memory transaction rolled back")
                raise
            finally:
                self._tx_owner.reset(token)

    # ---- Concepts ------------------------------------------------- #

    async def count_concepts(self) -> int:
        self._check("count_concepts")
        return len(self._concepts)

    async def list_concepts(self, order_by: str = ORDER_DENSITY, limit: Optional[int] = None) -> List[Concept]:
        self._check("list_concepts")
        concepts = list(self._concepts.values())
        if order_by == ORDER_UPDATED:
            concepts.sort(key=lambda c: (c.updated_at, c.id), reverse=True)
        else:
            concepts.sort(key=lambda c: (-c.semantic_density, -c.occurrences, c.id))
        if limit is not None:
            concepts = concepts[:limit]
        return [replace(c) for c in concepts]

    async def get_concept(self, concept_id: int) -> Optional[Concept]:
        self._check("get_concept")
        concept = self._concepts.get(concept_id)
        return replace(concept) if concept else None

    async def find_concept_by_name(self, name: str, case_insensitive: bool = False) -> Optional[Concept]:
        self._check("find_concept_by_name")
        target = name.lower() if case_insensitive else name
        for concept_id in sorted(self._concepts):
            concept = self._concepts[concept_id]
            candidate = concept.name.lower() if case_insensitive else concept.name
            if candidate == target:
                return replace(concept)
        return None

    async def list_category_peers(self, concept: Concept, limit: int = 5) -> List[Concept]:
        self._check("list_category_peers")
        peers = [
            c for c in self._concepts.values()
            if c.id != concept.id and c.cluster == concept.cluster
        ]
        peers.sort(key=lambda c: (abs(c.semantic_density - concept.semantic_density), c.id))
        return [replace(c) for c in peers[:limit]]

    @_writes
    async def insert_concept(
        self,
        name: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        semantic_density: int = 50,
        occurrences: int = 1,
    ) -> Concept:
        self._check("insert_concept")
        now = self.clock()
        concept = Concept(
            id=next(self._ids["concept"]),
            name=name,
            description=description,
            category=category,
            semantic_density=semantic_density,
            occurrences=max(1, occurrences),
            created_at=now,
            updated_at=now,
        )
        self._concepts[concept.id] = concept
        return replace(concept)

    @_writes
    async def update_concept(self, concept_id: int, **fields) -> Optional[Concept]:
        self._check("update_concept")
        concept = self._concepts.get(concept_id)
        if concept is None:
            return None
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update concept fields: {sorted(unknown)}")
        if "semantic_density" in fields:
            fields["semantic_density"] = clamp_density(fields["semantic_density"])
        updated = replace(concept, **fields, updated_at=self.clock())
        self._concepts[concept_id] = updated
        return replace(updated)

    @_writes
    async def delete_concept(self, concept_id: int) -> bool:
        self._check("delete_concept")
        return self._concepts.pop(concept_id, None) is not None

    async def category_histogram(self) -> Dict[str, int]:
        self._check("category_histogram")
        histogram: Dict[str, int] = {}
        for concept in self._concepts.values():
            histogram[concept.cluster] = histogram.get(concept.cluster, 0) + 1
        return histogram

    async def count_concepts_with_density(self, min_density: int, min_occurrences: int = 0) -> int:
        self._check("count_concepts_with_density")
        return sum(
            1 for c in self._concepts.values()
            if c.semantic_density >= min_density and c.occurrences >= min_occurrences
        )

    # ---- Edges ---------------------------------------------------- #

    async def count_edges(self) -> int:
        self._check("count_edges")
        return len(self._edges)

    async def list_edges(self, endpoint_ids: Optional[Iterable[int]] = None) -> List[ConceptEdge]:
        self._check("list_edges")
        edges = sorted(self._edges.values(), key=lambda e: e.id)
        if endpoint_ids is not None:
            ids = set(endpoint_ids)
            edges = [e for e in edges if e.source_id in ids or e.target_id in ids]
        return [replace(e) for e in edges]

    @_writes
    async def insert_edge(
        self, source_id: int, target_id: int, relation_type: Optional[str] = None, weight: int = 1
    ) -> ConceptEdge:
        self._check("insert_edge")
        for endpoint in (source_id, target_id):
            if endpoint not in self._concepts:
                raise ValueError(f"Edge endpoint {endpoint} does not reference an existing concept")
        edge = ConceptEdge(
            id=next(self._ids["edge"]),
            source_id=source_id,
            target_id=target_id,
            relation_type=relation_type,
            weight=weight,
        )
        self._edges[edge.id] = edge
        return replace(edge)

    @_writes
    async def rewrite_edge_endpoint(self, old_id: int, new_id: int) -> int:
        self._check("rewrite_edge_endpoint")
        touched = 0
        for edge in self._edges.values():
            if edge.source_id == old_id:
                edge.source_id = new_id
                touched += 1
            if edge.target_id == old_id:
                edge.target_id = new_id
                touched += 1
        return touched

    # ---- User links ----------------------------------------------- #

    async def list_user_links(self, concept_ids: Optional[Iterable[int]] = None) -> List[UserConceptLink]:
        self._check("list_user_links")
        links = sorted(self._links.values(), key=lambda link: link.id)
        if concept_ids is not None:
            ids = set(concept_ids)
            links = [link for link in links if link.concept_id in ids]
        return [replace(link) for link in links]

    async def get_user_link(self, user_id: int, concept_id: int) -> Optional[UserConceptLink]:
        self._check("get_user_link")
        for link in self._links.values():
            if link.user_id == user_id and link.concept_id == concept_id:
                return replace(link)
        return None

    @_writes
    async def insert_user_link(
        self, user_id: int, concept_id: int, strength: int = 1, conversation_id: Optional[int] = None
    ) -> UserConceptLink:
        self._check("insert_user_link")
        link = UserConceptLink(
            id=next(self._ids["link"]),
            user_id=user_id,
            concept_id=concept_id,
            strength=strength,
            conversation_id=conversation_id,
        )
        self._links[link.id] = link
        return replace(link)

    @_writes
    async def update_user_link_strength(self, link_id: int, strength: int) -> None:
        self._check("update_user_link_strength")
        if link_id in self._links:
            self._links[link_id].strength = strength

    @_writes
    async def rewrite_user_link_concept(self, old_id: int, new_id: int) -> int:
        self._check("rewrite_user_link_concept")
        touched = 0
        for link in sorted(self._links.values(), key=lambda link: link.id):
            if link.concept_id != old_id:
                continue
            existing = next(
                (
                    other for other in self._links.values()
                    if other.user_id == link.user_id and other.concept_id == new_id
                ),
                None,
            )
            if existing is not None:
                existing.strength += link.strength
                del self._links[link.id]
            else:
                link.concept_id = new_id
            touched += 1
        return touched

    # ---- Ledger --------------------------------------------------- #

    @_writes
    async def append_merge_event(self, event: MergeEvent) -> MergeEvent:
        self._check("append_merge_event")
        stored = replace(event, id=next(self._ids["event"]))
        self._ledger.append(stored)
        return stored

    async def list_merge_events(self, limit: int = 30, concept_id: Optional[int] = None) -> List[MergeEvent]:
        self._check("list_merge_events")
        events = self._ledger
        if concept_id is not None:
            events = [
                e for e in events
                if e.from_concept_id == concept_id or e.to_concept_id == concept_id
            ]
        ordered = sorted(events, key=lambda e: (e.merged_at, e.id or 0), reverse=True)
        return ordered[:limit]

    # ---- Aggregate counters & metrics history --------------------- #

    async def read_aggregate_counter(self, name: str) -> Optional[float]:
        self._check("read_aggregate_counter")
        return self._counters.get(name)

    @_writes
    async def write_aggregate_counter(self, name: str, value: float) -> None:
        self._check("write_aggregate_counter")
        self._counters[name] = float(value)

    @_writes
    async def append_metrics_snapshot(self, snapshot: MetricsSnapshot) -> None:
        self._check("append_metrics_snapshot")
        self._snapshots.append(replace(snapshot))

    async def list_metrics_snapshots(self, limit: int = 100) -> List[MetricsSnapshot]:
        self._check("list_metrics_snapshots")
        return self._snapshots.latest(limit)
