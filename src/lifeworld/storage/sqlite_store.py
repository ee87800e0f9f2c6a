"""
SQLite Concept Store
====================
aiosqlite-backed implementation of the ConceptStore port.

Schema:
    concepts             graph nodes
    concept_relations    concept -> concept edges
    user_concepts        user -> concept reinforcement links
    concept_convergence  append-only merge ledger
    metrics_history      bounded rolling MetricsSnapshot history
    aggregate_counters   named scalars (max observed size, previous entropy)

The connection runs in autocommit mode; ``transaction()`` issues an explicit
``BEGIN IMMEDIATE`` / ``COMMIT`` and rolls back if the block raises.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiosqlite
from loguru import logger

from lifeworld.core._utils import Clock, clamp_density, parse_timestamp, utc_now
from lifeworld.core.exceptions import StoreUnavailableError, wrap_storage_exception
from lifeworld.core.models import (
    Concept,
    ConceptEdge,
    MergeEvent,
    MetricsSnapshot,
    UserConceptLink,
)

from .base import ORDER_UPDATED, ConceptStore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS concepts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    category TEXT,
    semantic_density INTEGER NOT NULL DEFAULT 50,
    occurrences INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS concept_relations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES concepts(id),
    target_id INTEGER NOT NULL REFERENCES concepts(id),
    relation_type TEXT,
    weight INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS user_concepts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    concept_id INTEGER NOT NULL REFERENCES concepts(id),
    strength INTEGER NOT NULL DEFAULT 1,
    conversation_id INTEGER
);

CREATE TABLE IF NOT EXISTS concept_convergence (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    from_concept_id INTEGER NOT NULL,
    to_concept_id INTEGER NOT NULL,
    similarity_score INTEGER NOT NULL,
    reason TEXT,
    total_concepts_before INTEGER NOT NULL,
    total_concepts_after INTEGER NOT NULL,
    merged_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    compression_rate REAL NOT NULL,
    graph_entropy_change REAL NOT NULL,
    semantic_drift REAL NOT NULL,
    curvature REAL NOT NULL,
    adaptive_match_score REAL NOT NULL,
    lifeworld_complexity REAL NOT NULL,
    node_count INTEGER NOT NULL,
    edge_count INTEGER NOT NULL,
    invariant_count INTEGER NOT NULL,
    cluster_count INTEGER NOT NULL,
    recorded_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS aggregate_counters (
    name TEXT PRIMARY KEY,
    value REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_concepts_name ON concepts(name);
CREATE INDEX IF NOT EXISTS idx_concepts_density ON concepts(semantic_density);
CREATE INDEX IF NOT EXISTS idx_relations_source ON concept_relations(source_id);
CREATE INDEX IF NOT EXISTS idx_relations_target ON concept_relations(target_id);
CREATE INDEX IF NOT EXISTS idx_user_concepts_concept ON user_concepts(concept_id);
CREATE INDEX IF NOT EXISTS idx_convergence_merged_at ON concept_convergence(merged_at);
"""


def _placeholders(values: List[Any]) -> str:
    return ",".join("?" for _ in values)


class SQLiteConceptStore(ConceptStore):
    backend_name = "sqlite"

    def __init__(
        self,
        db_path: Union[str, Path],
        snapshot_capacity: int = 500,
        timeout: float = 30.0,
        clock: Optional[Clock] = None,
    ):
        self.db_path = str(db_path)
        self.snapshot_capacity = snapshot_capacity
        self.timeout = timeout
        self.clock: Clock = clock or utc_now
        self._conn: Optional[aiosqlite.Connection] = None
        self._init_lock = asyncio.Lock()
        self._tx_lock = asyncio.Lock()
        # True inside the task that owns the open transaction
        self._tx_owner: ContextVar[bool] = ContextVar(f"sqlite_tx_owner_{id(self)}", default=False)

    # ---- Lifecycle ----------------------------------------------- #

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._conn is not None:
                return
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                self._conn = await aiosqlite.connect(
                    self.db_path, timeout=self.timeout, isolation_level=None
                )
                self._conn.row_factory = aiosqlite.Row
                await self._conn.execute("PRAGMA journal_mode=WAL")
                await self._conn.execute("PRAGMA synchronous=NORMAL")
                await self._conn.executescript(_SCHEMA)
            except Exception as e:
                self._conn = None
                raise StoreUnavailableError(self.backend_name, f"cannot open {self.db_path}: {e}")
            logger.info(f"SQLite concept store initialized at {self.db_path}")

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    def _require(self, operation: str) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreUnavailableError(self.backend_name, f"not connected ({operation})")
        return self._conn

    @asynccontextmanager
    async def _outside_transaction(self):
        """Hold the transaction lock unless this task already owns the open transaction."""
        if self._tx_owner.get():
            yield
            return
        async with self._tx_lock:
            yield

    async def _fetchall(self, operation: str, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        async with self._outside_transaction():
            conn = self._require(operation)
            try:
                async with conn.execute(sql, params) as cursor:
                    return list(await cursor.fetchall())
            except Exception as e:
                raise wrap_storage_exception(self.backend_name, operation, e)

    async def _fetchone(self, operation: str, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(operation, sql, params)
        return rows[0] if rows else None

    async def _execute(self, operation: str, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        async with self._outside_transaction():
            conn = self._require(operation)
            try:
                return await conn.execute(sql, params)
            except Exception as e:
                raise wrap_storage_exception(self.backend_name, operation, e)

    @asynccontextmanager
    async def transaction(self):
        """
        One transaction at a time on the shared connection.

        Nested blocks in the owning task join the outer transaction; any other
        task, including plain reads and writes, waits until it commits or rolls back.
        """
        if self._tx_owner.get():
            yield self
            return

        async with self._tx_lock:
            conn = self._require("transaction")
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except Exception as e:
                raise wrap_storage_exception(self.backend_name, "begin", e)
            token = self._tx_owner.set(True)
            try:
                yield self
            except BaseException:
                await conn.execute("ROLLBACK")
                logger.debug("SQLite transaction rolled back")
                raise
            else:
                try:
                    await conn.execute("COMMIT")
                except Exception as e:
                    await conn.execute("ROLLBACK")
                    raise wrap_storage_exception(self.backend_name, "commit", e)
            finally:
                self._tx_owner.reset(token)

    # ---- Row mapping ---------------------------------------------- #

    @staticmethod
    def _concept(row) -> Concept:
        return Concept(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            category=row["category"],
            semantic_density=row["semantic_density"],
            occurrences=row["occurrences"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _edge(row) -> ConceptEdge:
        return ConceptEdge(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            relation_type=row["relation_type"],
            weight=row["weight"],
        )

    @staticmethod
    def _link(row) -> UserConceptLink:
        return UserConceptLink(
            id=row["id"],
            user_id=row["user_id"],
            concept_id=row["concept_id"],
            strength=row["strength"],
            conversation_id=row["conversation_id"],
        )

    @staticmethod
    def _event(row) -> MergeEvent:
        return MergeEvent(
            id=row["id"],
            from_concept_id=row["from_concept_id"],
            to_concept_id=row["to_concept_id"],
            similarity_score=row["similarity_score"],
            reason=row["reason"] or "",
            total_concepts_before=row["total_concepts_before"],
            total_concepts_after=row["total_concepts_after"],
            merged_at=parse_timestamp(row["merged_at"]),
        )

    @staticmethod
    def _snapshot(row) -> MetricsSnapshot:
        return MetricsSnapshot(
            compression_rate=row["compression_rate"],
            graph_entropy_change=row["graph_entropy_change"],
            semantic_drift=row["semantic_drift"],
            curvature=row["curvature"],
            adaptive_match_score=row["adaptive_match_score"],
            lifeworld_complexity=row["lifeworld_complexity"],
            node_count=row["node_count"],
            edge_count=row["edge_count"],
            invariant_count=row["invariant_count"],
            cluster_count=row["cluster_count"],
            timestamp=parse_timestamp(row["recorded_at"]),
        )

    def _now(self) -> str:
        return self.clock().isoformat()

    # ---- Concepts ------------------------------------------------- #

    async def count_concepts(self) -> int:
        row = await self._fetchone("count_concepts", "SELECT COUNT(*) AS n FROM concepts")
        return int(row["n"]) if row else 0

    async def list_concepts(self, order_by: str = "density", limit: Optional[int] = None) -> List[Concept]:
        if order_by == ORDER_UPDATED:
            order = "updated_at DESC, id DESC"
        else:
            order = "semantic_density DESC, occurrences DESC, id ASC"
        sql = f"SELECT * FROM concepts ORDER BY {order}"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        rows = await self._fetchall("list_concepts", sql, params)
        return [self._concept(r) for r in rows]

    async def get_concept(self, concept_id: int) -> Optional[Concept]:
        row = await self._fetchone("get_concept", "SELECT * FROM concepts WHERE id = ?", (concept_id,))
        return self._concept(row) if row else None

    async def find_concept_by_name(self, name: str, case_insensitive: bool = False) -> Optional[Concept]:
        if case_insensitive:
            sql = "SELECT * FROM concepts WHERE LOWER(name) = LOWER(?) ORDER BY id ASC LIMIT 1"
        else:
            sql = "SELECT * FROM concepts WHERE name = ? ORDER BY id ASC LIMIT 1"
        row = await self._fetchone("find_concept_by_name", sql, (name,))
        return self._concept(row) if row else None

    async def list_category_peers(self, concept: Concept, limit: int = 5) -> List[Concept]:
        rows = await self._fetchall(
            "list_category_peers",
            """
            SELECT *, ABS(semantic_density - ?) AS density_diff
            FROM concepts
            WHERE id != ? AND COALESCE(NULLIF(category, ''), 'general') = ?
            ORDER BY density_diff ASC, id ASC
            LIMIT ?
            """,
            (concept.semantic_density, concept.id, concept.cluster, limit),
        )
        return [self._concept(r) for r in rows]

    async def insert_concept(
        self,
        name: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        semantic_density: int = 50,
        occurrences: int = 1,
    ) -> Concept:
        now = self._now()
        cursor = await self._execute(
            "insert_concept",
            """
            INSERT INTO concepts
            (name, description, category, semantic_density, occurrences, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (name, description, category, clamp_density(semantic_density), max(1, occurrences), now, now),
        )
        concept = await self.get_concept(cursor.lastrowid)
        return concept

    async def update_concept(self, concept_id: int, **fields) -> Optional[Concept]:
        allowed = {"name", "description", "category", "semantic_density", "occurrences"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update concept fields: {sorted(unknown)}")
        if "semantic_density" in fields:
            fields["semantic_density"] = clamp_density(fields["semantic_density"])
        assignments = [f"{k} = ?" for k in fields] + ["updated_at = ?"]
        params = tuple(fields.values()) + (self._now(), concept_id)
        cursor = await self._execute(
            "update_concept",
            f"UPDATE concepts SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        if cursor.rowcount == 0:
            return None
        return await self.get_concept(concept_id)

    async def delete_concept(self, concept_id: int) -> bool:
        cursor = await self._execute("delete_concept", "DELETE FROM concepts WHERE id = ?", (concept_id,))
        return cursor.rowcount > 0

    async def category_histogram(self) -> Dict[str, int]:
        rows = await self._fetchall(
            "category_histogram",
            """
            SELECT COALESCE(NULLIF(category, ''), 'general') AS cluster, COUNT(*) AS n
            FROM concepts GROUP BY cluster
            """,
        )
        return {r["cluster"]: int(r["n"]) for r in rows}

    async def count_concepts_with_density(self, min_density: int, min_occurrences: int = 0) -> int:
        row = await self._fetchone(
            "count_concepts_with_density",
            "SELECT COUNT(*) AS n FROM concepts WHERE semantic_density >= ? AND occurrences >= ?",
            (min_density, min_occurrences),
        )
        return int(row["n"]) if row else 0

    # ---- Edges ---------------------------------------------------- #

    async def count_edges(self) -> int:
        row = await self._fetchone("count_edges", "SELECT COUNT(*) AS n FROM concept_relations")
        return int(row["n"]) if row else 0

    async def list_edges(self, endpoint_ids: Optional[Iterable[int]] = None) -> List[ConceptEdge]:
        if endpoint_ids is None:
            rows = await self._fetchall("list_edges", "SELECT * FROM concept_relations ORDER BY id")
        else:
            ids = list(endpoint_ids)
            if not ids:
                return []
            marks = _placeholders(ids)
            rows = await self._fetchall(
                "list_edges",
                f"SELECT * FROM concept_relations WHERE source_id IN ({marks}) OR target_id IN ({marks}) ORDER BY id",
                tuple(ids) + tuple(ids),
            )
        return [self._edge(r) for r in rows]

    async def insert_edge(
        self, source_id: int, target_id: int, relation_type: Optional[str] = None, weight: int = 1
    ) -> ConceptEdge:
        for endpoint in (source_id, target_id):
            if await self.get_concept(endpoint) is None:
                raise ValueError(f"Edge endpoint {endpoint} does not reference an existing concept")
        cursor = await self._execute(
            "insert_edge",
            "INSERT INTO concept_relations (source_id, target_id, relation_type, weight) VALUES (?, ?, ?, ?)",
            (source_id, target_id, relation_type, weight),
        )
        return ConceptEdge(
            id=cursor.lastrowid,
            source_id=source_id,
            target_id=target_id,
            relation_type=relation_type,
            weight=weight,
        )

    async def rewrite_edge_endpoint(self, old_id: int, new_id: int) -> int:
        source = await self._execute(
            "rewrite_edge_endpoint",
            "UPDATE concept_relations SET source_id = ? WHERE source_id = ?",
            (new_id, old_id),
        )
        target = await self._execute(
            "rewrite_edge_endpoint",
            "UPDATE concept_relations SET target_id = ? WHERE target_id = ?",
            (new_id, old_id),
        )
        return max(0, source.rowcount) + max(0, target.rowcount)

    # ---- User links ----------------------------------------------- #

    async def list_user_links(self, concept_ids: Optional[Iterable[int]] = None) -> List[UserConceptLink]:
        if concept_ids is None:
            rows = await self._fetchall("list_user_links", "SELECT * FROM user_concepts ORDER BY id")
        else:
            ids = list(concept_ids)
            if not ids:
                return []
            rows = await self._fetchall(
                "list_user_links",
                f"SELECT * FROM user_concepts WHERE concept_id IN ({_placeholders(ids)}) ORDER BY id",
                tuple(ids),
            )
        return [self._link(r) for r in rows]

    async def get_user_link(self, user_id: int, concept_id: int) -> Optional[UserConceptLink]:
        row = await self._fetchone(
            "get_user_link",
            "SELECT * FROM user_concepts WHERE user_id = ? AND concept_id = ? ORDER BY id LIMIT 1",
            (user_id, concept_id),
        )
        return self._link(row) if row else None

    async def insert_user_link(
        self, user_id: int, concept_id: int, strength: int = 1, conversation_id: Optional[int] = None
    ) -> UserConceptLink:
        cursor = await self._execute(
            "insert_user_link",
            "INSERT INTO user_concepts (user_id, concept_id, strength, conversation_id) VALUES (?, ?, ?, ?)",
            (user_id, concept_id, strength, conversation_id),
        )
        return UserConceptLink(
            id=cursor.lastrowid,
            user_id=user_id,
            concept_id=concept_id,
            strength=strength,
            conversation_id=conversation_id,
        )

    async def update_user_link_strength(self, link_id: int, strength: int) -> None:
        await self._execute(
            "update_user_link_strength",
            "UPDATE user_concepts SET strength = ? WHERE id = ?",
            (strength, link_id),
        )

    async def rewrite_user_link_concept(self, old_id: int, new_id: int) -> int:
        links = await self.list_user_links([old_id])
        for link in links:
            existing = await self.get_user_link(link.user_id, new_id)
            if existing is not None:
                await self.update_user_link_strength(existing.id, existing.strength + link.strength)
                await self._execute(
                    "rewrite_user_link_concept",
                    "DELETE FROM user_concepts WHERE id = ?",
                    (link.id,),
                )
            else:
                await self._execute(
                    "rewrite_user_link_concept",
                    "UPDATE user_concepts SET concept_id = ? WHERE id = ?",
                    (new_id, link.id),
                )
        return len(links)

    # ---- Ledger --------------------------------------------------- #

    async def append_merge_event(self, event: MergeEvent) -> MergeEvent:
        cursor = await self._execute(
            "append_merge_event",
            """
            INSERT INTO concept_convergence
            (from_concept_id, to_concept_id, similarity_score, reason,
             total_concepts_before, total_concepts_after, merged_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.from_concept_id,
                event.to_concept_id,
                event.similarity_score,
                event.reason,
                event.total_concepts_before,
                event.total_concepts_after,
                event.merged_at.isoformat(),
            ),
        )
        return MergeEvent(
            id=cursor.lastrowid,
            from_concept_id=event.from_concept_id,
            to_concept_id=event.to_concept_id,
            similarity_score=event.similarity_score,
            reason=event.reason,
            total_concepts_before=event.total_concepts_before,
            total_concepts_after=event.total_concepts_after,
            merged_at=event.merged_at,
        )

    async def list_merge_events(self, limit: int = 30, concept_id: Optional[int] = None) -> List[MergeEvent]:
        if concept_id is None:
            rows = await self._fetchall(
                "list_merge_events",
                "SELECT * FROM concept_convergence ORDER BY merged_at DESC, id DESC LIMIT ?",
                (limit,),
            )
        else:
            rows = await self._fetchall(
                "list_merge_events",
                """
                SELECT * FROM concept_convergence
                WHERE to_concept_id = ? OR from_concept_id = ?
                ORDER BY merged_at DESC, id DESC
                LIMIT ?
                """,
                (concept_id, concept_id, limit),
            )
        return [self._event(r) for r in rows]

    # ---- Aggregate counters & metrics history --------------------- #

    async def read_aggregate_counter(self, name: str) -> Optional[float]:
        row = await self._fetchone(
            "read_aggregate_counter", "SELECT value FROM aggregate_counters WHERE name = ?", (name,)
        )
        return float(row["value"]) if row else None

    async def write_aggregate_counter(self, name: str, value: float) -> None:
        await self._execute(
            "write_aggregate_counter",
            """
            INSERT INTO aggregate_counters (name, value) VALUES (?, ?)
            ON CONFLICT(name) DO UPDATE SET value = excluded.value
            """,
            (name, float(value)),
        )

    async def append_metrics_snapshot(self, snapshot: MetricsSnapshot) -> None:
        async with self.transaction():
            await self._execute(
                "append_metrics_snapshot",
                """
                INSERT INTO metrics_history
                (compression_rate, graph_entropy_change, semantic_drift, curvature,
                 adaptive_match_score, lifeworld_complexity, node_count, edge_count,
                 invariant_count, cluster_count, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.compression_rate,
                    snapshot.graph_entropy_change,
                    snapshot.semantic_drift,
                    snapshot.curvature,
                    snapshot.adaptive_match_score,
                    snapshot.lifeworld_complexity,
                    snapshot.node_count,
                    snapshot.edge_count,
                    snapshot.invariant_count,
                    snapshot.cluster_count,
                    snapshot.timestamp.isoformat(),
                ),
            )
            # Keep only the newest ``snapshot_capacity`` rows
            await self._execute(
                "append_metrics_snapshot",
                """
                DELETE FROM metrics_history WHERE id NOT IN (
                    SELECT id FROM metrics_history ORDER BY id DESC LIMIT ?
                )
                """,
                (self.snapshot_capacity,),
            )

    async def list_metrics_snapshots(self, limit: int = 100) -> List[MetricsSnapshot]:
        rows = await self._fetchall(
            "list_metrics_snapshots",
            "SELECT * FROM metrics_history ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [self._snapshot(r) for r in rows]
