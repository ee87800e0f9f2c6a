"""
Concept store backends.
"""

from typing import Optional

from lifeworld.core._utils import Clock
from lifeworld.core.config import LifeworldConfig

from .base import (
    MAX_OBSERVED_CONCEPTS,
    ORDER_DENSITY,
    ORDER_UPDATED,
    PREVIOUS_ENTROPY,
    ConceptStore,
)
from .memory_store import InMemoryConceptStore
from .sqlite_store import SQLiteConceptStore


def build_store(config: LifeworldConfig, clock: Optional[Clock] = None) -> ConceptStore:
    """Instantiate the backend named by ``config.store.backend``."""
    capacity = config.metrics.snapshot_capacity
    if config.store.backend == "memory":
        return InMemoryConceptStore(snapshot_capacity=capacity, clock=clock)
    return SQLiteConceptStore(
        config.store.path,
        snapshot_capacity=capacity,
        timeout=config.store.timeout_seconds,
        clock=clock,
    )


__all__ = [
    "ConceptStore",
    "InMemoryConceptStore",
    "SQLiteConceptStore",
    "build_store",
    "MAX_OBSERVED_CONCEPTS",
    "PREVIOUS_ENTROPY",
    "ORDER_DENSITY",
    "ORDER_UPDATED",
]
