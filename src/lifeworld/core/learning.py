"""
Concept reinforcement.

Entry point used by the extraction pipeline when a concept is mentioned:
a case-insensitive name match is reinforced, anything else is created.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from typing import Optional

from loguru import logger

from .exceptions import ValidationError
from .models import Concept

from lifeworld.storage.base import ConceptStore


async def reinforce_concept(
    store: ConceptStore,
    user_id: int,
    name: str,
    description: Optional[str] = None,
    category: Optional[str] = None,
    importance: int = 5,
    conversation_id: Optional[int] = None,
    lock: Optional[asyncio.Lock] = None,
) -> Concept:
    """
    Create or reinforce a concept and the user's link to it.

    New concept: density = importance * 10, link strength = importance.
    Existing concept: occurrences + 1, density + importance (capped at 100),
    link strength + 1 (or a new link at ``importance``).

    Args:
        lock: The merge lock, so reinforcement never interleaves with a merge.

    Raises:
        ValidationError: If ``name`` is blank or ``importance`` is outside 1-10.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name", "Concept name cannot be empty")
    if not 1 <= importance <= 10:
        raise ValidationError("importance", "Must be between 1 and 10", importance)

    async with AsyncExitStack() as stack:
        if lock is not None:
            await stack.enter_async_context(lock)
        await stack.enter_async_context(store.transaction())

        existing = await store.find_concept_by_name(name, case_insensitive=True)
        if existing is not None:
            concept = await store.update_concept(
                existing.id,
                occurrences=existing.occurrences + 1,
                semantic_density=min(100, existing.semantic_density + importance),
            )
            link = await store.get_user_link(user_id, existing.id)
            if link is None:
                await store.insert_user_link(user_id, existing.id, importance, conversation_id)
            else:
                await store.update_user_link_strength(link.id, link.strength + 1)
            logger.info(f"Reinforced concept: '{existing.name}' (density: {concept.semantic_density})")
            return concept

        concept = await store.insert_concept(
            name=name,
            description=description,
            category=category,
            semantic_density=importance * 10,
        )
        await store.insert_user_link(user_id, concept.id, importance, conversation_id)
        logger.info(f"New concept learned: '{concept.name}' ({concept.cluster})")
        return concept
