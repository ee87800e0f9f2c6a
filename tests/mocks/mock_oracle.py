"""
Scripted similarity oracles.

ScriptedOracle answers from a fixed list of pairs and records every batch it
was shown. By default it behaves like a well-mannered model: it only returns
pairs whose ids are both in the batch and whose similarity meets the threshold.
Both courtesies can be switched off to exercise the engine's own filtering.
"""

import asyncio
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from lifeworld.core.exceptions import OracleCallError
from lifeworld.core.models import Concept, SimilarityCandidate
from lifeworld.core.oracle import SimilarityOracle


class ScriptedOracle(SimilarityOracle):
    def __init__(
        self,
        pairs: Optional[Iterable[SimilarityCandidate]] = None,
        respect_batch: bool = True,
        honor_threshold: bool = True,
        fail_batches: Optional[Set[int]] = None,
    ):
        self.pairs: List[SimilarityCandidate] = list(pairs or [])
        self.respect_batch = respect_batch
        self.honor_threshold = honor_threshold
        self.fail_batches = set(fail_batches or ())
        self.calls: List[Tuple[List[int], float]] = []

    def add_pair(self, id1: int, id2: int, similarity: float, reason: str = "scripted") -> None:
        self.pairs.append(SimilarityCandidate(id1=id1, id2=id2, similarity=similarity, reason=reason))

    async def compare(self, batch: Sequence[Concept], threshold: float) -> List[SimilarityCandidate]:
        index = len(self.calls)
        self.calls.append(([c.id for c in batch], threshold))
        if index in self.fail_batches:
            raise OracleCallError("scripted", f"batch {index} configured to fail")

        ids = {c.id for c in batch}
        result = []
        for pair in self.pairs:
            if self.respect_batch and (pair.id1 not in ids or pair.id2 not in ids):
                continue
            if self.honor_threshold and pair.similarity < threshold:
                continue
            result.append(pair)
        return result


class BlockingOracle(ScriptedOracle):
    """Parks inside ``compare`` until ``release`` is set, so a run stays in flight."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def compare(self, batch, threshold):
        self.entered.set()
        await self.release.wait()
        return await super().compare(batch, threshold)
