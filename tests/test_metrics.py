"""
Tests for the cognitive metrics engine.
"""

import math
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given, settings, strategies as st

from lifeworld.core.config import MetricsConfig
from lifeworld.core.exceptions import StoreUnavailableError
from lifeworld.core.metrics import (
    MetricsEngine,
    adaptive_match_score,
    compression_rate,
    curvature,
    entropy_change,
    lifeworld_complexity,
    semantic_drift,
    shannon_entropy,
)
from lifeworld.core.models import Concept
from lifeworld.storage import MAX_OBSERVED_CONCEPTS, PREVIOUS_ENTROPY


@pytest.fixture
def metrics(store, clock):
    return MetricsEngine(store, MetricsConfig(), clock)


# =============================================================================
# Pure functions
# =============================================================================

class TestEntropy:
    def test_uniform_two_clusters_is_one_bit(self):
        assert shannon_entropy([3, 3]) == pytest.approx(1.0)

    def test_single_cluster_is_zero(self):
        assert shannon_entropy([7]) == 0.0

    def test_empty_is_zero(self):
        assert shannon_entropy([]) == 0.0
        assert shannon_entropy([0, 0]) == 0.0

    def test_entropy_change_without_memory_is_zero(self):
        assert entropy_change(1.7, None) == 0.0
        assert entropy_change(1.5, 2.0) == pytest.approx(-0.5)


class TestCompression:
    def test_shrunk_graph(self):
        assert compression_rate(3, 4) == pytest.approx(0.25)

    def test_never_observed(self):
        assert compression_rate(0, 0) == 0.0

    @given(st.integers(min_value=0, max_value=10_000), st.integers(min_value=0, max_value=10_000))
    @settings(max_examples=200, deadline=None)
    def test_bounded(self, current, max_observed):
        rate = compression_rate(current, max(current, max_observed))
        assert 0.0 <= rate <= 1.0


class TestCurvature:
    def test_equal_clusters_are_flat(self):
        assert curvature([2, 2, 2]) == 0.0

    def test_coefficient_of_variation(self):
        # mean 2, population std 1
        assert curvature([1, 3]) == pytest.approx(0.5)

    def test_clamped(self):
        assert curvature([1, 1, 1, 1, 100]) == 1.0

    def test_empty(self):
        assert curvature([]) == 0.0

    @given(st.lists(st.integers(min_value=1, max_value=500), min_size=1, max_size=30))
    @settings(max_examples=100, deadline=None)
    def test_bounded(self, sizes):
        assert 0.0 <= curvature(sizes) <= 1.0


class TestAdaptiveMatch:
    def test_neutral_without_links(self):
        assert adaptive_match_score([]) == 0.5

    def test_mean_over_max(self):
        assert adaptive_match_score([5, 10]) == pytest.approx(0.75)

    def test_clamped(self):
        assert adaptive_match_score([20, 30]) == 1.0


class TestComplexity:
    def test_formula(self):
        # (2 + 3 + 1.5) * log2(4)
        assert lifeworld_complexity(2, 3, 1.5) == pytest.approx(13.0)

    def test_empty_graph(self):
        assert lifeworld_complexity(0, 0, 0.0) == 0.0

    def test_single_cluster_uses_log2_two(self):
        assert lifeworld_complexity(1, 1, 0.0) == pytest.approx(2.0)


class TestSemanticDrift:
    def _concept(self, cid, created, updated, occurrences):
        return Concept(id=cid, name=f"c{cid}", occurrences=occurrences, created_at=created, updated_at=updated)

    def test_fewer_than_two_concepts(self, clock):
        c = self._concept(1, clock(), clock(), 10)
        assert semantic_drift([c], clock()) == 0.0

    def test_occurrence_weighting(self, clock):
        start = clock()
        touched = self._concept(1, start - timedelta(hours=2), start - timedelta(minutes=10), 10)
        light = self._concept(2, start - timedelta(hours=2), start - timedelta(minutes=5), 5)
        untouched = self._concept(3, start, start, 50)
        stale = self._concept(4, start - timedelta(hours=5), start - timedelta(hours=3), 10)
        # (1.0 + 0.5 + 0 + 0) / 4
        assert semantic_drift([touched, light, untouched, stale], start) == pytest.approx(0.375)


# =============================================================================
# Engine
# =============================================================================

class TestMetricsEngine:
    @pytest.mark.asyncio
    async def test_empty_graph_is_neutral(self, metrics):
        snap = await metrics.get_metrics()
        assert snap.compression_rate == 0.0
        assert snap.graph_entropy_change == 0.0
        assert snap.semantic_drift == 0.0
        assert snap.curvature == 0.0
        assert snap.adaptive_match_score == 0.5
        assert snap.lifeworld_complexity == 0.0
        assert snap.node_count == 0

    @pytest.mark.asyncio
    async def test_compression_after_shrink(self, metrics, store):
        concepts = [await store.insert_concept(f"c{i}") for i in range(4)]
        await metrics.get_metrics()
        await store.delete_concept(concepts[0].id)

        snap = await metrics.get_metrics()
        assert snap.compression_rate == pytest.approx(0.25)
        assert await store.read_aggregate_counter(MAX_OBSERVED_CONCEPTS) == 4

    @pytest.mark.asyncio
    async def test_max_observed_is_monotonic(self, metrics, store):
        for i in range(3):
            await store.insert_concept(f"c{i}")
        await metrics.get_metrics()
        await store.delete_concept(1)
        await store.delete_concept(2)
        await metrics.get_metrics()
        assert await store.read_aggregate_counter(MAX_OBSERVED_CONCEPTS) == 3

    @pytest.mark.asyncio
    async def test_unreadable_running_max_is_not_overwritten(self, metrics, store):
        concepts = [await store.insert_concept(f"c{i}") for i in range(10)]
        await metrics.get_metrics()
        for c in concepts[:6]:
            await store.delete_concept(c.id)

        real_read = store.read_aggregate_counter

        async def locked_max(name):
            if name == MAX_OBSERVED_CONCEPTS:
                raise StoreUnavailableError("memory", "database is locked")
            return await real_read(name)

        with patch.object(store, "read_aggregate_counter", AsyncMock(side_effect=locked_max)):
            snap = await metrics.get_metrics()

        assert snap.node_count == 4
        assert await store.read_aggregate_counter(MAX_OBSERVED_CONCEPTS) == 10.0
        assert len(await metrics.get_metrics_history()) == 1

        recovered = await metrics.get_metrics()
        assert recovered.compression_rate == pytest.approx(0.6)
        assert await store.read_aggregate_counter(MAX_OBSERVED_CONCEPTS) == 10.0

    @pytest.mark.asyncio
    async def test_entropy_change_between_snapshots(self, metrics, store):
        await store.insert_concept("a1", category="a")
        await store.insert_concept("a2", category="a")
        first = await metrics.get_metrics()
        assert first.graph_entropy_change == 0.0
        assert await store.read_aggregate_counter(PREVIOUS_ENTROPY) == 0.0

        await store.insert_concept("b1", category="b")
        await store.insert_concept("b2", category="b")
        second = await metrics.get_metrics()
        assert second.graph_entropy_change == pytest.approx(1.0)
        assert second.cluster_count == 2

    @pytest.mark.asyncio
    async def test_null_category_counts_as_general(self, metrics, store):
        await store.insert_concept("a", category=None)
        await store.insert_concept("b", category="general")
        snap = await metrics.get_metrics()
        assert snap.cluster_count == 1
        assert snap.curvature == 0.0

    @pytest.mark.asyncio
    async def test_adaptive_match_from_links(self, metrics, store):
        c = await store.insert_concept("c")
        await store.insert_user_link(1, c.id, strength=5)
        await store.insert_user_link(2, c.id, strength=10)
        snap = await metrics.get_metrics()
        assert snap.adaptive_match_score == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_drift_from_recent_updates(self, metrics, store, clock):
        a = await store.insert_concept("a", occurrences=10)
        await store.insert_concept("b")
        clock.advance(minutes=10)
        await store.update_concept(a.id, occurrences=10)
        snap = await metrics.get_metrics()
        assert snap.semantic_drift == pytest.approx(0.5)

        clock.advance(hours=2)
        snap = await metrics.get_metrics()
        assert snap.semantic_drift == 0.0

    @pytest.mark.asyncio
    async def test_complexity_counts_invariants(self, metrics, store):
        await store.insert_concept("core", category="x", semantic_density=75)
        await store.insert_concept("edge", category="y", semantic_density=20)
        snap = await metrics.get_metrics()
        assert snap.invariant_count == 1
        # (1 + 2 + 1.0) * log2(3)
        assert snap.lifeworld_complexity == pytest.approx(4.0 * math.log2(3))

    @pytest.mark.asyncio
    async def test_snapshots_are_persisted(self, metrics, store):
        await metrics.get_metrics()
        await metrics.get_metrics()
        assert len(await metrics.get_metrics_history()) == 2

    @pytest.mark.asyncio
    async def test_persist_can_be_disabled(self, metrics):
        await metrics.get_metrics(persist=False)
        assert await metrics.get_metrics_history() == []

    @pytest.mark.asyncio
    async def test_with_history(self, metrics, store):
        await store.insert_concept("a")
        await metrics.get_metrics()
        result = await metrics.get_metrics_with_history()
        assert result["previous"] is not None
        assert result["current"].node_count == 1
        assert result["trend"] == "stable"
        assert isinstance(result["warnings"], list)

    @pytest.mark.asyncio
    async def test_unavailable_store_yields_neutral_snapshot(self, metrics, store):
        await store.insert_concept("a")
        await store.close()
        snap = await metrics.get_metrics()
        assert snap.node_count == 0
        assert snap.adaptive_match_score == 0.5
        assert snap.graph_entropy_change == 0.0
        assert await metrics.get_metrics_history() == []

    @pytest.mark.asyncio
    async def test_bookkeeping_failure_still_returns_snapshot(self, metrics, store):
        await store.insert_concept("a")
        failing = AsyncMock(side_effect=StoreUnavailableError("memory", "read-only"))
        with patch.object(store, "write_aggregate_counter", failing):
            snap = await metrics.get_metrics()
        assert snap.node_count == 1
        failing.assert_awaited()
