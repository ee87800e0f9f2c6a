"""
Concept store contract
======================
Every test runs against both backends (in-memory and SQLite) so the engine can
rely on identical ordering, folding and rollback semantics.
"""

import pytest

from lifeworld.core.exceptions import StoreUnavailableError
from lifeworld.core.models import MergeEvent, MetricsSnapshot
from lifeworld.storage import ORDER_UPDATED, SQLiteConceptStore
from tests.mocks import opened


class TestConcepts:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, make_store):
        async with opened(make_store()) as store:
            c = await store.insert_concept("trust", "belief in reliability", "ethics", 70, 2)
            fetched = await store.get_concept(c.id)
            assert fetched.name == "trust"
            assert fetched.description == "belief in reliability"
            assert fetched.category == "ethics"
            assert fetched.semantic_density == 70
            assert fetched.occurrences == 2
            assert fetched.created_at == fetched.updated_at

    @pytest.mark.asyncio
    async def test_density_clamped_and_occurrences_at_least_one(self, make_store):
        async with opened(make_store()) as store:
            c = await store.insert_concept("overflow", semantic_density=150, occurrences=0)
            assert c.semantic_density == 100
            assert c.occurrences == 1

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, make_store):
        async with opened(make_store()) as store:
            assert await store.get_concept(999) is None

    @pytest.mark.asyncio
    async def test_density_order(self, make_store):
        async with opened(make_store()) as store:
            a = await store.insert_concept("a", semantic_density=50, occurrences=1)
            b = await store.insert_concept("b", semantic_density=80, occurrences=1)
            c = await store.insert_concept("c", semantic_density=50, occurrences=4)
            d = await store.insert_concept("d", semantic_density=50, occurrences=1)
            ordered = [x.id for x in await store.list_concepts()]
            assert ordered == [b.id, c.id, a.id, d.id]
            assert [x.id for x in await store.list_concepts(limit=2)] == [b.id, c.id]

    @pytest.mark.asyncio
    async def test_updated_order(self, make_store, clock):
        async with opened(make_store()) as store:
            a = await store.insert_concept("a")
            b = await store.insert_concept("b")
            clock.advance(minutes=5)
            await store.update_concept(a.id, occurrences=3)
            recent = await store.list_concepts(order_by=ORDER_UPDATED)
            assert [x.id for x in recent] == [a.id, b.id]
            assert recent[0].updated_at == clock()

    @pytest.mark.asyncio
    async def test_find_by_name(self, make_store):
        async with opened(make_store()) as store:
            first = await store.insert_concept("Freedom")
            await store.insert_concept("freedom")
            assert await store.find_concept_by_name("freedom", case_insensitive=True) == first
            exact = await store.find_concept_by_name("freedom")
            assert exact.id != first.id
            assert await store.find_concept_by_name("liberty") is None

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, make_store):
        async with opened(make_store()) as store:
            c = await store.insert_concept("x")
            with pytest.raises(ValueError):
                await store.update_concept(c.id, id=5)

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, make_store):
        async with opened(make_store()) as store:
            assert await store.update_concept(42, occurrences=2) is None

    @pytest.mark.asyncio
    async def test_delete(self, make_store):
        async with opened(make_store()) as store:
            c = await store.insert_concept("gone")
            assert await store.delete_concept(c.id) is True
            assert await store.delete_concept(c.id) is False
            assert await store.count_concepts() == 0

    @pytest.mark.asyncio
    async def test_histogram_folds_missing_category_into_general(self, make_store):
        async with opened(make_store()) as store:
            await store.insert_concept("a", category=None)
            await store.insert_concept("b", category="general")
            await store.insert_concept("c", category="")
            await store.insert_concept("d", category="science")
            assert await store.category_histogram() == {"general": 3, "science": 1}

    @pytest.mark.asyncio
    async def test_density_count(self, make_store):
        async with opened(make_store()) as store:
            await store.insert_concept("a", semantic_density=80, occurrences=3)
            await store.insert_concept("b", semantic_density=85, occurrences=1)
            await store.insert_concept("c", semantic_density=40, occurrences=9)
            assert await store.count_concepts_with_density(80) == 2
            assert await store.count_concepts_with_density(80, min_occurrences=3) == 1

    @pytest.mark.asyncio
    async def test_category_peers(self, make_store):
        async with opened(make_store()) as store:
            me = await store.insert_concept("me", category="ai", semantic_density=50)
            near = await store.insert_concept("near", category="ai", semantic_density=53)
            far = await store.insert_concept("far", category="ai", semantic_density=90)
            await store.insert_concept("other", category="art", semantic_density=50)
            peers = await store.list_category_peers(me)
            assert [p.id for p in peers] == [near.id, far.id]
            assert [p.id for p in await store.list_category_peers(me, limit=1)] == [near.id]


class TestEdgesAndLinks:
    @pytest.mark.asyncio
    async def test_edge_requires_existing_endpoints(self, make_store):
        async with opened(make_store()) as store:
            a = await store.insert_concept("a")
            with pytest.raises(ValueError):
                await store.insert_edge(a.id, 999)
            assert await store.count_edges() == 0

    @pytest.mark.asyncio
    async def test_rewrite_edge_endpoint(self, make_store):
        async with opened(make_store()) as store:
            a = await store.insert_concept("a")
            b = await store.insert_concept("b")
            c = await store.insert_concept("c")
            await store.insert_edge(b.id, c.id, "related")
            await store.insert_edge(c.id, b.id, "related")
            touched = await store.rewrite_edge_endpoint(b.id, a.id)
            assert touched == 2
            edges = await store.list_edges()
            assert {(e.source_id, e.target_id) for e in edges} == {(a.id, c.id), (c.id, a.id)}
            assert await store.list_edges([b.id]) == []

    @pytest.mark.asyncio
    async def test_rewrite_user_links_folds_duplicates(self, make_store):
        async with opened(make_store()) as store:
            a = await store.insert_concept("a")
            b = await store.insert_concept("b")
            await store.insert_user_link(1, a.id, strength=2)
            await store.insert_user_link(1, b.id, strength=3)
            await store.insert_user_link(2, b.id, strength=4)

            await store.rewrite_user_link_concept(b.id, a.id)

            links = await store.list_user_links()
            assert sorted((link.user_id, link.concept_id, link.strength) for link in links) == [
                (1, a.id, 5),
                (2, a.id, 4),
            ]

    @pytest.mark.asyncio
    async def test_get_user_link(self, make_store):
        async with opened(make_store()) as store:
            a = await store.insert_concept("a")
            link = await store.insert_user_link(7, a.id, strength=5, conversation_id=3)
            fetched = await store.get_user_link(7, a.id)
            assert fetched.id == link.id
            assert fetched.conversation_id == 3
            await store.update_user_link_strength(link.id, 9)
            assert (await store.get_user_link(7, a.id)).strength == 9
            assert await store.get_user_link(8, a.id) is None


class TestLedgerAndCounters:
    @pytest.mark.asyncio
    async def test_ledger_newest_first(self, make_store, clock):
        async with opened(make_store()) as store:
            first = await store.append_merge_event(
                MergeEvent(2, 1, 90, "first", 3, 2, merged_at=clock())
            )
            clock.advance(hours=1)
            second = await store.append_merge_event(
                MergeEvent(3, 4, 88, "second", 2, 1, merged_at=clock())
            )
            events = await store.list_merge_events()
            assert [e.id for e in events] == [second.id, first.id]
            assert events[0].merged_at == clock()
            assert [e.reason for e in await store.list_merge_events(concept_id=1)] == ["first"]
            assert len(await store.list_merge_events(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_counters(self, make_store):
        async with opened(make_store()) as store:
            assert await store.read_aggregate_counter("previous_entropy") is None
            await store.write_aggregate_counter("previous_entropy", 1.25)
            await store.write_aggregate_counter("previous_entropy", 0.5)
            assert await store.read_aggregate_counter("previous_entropy") == 0.5

    @pytest.mark.asyncio
    async def test_snapshot_history_is_bounded(self, make_store):
        async with opened(make_store(snapshot_capacity=3)) as store:
            for i in range(5):
                await store.append_metrics_snapshot(MetricsSnapshot(node_count=i))
            history = await store.list_metrics_snapshots()
            assert [s.node_count for s in history] == [4, 3, 2]
            assert [s.node_count for s in await store.list_metrics_snapshots(1)] == [4]


class TestTransactionsAndLifecycle:
    @pytest.mark.asyncio
    async def test_rollback_on_error(self, make_store):
        async with opened(make_store()) as store:
            keep = await store.insert_concept("keep")
            with pytest.raises(RuntimeError):
                async with store.transaction():
                    await store.insert_concept("doomed")
                    await store.update_concept(keep.id, occurrences=10)
                    raise RuntimeError("abort")
            assert await store.count_concepts() == 1
            assert (await store.get_concept(keep.id)).occurrences == 1

    @pytest.mark.asyncio
    async def test_nested_transaction_joins_outer(self, make_store):
        async with opened(make_store()) as store:
            with pytest.raises(RuntimeError):
                async with store.transaction():
                    async with store.transaction():
                        await store.insert_concept("inner")
                    raise RuntimeError("abort outer")
            assert await store.count_concepts() == 0

    @pytest.mark.asyncio
    async def test_commit(self, make_store):
        async with opened(make_store()) as store:
            async with store.transaction():
                await store.insert_concept("kept")
            assert await store.count_concepts() == 1

    @pytest.mark.asyncio
    async def test_closed_store_is_unavailable(self, make_store):
        store = make_store()
        await store.initialize()
        await store.close()
        with pytest.raises(StoreUnavailableError):
            await store.count_concepts()


@pytest.mark.sqlite
@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(tmp_path, clock):
    path = tmp_path / "persist.db"
    async with opened(SQLiteConceptStore(path, clock=clock)) as store:
        c = await store.insert_concept("durable", category="ops", semantic_density=77)
        await store.write_aggregate_counter("max_observed_concepts", 12)
    async with opened(SQLiteConceptStore(path, clock=clock)) as store:
        reloaded = await store.get_concept(c.id)
        assert reloaded.name == "durable"
        assert reloaded.semantic_density == 77
        assert reloaded.created_at == clock()
        assert await store.read_aggregate_counter("max_observed_concepts") == 12.0
