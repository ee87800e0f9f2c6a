"""
ConvergenceEngine facade: wiring, lifecycle and delegation.
"""

import pytest

from lifeworld.core.config import LifeworldConfig, OracleConfig, StoreConfig
from lifeworld.core.engine import ConvergenceEngine
from lifeworld.core.oracle import LLMSimilarityOracle, OllamaClient
from lifeworld.storage import InMemoryConceptStore, SQLiteConceptStore


class TestWiring:
    def test_components_share_store_and_merge_lock(self, engine, store):
        assert engine.metrics.store is store
        assert engine.convergence.merger is engine.merger
        assert engine.forecaster.merger is engine.merger
        assert engine.scheduler.convergence is engine.convergence

    def test_from_config_memory(self):
        config = LifeworldConfig(store=StoreConfig(backend="memory"))
        engine = ConvergenceEngine.from_config(config)
        assert isinstance(engine.store, InMemoryConceptStore)
        assert isinstance(engine.oracle, LLMSimilarityOracle)
        assert isinstance(engine.oracle.client, OllamaClient)

    def test_from_config_sqlite(self, tmp_path):
        config = LifeworldConfig(
            store=StoreConfig(backend="sqlite", path=str(tmp_path / "lw.db")),
            oracle=OracleConfig(provider="openai"),
        )
        engine = ConvergenceEngine.from_config(config)
        assert isinstance(engine.store, SQLiteConceptStore)
        assert engine.oracle.client.provider == "openai"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_and_close(self, engine):
        await engine.initialize()
        await engine.initialize()
        await engine.start_scheduler()
        assert engine.scheduler.is_running is False  # disabled in test config
        await engine.close()
        assert engine._initialized is False

    @pytest.mark.sqlite
    @pytest.mark.asyncio
    async def test_sqlite_engine_round_trip(self, tmp_path):
        config = LifeworldConfig(store=StoreConfig(backend="sqlite", path=str(tmp_path / "lw.db")))
        engine = ConvergenceEngine.from_config(config)
        await engine.initialize()
        try:
            await engine.reinforce_concept(1, "durable", category="ops", importance=9)
            snapshot = await engine.get_metrics()
            assert snapshot.node_count == 1
            assert snapshot.invariant_count == 1
            assert len(await engine.get_metrics_history()) == 1
        finally:
            await engine.close()


class TestDelegation:
    @pytest.mark.asyncio
    async def test_full_cycle(self, engine, store, oracle):
        await engine.initialize()
        a = await engine.reinforce_concept(1, "trust", category="ethics", importance=9)
        b = await engine.reinforce_concept(2, "reliance", category="ethics", importance=8)
        oracle.add_pair(a.id, b.id, 0.93, "synonyms")

        result = await engine.run_convergence()
        assert result.merged_count == 1

        history = await engine.get_convergence_history()
        assert history[0].to_concept_id == a.id

        stats = await engine.get_convergence_stats()
        assert stats.total_concepts == 1
        assert stats.recent_merges == 1

        links = await store.list_user_links()
        assert {link.concept_id for link in links} == {a.id}

        snapshot = await engine.get_metrics()
        assert isinstance(engine.detect_anomalies(snapshot), list)
        assert "LIFEWORLD COGNITIVE METRICS" in engine.format_metrics(snapshot)

    @pytest.mark.asyncio
    async def test_trigger_and_status(self, engine):
        await engine.initialize()
        run = await engine.trigger_convergence()
        assert run.merge_count == 0
        status = await engine.get_scheduler_status()
        assert status.last_run == run.timestamp
        assert (await engine.calculate_temporal_coherence()).trend == "insufficient_data"

    @pytest.mark.asyncio
    async def test_predictive_surface(self, engine, store):
        await store.insert_concept("alpha", category="ai", semantic_density=60)
        await store.insert_concept("beta", category="ai", semantic_density=62)
        state = await engine.get_predictive_state()
        assert len(state.predicted_convergences) == 1
        forecast = await engine.get_drift_forecast()
        assert len(forecast.trajectories) == 2
        trajectory = await engine.predict_concept_trajectory(1)
        assert trajectory.predicted_merge_target == 2
        result = await engine.run_predictive_convergence(0.9)
        assert result.merged_count == 1

    @pytest.mark.asyncio
    async def test_invariants(self, engine, store):
        await store.insert_concept("stable", semantic_density=90, occurrences=5)
        invariants = await engine.identify_semantic_invariants()
        assert [c.name for c in invariants] == ["stable"]

    @pytest.mark.asyncio
    async def test_metrics_with_history(self, engine):
        await engine.get_metrics()
        result = await engine.get_metrics_with_history()
        assert result["previous"] is not None
