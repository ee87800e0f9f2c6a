import sys
from pathlib import Path

import pytest


# Ensure local src/ package imports work without editable install.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for path in (SRC, ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """
    Configure custom pytest markers.

    This function is called by pytest at startup to register custom markers.
    """
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow-running (use pytest -m 'not slow' to skip)"
    )
    config.addinivalue_line(
        "markers",
        "sqlite: mark test as touching an on-disk SQLite database"
    )


@pytest.fixture(autouse=True)
def clean_config():
    """Reset config state between tests."""
    from lifeworld.core.config import reset_config
    reset_config()
    yield
    reset_config()


# =============================================================================
# Engine Fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Mutable clock shared by the store and every engine component."""
    from tests.mocks import FrozenClock
    return FrozenClock()


@pytest.fixture
def store(clock):
    """Fresh in-memory concept store on the test clock."""
    from lifeworld.storage import InMemoryConceptStore
    return InMemoryConceptStore(clock=clock)


@pytest.fixture(params=["memory", "sqlite"])
def make_store(request, tmp_path, clock):
    """Factory for an unopened store of the parametrized backend."""
    from lifeworld.storage import InMemoryConceptStore, SQLiteConceptStore

    def factory(**kwargs):
        if request.param == "memory":
            return InMemoryConceptStore(clock=clock, **kwargs)
        return SQLiteConceptStore(tmp_path / "lifeworld.db", clock=clock, **kwargs)
    return factory


@pytest.fixture
def oracle():
    from tests.mocks import ScriptedOracle
    return ScriptedOracle()


@pytest.fixture
def test_config():
    """
    Config for unit tests: in-memory store, scheduler never auto-starts.
    """
    from lifeworld.core.config import LifeworldConfig, SchedulerConfig, StoreConfig

    return LifeworldConfig(
        store=StoreConfig(backend="memory"),
        scheduler=SchedulerConfig(enabled=False, run_on_startup=False),
    )


@pytest.fixture
def engine(store, oracle, test_config, clock):
    """
    ConvergenceEngine wired to the in-memory store and the scripted oracle.

    Usage:
        @pytest.mark.asyncio
        async def test_merge(engine, store, oracle):
            a = await store.insert_concept("trust", semantic_density=90)
            ...
    """
    from lifeworld.core.engine import ConvergenceEngine

    async def no_sleep(_seconds):
        return None

    return ConvergenceEngine(store, oracle, test_config, clock=clock, sleep=no_sleep)
