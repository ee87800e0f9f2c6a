"""
Lifeworld - Semantic Convergence & Metrics Engine
=================================================

Keeps a growing concept graph compressed toward a small, stable set of
high-density "semantic invariants", and reports the graph's structural health.

Main Packages:
    - core: metrics, similarity oracle, merge primitive, reactive and
      predictive convergence, scheduler, engine facade
    - storage: concept store port with in-memory and SQLite backends
    - api: FastAPI REST endpoints
    - cli: Command-line interface

Quick Start:
    from lifeworld.core import ConvergenceEngine

    engine = ConvergenceEngine.from_config()
    await engine.initialize()
    snapshot = await engine.get_metrics()
    result = await engine.run_convergence(0.85)

Version: 1.0.0
"""

__version__ = "1.0.0"
