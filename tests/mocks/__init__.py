"""
Test doubles for Lifeworld tests
================================
Deterministic stand-ins for the two things the engine does not own: the
similarity oracle and wall-clock time.

Usage:
    from tests.mocks import FrozenClock, ScriptedOracle
"""

from .clock import FrozenClock
from .mock_oracle import BlockingOracle, ScriptedOracle
from .stores import opened

__all__ = ["FrozenClock", "ScriptedOracle", "BlockingOracle", "opened"]
