"""
Anomaly rules and metrics presentation.
"""

import pytest

from lifeworld.core.metrics import (
    FRAGMENTATION,
    MODE_COLLAPSE,
    OVERFITTING,
    RUNAWAY_DRIFT,
    STAGNATION,
    classify_metrics_trend,
    detect_anomalies,
    format_metrics_for_display,
)
from lifeworld.core.models import MetricsSnapshot


def vector(**overrides) -> MetricsSnapshot:
    """A healthy baseline that trips no rule."""
    values = dict(
        compression_rate=0.6,
        graph_entropy_change=0.5,
        semantic_drift=0.5,
        curvature=0.6,
        adaptive_match_score=0.7,
        lifeworld_complexity=0.6,
    )
    values.update(overrides)
    return MetricsSnapshot(**values)


def fired(snapshot):
    return [w.split(":")[0] for w in detect_anomalies(snapshot)]


class TestDetectAnomalies:
    def test_healthy_vector_has_no_warnings(self):
        assert detect_anomalies(vector()) == []

    def test_runaway_drift(self):
        assert fired(vector(semantic_drift=0.9, graph_entropy_change=0.9)) == [RUNAWAY_DRIFT]

    def test_runaway_needs_both_conditions(self):
        assert RUNAWAY_DRIFT not in fired(vector(semantic_drift=0.9, graph_entropy_change=0.4))

    def test_stagnation(self):
        snap = vector(graph_entropy_change=0.05, compression_rate=0.05, lifeworld_complexity=1.0)
        assert fired(snap) == [STAGNATION]

    def test_stagnation_suppressed_by_complexity(self):
        snap = vector(graph_entropy_change=0.05, compression_rate=0.05, lifeworld_complexity=2.0)
        assert STAGNATION not in fired(snap)

    def test_mode_collapse_by_compression(self):
        assert fired(vector(compression_rate=0.8, lifeworld_complexity=1.0)) == [f"{MODE_COLLAPSE} risk"]

    def test_mode_collapse_by_curvature(self):
        snap = vector(curvature=0.95, lifeworld_complexity=0.2)
        assert f"{MODE_COLLAPSE} risk" in fired(snap)

    def test_overfitting(self):
        assert fired(vector(adaptive_match_score=0.95, semantic_drift=0.05)) == [f"{OVERFITTING} risk"]

    def test_fragmentation(self):
        assert fired(vector(curvature=0.85, graph_entropy_change=-0.5)) == [FRAGMENTATION]

    def test_rules_fire_independently(self):
        snap = MetricsSnapshot(
            compression_rate=0.0,
            graph_entropy_change=0.0,
            semantic_drift=0.0,
            curvature=0.0,
            adaptive_match_score=0.95,
            lifeworld_complexity=0.0,
        )
        assert fired(snap) == [STAGNATION, f"{OVERFITTING} risk"]

    def test_boundaries_are_strict(self):
        snap = vector(semantic_drift=0.8, graph_entropy_change=0.5)
        assert RUNAWAY_DRIFT not in fired(snap)


class TestTrend:
    @pytest.mark.parametrize(
        "overrides,expected",
        [
            (dict(lifeworld_complexity=6.0, graph_entropy_change=0.2), "expanding"),
            (dict(compression_rate=0.4, graph_entropy_change=-0.1), "contracting"),
            (dict(curvature=0.8, semantic_drift=0.6, graph_entropy_change=0.0), "fragmenting"),
            (dict(), "stable"),
        ],
    )
    def test_classification(self, overrides, expected):
        assert classify_metrics_trend(vector(**overrides)) == expected


def test_format_for_display():
    snap = vector(lifeworld_complexity=12.5, graph_entropy_change=-0.25)
    snap.node_count = 42
    text = format_metrics_for_display(snap)
    assert text.startswith("LIFEWORLD COGNITIVE METRICS")
    assert "12.50" in text
    assert "-0.250" in text
    assert "Nodes: 42" in text
    assert "60.0%" in text
