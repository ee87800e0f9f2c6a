"""
Tests for shared helpers: timestamps, clamping and the RingBuffer.
"""

from datetime import datetime, timezone

import pytest
from hypothesis import given, settings, strategies as st

from lifeworld.core._utils import (
    RingBuffer,
    clamp,
    clamp_density,
    hours_between,
    parse_timestamp,
)


class TestRingBuffer:
    def test_evicts_oldest(self):
        buf = RingBuffer(3)
        for i in range(5):
            buf.append(i)
        assert len(buf) == 3
        assert list(buf) == [2, 3, 4]
        assert buf.latest() == [4, 3, 2]
        assert buf.last() == 4

    def test_latest_limit(self):
        buf = RingBuffer(10)
        for i in range(4):
            buf.append(i)
        assert buf.latest(2) == [3, 2]
        assert buf.latest(0) == []

    def test_empty(self):
        buf = RingBuffer(2)
        assert not buf
        assert buf.last() is None
        assert buf.latest() == []

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            RingBuffer(0)

    @given(st.integers(min_value=1, max_value=20), st.lists(st.integers(), max_size=60))
    @settings(max_examples=100, deadline=None)
    def test_never_exceeds_capacity(self, capacity, items):
        buf = RingBuffer(capacity)
        for item in items:
            buf.append(item)
        assert len(buf) == min(capacity, len(items))
        assert list(buf) == items[-capacity:]


class TestTimestamps:
    def test_naive_timestamps_become_utc(self):
        parsed = parse_timestamp("2026-01-01T12:00:00")
        assert parsed.tzinfo is not None
        assert parsed == datetime(2026, 1, 1, 12, tzinfo=timezone.utc)

    def test_aware_passthrough(self):
        value = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert parse_timestamp(value) is value

    def test_hours_between_mixes_naive_and_aware(self):
        later = datetime(2026, 1, 2, 0, 0, tzinfo=timezone.utc)
        earlier = datetime(2026, 1, 1, 12, 0)
        assert hours_between(later, earlier) == 12.0


class TestClamp:
    def test_clamp(self):
        assert clamp(1.5) == 1.0
        assert clamp(-0.1) == 0.0
        assert clamp(5, 0, 10) == 5

    @given(st.floats(min_value=-1000, max_value=1000, allow_nan=False))
    @settings(max_examples=100, deadline=None)
    def test_density_is_int_in_range(self, value):
        density = clamp_density(value)
        assert isinstance(density, int)
        assert 0 <= density <= 100
