"""Tests for the in-memory metrics store."""

import threading

import pytest

from x402_settlement.core.metrics import InMemoryMetrics, build_key, percentile


class TestKeys:
    """Test series key construction."""

    def test_tag_order_independent(self):
        """Test that tag insertion order does not change the key."""
        assert build_key("hits", {"b": "2", "a": "1"}) == build_key("hits", {"a": "1", "b": "2"})
        assert build_key("hits", {"b": "2", "a": "1"}) == "hits{a=1,b=2}"

    def test_no_tags(self):
        """Test that an untagged key is the bare name."""
        assert build_key("hits", None) == "hits"
        assert build_key("hits", {}) == "hits"


class TestCounters:
    """Test counter call shapes."""

    def test_tags_only_shape(self):
        """Test that a mapping as the second argument is treated as tags."""
        metrics = InMemoryMetrics()
        metrics.increment_counter("hits", {"network": "base"})
        metrics.increment_counter("hits", {"network": "base"})
        assert metrics.get_counter("hits", {"network": "base"}) == 2

    def test_explicit_value_shape(self):
        """Test an explicit increment followed by tags."""
        metrics = InMemoryMetrics()
        metrics.increment_counter("hits", 5, {"network": "base"})
        metrics.increment_counter("hits", tags={"network": "base"})
        assert metrics.get_counter("hits", {"network": "base"}) == 6
        assert metrics.get_counter("hits") == 0

    def test_concurrent_increments(self):
        """Test that increments from many threads are not lost."""
        metrics = InMemoryMetrics()

        def work():
            for _ in range(1000):
                metrics.increment_counter("hits")

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert metrics.get_counter("hits") == 8000


class TestStatistics:
    """Test timing and histogram summaries."""

    def test_interpolated_percentiles(self):
        """Test p50 of [10, 20, 30, 40] is 25 with min/max 10/40."""
        metrics = InMemoryMetrics()
        for value in (10, 20, 30, 40):
            metrics.record_timing("latency", value)
        stats = metrics.get_metrics()["timings"]["latency"]
        assert stats["p50"] == pytest.approx(25)
        assert stats["min"] == 10
        assert stats["max"] == 40
        assert stats["count"] == 4
        assert stats["mean"] == pytest.approx(25)

    def test_percentile_edges(self):
        """Test empty and single-value series."""
        assert percentile([], 50) == 0.0
        assert percentile([7.0], 99) == 7.0
        assert percentile([10, 20, 30, 40], 95) == pytest.approx(38.5)

    def test_get_metrics_is_pure(self):
        """Test that reading stats twice gives the same answer."""
        metrics = InMemoryMetrics()
        for value in (40, 10, 30, 20):
            metrics.record_histogram("size", value)
        first = metrics.get_metrics()
        second = metrics.get_metrics()
        assert first == second
        assert first["histograms"]["size"]["p50"] == pytest.approx(25)

    def test_gauges_and_reset(self):
        """Test that gauges keep the last value and reset clears everything."""
        metrics = InMemoryMetrics()
        metrics.record_gauge("queue", 3)
        metrics.record_gauge("queue", 5)
        metrics.increment_counter("hits")
        assert metrics.get_metrics()["gauges"] == {"queue": 5.0}

        metrics.reset()
        assert metrics.get_metrics() == {
            "counters": {},
            "timings": {},
            "gauges": {},
            "histograms": {},
        }
