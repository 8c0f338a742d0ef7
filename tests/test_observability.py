"""
test_observability.py - Tests for metrics and structured logging.
"""

import json
import logging
import os

import pytest

from tablesync.metrics import (
    JSONFormatter,
    MetricsRegistry,
    SyncLogger,
    batches_applied_total,
    configure_logging,
    get_registry,
)


class TestMetrics:
    """Tests for the metric types and Prometheus export."""

    def test_counter(self):
        registry = MetricsRegistry(prefix="test")
        hits = registry.counter("hits", "Hits", labels=["kind"])
        hits.inc(kind="a")
        hits.inc(2, kind="a")

        assert hits.get(kind="a") == 3
        assert hits.get(kind="b") == 0
        with pytest.raises(ValueError):
            hits.inc(-1, kind="a")

    def test_registry_reuses_metrics(self):
        registry = MetricsRegistry(prefix="test")
        assert registry.counter("hits", "Hits") is registry.counter("hits", "Hits")

    def test_gauge(self):
        registry = MetricsRegistry(prefix="test")
        depth = registry.gauge("depth", "Depth")
        depth.set(5)
        depth.set(2)
        assert depth.get() == 2

    def test_histogram(self):
        registry = MetricsRegistry(prefix="test")
        latency = registry.histogram("latency", "Latency", buckets=(0.1, 1.0, float("inf")))
        latency.observe(0.5)
        with latency.time():
            pass

        values = {(m.name, m.labels.get("le")): m.value for m in latency.collect()}
        assert values[("test_latency_count", None)] == 2
        assert values[("test_latency_bucket", "1.0")] == 2
        assert values[("test_latency_bucket", "0.1")] == 1

    def test_prometheus_export(self):
        registry = MetricsRegistry(prefix="test")
        registry.counter("hits", "Hits", labels=["kind"]).inc(kind="a")
        registry.gauge("depth", "Depth").set(4)

        lines = registry.export_prometheus().splitlines()
        assert 'test_hits{kind="a"} 1' in lines
        assert "test_depth 4" in lines

    def test_global_registry(self):
        assert get_registry() is get_registry()
        assert get_registry().prefix == "tablesync"


class TestStructuredLogging:
    """Tests for JSON log output and sync events."""

    def test_json_formatter(self):
        record = logging.LogRecord("tablesync.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.event = "pull_completed"

        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["logger"] == "tablesync.test"
        assert data["event"] == "pull_completed"

    def test_json_formatter_without_extra(self):
        record = logging.LogRecord("tablesync.test", logging.INFO, __file__, 1, "plain", (), None)
        record.event = "ignored"
        assert "event" not in json.loads(JSONFormatter(include_extra=False).format(record))

    def test_sync_events_update_metrics(self, caplog):
        events = SyncLogger("tablesync.test")
        before = batches_applied_total.get(status="failed")

        with caplog.at_level(logging.ERROR, logger="tablesync.test"):
            events.batch_failed("origin-1", "boom")

        assert batches_applied_total.get(status="failed") == before + 1
        assert caplog.records[-1].event == "batch_failed"

    def test_configure_logging(self, temp_dir):
        log_file = os.path.join(temp_dir, "sync.log")
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            configure_logging(level="DEBUG", json_format=True, log_file=log_file)
            logging.getLogger("tablesync.test").info("to file")
            for handler in root.handlers:
                handler.flush()

            assert root.level == logging.DEBUG
            with open(log_file, encoding="utf-8") as f:
                assert json.loads(f.readline())["message"] == "to file"
        finally:
            for handler in root.handlers[:]:
                handler.close()
                root.removeHandler(handler)
            for handler in saved[0]:
                root.addHandler(handler)
            root.setLevel(saved[1])
