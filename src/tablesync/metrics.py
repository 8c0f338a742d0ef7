"""
metrics.py - Observability for sync operations.

Provides:
- Prometheus-compatible counters, gauges and histograms
- Structured JSON logging
- SyncLogger event helpers that log and count in one call
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator


# =============================================================================
# Metric Types
# =============================================================================

@dataclass
class MetricValue:
    """Single metric value with labels."""
    name: str
    value: float
    labels: dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class _LabelledMetric:
    def __init__(self, name: str, help_text: str, labels: list[str] | None = None):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self._values: dict[tuple, float] = {}
        self._lock = threading.Lock()

    def get(self, **label_values) -> float:
        return self._values.get(self._label_key(label_values), 0)

    def collect(self) -> list[MetricValue]:
        with self._lock:
            return [
                MetricValue(name=self.name, value=value, labels=dict(zip(self.labels, key)))
                for key, value in self._values.items()
            ]

    def _label_key(self, label_values: dict) -> tuple:
        return tuple(str(label_values.get(label, "")) for label in self.labels)


class Counter(_LabelledMetric):
    """Prometheus-style counter. Only goes up."""

    def inc(self, value: float = 1, **label_values) -> None:
        if value < 0:
            raise ValueError("Counters can only increase")
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value


class Gauge(_LabelledMetric):
    """Prometheus-style gauge."""

    def set(self, value: float, **label_values) -> None:
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = value


class Histogram:
    """Prometheus-style histogram."""

    DEFAULT_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf"))

    def __init__(
        self,
        name: str,
        help_text: str,
        labels: list[str] | None = None,
        buckets: tuple | None = None,
    ):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._values: dict[tuple, dict] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **label_values) -> None:
        key = tuple(str(label_values.get(label, "")) for label in self.labels)
        with self._lock:
            data = self._values.setdefault(
                key, {"count": 0, "sum": 0.0, "buckets": {b: 0 for b in self.buckets}}
            )
            data["count"] += 1
            data["sum"] += value
            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    @contextmanager
    def time(self, **label_values) -> Iterator[None]:
        """Context manager to time an operation."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **label_values)

    def collect(self) -> list[MetricValue]:
        results = []
        with self._lock:
            for key, data in self._values.items():
                labels = dict(zip(self.labels, key))
                results.append(MetricValue(f"{self.name}_sum", data["sum"], labels))
                results.append(MetricValue(f"{self.name}_count", data["count"], labels))
                for le, count in data["buckets"].items():
                    results.append(MetricValue(f"{self.name}_bucket", count, {**labels, "le": str(le)}))
        return results


# =============================================================================
# Metrics Registry
# =============================================================================

class MetricsRegistry:
    """Named collection of metrics sharing one prefix."""

    def __init__(self, prefix: str = "tablesync"):
        self.prefix = prefix
        self._metrics: dict[str, Counter | Gauge | Histogram] = {}
        self._lock = threading.Lock()

    def _register(self, name: str, factory):
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = factory(full_name)
            return self._metrics[full_name]

    def counter(self, name: str, help_text: str, labels: list[str] | None = None) -> Counter:
        return self._register(name, lambda full: Counter(full, help_text, labels))

    def gauge(self, name: str, help_text: str, labels: list[str] | None = None) -> Gauge:
        return self._register(name, lambda full: Gauge(full, help_text, labels))

    def histogram(
        self, name: str, help_text: str, labels: list[str] | None = None, buckets: tuple | None = None
    ) -> Histogram:
        return self._register(name, lambda full: Histogram(full, help_text, labels, buckets))

    def collect_all(self) -> list[MetricValue]:
        results = []
        with self._lock:
            for metric in self._metrics.values():
                results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for metric in self.collect_all():
            if metric.labels:
                label_str = ",".join(f'{k}="{v}"' for k, v in metric.labels.items())
                lines.append(f"{metric.name}{{{label_str}}} {metric.value}")
            else:
                lines.append(f"{metric.name} {metric.value}")
        return "\n".join(lines)


# =============================================================================
# Pre-defined Sync Metrics
# =============================================================================

_registry = MetricsRegistry()

changes_total = _registry.counter(
    "changes_total",
    "Change log entries transferred",
    labels=["direction"],
)

batches_applied_total = _registry.counter(
    "batches_applied_total",
    "Remote batches applied",
    labels=["status"],
)

conflicts_total = _registry.counter(
    "conflicts_total",
    "Conflicts detected while applying remote changes",
    labels=["outcome"],
)

sync_latency_seconds = _registry.histogram(
    "sync_latency_seconds",
    "Duration of one sync round",
    labels=["operation"],
)

last_sync_version = _registry.gauge(
    "last_sync_version",
    "Watermark reached by the last successful pull",
    labels=["origin"],
)


def get_registry() -> MetricsRegistry:
    """Get the global metrics registry."""
    return _registry


# =============================================================================
# Structured Logging
# =============================================================================

_RESERVED_RECORD_KEYS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
})


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra
        self._hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "hostname": self._hostname,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if self.include_extra:
            for key, value in record.__dict__.items():
                if key not in _RESERVED_RECORD_KEYS:
                    log_data[key] = value
        return json.dumps(log_data, default=str)


class SyncLogger:
    """
    Structured logger for sync events.

    Each helper logs one event with an ``event`` field and updates
    the matching metrics.
    """

    def __init__(self, name: str = "tablesync"):
        self._logger = logging.getLogger(name)

    def pull_completed(self, origin: str, received: int, applied: int, to_version: int) -> None:
        self._logger.info(
            f"Pull completed: received={received}, applied={applied}, version={to_version}",
            extra={
                "event": "pull_completed",
                "origin": origin,
                "received": received,
                "applied": applied,
                "to_version": to_version,
            },
        )
        changes_total.inc(received, direction="pull")
        last_sync_version.set(to_version, origin=origin)

    def push_completed(self, origin: str, sent: int, to_version: int) -> None:
        self._logger.info(
            f"Push completed: sent={sent}, version={to_version}",
            extra={"event": "push_completed", "origin": origin, "sent": sent, "to_version": to_version},
        )
        changes_total.inc(sent, direction="push")

    def batch_applied(self, origin: str, applied: int, skipped: int, conflicts: int, lost: int) -> None:
        self._logger.debug(
            f"Batch applied: applied={applied}, skipped={skipped}, conflicts={conflicts}",
            extra={
                "event": "batch_applied",
                "origin": origin,
                "applied": applied,
                "skipped": skipped,
                "conflicts": conflicts,
            },
        )
        batches_applied_total.inc(status="success")
        if conflicts:
            conflicts_total.inc(conflicts - lost, outcome="remote_won")
            conflicts_total.inc(lost, outcome="local_won")

    def batch_failed(self, origin: str, error: str) -> None:
        self._logger.error(
            f"Batch apply failed: {error}",
            extra={"event": "batch_failed", "origin": origin, "error": error},
        )
        batches_applied_total.inc(status="failed")

    def full_resync(self, origin: str, from_version: int, snapshot_version: int) -> None:
        self._logger.warning(
            f"Full resync from version {from_version} to snapshot at {snapshot_version}",
            extra={
                "event": "full_resync",
                "origin": origin,
                "from_version": from_version,
                "snapshot_version": snapshot_version,
            },
        )

    def sync_failed(self, origin: str, error: str, retry_count: int = 0) -> None:
        self._logger.error(
            f"Sync failed: {error}",
            extra={"event": "sync_failed", "origin": origin, "error": error, "retry_count": retry_count},
        )


def configure_logging(level: str = "INFO", json_format: bool = True, log_file: str | None = None) -> None:
    """
    Configure logging for production.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting
        log_file: Optional log file path
    """
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    if json_format:
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    handlers.append(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=getattr(logging, level.upper()), handlers=handlers, force=True)
