"""
Metrics Collection for the Assignment Engine

Basic in-process counters, gauges and timers for watching assignment
outcomes, ledger contention and notifier health.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


@dataclass
class MetricValue:
    """Base class for metric values."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CounterValue(MetricValue):
    count: int = 0


@dataclass
class GaugeValue(MetricValue):
    value: float = 0.0


@dataclass
class TimerValue(MetricValue):
    """Timer metric value with statistics."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0


class MetricsCollector:
    """Thread-safe metrics collector."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: Dict[str, CounterValue] = {}
        self._gauges: Dict[str, GaugeValue] = {}
        self._timers: Dict[str, TimerValue] = {}

    def increment_counter(
        self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None
    ):
        """Increment a counter metric."""
        with self._lock:
            key = self._build_key(name, labels)
            if key not in self._counters:
                self._counters[key] = CounterValue()
            self._counters[key].count += value
            self._counters[key].timestamp = datetime.now(timezone.utc)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Set a gauge metric value."""
        with self._lock:
            key = self._build_key(name, labels)
            self._gauges[key] = GaugeValue(value=value)

    def record_timer(
        self, name: str, duration_ms: float, labels: Optional[Dict[str, str]] = None
    ):
        """Record a timer metric."""
        with self._lock:
            key = self._build_key(name, labels)
            if key not in self._timers:
                self._timers[key] = TimerValue()

            timer = self._timers[key]
            timer.count += 1
            timer.total_ms += duration_ms
            timer.min_ms = min(timer.min_ms, duration_ms)
            timer.max_ms = max(timer.max_ms, duration_ms)
            timer.timestamp = datetime.now(timezone.utc)

    def get_counter(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> Optional[CounterValue]:
        with self._lock:
            return self._counters.get(self._build_key(name, labels))

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[GaugeValue]:
        with self._lock:
            return self._gauges.get(self._build_key(name, labels))

    def get_timer(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[TimerValue]:
        with self._lock:
            return self._timers.get(self._build_key(name, labels))

    def get_all_metrics(self) -> Dict[str, Dict]:
        """Get all metrics as a dictionary."""
        with self._lock:
            return {
                "counters": {
                    k: {"count": v.count, "timestamp": v.timestamp.isoformat()}
                    for k, v in self._counters.items()
                },
                "gauges": {
                    k: {"value": v.value, "timestamp": v.timestamp.isoformat()}
                    for k, v in self._gauges.items()
                },
                "timers": {
                    k: {
                        "count": v.count,
                        "total_ms": v.total_ms,
                        "avg_ms": v.avg_ms,
                        "min_ms": v.min_ms if v.min_ms != float("inf") else 0,
                        "max_ms": v.max_ms,
                        "timestamp": v.timestamp.isoformat(),
                    }
                    for k, v in self._timers.items()
                },
            }

    def reset_metrics(self):
        """Reset metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()

    def _build_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Build metric key with labels."""
        if not labels:
            return name

        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}[{label_str}]"


class Timer:
    """Context manager for timing operations."""

    def __init__(
        self, metrics: MetricsCollector, name: str, labels: Optional[Dict[str, str]] = None
    ):
        self.metrics = metrics
        self.name = name
        self.labels = labels
        self.start_time = None
        self.duration_ms: Optional[float] = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            self.duration_ms = (time.time() - self.start_time) * 1000
            self.metrics.record_timer(self.name, self.duration_ms, self.labels)


# Global metrics collector instance
metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return metrics


class MetricNames:
    """Common metric names for consistency."""

    # HTTP adapter
    REQUESTS_TOTAL = "requests_total"
    REQUEST_DURATION = "request_duration_ms"
    REQUEST_ERRORS = "request_errors_total"

    # Orchestration
    ASSIGNMENT_RUNS = "assignment_runs_total"
    ASSIGNMENT_DURATION = "assignment_duration_ms"
    STORAGE_FAILURES = "storage_failures_total"

    # Ledger
    LEDGER_COMMITS = "ledger_commits_total"
    CAPACITY_EXCEEDED = "capacity_exceeded_total"
    LEDGER_DRIFT = "ledger_drift_keys"

    # Quota
    QUOTA_DECISIONS = "quota_decisions_total"

    # Notifier
    NOTIFICATIONS_SENT = "notifications_sent_total"
    NOTIFIER_FAILURES = "notifier_failures_total"
