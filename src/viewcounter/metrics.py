"""
In-process metrics for the view counter gateway.

Counters and timers only, keyed by name plus optional labels.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


@dataclass
class CounterValue:
    count: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TimerValue:
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0


class MetricsCollector:
    """Thread-safe metrics collector."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: Dict[str, CounterValue] = {}
        self._timers: Dict[str, TimerValue] = {}

    def increment_counter(
        self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None
    ):
        """Increment a counter metric."""
        with self._lock:
            key = self._build_key(name, labels)
            counter = self._counters.setdefault(key, CounterValue())
            counter.count += value
            counter.timestamp = datetime.now(timezone.utc)

    def record_timer(
        self, name: str, duration_ms: float, labels: Optional[Dict[str, str]] = None
    ):
        """Record a timer metric."""
        with self._lock:
            key = self._build_key(name, labels)
            timer = self._timers.setdefault(key, TimerValue())
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
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._timers.clear()

    def _build_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Build metric key with labels."""
        if not labels:
            return name

        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}[{label_str}]"


class MetricNames:
    """Common metric names for consistency."""

    REQUESTS_TOTAL = "requests_total"
    REQUEST_DURATION = "request_duration_ms"

    PROXY_REQUESTS = "proxy_requests_total"
    PROXY_DURATION = "proxy_duration_ms"
    PROXY_ERRORS = "proxy_errors_total"

    VIEWS_INCREMENTED = "views_incremented_total"
    COUNT_ERRORS = "count_errors_total"
