"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters. Counters live in the server process only; worker
processes do not report back.
"""
import threading
from typing import Dict

# name -> help text, in exposition order
COUNTERS = {
    "requests_total": "Total HTTP requests",
    "requests_2xx": "HTTP requests answered 2xx",
    "requests_4xx": "HTTP requests answered 4xx",
    "requests_5xx": "HTTP requests answered 5xx",
    "builds_created_total": "Total builds created",
    "builds_enqueued_total": "Total queue entries accepted",
    "builds_started_total": "Total worker processes launched",
    "worker_exit_normal_total": "Workers that exited normally",
    "worker_exit_timeout_total": "Workers killed by the build timeout",
    "worker_exit_crashed_total": "Workers that crashed",
    "worker_exit_stale_total": "Exit signals ignored for superseded workers",
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()

        for name, help_text in COUNTERS.items():
            metric = f"ciserver_{name}"
            lines.append(f"# HELP {metric} {help_text}")
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {counters.get(name, 0)}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
