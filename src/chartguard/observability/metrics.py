"""
chartguard Metrics Store.

In-process metrics collection for observability without external dependencies.
Tracks:
- Query latencies (per command, percentiles)
- Error counts by code (ChartGuardException.code)
- Reduction reasons applied per command

Thread-safe via locks. Singleton pattern for global access.
"""

from __future__ import annotations

import statistics
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any


@dataclass
class CommandMetrics:
    """Metrics for a single query command."""

    latencies_ms: list[float] = field(default_factory=list)
    error_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    reduction_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    call_count: int = 0
    last_called: datetime | None = None

    # Keep last N latencies to avoid unbounded memory
    MAX_LATENCIES = 1000

    def record_latency(self, ms: float) -> None:
        self.latencies_ms.append(ms)
        if len(self.latencies_ms) > self.MAX_LATENCIES:
            self.latencies_ms = self.latencies_ms[-self.MAX_LATENCIES :]
        self.call_count += 1
        self.last_called = datetime.now(timezone.utc)

    def get_percentiles(self) -> dict[str, float]:
        if not self.latencies_ms:
            return {}
        ordered = sorted(self.latencies_ms)
        n = len(ordered)
        return {
            "p50_ms": ordered[int(n * 0.5)],
            "p90_ms": ordered[int(n * 0.9)],
            "p99_ms": ordered[int(n * 0.99)] if n > 1 else ordered[-1],
            "mean_ms": statistics.mean(ordered),
            "max_ms": ordered[-1],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_count": self.call_count,
            "last_called": self.last_called.isoformat() if self.last_called else None,
            **self.get_percentiles(),
            "errors": dict(self.error_counts),
            "reductions": dict(self.reduction_counts),
        }


class MetricsStore:
    """Central metrics store, shared by every request in the process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._commands: dict[str, CommandMetrics] = defaultdict(CommandMetrics)
        self._global_errors: dict[str, int] = defaultdict(int)
        self._started_at = datetime.now(timezone.utc)

    # -------------------------------------------------------------------------
    # Command Metrics
    # -------------------------------------------------------------------------

    def record_query_latency(self, command: str, ms: float) -> None:
        with self._lock:
            self._commands[command].record_latency(ms)

    def record_query_error(self, command: str, code: str) -> None:
        with self._lock:
            self._commands[command].error_counts[code] += 1
            self._global_errors[code] += 1

    def record_reduction(self, command: str, reason: str) -> None:
        with self._lock:
            self._commands[command].reduction_counts[reason] += 1

    def record_error(self, code: str) -> None:
        """Record an error not tied to a query command."""
        with self._lock:
            self._global_errors[code] += 1

    # -------------------------------------------------------------------------
    # Summary / Export
    # -------------------------------------------------------------------------

    def get_summary(self) -> dict[str, Any]:
        """JSON-serializable summary for the /metrics endpoint."""
        with self._lock:
            now = datetime.now(timezone.utc)
            return {
                "uptime_seconds": round((now - self._started_at).total_seconds(), 1),
                "collected_at": now.isoformat(),
                "commands": {name: m.to_dict() for name, m in self._commands.items()},
                "global_errors": dict(self._global_errors),
            }

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        with self._lock:
            self._commands.clear()
            self._global_errors.clear()
            self._started_at = datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Singleton accessor
# -----------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_metrics_store() -> MetricsStore:
    """Get the global MetricsStore singleton."""
    return MetricsStore()
