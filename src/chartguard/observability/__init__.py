"""
chartguard Observability Module.

Provides in-process metrics collection for query commands and errors.
"""

from chartguard.observability.metrics import MetricsStore, get_metrics_store

__all__ = ["MetricsStore", "get_metrics_store"]
