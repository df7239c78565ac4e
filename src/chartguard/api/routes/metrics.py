"""
chartguard Metrics Endpoint.

Exposes observability metrics for monitoring and debugging.
"""

from fastapi import APIRouter

from chartguard.observability import get_metrics_store

router = APIRouter(prefix="/api/v1", tags=["metrics"])


@router.get("/metrics")
def get_metrics() -> dict:
    """
    Get current metrics summary.

    Example response:
    ```json
    {
      "uptime_seconds": 3600.5,
      "collected_at": "2025-12-25T19:00:00Z",
      "commands": {
        "visualization": {
          "call_count": 150,
          "p50_ms": 45.2,
          "p99_ms": 120.5,
          "errors": {"COLUMN_NOT_FOUND": 3},
          "reductions": {"none": 120, "top-n": 30}
        }
      },
      "global_errors": {"COLUMN_NOT_FOUND": 3}
    }
    ```
    """
    return get_metrics_store().get_summary()
