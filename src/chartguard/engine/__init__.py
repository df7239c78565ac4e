"""
chartguard Engine.

Cardinality estimation, chart safety policies, deterministic sampling, query
planning and lazy plan execution.
"""

from chartguard.engine.executor import PlanExecutor
from chartguard.engine.planner import ExecutionPlan, QueryPlanner
from chartguard.engine.service import VisualizationQueryService
from chartguard.engine.store import DatasetStore

__all__ = [
    "DatasetStore",
    "ExecutionPlan",
    "PlanExecutor",
    "QueryPlanner",
    "VisualizationQueryService",
]
