"""
chartguard Engine - Chart safety policy.

Fixed per-chart-type point limits and the global ceilings every plan obeys.
Also hosts the informational memory check and the warning text composer
shared by the planner and executor.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

import pandas as pd
from pandas.api import types as ptypes

from chartguard.engine.schemas import ReductionMetadata, ReductionReason

# =============================================================================
# Global limits
# =============================================================================

MAX_VISUAL_POINTS = 50_000
DEFAULT_BAR_LINE_LIMIT = 500
DEFAULT_SCATTER_LIMIT = 10_000
DEFAULT_TABLE_PAGE_SIZE = 100
MAX_TABLE_PAGE_SIZE = 1_000

HIGH_CARDINALITY_THRESHOLD = 1_000
CATEGORICAL_CARDINALITY_THRESHOLD = 100
DEFAULT_TOP_N = 20

SAMPLING_SEED = 42

ESTIMATED_BYTES_PER_ROW = 256
MAX_MEMORY_BUDGET = 100 * 1024 * 1024

OTHERS_LABEL = "Others"
VALUE_COLUMN = "value"


@dataclass(frozen=True)
class ChartSafetyConfig:
    """Safety policy for one chart type."""

    chart_type_name: str
    max_points: int
    requires_aggregation: bool
    allows_sampling: bool
    supports_pagination: bool
    max_bins: int

    @classmethod
    def for_chart_type(cls, chart_type: str) -> "ChartSafetyConfig":
        """Case-insensitive lookup; unknown types fall back to the bar policy."""
        key = getattr(chart_type, "value", chart_type)
        return _POLICIES.get(str(key).lower(), _POLICIES["bar"])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_POLICIES: dict[str, ChartSafetyConfig] = {
    "bar": ChartSafetyConfig("Bar chart", DEFAULT_BAR_LINE_LIMIT, True, False, False, 500),
    "line": ChartSafetyConfig("Line chart", DEFAULT_BAR_LINE_LIMIT, True, False, False, 1000),
    "area": ChartSafetyConfig("Area chart", DEFAULT_BAR_LINE_LIMIT, True, False, False, 500),
    "pie": ChartSafetyConfig("Pie chart", 20, True, False, False, 20),
    "scatter": ChartSafetyConfig("Scatter plot", DEFAULT_SCATTER_LIMIT, False, True, False, 0),
    "heatmap": ChartSafetyConfig("Heatmap", 10_000, True, False, False, 100),
    "table": ChartSafetyConfig("Table", DEFAULT_TABLE_PAGE_SIZE, False, False, True, 0),
}


@dataclass(frozen=True)
class MemorySafetyCheck:
    """Rough memory estimate for a rows x columns result. Informational only."""

    estimated_rows: int
    estimated_columns: int
    estimated_bytes: int
    is_safe: bool
    recommendation: str | None

    @classmethod
    def estimate(cls, rows: int, columns: int) -> "MemorySafetyCheck":
        estimated_bytes = rows * columns * ESTIMATED_BYTES_PER_ROW // max(columns, 1)
        is_safe = estimated_bytes < MAX_MEMORY_BUDGET
        recommendation = None
        if not is_safe:
            recommendation = (
                f"Query would use ~{estimated_bytes // (1024 * 1024)}MB, "
                f"exceeding {MAX_MEMORY_BUDGET // (1024 * 1024)}MB budget. "
                "Apply aggregation or sampling."
            )
        return cls(rows, columns, estimated_bytes, is_safe, recommendation)


# =============================================================================
# Column type helpers
# =============================================================================


def is_datetime_series(series: pd.Series) -> bool:
    return ptypes.is_datetime64_any_dtype(series.dtype)


def is_numeric_series(series: pd.Series) -> bool:
    """Numeric, excluding booleans and datetimes."""
    dtype = series.dtype
    return (
        ptypes.is_numeric_dtype(dtype)
        and not ptypes.is_bool_dtype(dtype)
        and not ptypes.is_datetime64_any_dtype(dtype)
        and not ptypes.is_timedelta64_dtype(dtype)
    )


def dtype_name(series: pd.Series) -> str:
    if is_datetime_series(series):
        return "datetime"
    if ptypes.is_bool_dtype(series.dtype):
        return "boolean"
    if is_numeric_series(series):
        return "numeric"
    return "string"


# =============================================================================
# Warning text
# =============================================================================


def format_count(n: int) -> str:
    """1234567 -> '1,234,567'"""
    return f"{int(n):,}"


def build_warning_message(metadata: ReductionMetadata) -> str | None:
    """Compose one human sentence describing every reduction step."""
    if not metadata.reduced:
        return None

    parts: list[str] = []
    for step in metadata.reduction_steps:
        if step.step_type == ReductionReason.AUTO_AGGREGATION:
            parts.append(
                f"aggregated from {format_count(step.input_rows)} to {format_count(step.output_rows)} groups"
            )
        elif step.step_type == ReductionReason.SAMPLING:
            ratio = step.output_rows / step.input_rows if step.input_rows else 1.0
            parts.append(f"sampled {ratio * 100:.1f}% ({format_count(step.output_rows)} points)")
        elif step.step_type == ReductionReason.TOP_N and metadata.top_n_value is not None:
            parts.append(f"showing top {metadata.top_n_value} categories")
        elif step.step_type == ReductionReason.DATE_BINNING and metadata.date_bin_granularity is not None:
            parts.append(f"dates binned by {metadata.date_bin_granularity.value}")
        elif step.step_type == ReductionReason.NUMERIC_BINNING and metadata.numeric_bin_count is not None:
            parts.append(f"values binned into {metadata.numeric_bin_count} ranges")

    if not parts:
        return "Data was reduced for performance"
    return "Data was " + ", ".join(parts)


def point_budget(config: ChartSafetyConfig, zoom_limit: int | None = None) -> int:
    """Effective point budget, never above the policy or the global ceiling."""
    budget = config.max_points if zoom_limit is None else min(zoom_limit, config.max_points)
    return max(1, min(budget, MAX_VISUAL_POINTS))


def recommended_bin_count(total_rows: int) -> int:
    return min(math.ceil(math.sqrt(total_rows)), 100)
