"""
chartguard Engine - Schemas

Pydantic models and enums shared by the planner, executor and query service.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enums
# =============================================================================


class ChartType(str, Enum):
    BAR = "bar"
    LINE = "line"
    AREA = "area"
    PIE = "pie"
    SCATTER = "scatter"


class AggregationType(str, Enum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"
    MEDIAN = "median"

    @property
    def label(self) -> str:
        """Human prefix used in axis labels ("Sum of revenue")."""
        return {
            AggregationType.SUM: "Sum",
            AggregationType.AVG: "Average",
            AggregationType.COUNT: "Count",
            AggregationType.MIN: "Min",
            AggregationType.MAX: "Max",
            AggregationType.MEDIAN: "Median",
        }[self]


class SortField(str, Enum):
    X = "x"
    Y = "y"
    NONE = "none"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"
    NONE = "none"


class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class DateBinGranularity(str, Enum):
    YEAR = "year"
    QUARTER = "quarter"
    MONTH = "month"
    WEEK = "week"
    DAY = "day"
    HOUR = "hour"


class CardinalityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"
    CONTINUOUS = "continuous"


class ReductionReason(str, Enum):
    NONE = "none"
    AUTO_AGGREGATION = "auto-aggregation"
    SAMPLING = "sampling"
    TOP_N = "top-n"
    DATE_BINNING = "date-binning"
    NUMERIC_BINNING = "numeric-binning"
    COMBINED = "combined"


class SamplingMethod(str, Enum):
    RESERVOIR = "reservoir"
    STRATIFIED = "stratified"
    SYSTEMATIC = "systematic"
    HASH = "hash"


# =============================================================================
# Query input
# =============================================================================


class FilterSpec(BaseModel):
    """A single filter condition. Filters in a spec are ANDed in order."""

    model_config = ConfigDict(frozen=True)

    column: str
    operator: FilterOperator
    value: Any = None


class VisualizationSpec(BaseModel):
    """Declarative chart request."""

    model_config = ConfigDict(frozen=True)

    chart_type: ChartType
    x_field: str
    y_field: str
    aggregation: AggregationType = AggregationType.SUM
    group_by: str | None = None
    x_date_bin: DateBinGranularity | None = None
    y_date_bin: DateBinGranularity | None = None
    sort_by: SortField = SortField.NONE
    sort_order: SortOrder = SortOrder.NONE
    title: str | None = None
    filters: tuple[FilterSpec, ...] = ()
    chart_config: dict[str, Any] = Field(default_factory=dict)

    @property
    def y_label(self) -> str:
        return f"{self.aggregation.label} of {self.y_field}"


class ZoomContext(BaseModel):
    """Viewport for progressive queries. zoom_level 0.0 is the overview, 1.0 full detail."""

    zoom_level: float = 0.0
    range_start: float | str | None = None
    range_end: float | str | None = None
    selected_categories: list[str] = Field(default_factory=list)

    @field_validator("zoom_level")
    @classmethod
    def _clamp_zoom(cls, value: float) -> float:
        return min(max(float(value), 0.0), 1.0)

    @classmethod
    def default_view(cls) -> "ZoomContext":
        return cls()

    def calculate_point_limit(self, base_limit: int) -> int:
        """Scale a point budget from 20% (overview) to 100% (fully zoomed)."""
        zoom_factor = 0.2 + 0.8 * self.zoom_level
        return math.ceil(base_limit * zoom_factor)


# =============================================================================
# Reduction audit trail
# =============================================================================


class ReductionStep(BaseModel):
    """One row-count-changing step applied to the data."""

    step_type: ReductionReason
    input_rows: int
    output_rows: int
    description: str


class ReductionMetadata(BaseModel):
    """What was done to the data and why. Attached to every chart response."""

    reduced: bool = False
    reduction_reason: ReductionReason = ReductionReason.NONE
    original_row_estimate: int = 0
    returned_points: int = 0
    sample_ratio: float | None = None
    top_n_value: int | None = None
    date_bin_granularity: DateBinGranularity | None = None
    numeric_bin_count: int | None = None
    distribution_preserved: bool = True
    warning_message: str | None = None
    reduction_steps: list[ReductionStep] = Field(default_factory=list)

    @classmethod
    def no_reduction(cls, row_count: int) -> "ReductionMetadata":
        return cls(original_row_estimate=row_count, returned_points=row_count)

    def add_step(
        self,
        step_type: ReductionReason,
        input_rows: int,
        output_rows: int,
        description: str,
    ) -> None:
        """Append a step and recompute the dominant reason."""
        self.reduction_steps.append(
            ReductionStep(
                step_type=step_type,
                input_rows=input_rows,
                output_rows=output_rows,
                description=description,
            )
        )
        self._refresh_reason()

    def remove_step(self, step_type: ReductionReason) -> None:
        self.reduction_steps = [s for s in self.reduction_steps if s.step_type != step_type]
        self._refresh_reason()

    def _refresh_reason(self) -> None:
        steps = self.reduction_steps
        self.reduced = bool(steps)
        if not steps:
            self.reduction_reason = ReductionReason.NONE
        elif len(steps) == 1:
            self.reduction_reason = steps[0].step_type
        else:
            self.reduction_reason = ReductionReason.COMBINED

    def find_step(self, step_type: ReductionReason) -> ReductionStep | None:
        for step in self.reduction_steps:
            if step.step_type == step_type:
                return step
        return None


# =============================================================================
# Query output
# =============================================================================


class ChartMetadata(BaseModel):
    title: str | None = None
    x_label: str
    y_label: str
    total_records: int
    reduced: bool = False
    reduction_reason: ReductionReason = ReductionReason.NONE
    original_row_estimate: int = 0
    returned_points: int = 0
    sample_ratio: float | None = None
    top_n_value: int | None = None
    warning_message: str | None = None
    reduction_steps: list[ReductionStep] = Field(default_factory=list)


class ChartDataset(BaseModel):
    label: str
    data: list[float | None]
    color: str | None = None


class ChartData(BaseModel):
    labels: list[str]
    datasets: list[ChartDataset]
    metadata: ChartMetadata


class TableData(BaseModel):
    columns: list[str]
    rows: list[list[Any]]
    total_rows: int
    page: int
    page_size: int
    total_pages: int
    warning: str | None = None
