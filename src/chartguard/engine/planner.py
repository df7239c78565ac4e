"""
chartguard Engine - Query planner.

Turns a VisualizationSpec and a dataset into an ExecutionPlan: an ordered list
of transformations that keeps the chart inside its safety policy, plus the
ReductionMetadata describing every step that changes what the user sees.

Planning only reads schema, row counts and small head samples. It never runs
the query.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Union

import pandas as pd

from chartguard.engine.cardinality import (
    ApplyBinning,
    ApplyDateBinning,
    ApplyTopN,
    BlockWithWarning,
    CardinalityEstimator,
    CardinalityInfo,
    estimate_date_bin_count,
)
from chartguard.engine.filters import validate_filters
from chartguard.engine.safety import (
    DEFAULT_TOP_N,
    MAX_VISUAL_POINTS,
    SAMPLING_SEED,
    VALUE_COLUMN,
    ChartSafetyConfig,
    MemorySafetyCheck,
    build_warning_message,
    dtype_name,
    is_datetime_series,
    is_numeric_series,
    point_budget,
)
from chartguard.engine.schemas import (
    AggregationType,
    CardinalityLevel,
    DateBinGranularity,
    FilterSpec,
    ReductionMetadata,
    ReductionReason,
    SamplingMethod,
    SortField,
    SortOrder,
    VisualizationSpec,
    ZoomContext,
)
from chartguard.exceptions import ColumnNotFoundException, TypeMismatchException, ValidationException

logger = logging.getLogger(__name__)


# =============================================================================
# Transformations (closed set)
# =============================================================================


@dataclass(frozen=True)
class Filter:
    filters: tuple[FilterSpec, ...]


@dataclass(frozen=True)
class DateBin:
    column: str
    granularity: DateBinGranularity


@dataclass(frozen=True)
class NumericBin:
    column: str
    bin_count: int


@dataclass(frozen=True)
class Aggregate:
    group_by: str
    measure: str
    aggregation: AggregationType


@dataclass(frozen=True)
class TopN:
    column: str
    n: int
    include_others: bool = True


@dataclass(frozen=True)
class Sample:
    target_rows: int
    seed: int = SAMPLING_SEED
    method: SamplingMethod = SamplingMethod.SYSTEMATIC
    stratify_by: str | None = None


@dataclass(frozen=True)
class Limit:
    n: int


@dataclass(frozen=True)
class Sort:
    column: str
    descending: bool = False


Transformation = Union[Filter, DateBin, NumericBin, Aggregate, TopN, Sample, Limit, Sort]
TRANSFORMATION_TYPES: tuple[type, ...] = (Filter, DateBin, NumericBin, Aggregate, TopN, Sample, Limit, Sort)


def describe_transformation(t: Transformation) -> dict[str, Any]:
    params = asdict(t)
    if isinstance(t, Filter):
        params["filters"] = [f.model_dump(mode="json") for f in t.filters]
    for key, value in params.items():
        if isinstance(value, Enum):
            params[key] = value.value
    return {"type": type(t).__name__, **params}


# =============================================================================
# Plan
# =============================================================================


@dataclass
class ExecutionPlan:
    original_row_count: int
    safety_config: ChartSafetyConfig
    transformations: list[Transformation] = field(default_factory=list)
    reduction_metadata: ReductionMetadata = field(default_factory=ReductionMetadata)
    is_safe: bool = True
    blocking_reason: str | None = None
    cardinality_info: dict[str, CardinalityInfo] = field(default_factory=dict)

    @classmethod
    def blocked(
        cls,
        original_row_count: int,
        safety_config: ChartSafetyConfig,
        reason: str,
        cardinality_info: dict[str, CardinalityInfo] | None = None,
    ) -> "ExecutionPlan":
        return cls(
            original_row_count=original_row_count,
            safety_config=safety_config,
            transformations=[],
            reduction_metadata=ReductionMetadata.no_reduction(original_row_count),
            is_safe=False,
            blocking_reason=reason,
            cardinality_info=cardinality_info or {},
        )

    @property
    def aggregates(self) -> bool:
        return any(isinstance(t, Aggregate) for t in self.transformations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_row_count": self.original_row_count,
            "safety_config": self.safety_config.to_dict(),
            "transformations": [describe_transformation(t) for t in self.transformations],
            "reduction_metadata": self.reduction_metadata.model_dump(mode="json"),
            "is_safe": self.is_safe,
            "blocking_reason": self.blocking_reason,
            "cardinality_info": {k: v.to_dict() for k, v in self.cardinality_info.items()},
        }


# =============================================================================
# Planner
# =============================================================================


class QueryPlanner:
    """
    Builds safe execution plans.

    When a ZoomContext is given (progressive queries) the point budget is the
    zoom-scaled share of the chart's max points; otherwise it is the full
    policy limit.
    """

    def __init__(
        self,
        zoom_context: ZoomContext | None = None,
        sampling_seed: int = SAMPLING_SEED,
        estimator: CardinalityEstimator | None = None,
    ):
        self.zoom_context = zoom_context
        self.sampling_seed = sampling_seed
        self.estimator = estimator or CardinalityEstimator()

    def plan(self, df: pd.DataFrame, spec: VisualizationSpec) -> ExecutionPlan:
        policy = ChartSafetyConfig.for_chart_type(spec.chart_type)
        row_count = len(df)
        x, y = spec.x_field, spec.y_field

        self._validate(df, spec)

        memory = MemorySafetyCheck.estimate(row_count, len(df.columns))
        if not memory.is_safe:
            logger.warning(f"[planner] {memory.recommendation}")

        x_info = self.estimator.estimate(df[x], row_count)
        y_info = self.estimator.estimate(df[y], row_count)
        cardinality = {x: x_info, y: y_info}

        if isinstance(x_info.recommended_action, BlockWithWarning):
            reason = f"Column '{x}': {x_info.recommended_action.reason}"
            logger.warning(f"[planner] Blocked {policy.chart_type_name}: {reason}")
            return ExecutionPlan.blocked(row_count, policy, reason, cardinality)

        zoom_limit = self.zoom_context.calculate_point_limit(policy.max_points) if self.zoom_context else None
        budget = point_budget(policy, zoom_limit)
        metadata = ReductionMetadata.no_reduction(row_count)
        transformations: list[Transformation] = []

        if spec.filters:
            transformations.append(Filter(tuple(spec.filters)))

        aggregate = policy.requires_aggregation or x_info.unique_count > policy.max_points
        x_groups = x_info.unique_count

        # Binning
        x_granularity = spec.x_date_bin
        auto_date_bin = False
        if (
            x_granularity is None
            and aggregate
            and x_info.is_datetime
            and isinstance(x_info.recommended_action, ApplyDateBinning)
        ):
            x_granularity = x_info.recommended_action.granularity
            auto_date_bin = True
        if x_granularity is not None:
            transformations.append(DateBin(x, x_granularity))
            x_groups = min(x_groups, estimate_date_bin_count(df[x], x_granularity))
            if auto_date_bin:
                metadata.date_bin_granularity = x_granularity
                metadata.add_step(
                    ReductionReason.DATE_BINNING, row_count, row_count, f"Date binned to {x_granularity.value}"
                )
        elif (
            aggregate
            and x_info.cardinality_level == CardinalityLevel.CONTINUOUS
            and isinstance(x_info.recommended_action, ApplyBinning)
        ):
            bins = x_info.recommended_action.bin_count
            if policy.max_bins:
                bins = min(bins, policy.max_bins)
            transformations.append(NumericBin(x, bins))
            x_groups = bins
            metadata.numeric_bin_count = bins
            metadata.add_step(
                ReductionReason.NUMERIC_BINNING, row_count, row_count, f"Binned into {bins} equal-width ranges"
            )

        if spec.y_date_bin is not None:
            transformations.append(DateBin(y, spec.y_date_bin))

        # Aggregation
        if aggregate:
            transformations.append(Aggregate(x, y, spec.aggregation))
            if row_count > policy.max_points:
                metadata.add_step(
                    ReductionReason.AUTO_AGGREGATION,
                    row_count,
                    min(x_groups, row_count),
                    "Auto-aggregation applied",
                )

        # Top-N over aggregated groups
        estimated_rows = min(x_groups, row_count) if aggregate else row_count
        if aggregate and estimated_rows > budget:
            if isinstance(x_info.recommended_action, ApplyTopN):
                n, description = x_info.recommended_action.n, "Top-{n} with Others"
            else:
                n, description = DEFAULT_TOP_N, "Top-{n} with Others (safety limit)"
            # Leave room for the Others row under the final limit.
            n = max(1, min(n, budget - 1))
            transformations.append(TopN(x, n, include_others=True))
            metadata.top_n_value = n
            metadata.add_step(ReductionReason.TOP_N, estimated_rows, n + 1, description.format(n=n))
            estimated_rows = n + 1

        # Sampling for point charts
        if policy.allows_sampling and not aggregate and row_count > budget:
            method = SamplingMethod.STRATIFIED if spec.group_by else SamplingMethod.SYSTEMATIC
            transformations.append(Sample(budget, self.sampling_seed, method, spec.group_by))
            ratio = budget / row_count
            metadata.sample_ratio = ratio
            metadata.distribution_preserved = True
            metadata.add_step(
                ReductionReason.SAMPLING,
                row_count,
                budget,
                f"Deterministic {method.value} sampling at {ratio * 100:.1f}% ratio",
            )
            estimated_rows = budget

        if spec.sort_by != SortField.NONE:
            if spec.sort_by == SortField.X:
                sort_column = x
            else:
                sort_column = VALUE_COLUMN if aggregate else y
            transformations.append(Sort(sort_column, descending=spec.sort_order == SortOrder.DESC))

        limit = min(budget, MAX_VISUAL_POINTS)
        transformations.append(Limit(limit))

        metadata.returned_points = min(estimated_rows, limit)
        metadata.warning_message = build_warning_message(metadata)

        logger.info(
            f"[planner] {policy.chart_type_name}: {row_count} rows, budget={budget}, "
            f"steps={[type(t).__name__ for t in transformations]}, reason={metadata.reduction_reason.value}"
        )
        return ExecutionPlan(
            original_row_count=row_count,
            safety_config=policy,
            transformations=transformations,
            reduction_metadata=metadata,
            is_safe=True,
            cardinality_info=cardinality,
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate(self, df: pd.DataFrame, spec: VisualizationSpec) -> None:
        available = [str(c) for c in df.columns]
        for column in (spec.x_field, spec.y_field, spec.group_by):
            if column is not None and column not in df.columns:
                raise ColumnNotFoundException(column, available)

        validate_filters(df, spec.filters)

        x_series, y_series = df[spec.x_field], df[spec.y_field]
        if spec.x_date_bin is not None and not is_datetime_series(x_series):
            raise TypeMismatchException(spec.x_field, dtype_name(x_series), "datetime")

        if spec.y_date_bin is not None:
            if not is_datetime_series(y_series):
                raise TypeMismatchException(spec.y_field, dtype_name(y_series), "datetime")
            if spec.aggregation != AggregationType.COUNT:
                raise ValidationException(
                    "Date binning on the Y axis is only supported with count aggregation",
                    errors=[{"field": "y_date_bin", "aggregation": spec.aggregation.value}],
                )
        elif spec.aggregation != AggregationType.COUNT and not is_numeric_series(y_series):
            raise TypeMismatchException(
                spec.y_field,
                dtype_name(y_series),
                "numeric",
                message=f"Cannot compute {spec.aggregation.value} of non-numeric column '{spec.y_field}'",
            )
