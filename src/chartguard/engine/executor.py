"""
chartguard Engine - Plan executor.

Interprets an ExecutionPlan as a polars lazy query. Filters, date binning,
sampling, sorts and limits stay lazy, so polars pushes predicates and slices
down to the scan. The aggregated groups are materialized once: Top-N has to
rank actual values, and the group count decides whether the chart still fits
its limit.

After collection the reduction metadata is corrected with what actually
happened: the real group count, the real sample size and the real number of
returned points. If the planner's cardinality estimate undercounted and the
groups do not fit the limit, Top-N with Others is applied here and recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import pandas as pd
import polars as pl

from chartguard.engine.filters import apply_filters
from chartguard.engine.planner import (
    TRANSFORMATION_TYPES,
    Aggregate,
    DateBin,
    ExecutionPlan,
    Filter,
    Limit,
    NumericBin,
    Sample,
    Sort,
    TopN,
)
from chartguard.engine.safety import MAX_VISUAL_POINTS, OTHERS_LABEL, VALUE_COLUMN, build_warning_message
from chartguard.engine.sampling import SamplingConfig, SamplingResult, get_sampler
from chartguard.engine.schemas import AggregationType, DateBinGranularity, ReductionMetadata, ReductionReason
from chartguard.engine.store import to_polars
from chartguard.exceptions import (
    ExecutionException,
    SafetyBlockException,
    TooManyPointsException,
    UnsupportedTransformationException,
)

logger = logging.getLogger(__name__)

# Marks the synthetic Others row until the result is handed back.
OTHERS_FLAG = "__others__"
_GROUP_ROWS = "__rows__"

_AGG_EXPRS: dict[AggregationType, Callable[[str], pl.Expr]] = {
    AggregationType.SUM: lambda c: pl.col(c).sum(),
    AggregationType.AVG: lambda c: pl.col(c).mean(),
    AggregationType.COUNT: lambda c: pl.col(c).count(),
    AggregationType.MIN: lambda c: pl.col(c).min(),
    AggregationType.MAX: lambda c: pl.col(c).max(),
    AggregationType.MEDIAN: lambda c: pl.col(c).median(),
}


# =============================================================================
# Frame operations
# =============================================================================


def date_bin_expr(column: str, granularity: DateBinGranularity) -> pl.Expr:
    """Sortable string labels for timestamps ("2024", "2024-Q1", "2024-03", "2024-W05")."""
    col = pl.col(column)
    if granularity == DateBinGranularity.YEAR:
        labels = col.dt.strftime("%Y")
    elif granularity == DateBinGranularity.QUARTER:
        labels = pl.format("{}-Q{}", col.dt.strftime("%Y"), col.dt.quarter())
    elif granularity == DateBinGranularity.MONTH:
        labels = col.dt.strftime("%Y-%m")
    elif granularity == DateBinGranularity.WEEK:
        labels = col.dt.strftime("%G-W%V")
    elif granularity == DateBinGranularity.DAY:
        labels = col.dt.strftime("%Y-%m-%d")
    else:
        labels = col.dt.strftime("%Y-%m-%d %H:00")
    return labels.alias(column)


def _format_edge(value: float) -> str:
    return f"{value:.6g}"


def numeric_bin_labels(lo: float, hi: float, bin_count: int) -> list[str]:
    """Labels of equal-width bins over [lo, hi]; the last bin is closed."""
    bin_count = max(1, bin_count) if hi > lo else 1
    width = (hi - lo) / bin_count if hi > lo else 1.0
    labels = []
    for i in range(bin_count):
        start, end = lo + i * width, (lo + (i + 1) * width) if hi > lo else hi
        closing = "]" if i == bin_count - 1 else ")"
        labels.append(f"[{_format_edge(start)}, {_format_edge(end)}{closing}")
    if len(set(labels)) < len(labels):
        labels = [f"{label} #{i + 1}" for i, label in enumerate(labels)]
    return labels


def numeric_bin_expr(column: str, lo: float | None, hi: float | None, bin_count: int) -> pl.Expr:
    """Replace values with their bin label, as an Enum so groups sort in bin order."""
    if lo is None or hi is None:
        return pl.lit(None, dtype=pl.String).alias(column)
    labels = numeric_bin_labels(lo, hi, bin_count)
    width = (hi - lo) / len(labels) if hi > lo else 1.0
    codes = ((pl.col(column).cast(pl.Float64) - lo) / width).floor().clip(0, len(labels) - 1).cast(pl.Int64)
    return codes.replace_strict(list(range(len(labels))), labels, return_dtype=pl.Enum(labels)).alias(column)


def aggregate(
    lf: pl.LazyFrame | pl.DataFrame, group_by: str, measure: str, aggregation: AggregationType
) -> pl.DataFrame:
    """Collect one row per group, ordered by group with the null group last.

    The result keeps the input row count per group in a helper column, which
    aggregate_input_rows() reads and drop_helpers() removes.
    """
    return (
        lf.lazy()
        .group_by(group_by)
        .agg(_AGG_EXPRS[aggregation](measure).alias(VALUE_COLUMN), pl.len().alias(_GROUP_ROWS))
        .sort(group_by, nulls_last=True, maintain_order=True)
        .collect()
    )


def aggregate_input_rows(frame: pl.DataFrame) -> int:
    return int(frame[_GROUP_ROWS].sum()) if _GROUP_ROWS in frame.columns else len(frame)


def top_n_with_others(frame: pl.DataFrame, column: str, n: int, include_others: bool = True) -> pl.DataFrame:
    """Keep the n largest groups by value; fold the remainder into one Others row."""
    ordered = frame.drop(_GROUP_ROWS, strict=False).sort(
        VALUE_COLUMN, descending=True, nulls_last=True, maintain_order=True
    )
    top = ordered.head(n).with_columns(pl.lit(False).alias(OTHERS_FLAG))
    rest = ordered.slice(n)
    if not include_others or rest.is_empty():
        return top

    dtype = top.schema[column]
    if isinstance(dtype, pl.Enum):
        categories = [c for c in dtype.categories.to_list() if c != OTHERS_LABEL] + [OTHERS_LABEL]
        key_type: pl.DataType = pl.Enum(categories)
        top = top.with_columns(pl.col(column).cast(pl.String).cast(key_type))
    elif dtype != pl.String:
        key_type = pl.String
        top = top.with_columns(pl.col(column).cast(pl.String))
    else:
        key_type = pl.String

    others = pl.DataFrame(
        {column: [OTHERS_LABEL], VALUE_COLUMN: [rest[VALUE_COLUMN].sum()], OTHERS_FLAG: [True]},
        schema={column: key_type, VALUE_COLUMN: top.schema[VALUE_COLUMN], OTHERS_FLAG: pl.Boolean},
    )
    return pl.concat([top, others], how="vertical")


# =============================================================================
# Executor
# =============================================================================


@dataclass
class _ExecutionContext:
    source: pd.DataFrame
    limit: int = MAX_VISUAL_POINTS
    planned_top_n: bool = False
    has_others: bool = False
    observed: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[pl.LazyFrame, Any, _ExecutionContext], pl.LazyFrame]


class PlanExecutor:
    """Runs safe plans. Every transformation type has exactly one handler."""

    def __init__(self, min_samples_per_stratum: int = 10):
        self.min_samples_per_stratum = min_samples_per_stratum
        self._handlers: dict[type, Handler] = {
            Filter: self._filter,
            DateBin: self._date_bin,
            NumericBin: self._numeric_bin,
            Aggregate: self._aggregate,
            TopN: self._top_n,
            Sample: self._sample,
            Sort: self._sort,
            Limit: self._limit,
        }
        missing = [t.__name__ for t in TRANSFORMATION_TYPES if t not in self._handlers]
        if missing:
            raise UnsupportedTransformationException(", ".join(missing))

    def execute(
        self,
        plan: ExecutionPlan,
        df: pd.DataFrame,
        frame: pl.DataFrame | None = None,
    ) -> tuple[pl.DataFrame, ReductionMetadata]:
        """Run the plan against df. frame is its polars copy; it is converted when not given."""
        if not plan.is_safe:
            raise SafetyBlockException(
                plan.blocking_reason or "Plan is not safe to execute",
                plan.original_row_count,
                plan.safety_config.max_points,
            )

        ctx = _ExecutionContext(source=df)
        for transformation in plan.transformations:
            if isinstance(transformation, Limit):
                ctx.limit = transformation.n
            elif isinstance(transformation, TopN):
                ctx.planned_top_n = True

        lf = (frame if frame is not None else to_polars("dataset", df)).lazy()
        try:
            for transformation in plan.transformations:
                handler = self._handlers.get(type(transformation))
                if handler is None:
                    raise UnsupportedTransformationException(type(transformation).__name__)
                lf = handler(lf, transformation, ctx)
            result = lf.collect()
        except pl.exceptions.PolarsError as e:
            logger.error(f"[executor] Query failed: {type(e).__name__}: {e}")
            raise ExecutionException(str(e), details={"error_type": type(e).__name__}) from e

        result = result.drop(OTHERS_FLAG, _GROUP_ROWS, strict=False)
        if len(result) > MAX_VISUAL_POINTS:
            raise TooManyPointsException(len(result), MAX_VISUAL_POINTS)

        metadata = self._reconcile(plan.reduction_metadata, ctx, len(result))
        logger.info(
            f"[executor] {plan.safety_config.chart_type_name}: {plan.original_row_count} rows -> "
            f"{len(result)} points (reason={metadata.reduction_reason.value})"
        )
        return result, metadata

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _filter(self, lf: pl.LazyFrame, t: Filter, ctx: _ExecutionContext) -> pl.LazyFrame:
        return apply_filters(lf, ctx.source, t.filters)

    def _date_bin(self, lf: pl.LazyFrame, t: DateBin, ctx: _ExecutionContext) -> pl.LazyFrame:
        return lf.with_columns(date_bin_expr(t.column, t.granularity))

    def _numeric_bin(self, lf: pl.LazyFrame, t: NumericBin, ctx: _ExecutionContext) -> pl.LazyFrame:
        # Edges come from the filtered rows; only the two bounds are collected.
        values = pl.col(t.column).cast(pl.Float64)
        lo, hi = lf.select(values.min().alias("lo"), values.max().alias("hi")).collect().row(0)
        return lf.with_columns(numeric_bin_expr(t.column, lo, hi, t.bin_count))

    def _aggregate(self, lf: pl.LazyFrame, t: Aggregate, ctx: _ExecutionContext) -> pl.LazyFrame:
        grouped = aggregate(lf, t.group_by, t.measure, t.aggregation)
        ctx.observed["input_rows"] = aggregate_input_rows(grouped)
        ctx.observed["groups"] = len(grouped)
        grouped = grouped.drop(_GROUP_ROWS)

        if not ctx.planned_top_n and len(grouped) > ctx.limit:
            # The estimate undercounted; truncating at the limit would drop groups unannounced.
            n = max(1, ctx.limit - 1)
            logger.warning(
                f"[executor] {len(grouped)} groups exceed the limit of {ctx.limit}; applying Top-{n} with Others"
            )
            grouped = top_n_with_others(grouped, t.group_by, n)
            ctx.has_others = True
            ctx.observed["runtime_top_n"] = n
            ctx.observed["top_n_input"] = ctx.observed["groups"]
            ctx.observed["top_n_output"] = len(grouped)
        return grouped.lazy()

    def _top_n(self, lf: pl.LazyFrame, t: TopN, ctx: _ExecutionContext) -> pl.LazyFrame:
        frame = lf.collect()
        ctx.observed["top_n_input"] = len(frame)
        result = top_n_with_others(frame, t.column, t.n, t.include_others)
        ctx.observed["top_n_output"] = len(result)
        ctx.has_others = True
        return result.lazy()

    def _sample(self, lf: pl.LazyFrame, t: Sample, ctx: _ExecutionContext) -> pl.LazyFrame:
        config = SamplingConfig(
            target_size=t.target_rows,
            seed=t.seed,
            stratify_by=t.stratify_by,
            min_samples_per_stratum=self.min_samples_per_stratum,
        )
        result = get_sampler(t.method, config).sample(lf)
        ctx.observed["sample"] = result
        return result.data

    def _sort(self, lf: pl.LazyFrame, t: Sort, ctx: _ExecutionContext) -> pl.LazyFrame:
        if ctx.has_others:
            # False sorts before True, so the Others row stays last.
            return lf.sort(
                [OTHERS_FLAG, t.column],
                descending=[False, t.descending],
                nulls_last=True,
                maintain_order=True,
            )
        return lf.sort(t.column, descending=t.descending, nulls_last=True, maintain_order=True)

    def _limit(self, lf: pl.LazyFrame, t: Limit, ctx: _ExecutionContext) -> pl.LazyFrame:
        return lf.head(t.n)

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def _reconcile(self, planned: ReductionMetadata, ctx: _ExecutionContext, returned: int) -> ReductionMetadata:
        metadata = planned.model_copy(deep=True)
        observed = ctx.observed

        step = metadata.find_step(ReductionReason.AUTO_AGGREGATION)
        if step is not None and "groups" in observed:
            step.input_rows = observed["input_rows"]
            step.output_rows = observed["groups"]

        if "runtime_top_n" in observed:
            n = observed["runtime_top_n"]
            metadata.top_n_value = n
            metadata.add_step(
                ReductionReason.TOP_N,
                observed["top_n_input"],
                observed["top_n_output"],
                f"Top-{n} with Others (group count exceeded the estimate)",
            )

        step = metadata.find_step(ReductionReason.TOP_N)
        if step is not None and "top_n_input" in observed and "runtime_top_n" not in observed:
            if observed["top_n_input"] <= (metadata.top_n_value or 0):
                metadata.remove_step(ReductionReason.TOP_N)
                metadata.top_n_value = None
            else:
                step.input_rows = observed["top_n_input"]
                step.output_rows = observed["top_n_output"]

        sample: SamplingResult | None = observed.get("sample")
        if sample is not None and metadata.find_step(ReductionReason.SAMPLING) is not None:
            if sample.sampled_rows >= sample.original_rows:
                metadata.remove_step(ReductionReason.SAMPLING)
                metadata.sample_ratio = None
            else:
                step = metadata.find_step(ReductionReason.SAMPLING)
                step.input_rows = sample.original_rows
                step.output_rows = sample.sampled_rows
                metadata.sample_ratio = sample.sample_ratio
                metadata.distribution_preserved = sample.distribution_preserved

        metadata.returned_points = returned
        metadata.warning_message = build_warning_message(metadata)
        return metadata
