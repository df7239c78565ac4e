"""
chartguard Engine - Visualization query service.

Entry points used by the HTTP layer. Each command snapshots the active
dataset, plans or filters, executes lazily and shapes the result into
ChartData / TableData. Latency, error codes and reduction reasons are
recorded in the metrics store.
"""

from __future__ import annotations

import logging
import math
import time
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Iterable, Iterator, TypeVar

import polars as pl

from chartguard.config import QuerySettings
from chartguard.engine.executor import PlanExecutor
from chartguard.engine.filters import apply_filters
from chartguard.engine.planner import QueryPlanner
from chartguard.engine.safety import (
    MAX_TABLE_PAGE_SIZE,
    VALUE_COLUMN,
    ChartSafetyConfig,
    dtype_name,
    format_count,
    is_numeric_series,
)
from chartguard.engine.sampling import SamplingConfig, SystematicSampler, count_rows
from chartguard.engine.schemas import (
    ChartData,
    ChartDataset,
    ChartMetadata,
    ChartType,
    FilterOperator,
    FilterSpec,
    ReductionMetadata,
    ReductionReason,
    TableData,
    VisualizationSpec,
    ZoomContext,
)
from chartguard.engine.store import DatasetStore
from chartguard.exceptions import (
    ChartGuardException,
    ColumnNotFoundException,
    ExecutionException,
    TypeMismatchException,
)
from chartguard.observability import MetricsStore, get_metrics_store

logger = logging.getLogger(__name__)

NULL_LABEL = "(null)"

T = TypeVar("T")


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _to_label(value: Any) -> str:
    if _is_missing(value):
        return NULL_LABEL
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _to_number(value: Any) -> float | None:
    if _is_missing(value):
        return None
    number = float(value)
    return None if math.isinf(number) else number


def _to_json_value(value: Any) -> Any:
    """Row values come from polars as Python objects; dates become ISO strings."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    return value


class VisualizationQueryService:
    def __init__(
        self,
        store: DatasetStore,
        settings: QuerySettings | None = None,
        metrics: MetricsStore | None = None,
    ):
        self.store = store
        self.settings = settings or QuerySettings()
        self.metrics = metrics or get_metrics_store()

    @contextmanager
    def _track(self, command: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        except ChartGuardException as e:
            self.metrics.record_query_error(command, e.code)
            logger.warning(f"[query] {command} failed: {e.code} - {e.message}")
            raise
        finally:
            self.metrics.record_query_latency(command, (time.perf_counter() - start) * 1000)

    def _record(self, command: str, metadata: ReductionMetadata) -> None:
        self.metrics.record_reduction(command, metadata.reduction_reason.value)
        if metadata.reduced:
            logger.info(f"[query] {command}: {metadata.warning_message}")

    # -------------------------------------------------------------------------
    # Aggregated charts
    # -------------------------------------------------------------------------

    def execute_visualization_query(
        self,
        spec: VisualizationSpec,
        zoom_context: ZoomContext | None = None,
    ) -> ChartData:
        """Plan and execute a chart query; the result never exceeds the chart's point budget."""
        command = "progressive" if zoom_context is not None else "visualization"
        with self._track(command):
            snapshot = self.store.snapshot()
            df = snapshot.data
            planner = QueryPlanner(zoom_context, sampling_seed=self.settings.sampling_seed)
            plan = planner.plan(df, spec)
            executor = PlanExecutor(min_samples_per_stratum=self.settings.min_samples_per_stratum)
            result, metadata = executor.execute(plan, df, snapshot.frame)
            self._record(command, metadata)
            return self._chart_data(spec, result, metadata, plan.original_row_count, aggregated=plan.aggregates)

    def _chart_data(
        self,
        spec: VisualizationSpec,
        result: pl.DataFrame,
        metadata: ReductionMetadata,
        total_records: int,
        aggregated: bool,
    ) -> ChartData:
        value_column = VALUE_COLUMN if aggregated else spec.y_field
        values = result[value_column]
        if not values.dtype.is_numeric():
            values = values.cast(pl.Float64, strict=False)

        return ChartData(
            labels=[_to_label(v) for v in result[spec.x_field].to_list()],
            datasets=[
                ChartDataset(
                    label=spec.y_label if aggregated else spec.y_field,
                    data=[_to_number(v) for v in values.to_list()],
                )
            ],
            metadata=ChartMetadata(
                title=spec.title,
                x_label=spec.x_field,
                y_label=spec.y_label if aggregated else spec.y_field,
                total_records=total_records,
                reduced=metadata.reduced,
                reduction_reason=metadata.reduction_reason,
                original_row_estimate=metadata.original_row_estimate,
                returned_points=metadata.returned_points,
                sample_ratio=metadata.sample_ratio,
                top_n_value=metadata.top_n_value,
                warning_message=metadata.warning_message,
                reduction_steps=metadata.reduction_steps,
            ),
        )

    # -------------------------------------------------------------------------
    # Scatter
    # -------------------------------------------------------------------------

    def execute_scatter_query(self, spec: VisualizationSpec) -> ChartData:
        """Raw (x, y) pairs, systematically sampled down to the scatter limit."""
        with self._track("scatter"):
            snapshot = self.store.snapshot()
            df = snapshot.data
            available = [str(c) for c in df.columns]
            for column in (spec.x_field, spec.y_field):
                if column not in df.columns:
                    raise ColumnNotFoundException(column, available)
            if not is_numeric_series(df[spec.y_field]):
                raise TypeMismatchException(spec.y_field, dtype_name(df[spec.y_field]), "numeric")

            policy = ChartSafetyConfig.for_chart_type(ChartType.SCATTER)
            columns = list(dict.fromkeys([spec.x_field, spec.y_field]))
            lf = apply_filters(snapshot.lazy(), df, spec.filters).select(columns)
            filtered_rows = self._run(count_rows, lf)

            metadata = ReductionMetadata.no_reduction(filtered_rows)
            if filtered_rows > policy.max_points:
                config = SamplingConfig(target_size=policy.max_points, seed=self.settings.sampling_seed)
                sample = SystematicSampler(config).sample(lf, filtered_rows)
                lf = sample.data
                metadata.sample_ratio = sample.sample_ratio
                metadata.distribution_preserved = sample.distribution_preserved
                metadata.add_step(
                    ReductionReason.SAMPLING,
                    filtered_rows,
                    sample.sampled_rows,
                    f"Deterministic systematic sampling at {sample.sample_ratio * 100:.1f}% ratio",
                )
                metadata.warning_message = (
                    f"Showing {sample.sample_ratio * 100:.1f}% sample "
                    f"({format_count(sample.sampled_rows)} of {format_count(filtered_rows)} points) for performance"
                )
            filtered = self._run(pl.LazyFrame.collect, lf)
            metadata.returned_points = len(filtered)
            self._record("scatter", metadata)
            return self._chart_data(spec, filtered, metadata, len(df), aggregated=False)

    # -------------------------------------------------------------------------
    # Paginated table
    # -------------------------------------------------------------------------

    def execute_table_query(
        self,
        columns: list[str] | None = None,
        page: int = 0,
        page_size: int = 100,
        sort_column: str | None = None,
        sort_desc: bool = False,
        filters: Iterable[FilterSpec] = (),
    ) -> TableData:
        """One page of rows. Pages are 0-based; page_size is clamped to [1, 1000]."""
        with self._track("table"):
            page_size = min(max(int(page_size), 1), MAX_TABLE_PAGE_SIZE)
            page = max(int(page), 0)

            snapshot = self.store.snapshot()
            df = snapshot.data
            available = [str(c) for c in df.columns]
            selected = list(columns) if columns else available
            for column in selected + ([sort_column] if sort_column else []):
                if column not in df.columns:
                    raise ColumnNotFoundException(column, available)

            lf = apply_filters(snapshot.lazy(), df, filters)
            total_rows = self._run(count_rows, lf)
            if sort_column:
                # polars turns sort + slice into a top-k selection.
                lf = lf.sort(sort_column, descending=sort_desc, nulls_last=True, maintain_order=True)
            page_df = self._run(pl.LazyFrame.collect, lf.slice(page * page_size, page_size).select(selected))

            # Advisory on the size of the dataset, whatever the filters keep.
            warning = None
            if len(df) > self.settings.large_dataset_warning_rows:
                warning = f"Large dataset ({format_count(len(df))} rows). Using pagination for performance."

            return TableData(
                columns=selected,
                rows=[[_to_json_value(v) for v in row] for row in page_df.iter_rows()],
                total_rows=total_rows,
                page=page,
                page_size=page_size,
                total_pages=math.ceil(total_rows / page_size),
                warning=warning,
            )

    # -------------------------------------------------------------------------
    # Progressive (zoom-aware)
    # -------------------------------------------------------------------------

    def execute_progressive_query(
        self,
        spec: VisualizationSpec,
        zoom_level: float,
        range_start: Any = None,
        range_end: Any = None,
    ) -> ChartData:
        """Chart query restricted to the visible X range, with a budget that grows with zoom."""
        zoom = ZoomContext(zoom_level=zoom_level, range_start=range_start, range_end=range_end)
        spec = self._with_range_filters(spec, range_start, range_end)
        return self.execute_visualization_query(spec, zoom)

    def explain_plan(self, spec: VisualizationSpec, zoom_level: float | None = None) -> dict[str, Any]:
        """The plan the visualization query would run, without running it."""
        with self._track("explain"):
            df = self.store.snapshot().data
            zoom = ZoomContext(zoom_level=zoom_level) if zoom_level is not None else None
            plan = QueryPlanner(zoom, sampling_seed=self.settings.sampling_seed).plan(df, spec)
            return plan.to_dict()

    @staticmethod
    def _with_range_filters(spec: VisualizationSpec, range_start: Any, range_end: Any) -> VisualizationSpec:
        extra = []
        if range_start is not None:
            extra.append(FilterSpec(column=spec.x_field, operator=FilterOperator.GTE, value=range_start))
        if range_end is not None:
            extra.append(FilterSpec(column=spec.x_field, operator=FilterOperator.LTE, value=range_end))
        if not extra:
            return spec
        return spec.model_copy(update={"filters": tuple(spec.filters) + tuple(extra)})

    @staticmethod
    def _run(fn: Callable[[pl.LazyFrame], T], lf: pl.LazyFrame) -> T:
        """Evaluate a lazy query, wrapping engine errors as EXECUTION_ERROR."""
        try:
            return fn(lf)
        except pl.exceptions.PolarsError as e:
            logger.error(f"[query] Query failed: {type(e).__name__}: {e}")
            raise ExecutionException(str(e), details={"error_type": type(e).__name__}) from e
