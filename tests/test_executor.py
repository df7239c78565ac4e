"""Tests for plan execution and result reconciliation."""

import numpy as np
import pandas as pd
import polars as pl
import pytest

from chartguard.engine.executor import (
    PlanExecutor,
    aggregate,
    date_bin_expr,
    numeric_bin_expr,
    numeric_bin_labels,
    top_n_with_others,
)
from chartguard.engine.planner import (
    Aggregate,
    ExecutionPlan,
    Limit,
    QueryPlanner,
    Sort,
    TopN,
)
from chartguard.engine.safety import ChartSafetyConfig
from chartguard.engine.schemas import (
    AggregationType,
    DateBinGranularity,
    ReductionMetadata,
    ReductionReason,
    VisualizationSpec,
)
from chartguard.exceptions import SafetyBlockException, UnsupportedTransformationException

BAR = ChartSafetyConfig.for_chart_type("bar")


def _top_n_plan(n: int, sort: Sort | None = None) -> ExecutionPlan:
    metadata = ReductionMetadata.no_reduction(10)
    metadata.top_n_value = n
    metadata.add_step(ReductionReason.TOP_N, 3, n + 1, f"Top-{n} with Others")
    transformations = [Aggregate("category", "revenue", AggregationType.SUM), TopN("category", n)]
    if sort is not None:
        transformations.append(sort)
    transformations.append(Limit(500))
    return ExecutionPlan(
        original_row_count=10,
        safety_config=BAR,
        transformations=transformations,
        reduction_metadata=metadata,
    )


class TestTopNExecution:
    def test_top_two_with_others(self, sales_df):
        result, metadata = PlanExecutor().execute(_top_n_plan(2), sales_df)

        assert result["category"].to_list() == ["B", "C", "Others"]
        assert result["value"].to_list() == [67, 62, 55]
        assert result.columns == ["category", "value"]
        assert metadata.top_n_value == 2
        assert metadata.returned_points == 3

    def test_others_conserves_total(self, sales_df):
        result, _ = PlanExecutor().execute(_top_n_plan(1), sales_df)
        assert result["value"].sum() == sales_df["revenue"].sum()
        assert result["category"][-1] == "Others"

    def test_sort_keeps_others_last(self, sales_df):
        result, _ = PlanExecutor().execute(_top_n_plan(2, Sort("value")), sales_df)
        assert result["category"].to_list() == ["C", "B", "Others"]

    def test_no_op_top_n_removed_from_metadata(self, sales_df):
        result, metadata = PlanExecutor().execute(_top_n_plan(5), sales_df)
        assert len(result) == 3
        assert metadata.reduced is False
        assert metadata.top_n_value is None
        assert metadata.warning_message is None


class TestExecutorContract:
    def test_unsafe_plan_is_refused(self, sales_df):
        plan = ExecutionPlan.blocked(10, BAR, "Column 'x': Column contains only null values")
        with pytest.raises(SafetyBlockException) as exc_info:
            PlanExecutor().execute(plan, sales_df)
        assert exc_info.value.code == "SAFETY_BLOCK"
        assert exc_info.value.status_code == 422

    def test_unknown_transformation(self, sales_df):
        plan = ExecutionPlan(original_row_count=10, safety_config=BAR, transformations=[object()])
        with pytest.raises(UnsupportedTransformationException):
            PlanExecutor().execute(plan, sales_df)

    def test_every_transformation_has_a_handler(self):
        PlanExecutor()

    def test_aggregation_groups_reconciled(self):
        df = pd.DataFrame({"k": np.arange(1000) % 7, "v": np.ones(1000)})
        spec = VisualizationSpec(chart_type="bar", x_field="k", y_field="v")
        plan = QueryPlanner().plan(df, spec)
        result, metadata = PlanExecutor().execute(plan, df)

        assert len(result) == 7
        step = metadata.find_step(ReductionReason.AUTO_AGGREGATION)
        assert (step.input_rows, step.output_rows) == (1000, 7)
        assert metadata.warning_message == "Data was aggregated from 1,000 to 7 groups"

    def test_planned_limit_never_exceeded(self):
        df = pd.DataFrame({"name": [f"c{i:04d}" for i in range(2000)], "amount": np.arange(2000, dtype=float)})
        spec = VisualizationSpec(chart_type="pie", x_field="name", y_field="amount")
        plan = QueryPlanner().plan(df, spec)
        result, metadata = PlanExecutor().execute(plan, df)

        assert len(result) == 20
        assert metadata.returned_points == 20
        assert result["name"][-1] == "Others"
        assert result["value"].sum() == pytest.approx(df["amount"].sum())


class TestGroupsBeyondEstimate:
    @pytest.fixture
    def late_categories(self) -> pd.DataFrame:
        """The head sample sees 400 categories; 600 more only appear in the second half."""
        early = [f"a{i % 400:03d}" for i in range(10_000)]
        late = [f"b{i % 600:03d}" for i in range(10_000)]
        return pd.DataFrame({"name": early + late, "amount": np.ones(20_000)})

    def test_top_n_applied_when_groups_exceed_limit(self, late_categories):
        spec = VisualizationSpec(chart_type="bar", x_field="name", y_field="amount")
        plan = QueryPlanner().plan(late_categories, spec)
        assert not any(isinstance(t, TopN) for t in plan.transformations)

        result, metadata = PlanExecutor().execute(plan, late_categories)

        assert len(result) == 500
        assert result["name"][-1] == "Others"
        assert result["value"].sum() == 20_000
        assert metadata.top_n_value == 499
        assert metadata.returned_points == 500
        step = metadata.find_step(ReductionReason.TOP_N)
        assert (step.input_rows, step.output_rows) == (1000, 500)
        assert "showing top 499 categories" in metadata.warning_message

    def test_sort_after_runtime_top_n_keeps_others_last(self, late_categories):
        spec = VisualizationSpec(chart_type="bar", x_field="name", y_field="amount", sort_by="x", sort_order="desc")
        result, _ = PlanExecutor().execute(QueryPlanner().plan(late_categories, spec), late_categories)
        names = result["name"].to_list()
        assert names[-1] == "Others"
        assert names[:-1] == sorted(names[:-1], reverse=True)

    def test_groups_within_limit_untouched(self, sales_df):
        spec = VisualizationSpec(chart_type="bar", x_field="category", y_field="revenue")
        result, metadata = PlanExecutor().execute(QueryPlanner().plan(sales_df, spec), sales_df)
        assert result["category"].to_list() == ["A", "B", "C"]
        assert metadata.find_step(ReductionReason.TOP_N) is None


class TestSampledPlans:
    def test_stratified_sample_matches_reported_ratio(self):
        idx = np.arange(100_000)
        strata = [f"s{i // 50:04d}" for i in idx]
        df = pd.DataFrame({"x": (idx % 100).astype(float), "y": idx.astype(float), "g": strata})
        spec = VisualizationSpec(chart_type="scatter", x_field="x", y_field="y", group_by="g")
        plan = QueryPlanner().plan(df, spec)
        result, metadata = PlanExecutor().execute(plan, df)

        assert len(result) == 10_000
        assert result["g"].n_unique() == 2000
        assert metadata.returned_points == 10_000
        assert metadata.sample_ratio == pytest.approx(0.1)
        assert metadata.distribution_preserved is True
        assert "sampled 10.0% (10,000 points)" in metadata.warning_message


class TestFrameOperations:
    def test_aggregate_functions(self, sales_df):
        avg = aggregate(pl.from_pandas(sales_df), "category", "revenue", AggregationType.AVG)
        assert avg["value"].to_list() == pytest.approx([55 / 3, 67 / 3, 62 / 4])
        count = aggregate(pl.from_pandas(sales_df), "category", "revenue", AggregationType.COUNT)
        assert count["value"].to_list() == [3, 3, 4]

    def test_aggregate_keeps_null_group_last(self):
        df = pl.DataFrame({"k": ["b", None, "a"], "v": [1, 2, 3]})
        result = aggregate(df, "k", "v", AggregationType.SUM)
        assert result["k"].to_list() == ["a", "b", None]

    def test_top_n_without_others(self, sales_df):
        grouped = aggregate(pl.from_pandas(sales_df), "category", "revenue", AggregationType.SUM)
        result = top_n_with_others(grouped, "category", 1, include_others=False)
        assert result["category"].to_list() == ["B"]

    def test_top_n_over_integer_keys(self):
        grouped = pl.DataFrame({"k": [1, 2, 3], "value": [5.0, 7.0, 1.0]})
        result = top_n_with_others(grouped, "k", 1)
        assert result["k"].to_list() == ["2", "Others"]
        assert result["value"].to_list() == [7.0, 6.0]

    def test_date_bin_labels(self):
        frame = pl.from_pandas(pd.DataFrame({"t": pd.to_datetime(["2024-02-15 10:30", None])}))
        expected = {
            DateBinGranularity.YEAR: "2024",
            DateBinGranularity.QUARTER: "2024-Q1",
            DateBinGranularity.MONTH: "2024-02",
            DateBinGranularity.WEEK: "2024-W07",
            DateBinGranularity.DAY: "2024-02-15",
            DateBinGranularity.HOUR: "2024-02-15 10:00",
        }
        for granularity, label in expected.items():
            binned = frame.select(date_bin_expr("t", granularity))["t"].to_list()
            assert binned == [label, None]

    def test_numeric_bin_edges(self):
        frame = pl.DataFrame({"x": [0.0, 5.0, 10.0, None]})
        binned = frame.select(numeric_bin_expr("x", 0.0, 10.0, 2))["x"]
        assert binned.dtype == pl.Enum(["[0, 5)", "[5, 10]"])
        assert binned.to_list() == ["[0, 5)", "[5, 10]", "[5, 10]", None]

    def test_numeric_bin_constant_column(self):
        assert numeric_bin_labels(3.0, 3.0, 10) == ["[3, 3]"]

    def test_numeric_bins_aggregate_in_order(self):
        df = pd.DataFrame({"x": np.linspace(0, 1, 60_000), "y": np.ones(60_000)})
        spec = VisualizationSpec(chart_type="bar", x_field="x", y_field="y")
        result, metadata = PlanExecutor().execute(QueryPlanner().plan(df, spec), df)

        assert len(result) == 100
        assert str(result["x"][0]).startswith("[0, ")
        assert result["value"].sum() == 60_000
        assert metadata.reduction_reason == ReductionReason.COMBINED
