"""Tests for the query planner."""

import numpy as np
import pandas as pd
import pytest

from chartguard.engine.planner import (
    Aggregate,
    DateBin,
    Filter,
    Limit,
    NumericBin,
    QueryPlanner,
    Sample,
    Sort,
    TopN,
)
from chartguard.engine.schemas import (
    AggregationType,
    DateBinGranularity,
    FilterOperator,
    FilterSpec,
    ReductionReason,
    SamplingMethod,
    SortField,
    SortOrder,
    VisualizationSpec,
    ZoomContext,
)
from chartguard.exceptions import ColumnNotFoundException, TypeMismatchException, ValidationException


def _types(plan):
    return [type(t) for t in plan.transformations]


@pytest.fixture
def many_categories() -> pd.DataFrame:
    return pd.DataFrame({"name": [f"c{i:04d}" for i in range(2000)], "amount": np.arange(2000, dtype=float)})


@pytest.fixture
def daily() -> pd.DataFrame:
    return pd.DataFrame(
        {"day": pd.date_range("2024-01-01", periods=1000, freq="D"), "amount": np.ones(1000)}
    )


class TestSimplePlans:
    def test_small_bar_chart_is_not_reduced(self, sales_df):
        spec = VisualizationSpec(chart_type="bar", x_field="category", y_field="revenue")
        plan = QueryPlanner().plan(sales_df, spec)

        assert plan.is_safe is True
        assert _types(plan) == [Aggregate, Limit]
        assert plan.transformations[-1] == Limit(500)
        assert plan.reduction_metadata.reduced is False
        assert plan.reduction_metadata.reduction_reason == ReductionReason.NONE
        assert plan.reduction_metadata.warning_message is None
        assert plan.reduction_metadata.returned_points == 3

    def test_filter_first_and_limit_last(self, sales_df):
        spec = VisualizationSpec(
            chart_type="bar",
            x_field="category",
            y_field="revenue",
            filters=(FilterSpec(column="region", operator=FilterOperator.EQ, value="n"),),
            sort_by=SortField.Y,
            sort_order=SortOrder.DESC,
        )
        plan = QueryPlanner().plan(sales_df, spec)
        assert isinstance(plan.transformations[0], Filter)
        assert isinstance(plan.transformations[-1], Limit)
        assert Sort("value", descending=True) in plan.transformations

    def test_sort_by_x_uses_x_column(self, sales_df):
        spec = VisualizationSpec(chart_type="bar", x_field="category", y_field="revenue", sort_by=SortField.X)
        plan = QueryPlanner().plan(sales_df, spec)
        assert Sort("category", descending=False) in plan.transformations

    def test_plan_is_serializable(self, sales_df):
        spec = VisualizationSpec(chart_type="bar", x_field="category", y_field="revenue")
        payload = QueryPlanner().plan(sales_df, spec).to_dict()
        assert [t["type"] for t in payload["transformations"]] == ["Aggregate", "Limit"]
        assert payload["transformations"][0]["aggregation"] == "sum"
        assert payload["safety_config"]["max_points"] == 500
        assert payload["cardinality_info"]["category"]["cardinality_level"] == "low"


class TestTopN:
    def test_pie_chart_leaves_room_for_others(self):
        df = pd.DataFrame({"slice": [f"s{i}" for i in range(30)], "amount": np.arange(30, dtype=float)})
        spec = VisualizationSpec(chart_type="pie", x_field="slice", y_field="amount")
        plan = QueryPlanner().plan(df, spec)

        top_n = next(t for t in plan.transformations if isinstance(t, TopN))
        assert top_n.n == 19
        assert top_n.include_others is True
        assert plan.transformations[-1] == Limit(20)
        assert plan.reduction_metadata.returned_points == 20
        assert plan.reduction_metadata.top_n_value == 19

    def test_high_cardinality_uses_recommended_n(self, many_categories):
        spec = VisualizationSpec(chart_type="bar", x_field="name", y_field="amount")
        plan = QueryPlanner().plan(many_categories, spec)

        assert TopN("name", 20) in plan.transformations
        metadata = plan.reduction_metadata
        assert metadata.reduction_reason == ReductionReason.COMBINED
        assert metadata.find_step(ReductionReason.TOP_N).description == "Top-20 with Others"
        assert "showing top 20 categories" in metadata.warning_message

    def test_zoom_shrinks_budget(self, many_categories):
        spec = VisualizationSpec(chart_type="bar", x_field="name", y_field="amount")
        plan = QueryPlanner(zoom_context=ZoomContext(zoom_level=0.0)).plan(many_categories, spec)
        assert plan.transformations[-1] == Limit(100)


class TestBinning:
    def test_datetime_axis_auto_binned(self, daily):
        spec = VisualizationSpec(chart_type="line", x_field="day", y_field="amount")
        plan = QueryPlanner().plan(daily, spec)

        assert DateBin("day", DateBinGranularity.MONTH) in plan.transformations
        metadata = plan.reduction_metadata
        assert metadata.date_bin_granularity == DateBinGranularity.MONTH
        assert metadata.find_step(ReductionReason.DATE_BINNING) is not None
        assert metadata.find_step(ReductionReason.AUTO_AGGREGATION) is not None
        assert not any(isinstance(t, TopN) for t in plan.transformations)

    def test_explicit_date_bin_records_no_step(self, daily):
        small = daily.head(50)
        spec = VisualizationSpec(
            chart_type="line", x_field="day", y_field="amount", x_date_bin=DateBinGranularity.WEEK
        )
        plan = QueryPlanner().plan(small, spec)
        assert DateBin("day", DateBinGranularity.WEEK) in plan.transformations
        assert plan.reduction_metadata.reduced is False

    def test_continuous_axis_numeric_binning(self):
        df = pd.DataFrame({"x": np.linspace(0, 1, 60_000), "y": np.ones(60_000)})
        spec = VisualizationSpec(chart_type="bar", x_field="x", y_field="y")
        plan = QueryPlanner().plan(df, spec)

        assert NumericBin("x", 100) in plan.transformations
        assert plan.reduction_metadata.numeric_bin_count == 100
        assert "values binned into 100 ranges" in plan.reduction_metadata.warning_message


class TestSampling:
    def test_scatter_sampled_when_over_budget(self):
        idx = np.arange(50_000)
        df = pd.DataFrame({"x": (idx % 100).astype(float), "y": idx.astype(float), "g": idx % 3})
        spec = VisualizationSpec(chart_type="scatter", x_field="x", y_field="y")
        plan = QueryPlanner().plan(df, spec)

        assert Sample(10_000, 42, SamplingMethod.SYSTEMATIC, None) in plan.transformations
        assert not plan.aggregates
        assert plan.reduction_metadata.sample_ratio == pytest.approx(0.2)
        assert plan.reduction_metadata.reduction_reason == ReductionReason.SAMPLING

    def test_group_by_stratifies(self):
        idx = np.arange(50_000)
        df = pd.DataFrame({"x": (idx % 100).astype(float), "y": idx.astype(float), "g": idx % 3})
        spec = VisualizationSpec(chart_type="scatter", x_field="x", y_field="y", group_by="g")
        plan = QueryPlanner(sampling_seed=7).plan(df, spec)
        assert Sample(10_000, 7, SamplingMethod.STRATIFIED, "g") in plan.transformations

    def test_bar_charts_never_sample(self, many_categories):
        spec = VisualizationSpec(chart_type="bar", x_field="name", y_field="amount")
        plan = QueryPlanner().plan(many_categories, spec)
        assert not any(isinstance(t, Sample) for t in plan.transformations)


class TestIdempotence:
    def test_sampling_plan_is_stable(self):
        idx = np.arange(50_000)
        df = pd.DataFrame({"x": (idx % 100).astype(float), "y": idx.astype(float), "g": idx % 3})
        spec = VisualizationSpec(chart_type="scatter", x_field="x", y_field="y", group_by="g")

        first = QueryPlanner().plan(df, spec)
        second = QueryPlanner().plan(df, spec)

        assert any(isinstance(t, Sample) for t in first.transformations)
        assert first.to_dict() == second.to_dict()

    def test_top_n_plan_is_stable(self, many_categories):
        spec = VisualizationSpec(chart_type="bar", x_field="name", y_field="amount", sort_by="y")
        planner = QueryPlanner()

        first = planner.plan(many_categories, spec)
        second = planner.plan(many_categories, spec)

        assert any(isinstance(t, TopN) for t in first.transformations)
        assert first.to_dict() == second.to_dict()


class TestBlocking:
    def test_all_null_axis_blocks(self):
        df = pd.DataFrame({"x": [None] * 10, "y": np.arange(10, dtype=float)})
        spec = VisualizationSpec(chart_type="bar", x_field="x", y_field="y")
        plan = QueryPlanner().plan(df, spec)

        assert plan.is_safe is False
        assert plan.transformations == []
        assert "Column 'x'" in plan.blocking_reason


class TestValidation:
    def test_missing_column(self, sales_df):
        spec = VisualizationSpec(chart_type="bar", x_field="nope", y_field="revenue")
        with pytest.raises(ColumnNotFoundException):
            QueryPlanner().plan(sales_df, spec)

    def test_missing_group_by(self, sales_df):
        spec = VisualizationSpec(chart_type="bar", x_field="category", y_field="revenue", group_by="nope")
        with pytest.raises(ColumnNotFoundException):
            QueryPlanner().plan(sales_df, spec)

    def test_sum_of_text_column(self, sales_df):
        spec = VisualizationSpec(chart_type="bar", x_field="category", y_field="region")
        with pytest.raises(TypeMismatchException) as exc_info:
            QueryPlanner().plan(sales_df, spec)
        assert exc_info.value.message == "Cannot compute sum of non-numeric column 'region'"

    def test_count_of_text_column_allowed(self, sales_df):
        spec = VisualizationSpec(
            chart_type="bar", x_field="category", y_field="region", aggregation=AggregationType.COUNT
        )
        assert QueryPlanner().plan(sales_df, spec).is_safe

    def test_date_bin_on_non_date(self, sales_df):
        spec = VisualizationSpec(
            chart_type="bar", x_field="category", y_field="revenue", x_date_bin=DateBinGranularity.MONTH
        )
        with pytest.raises(TypeMismatchException):
            QueryPlanner().plan(sales_df, spec)

    def test_y_date_bin_requires_count(self, daily):
        df = daily.assign(label=["a", "b"] * 500)
        spec = VisualizationSpec(
            chart_type="bar", x_field="label", y_field="day", y_date_bin=DateBinGranularity.MONTH
        )
        with pytest.raises(ValidationException):
            QueryPlanner().plan(df, spec)

        counted = spec.model_copy(update={"aggregation": AggregationType.COUNT})
        plan = QueryPlanner().plan(df, counted)
        assert DateBin("day", DateBinGranularity.MONTH) in plan.transformations

    def test_bad_filter_rejected_before_planning(self, sales_df):
        spec = VisualizationSpec(
            chart_type="bar",
            x_field="category",
            y_field="revenue",
            filters=(FilterSpec(column="missing", operator=FilterOperator.EQ, value=1),),
        )
        with pytest.raises(ColumnNotFoundException):
            QueryPlanner().plan(sales_df, spec)
