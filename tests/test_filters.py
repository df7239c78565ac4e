"""Tests for filter compilation."""

import pandas as pd
import pytest

from chartguard.engine.filters import apply_filters, compile_filter, validate_filters
from chartguard.engine.schemas import FilterOperator, FilterSpec
from chartguard.engine.store import to_polars
from chartguard.exceptions import ColumnNotFoundException, InvalidFilterException, TypeMismatchException


@pytest.fixture
def frame() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "name": ["alpha", "beta", None, "gamma"],
            "amount": [10.0, 20.0, 30.0, None],
            "active": [True, False, True, False],
            "day": pd.to_datetime(["2024-01-01", "2024-02-01", "2024-03-01", None]),
        }
    )


def _mask(frame, column, operator, value=None):
    predicate = compile_filter(FilterSpec(column=column, operator=operator, value=value), frame[column])
    return to_polars("t", frame).select(predicate.alias("keep"))["keep"].to_list()


class TestOperators:
    def test_numeric_ordering(self, frame):
        assert _mask(frame, "amount", FilterOperator.GT, 15) == [False, True, True, False]
        assert _mask(frame, "amount", FilterOperator.LTE, "20") == [True, True, False, False]

    def test_numeric_equality(self, frame):
        assert _mask(frame, "amount", FilterOperator.EQ, 20) == [False, True, False, False]

    def test_text_operators(self, frame):
        assert _mask(frame, "name", FilterOperator.CONTAINS, "a") == [True, True, False, True]
        assert _mask(frame, "name", FilterOperator.STARTS_WITH, "be") == [False, True, False, False]
        assert _mask(frame, "name", FilterOperator.ENDS_WITH, "ma") == [False, False, False, True]

    def test_contains_is_literal(self):
        df = pd.DataFrame({"s": ["a.b", "axb"]})
        assert _mask(df, "s", FilterOperator.CONTAINS, ".") == [True, False]

    def test_null_checks(self, frame):
        assert _mask(frame, "name", FilterOperator.IS_NULL) == [False, False, True, False]
        assert _mask(frame, "amount", FilterOperator.IS_NOT_NULL) == [True, True, True, False]

    def test_string_equality(self, frame):
        assert _mask(frame, "name", FilterOperator.EQ, "beta") == [False, True, False, False]
        assert _mask(frame, "name", FilterOperator.NEQ, "beta") == [True, False, True, True]

    def test_boolean_equality(self, frame):
        assert _mask(frame, "active", FilterOperator.EQ, True) == [True, False, True, False]

    def test_datetime_from_string(self, frame):
        assert _mask(frame, "day", FilterOperator.GTE, "2024-02-01") == [False, True, True, False]

    def test_datetime_from_epoch_millis(self, frame):
        millis = int(pd.Timestamp("2024-02-01").timestamp() * 1000)
        assert _mask(frame, "day", FilterOperator.LT, millis) == [True, False, False, False]


class TestValidation:
    def test_unknown_column(self, frame):
        with pytest.raises(ColumnNotFoundException) as exc_info:
            validate_filters(frame, [FilterSpec(column="missing", operator=FilterOperator.EQ, value=1)])
        assert exc_info.value.code == "COLUMN_NOT_FOUND"

    def test_ordering_on_text_column(self, frame):
        with pytest.raises(TypeMismatchException):
            validate_filters(frame, [FilterSpec(column="name", operator=FilterOperator.GT, value=1)])

    def test_non_numeric_value(self, frame):
        with pytest.raises(TypeMismatchException):
            validate_filters(frame, [FilterSpec(column="amount", operator=FilterOperator.GT, value="lots")])

    def test_boolean_value_is_not_numeric(self, frame):
        with pytest.raises(TypeMismatchException):
            validate_filters(frame, [FilterSpec(column="amount", operator=FilterOperator.LT, value=True)])

    def test_text_operator_needs_string(self, frame):
        with pytest.raises(InvalidFilterException) as exc_info:
            validate_filters(frame, [FilterSpec(column="name", operator=FilterOperator.CONTAINS, value=3)])
        assert exc_info.value.code == "INVALID_FILTER"

    def test_bad_date_value(self, frame):
        with pytest.raises(TypeMismatchException):
            validate_filters(frame, [FilterSpec(column="day", operator=FilterOperator.GT, value="not a date")])


class TestApplyFilters:
    def test_conditions_are_anded(self, frame):
        filters = [
            FilterSpec(column="amount", operator=FilterOperator.GTE, value=10),
            FilterSpec(column="active", operator=FilterOperator.EQ, value=True),
        ]
        lf = apply_filters(to_polars("t", frame).lazy(), frame, filters)
        assert lf.collect()["amount"].to_list() == [10.0, 30.0]

    def test_no_conditions_leaves_frame_alone(self, frame):
        lf = to_polars("t", frame).lazy()
        assert apply_filters(lf, frame, []) is lf

    def test_tz_aware_column(self):
        df = pd.DataFrame({"at": pd.to_datetime(["2024-01-01 10:00", "2024-01-01 12:00"]).tz_localize("UTC")})
        lf = apply_filters(
            to_polars("t", df).lazy(),
            df,
            [FilterSpec(column="at", operator=FilterOperator.GT, value="2024-01-01 11:00")],
        )
        assert lf.collect().height == 1
