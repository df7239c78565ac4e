"""
chartguard Engine - Filter predicates.

Turns FilterSpec conditions into polars predicate expressions for the lazy
pipeline. Column types are read from the pandas frame the planner profiles.
Compilation checks the column exists and the value suits the column type, so
calling validate_filters() up front surfaces every filter error before any
data is touched.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import pandas as pd
import polars as pl

from chartguard.engine.safety import dtype_name, is_datetime_series, is_numeric_series
from chartguard.engine.schemas import FilterOperator, FilterSpec
from chartguard.exceptions import ColumnNotFoundException, InvalidFilterException, TypeMismatchException

logger = logging.getLogger(__name__)

_ORDERING_OPS = {FilterOperator.GT, FilterOperator.LT, FilterOperator.GTE, FilterOperator.LTE}
_TEXT_OPS = {FilterOperator.CONTAINS, FilterOperator.STARTS_WITH, FilterOperator.ENDS_WITH}


def _coerce_numeric_value(column: str, value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise TypeMismatchException(
            column=column,
            actual_type=type(value).__name__,
            expected_type="numeric",
            message=f"Filter value for '{column}' must be numeric.",
        )
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise TypeMismatchException(
            column=column,
            actual_type=type(value).__name__,
            expected_type="numeric",
            message=f"Filter value for '{column}' must be numeric.",
        ) from e


def _coerce_datetime_value(column: str, value: Any, tz: Any = None) -> pd.Timestamp:
    """Numbers are epoch milliseconds; strings are parsed."""
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            ts = pd.to_datetime(value, unit="ms")
        else:
            ts = pd.Timestamp(value)
    except (TypeError, ValueError) as e:
        raise TypeMismatchException(
            column=column,
            actual_type=type(value).__name__,
            expected_type="datetime",
            message=f"Filter value for '{column}' must be a date or epoch milliseconds.",
        ) from e
    if pd.isna(ts):
        raise TypeMismatchException(column=column, actual_type="null", expected_type="datetime")
    if tz is not None and ts.tzinfo is None:
        ts = ts.tz_localize(tz)
    return ts


def _is_numeric_like(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(value)
        return True
    except (TypeError, ValueError):
        return False


def _datetime_operand(column: str, series: pd.Series, value: Any) -> tuple[pl.Expr, Any]:
    """Column expression and literal for a datetime comparison.

    Aware columns are compared in UTC with the zone stripped, since polars
    will not compare an aware column with a naive literal.
    """
    tz = getattr(series.dt, "tz", None)
    ts = _coerce_datetime_value(column, value, tz)
    if tz is None:
        return pl.col(column), ts.to_pydatetime()
    expr = pl.col(column).dt.convert_time_zone("UTC").dt.replace_time_zone(None)
    return expr, ts.tz_convert("UTC").tz_localize(None).to_pydatetime()


def compile_filter(flt: FilterSpec, series: pd.Series) -> pl.Expr:
    """Return the predicate for one condition, validating its value against the column.

    The expression is never null: a row whose value is missing fails every
    condition except is_null and neq.
    """
    column = flt.column
    op = FilterOperator(flt.operator)
    value = flt.value

    if op == FilterOperator.IS_NULL:
        return pl.col(column).is_null()
    if op == FilterOperator.IS_NOT_NULL:
        return pl.col(column).is_not_null()

    if op in _TEXT_OPS:
        if not isinstance(value, str):
            raise InvalidFilterException(
                message=f"{op.value} operator requires a string value",
                details={"column": column, "operator": op.value, "value": value},
            )
        text = pl.col(column).cast(pl.String)
        if op == FilterOperator.CONTAINS:
            expr = text.str.contains(value, literal=True)
        elif op == FilterOperator.STARTS_WITH:
            expr = text.str.starts_with(value)
        else:
            expr = text.str.ends_with(value)
        return expr.fill_null(False)

    if is_datetime_series(series):
        expr, target = _datetime_operand(column, series, value)
        return _comparison(expr, op, target)

    if op in _ORDERING_OPS:
        if not is_numeric_series(series):
            raise TypeMismatchException(column=column, actual_type=dtype_name(series), expected_type="numeric")
        return _comparison(pl.col(column), op, _coerce_numeric_value(column, value))

    # eq / neq
    if is_numeric_series(series) and _is_numeric_like(value):
        return _comparison(pl.col(column), op, float(value))
    if isinstance(value, bool) and dtype_name(series) == "boolean":
        return _comparison(pl.col(column), op, value)
    text = "" if value is None else str(value)
    return _comparison(pl.col(column).cast(pl.String), op, text)


def _comparison(expr: pl.Expr, op: FilterOperator, target: Any) -> pl.Expr:
    target = pl.lit(target)
    if op == FilterOperator.EQ:
        return expr.eq_missing(target)
    if op == FilterOperator.NEQ:
        return expr.ne_missing(target)
    if op == FilterOperator.GT:
        result = expr > target
    elif op == FilterOperator.LT:
        result = expr < target
    elif op == FilterOperator.GTE:
        result = expr >= target
    elif op == FilterOperator.LTE:
        result = expr <= target
    else:
        raise InvalidFilterException(message=f"Unsupported operator: {op.value}", details={"operator": op.value})
    return result.fill_null(False)


def compile_filters(df: pd.DataFrame, filters: Iterable[FilterSpec]) -> list[pl.Expr]:
    available = [str(c) for c in df.columns]
    compiled = []
    for flt in filters:
        if flt.column not in df.columns:
            raise ColumnNotFoundException(flt.column, available)
        compiled.append(compile_filter(flt, df[flt.column]))
    return compiled


def validate_filters(df: pd.DataFrame, filters: Iterable[FilterSpec]) -> None:
    """Raise ColumnNotFound / TypeMismatch / InvalidFilter for the first bad condition."""
    compile_filters(df, filters)


def apply_filters(lf: pl.LazyFrame, df: pd.DataFrame, filters: Iterable[FilterSpec]) -> pl.LazyFrame:
    """Add every condition to the lazy frame as one ANDed predicate.

    polars pushes the predicate down to the scan, so no later step sees a
    row that fails it.
    """
    predicates = compile_filters(df, filters)
    if not predicates:
        return lf
    logger.debug(f"[filters] Applying {len(predicates)} condition(s)")
    return lf.filter(*predicates)
