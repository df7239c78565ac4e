"""
chartguard Engine - Cardinality estimation.

Classifies a column by how many distinct values it has and recommends the
reduction that keeps a chart on it readable. For large columns only the first
CARDINALITY_SAMPLE_SIZE values are inspected and the distinct count is
extrapolated. The extrapolation is a heuristic: it can under-count columns
whose distinct values are spread evenly and over-count columns whose head is
unusually diverse. Callers treat it as a hint, never as a bound.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Union

import pandas as pd

from chartguard.engine.safety import (
    CATEGORICAL_CARDINALITY_THRESHOLD,
    DEFAULT_TOP_N,
    HIGH_CARDINALITY_THRESHOLD,
    MAX_VISUAL_POINTS,
    is_datetime_series,
    is_numeric_series,
    recommended_bin_count,
)
from chartguard.engine.schemas import CardinalityLevel, DateBinGranularity

logger = logging.getLogger(__name__)

CARDINALITY_SAMPLE_SIZE = 10_000
LOW_CARDINALITY_THRESHOLD = 10


# =============================================================================
# Recommended actions (closed set)
# =============================================================================


@dataclass(frozen=True)
class NoAction:
    pass


@dataclass(frozen=True)
class ApplyTopN:
    n: int


@dataclass(frozen=True)
class ApplyBinning:
    bin_count: int


@dataclass(frozen=True)
class ApplyDateBinning:
    granularity: DateBinGranularity


@dataclass(frozen=True)
class ApplySampling:
    ratio: float


@dataclass(frozen=True)
class BlockWithWarning:
    reason: str


CardinalityAction = Union[NoAction, ApplyTopN, ApplyBinning, ApplyDateBinning, ApplySampling, BlockWithWarning]


@dataclass(frozen=True)
class CardinalityInfo:
    column_name: str
    unique_count: int
    total_count: int
    cardinality_level: CardinalityLevel
    is_numeric: bool
    is_datetime: bool
    null_count: int
    recommended_action: CardinalityAction = field(default_factory=NoAction)

    def to_dict(self) -> dict:
        action = self.recommended_action
        return {
            "column_name": self.column_name,
            "unique_count": self.unique_count,
            "total_count": self.total_count,
            "cardinality_level": self.cardinality_level.value,
            "is_numeric": self.is_numeric,
            "is_datetime": self.is_datetime,
            "null_count": self.null_count,
            "recommended_action": {"type": type(action).__name__, **_action_params(action)},
        }


def _action_params(action: CardinalityAction) -> dict:
    params = dict(action.__dict__)
    if isinstance(action, ApplyDateBinning):
        params["granularity"] = action.granularity.value
    return params


# =============================================================================
# Classification
# =============================================================================


def classify(unique_count: int, is_numeric: bool, is_datetime: bool) -> CardinalityLevel:
    if is_numeric and not is_datetime:
        return CardinalityLevel.CONTINUOUS
    if unique_count <= LOW_CARDINALITY_THRESHOLD:
        return CardinalityLevel.LOW
    if unique_count <= CATEGORICAL_CARDINALITY_THRESHOLD:
        return CardinalityLevel.MEDIUM
    if unique_count <= HIGH_CARDINALITY_THRESHOLD:
        return CardinalityLevel.HIGH
    return CardinalityLevel.VERY_HIGH


def recommend_action(
    level: CardinalityLevel,
    unique_count: int,
    is_datetime: bool,
    total_rows: int,
) -> CardinalityAction:
    """Pure mapping from column statistics to the reduction to apply."""
    if total_rows > 0 and unique_count == 0:
        return BlockWithWarning("Column contains only null values")

    if level in (CardinalityLevel.LOW, CardinalityLevel.MEDIUM):
        return NoAction()

    if level == CardinalityLevel.HIGH:
        if is_datetime:
            return ApplyDateBinning(DateBinGranularity.MONTH)
        return ApplyTopN(DEFAULT_TOP_N)

    if level == CardinalityLevel.VERY_HIGH:
        if is_datetime:
            if unique_count > 10_000:
                return ApplyDateBinning(DateBinGranularity.YEAR)
            if unique_count > 1_000:
                return ApplyDateBinning(DateBinGranularity.MONTH)
            return ApplyDateBinning(DateBinGranularity.DAY)
        return ApplyTopN(DEFAULT_TOP_N)

    # Continuous
    if is_datetime:
        return ApplyDateBinning(DateBinGranularity.MONTH)
    if total_rows > MAX_VISUAL_POINTS:
        return ApplyBinning(recommended_bin_count(total_rows))
    return NoAction()


class CardinalityEstimator:
    """Estimate distinct counts with a bounded head sample."""

    def __init__(self, sample_size: int = CARDINALITY_SAMPLE_SIZE):
        self.sample_size = sample_size

    def estimate(self, series: pd.Series, total_rows: int | None = None) -> CardinalityInfo:
        total = len(series) if total_rows is None else total_rows
        is_dt = is_datetime_series(series)
        is_num = is_numeric_series(series)

        sample_n = min(self.sample_size, total)
        sampled_unique = int(series.head(sample_n).nunique(dropna=True))
        if total > sample_n and sample_n > 0:
            scale = max(1.0, math.log(total / sample_n))
            unique_count = math.ceil(sampled_unique * scale)
        else:
            unique_count = sampled_unique

        level = classify(unique_count, is_num, is_dt)
        action = recommend_action(level, unique_count, is_dt, total)
        info = CardinalityInfo(
            column_name=str(series.name),
            unique_count=unique_count,
            total_count=total,
            cardinality_level=level,
            is_numeric=is_num,
            is_datetime=is_dt,
            null_count=int(series.isna().sum()),
            recommended_action=action,
        )
        logger.debug(
            f"[cardinality] {info.column_name}: ~{unique_count} unique of {total} "
            f"({level.value}) -> {type(action).__name__}"
        )
        return info


def estimate_cardinality(series: pd.Series, total_rows: int | None = None) -> CardinalityInfo:
    return CardinalityEstimator().estimate(series, total_rows)


# =============================================================================
# Post-binning group estimates
# =============================================================================


def estimate_date_bin_count(series: pd.Series, granularity: DateBinGranularity) -> int:
    """Upper bound on the number of bins a date column produces, from its span."""
    non_null = series.dropna()
    if non_null.empty:
        return 0
    start, end = non_null.min(), non_null.max()
    years = end.year - start.year
    if granularity == DateBinGranularity.YEAR:
        return years + 1
    if granularity == DateBinGranularity.QUARTER:
        return years * 4 + (end.quarter - start.quarter) + 1
    if granularity == DateBinGranularity.MONTH:
        return years * 12 + (end.month - start.month) + 1
    span = end - start
    if granularity == DateBinGranularity.WEEK:
        return span.days // 7 + 2
    if granularity == DateBinGranularity.DAY:
        return span.days + 1
    return int(span.total_seconds() // 3600) + 1
