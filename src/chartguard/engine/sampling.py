"""
chartguard Engine - Deterministic sampling.

Four strategies for reducing rows to a target size. All are deterministic in
(data, target_size, seed): the same input always yields the same rows, so a
chart redrawn after a refresh does not shuffle.

- Reservoir: rank rows by a seeded hash of their position, keep the lowest.
- Stratified: reservoir per stratum, proportional with a per-stratum floor.
- Systematic: every k-th row from a seeded offset.
- Hash: keep rows whose hashed position falls in one residue class.

Samplers work on a polars LazyFrame. They choose row positions and return a
lazy frame filtered to those positions, so the sampled rows are only
materialized by the final collect.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np
import polars as pl

from chartguard.engine.safety import DEFAULT_SCATTER_LIMIT, SAMPLING_SEED
from chartguard.engine.schemas import SamplingMethod

logger = logging.getLogger(__name__)

HASH_PRIME = 1_000_000_007
# Knuth's multiplicative hash constant
HASH_MULTIPLIER = 2_654_435_761
DEFAULT_TARGET_SIZE = 10_000

ROW_INDEX = "__row__"


@dataclass(frozen=True)
class SamplingConfig:
    target_size: int = DEFAULT_TARGET_SIZE
    seed: int = SAMPLING_SEED
    preserve_distribution: bool = True
    stratify_by: str | None = None
    min_samples_per_stratum: int = 10


@dataclass(frozen=True)
class StratumStats:
    stratum_value: str
    original_count: int
    sampled_count: int
    sample_ratio: float


@dataclass
class SamplingResult:
    data: pl.LazyFrame
    original_rows: int
    sampled_rows: int
    sample_ratio: float
    distribution_preserved: bool
    method: SamplingMethod
    strata_stats: list[StratumStats] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_rows": self.original_rows,
            "sampled_rows": self.sampled_rows,
            "sample_ratio": self.sample_ratio,
            "distribution_preserved": self.distribution_preserved,
            "method": self.method.value,
            "strata_stats": [s.__dict__ for s in self.strata_stats] if self.strata_stats else None,
        }


def reservoir_positions(total_rows: int, target_size: int, seed: int) -> np.ndarray:
    """Positions of the target_size rows with the lowest seeded hash score, in row order.

    The score multiplies the position by the seed modulo a large prime, then
    mixes it once more so that small seeds do not simply select a prefix.
    """
    if total_rows <= target_size:
        return np.arange(total_rows)
    multiplier = (seed % HASH_PRIME) or 1
    idx = np.arange(total_rows, dtype=np.int64)
    scores = (idx * multiplier) % HASH_PRIME
    scores = (scores * HASH_MULTIPLIER) % HASH_PRIME
    chosen = np.argsort(scores, kind="stable")[:target_size]
    return np.sort(chosen)


def allocate_strata(sizes: Sequence[int], target_size: int, floor: int) -> list[int]:
    """Rows to draw from each stratum; the allocations never sum past target_size.

    Each stratum first gets min(floor, size). When there are too many strata
    for everyone to get the floor, the floor shrinks to target_size // strata.
    The remaining budget is split in proportion to stratum size, rounded by
    largest remainder (ties go to the earlier stratum).
    """
    if not sizes:
        return []
    total = sum(sizes)
    if total <= target_size:
        return list(sizes)

    floor = max(0, min(floor, target_size // len(sizes)))
    minimums = [min(floor, size) for size in sizes]
    budget = target_size - sum(minimums)

    ratio = target_size / total
    wanted = [max(size * ratio - low, 0.0) for size, low in zip(sizes, minimums)]
    # Proportional share can never take a stratum past its size.
    wanted = [min(w, size - low) for w, size, low in zip(wanted, sizes, minimums)]
    requested = sum(wanted)
    if requested > budget and requested > 0:
        wanted = [w * budget / requested for w in wanted]

    extra = [math.floor(w) for w in wanted]
    leftover = min(budget, round(sum(wanted))) - sum(extra)
    by_remainder = sorted(range(len(sizes)), key=lambda i: (-(wanted[i] - extra[i]), i))
    for i in by_remainder:
        if leftover <= 0:
            break
        if minimums[i] + extra[i] < sizes[i]:
            extra[i] += 1
            leftover -= 1

    return [min(low + e, size) for low, e, size in zip(minimums, extra, sizes)]


def take_positions(lf: pl.LazyFrame, positions: np.ndarray) -> pl.LazyFrame:
    """Keep the rows at the given 0-based positions, in their original order."""
    keep = pl.Series(ROW_INDEX, np.asarray(positions, dtype=np.int64))
    return (
        lf.with_row_index(ROW_INDEX)
        .filter(pl.col(ROW_INDEX).cast(pl.Int64).is_in(keep))
        .drop(ROW_INDEX)
    )


def count_rows(lf: pl.LazyFrame) -> int:
    return int(lf.select(pl.len()).collect().item())


class BaseSampler(ABC):
    """Common contract for all samplers."""

    method: SamplingMethod

    def __init__(self, config: SamplingConfig | None = None):
        self.config = config or SamplingConfig()

    def sample(self, data: pl.LazyFrame | pl.DataFrame, total_rows: int | None = None) -> SamplingResult:
        lf = data.lazy()
        total = count_rows(lf) if total_rows is None else total_rows
        if total <= self.config.target_size:
            return SamplingResult(
                data=lf,
                original_rows=total,
                sampled_rows=total,
                sample_ratio=1.0,
                distribution_preserved=True,
                method=self.method,
            )
        result = self._sample(lf, total)
        logger.debug(
            f"[sampling] {self.method.value}: {result.original_rows} -> {result.sampled_rows} rows "
            f"(seed={self.config.seed})"
        )
        return result

    @abstractmethod
    def _sample(self, lf: pl.LazyFrame, total: int) -> SamplingResult:
        ...

    def _result(self, lf: pl.LazyFrame, positions: np.ndarray, total: int, preserved: bool = True) -> SamplingResult:
        sampled = len(positions)
        return SamplingResult(
            data=take_positions(lf, positions),
            original_rows=total,
            sampled_rows=sampled,
            sample_ratio=sampled / total if total else 1.0,
            distribution_preserved=preserved,
            method=self.method,
        )


class ReservoirSampler(BaseSampler):
    method = SamplingMethod.RESERVOIR

    def _sample(self, lf: pl.LazyFrame, total: int) -> SamplingResult:
        positions = reservoir_positions(total, self.config.target_size, self.config.seed)
        return self._result(lf, positions, total)


class StratifiedSampler(BaseSampler):
    """Proportional per-stratum sampling with a minimum per stratum.

    Only the stratify column is collected to learn the strata; the sample
    never exceeds target_size. Without a stratify column this is plain
    reservoir sampling.
    """

    method = SamplingMethod.STRATIFIED

    def _sample(self, lf: pl.LazyFrame, total: int) -> SamplingResult:
        column = self.config.stratify_by
        if not column or column not in lf.collect_schema().names():
            return ReservoirSampler(self.config).sample(lf, total)

        strata = (
            lf.select(pl.col(column))
            .with_row_index(ROW_INDEX)
            .group_by(column)
            .agg(pl.col(ROW_INDEX))
            .sort(column, nulls_last=True)
            .collect()
        )
        values = strata[column].to_list()
        members = [np.asarray(rows, dtype=np.int64) for rows in strata[ROW_INDEX].to_list()]
        allocations = allocate_strata(
            [len(rows) for rows in members], self.config.target_size, self.config.min_samples_per_stratum
        )

        picked: list[np.ndarray] = []
        stats: list[StratumStats] = []
        for i, (value, rows, target) in enumerate(zip(values, members, allocations)):
            size = len(rows)
            chosen = rows[reservoir_positions(size, target, self.config.seed + i)] if target else rows[:0]
            picked.append(chosen)
            stats.append(
                StratumStats(
                    stratum_value=str(value),
                    original_count=size,
                    sampled_count=len(chosen),
                    sample_ratio=len(chosen) / size if size else 0.0,
                )
            )

        positions = np.sort(np.concatenate(picked)) if picked else np.empty(0, dtype=np.int64)
        result = self._result(lf, positions, total)
        result.strata_stats = stats
        return result


class SystematicSampler(BaseSampler):
    """Every k-th row. Keeps the row order, which suits scatter plots over ordered data."""

    method = SamplingMethod.SYSTEMATIC

    def _sample(self, lf: pl.LazyFrame, total: int) -> SamplingResult:
        step = math.ceil(total / self.config.target_size)
        start = self.config.seed % step
        positions = np.arange(start, total, step)[: self.config.target_size]
        return self._result(lf, positions, total)


class HashSampler(BaseSampler):
    """Residue-class sampling. Fast, but the result size only approximates the target."""

    method = SamplingMethod.HASH

    def _sample(self, lf: pl.LazyFrame, total: int) -> SamplingResult:
        modulo = math.ceil(total / self.config.target_size)
        idx = np.arange(total, dtype=np.uint64)
        hashed = idx * np.uint64(HASH_MULTIPLIER) + np.uint64(self.config.seed % HASH_PRIME)
        positions = np.flatnonzero(hashed % np.uint64(modulo) == 0)[: self.config.target_size]
        return self._result(lf, positions, total, preserved=False)


_SAMPLERS: dict[SamplingMethod, type[BaseSampler]] = {
    SamplingMethod.RESERVOIR: ReservoirSampler,
    SamplingMethod.STRATIFIED: StratifiedSampler,
    SamplingMethod.SYSTEMATIC: SystematicSampler,
    SamplingMethod.HASH: HashSampler,
}


def get_sampler(method: SamplingMethod, config: SamplingConfig | None = None) -> BaseSampler:
    return _SAMPLERS[SamplingMethod(method)](config)


def auto_sample(
    data: pl.LazyFrame | pl.DataFrame,
    target_size: int,
    stratify_by: str | None = None,
    seed: int = SAMPLING_SEED,
) -> SamplingResult:
    """Stratified when a stratify column is given, reservoir otherwise."""
    config = SamplingConfig(target_size=target_size, seed=seed, stratify_by=stratify_by)
    method = SamplingMethod.STRATIFIED if stratify_by else SamplingMethod.RESERVOIR
    return get_sampler(method, config).sample(data)


def scatter_sample(data: pl.LazyFrame | pl.DataFrame, seed: int = SAMPLING_SEED) -> SamplingResult:
    config = SamplingConfig(target_size=DEFAULT_SCATTER_LIMIT, seed=seed)
    return SystematicSampler(config).sample(data)
