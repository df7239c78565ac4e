"""
chartguard Engine - Dataset store.

Holds the loaded tables behind one lock. Queries take a snapshot (a reference
to the active frame) under the lock and release it before doing any work;
frames are never mutated in place, so a snapshot stays valid after the lock
is released.

Each table is held twice: the pandas frame used for profiling and planning,
and a polars copy that queries evaluate lazily.

If an unexpected error escapes while a mutation holds the lock, the store is
marked poisoned and every later access fails with STORE_POISONED until the
process is restarted.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Iterable, Iterator

import pandas as pd
import polars as pl

from chartguard.exceptions import (
    ChartGuardException,
    ColumnNotFoundException,
    DatasetStorePoisonedException,
    MemoryBudgetExceededException,
    NoDataException,
    NotFoundException,
    ReadException,
    TypeMismatchException,
    UnsupportedFormatException,
)

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = [".csv", ".tsv", ".xlsx", ".xls", ".json"]


@dataclass(frozen=True)
class TableInfo:
    name: str
    row_count: int
    columns: list[str]
    dtypes: dict[str, str]
    file_path: str | None
    is_active: bool


@dataclass(frozen=True)
class DatasetSnapshot:
    """The active table as loaded (pandas, for profiling) and as a polars frame (for execution)."""

    table_name: str
    data: pd.DataFrame
    frame: pl.DataFrame
    file_path: str | None

    def lazy(self) -> pl.LazyFrame:
        return self.frame.lazy()


# =============================================================================
# File loading
# =============================================================================


def read_table(path: Path, parse_dates: Iterable[str] = ()) -> pd.DataFrame:
    """Read a CSV/TSV/Excel/JSON file. Only the named columns are parsed as dates."""
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormatException(suffix, SUPPORTED_EXTENSIONS)
    if not path.exists():
        raise NotFoundException("File", str(path))

    try:
        if suffix in (".csv", ".tsv"):
            sep = "\t" if suffix == ".tsv" else ","
            try:
                df = pd.read_csv(path, sep=sep, encoding="utf-8")
            except UnicodeDecodeError:
                df = pd.read_csv(path, sep=sep, encoding="latin-1")
        elif suffix in (".xlsx", ".xls"):
            df = pd.read_excel(path)
        else:
            df = pd.read_json(path)
    except pd.errors.EmptyDataError as e:
        raise NoDataException(f"File '{path.name}' contains no data") from e
    except (pd.errors.ParserError, ValueError, OSError) as e:
        raise ReadException(str(path), str(e)) from e

    if df.columns.empty:
        raise NoDataException(f"File '{path.name}' contains no data")

    # Clean string values - remove surrounding quotes
    for col in df.columns:
        if pd.api.types.is_string_dtype(df[col].dtype):
            df[col] = df[col].apply(lambda x: x.strip("'\"") if isinstance(x, str) else x)

    for column in parse_dates:
        if column not in df.columns:
            raise ColumnNotFoundException(column, [str(c) for c in df.columns])
        raw = df[column]
        parsed = pd.to_datetime(raw, errors="coerce")
        bad = raw.notna() & parsed.isna()
        if bool(bad.any()):
            examples = raw[bad].astype(str).head(5).tolist()
            raise TypeMismatchException(
                column,
                str(raw.dtype),
                "datetime",
                message=f"Column '{column}' contains invalid date/time values: {examples}",
            )
        df[column] = parsed

    return df


def to_polars(name: str, df: pd.DataFrame) -> pl.DataFrame:
    """Execution copy of a loaded table. NaN in float columns becomes null."""
    try:
        return pl.from_pandas(df, nan_to_null=True)
    except (pl.exceptions.PolarsError, TypeError, ValueError) as e:
        raise ReadException(name, f"cannot convert to a columnar frame: {e}") from e


# =============================================================================
# Store
# =============================================================================


class DatasetStore:
    def __init__(self):
        self._lock = Lock()
        self._tables: dict[str, pd.DataFrame] = {}
        self._frames: dict[str, pl.DataFrame] = {}
        self._table_order: list[str] = []
        self._file_paths: dict[str, str | None] = {}
        self._active_table: str | None = None
        self._poisoned = False

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            if self._poisoned:
                raise DatasetStorePoisonedException()
            try:
                yield
            except ChartGuardException:
                raise
            except Exception:
                self._poisoned = True
                logger.error("[store] Mutation failed while holding the lock; store poisoned")
                raise

    @property
    def is_poisoned(self) -> bool:
        return self._poisoned

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def add_dataframe(
        self,
        name: str,
        df: pd.DataFrame,
        file_path: str | None = None,
        activate: bool = True,
    ) -> None:
        frame = to_polars(str(name), df)
        with self._guard():
            if name not in self._tables:
                self._table_order.append(name)
            self._tables[name] = df
            self._frames[name] = frame
            self._file_paths[name] = file_path
            if activate or self._active_table is None:
                self._active_table = name
        logger.info(f"[store] Added table '{name}' ({len(df)} rows, {len(df.columns)} columns)")

    def set_active_table(self, name: str) -> None:
        with self._guard():
            if name not in self._tables:
                raise NotFoundException("Table", name)
            self._active_table = name

    def clear(self) -> None:
        with self._guard():
            self._tables.clear()
            self._frames.clear()
            self._table_order.clear()
            self._file_paths.clear()
            self._active_table = None

    def load_file(
        self,
        path: str | Path,
        table_name: str | None = None,
        parse_dates: Iterable[str] = (),
        max_memory_mb: float | None = None,
    ) -> TableInfo:
        """Read a file outside the lock, then register it as the active table."""
        file_path = Path(path)
        df = read_table(file_path, parse_dates)
        if max_memory_mb is not None:
            size_mb = df.memory_usage(index=True, deep=False).sum() / (1024 * 1024)
            if size_mb > max_memory_mb:
                raise MemoryBudgetExceededException(size_mb, max_memory_mb)

        name = table_name or file_path.stem
        self.add_dataframe(name, df, file_path=str(file_path))
        return self._info(name, df, str(file_path), True)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def has_data(self) -> bool:
        with self._guard():
            return self._active_table is not None

    def snapshot(self) -> DatasetSnapshot:
        """Reference to the active table, taken under the lock."""
        with self._guard():
            if self._active_table is None:
                raise NoDataException()
            name = self._active_table
            return DatasetSnapshot(name, self._tables[name], self._frames[name], self._file_paths.get(name))

    def get_active_dataframe(self) -> pd.DataFrame:
        return self.snapshot().data

    def get_tables(self) -> list[TableInfo]:
        with self._guard():
            return [
                self._info(name, self._tables[name], self._file_paths.get(name), name == self._active_table)
                for name in self._table_order
            ]

    @staticmethod
    def _info(name: str, df: pd.DataFrame, file_path: str | None, is_active: bool) -> TableInfo:
        return TableInfo(
            name=name,
            row_count=len(df),
            columns=[str(c) for c in df.columns],
            dtypes={str(col): str(dtype) for col, dtype in df.dtypes.items()},
            file_path=file_path,
            is_active=is_active,
        )
