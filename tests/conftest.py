"""Shared fixtures for engine and API tests."""

import numpy as np
import pandas as pd
import pytest

from chartguard.config import QuerySettings
from chartguard.engine.service import VisualizationQueryService
from chartguard.engine.store import DatasetStore
from chartguard.observability import MetricsStore


@pytest.fixture
def sales_df() -> pd.DataFrame:
    """10 rows, 3 categories: A=30+10+15=55, B=20+25+22=67, C=12+18+14+18=62."""
    return pd.DataFrame(
        {
            "category": ["A", "B", "A", "C", "B", "A", "C", "B", "C", "C"],
            "revenue": [30, 20, 10, 12, 25, 15, 18, 22, 14, 18],
            "region": ["n", "s", "s", "n", "n", "s", "n", "s", "s", "n"],
        }
    )


@pytest.fixture
def large_numeric_df() -> pd.DataFrame:
    n = 1_000_000
    idx = np.arange(n)
    return pd.DataFrame({"x": idx.astype(float), "y": (idx % 97).astype(float)})


@pytest.fixture
def metrics() -> MetricsStore:
    return MetricsStore()


def make_service(df: pd.DataFrame, metrics: MetricsStore, **settings) -> VisualizationQueryService:
    store = DatasetStore()
    store.add_dataframe("data", df)
    return VisualizationQueryService(store, settings=QuerySettings(**settings), metrics=metrics)


@pytest.fixture
def service_factory(metrics):
    def factory(df: pd.DataFrame, **settings) -> VisualizationQueryService:
        return make_service(df, metrics, **settings)

    return factory
