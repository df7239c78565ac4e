"""
chartguard - Dependency Injection.

FastAPI dependencies for settings, feature flags, the dataset store and the
query service.
"""

from typing import Annotated

from fastapi import Depends, Request

from chartguard.config import FeatureFlags, Settings, get_settings
from chartguard.engine.service import VisualizationQueryService
from chartguard.engine.store import DatasetStore
from chartguard.exceptions import FeatureDisabledException


# =============================================================================
# Settings Dependencies
# =============================================================================


def get_features(settings: Annotated[Settings, Depends(get_settings)]) -> FeatureFlags:
    """Get feature flags from settings."""
    return settings.features


# =============================================================================
# Engine
# =============================================================================


def get_dataset_store(request: Request) -> DatasetStore:
    """The store owned by the running application."""
    return request.app.state.dataset_store


def get_query_service(
    store: Annotated[DatasetStore, Depends(get_dataset_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> VisualizationQueryService:
    return VisualizationQueryService(store, settings=settings.query)


# =============================================================================
# Feature Flag Guards
# =============================================================================


def require_feature(feature_name: str):
    """Create a dependency that requires a specific feature to be enabled."""

    def check_feature(features: Annotated[FeatureFlags, Depends(get_features)]) -> bool:
        if not getattr(features, feature_name, False):
            raise FeatureDisabledException(feature_name)
        return True

    return check_feature


# Specific feature guards
require_scatter = Depends(require_feature("scatter"))
require_tables = Depends(require_feature("tables"))
require_progressive = Depends(require_feature("progressive"))
require_plan_explain = Depends(require_feature("plan_explain"))
require_dataset_loading = Depends(require_feature("dataset_loading"))
