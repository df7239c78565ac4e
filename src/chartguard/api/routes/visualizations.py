"""
chartguard Visualization Endpoints.

Chart queries: aggregated, scatter, progressive (zoom-aware) and plan explain.
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chartguard.deps import get_query_service, require_plan_explain, require_progressive, require_scatter
from chartguard.engine.schemas import ChartData, VisualizationSpec
from chartguard.engine.service import VisualizationQueryService
from chartguard.schemas import ErrorResponse

router = APIRouter(
    prefix="/api/v1/visualizations",
    tags=["visualizations"],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)


class ProgressiveQueryRequest(BaseModel):
    spec: VisualizationSpec
    zoom_level: float = Field(default=0.0, description="0.0 = overview, 1.0 = full detail; clamped")
    range_start: float | str | None = None
    range_end: float | str | None = None


class ExplainPlanRequest(BaseModel):
    spec: VisualizationSpec
    zoom_level: float | None = None


@router.post("/query", response_model=ChartData)
def query_visualization(
    spec: VisualizationSpec,
    service: VisualizationQueryService = Depends(get_query_service),
) -> ChartData:
    """Aggregated chart data, reduced to the chart type's point budget."""
    return service.execute_visualization_query(spec)


@router.post("/scatter", response_model=ChartData, dependencies=[require_scatter])
def query_scatter(
    spec: VisualizationSpec,
    service: VisualizationQueryService = Depends(get_query_service),
) -> ChartData:
    return service.execute_scatter_query(spec)


@router.post("/progressive", response_model=ChartData, dependencies=[require_progressive])
def query_progressive(
    request: ProgressiveQueryRequest,
    service: VisualizationQueryService = Depends(get_query_service),
) -> ChartData:
    return service.execute_progressive_query(
        request.spec,
        request.zoom_level,
        range_start=request.range_start,
        range_end=request.range_end,
    )


@router.post("/plan", dependencies=[require_plan_explain])
def explain_plan(
    request: ExplainPlanRequest,
    service: VisualizationQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    """
    Show the execution plan without running it.

    Includes the safety policy, every transformation in order, the projected
    reduction metadata and the cardinality estimate for X and Y.
    """
    return service.explain_plan(request.spec, request.zoom_level)
