"""
chartguard Table Endpoints.

Paginated row access for the data grid.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chartguard.deps import get_query_service, require_tables
from chartguard.engine.safety import DEFAULT_TABLE_PAGE_SIZE
from chartguard.engine.schemas import FilterSpec, TableData
from chartguard.engine.service import VisualizationQueryService
from chartguard.schemas import ErrorResponse

router = APIRouter(
    prefix="/api/v1/tables",
    tags=["tables"],
    dependencies=[require_tables],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)


class TableQueryRequest(BaseModel):
    columns: list[str] | None = None
    page: int = Field(default=0, ge=0)
    page_size: int = Field(default=DEFAULT_TABLE_PAGE_SIZE, description="Clamped to [1, 1000]")
    sort_column: str | None = None
    sort_desc: bool = False
    filters: list[FilterSpec] = Field(default_factory=list)


@router.post("/query", response_model=TableData)
def query_table(
    request: TableQueryRequest,
    service: VisualizationQueryService = Depends(get_query_service),
) -> TableData:
    return service.execute_table_query(
        columns=request.columns,
        page=request.page,
        page_size=request.page_size,
        sort_column=request.sort_column,
        sort_desc=request.sort_desc,
        filters=request.filters,
    )
