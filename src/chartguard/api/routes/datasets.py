"""
chartguard Dataset Endpoints.

Load files into the dataset store and pick the active table.
"""

from pathlib import Path

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chartguard.config import Settings, get_settings
from chartguard.deps import get_dataset_store, require_dataset_loading
from chartguard.engine.store import DatasetStore, TableInfo

router = APIRouter(prefix="/api/v1/datasets", tags=["datasets"])


class LoadDatasetRequest(BaseModel):
    path: str
    table_name: str | None = None
    parse_dates: list[str] = Field(default_factory=list, description="Columns to parse as datetimes")


class SetActiveTableRequest(BaseModel):
    name: str


class TableInfoResponse(BaseModel):
    name: str
    row_count: int
    columns: list[str]
    dtypes: dict[str, str]
    file_path: str | None = None
    is_active: bool

    @classmethod
    def from_info(cls, info: TableInfo) -> "TableInfoResponse":
        return cls(**info.__dict__)


@router.post("/load", response_model=TableInfoResponse, dependencies=[require_dataset_loading])
def load_dataset(
    request: LoadDatasetRequest,
    store: DatasetStore = Depends(get_dataset_store),
    settings: Settings = Depends(get_settings),
) -> TableInfoResponse:
    path = Path(request.path)
    if not path.is_absolute() and settings.query.data_dir:
        path = Path(settings.query.data_dir) / path
    info = store.load_file(
        path,
        table_name=request.table_name,
        parse_dates=request.parse_dates,
        max_memory_mb=settings.query.max_dataset_memory_mb,
    )
    return TableInfoResponse.from_info(info)


@router.get("", response_model=list[TableInfoResponse])
def list_datasets(store: DatasetStore = Depends(get_dataset_store)) -> list[TableInfoResponse]:
    return [TableInfoResponse.from_info(info) for info in store.get_tables()]


@router.put("/active", response_model=list[TableInfoResponse])
def set_active_dataset(
    request: SetActiveTableRequest,
    store: DatasetStore = Depends(get_dataset_store),
) -> list[TableInfoResponse]:
    store.set_active_table(request.name)
    return [TableInfoResponse.from_info(info) for info in store.get_tables()]


@router.delete("", status_code=204)
def clear_datasets(store: DatasetStore = Depends(get_dataset_store)) -> None:
    store.clear()
