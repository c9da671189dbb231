from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class LimitsModel(BaseModel):
    max_processing_rows: Optional[int] = None
    max_chart_items: Optional[int] = None
    remote_row_threshold: Optional[int] = None
    remote_limit: Optional[int] = None


class FilterModel(BaseModel):
    field: str
    operator: str = "equals"
    value: Any = None
    values: List[Any] = Field(default_factory=list)
    value2: Any = None
    enabled: bool = True
    id: Optional[str] = None


class GlobalFilterModel(FilterModel):
    name: str = ""
    applied_to_widgets: List[str] = Field(default_factory=list)


class BreadcrumbModel(BaseModel):
    level: int
    value: Any = None


class DrillStateModel(BaseModel):
    current_level: int = 0
    breadcrumbs: List[BreadcrumbModel] = Field(default_factory=list)


class SeriesRequest(BaseModel):
    widget: Dict[str, Any]
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    data_source_id: Optional[str] = None
    cross_filters: List[FilterModel] = Field(default_factory=list)
    global_filters: List[GlobalFilterModel] = Field(default_factory=list)
    drill_state: Optional[DrillStateModel] = None
    limits: LimitsModel = Field(default_factory=LimitsModel)
    include_chart: bool = True


class BoxModel(BaseModel):
    x: int = 0
    y: int = 0
    w: int = 6
    h: int = 4


class PlaceRequest(BaseModel):
    existing: List[BoxModel] = Field(default_factory=list)
    width: int = 6
    height: int = 4
    requested_x: Optional[int] = None
    requested_y: Optional[int] = None


class EvaluateRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    filters: List[FilterModel] = Field(default_factory=list)


class DatasetRequest(BaseModel):
    source_id: str
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    total_row_count: Optional[int] = None


class DashboardCreate(BaseModel):
    title: str = "Untitled"
    data_source_id: Optional[str] = None
    id: Optional[str] = None


class SelectRequest(BaseModel):
    value: Any = None
    field: Optional[str] = None


class DrillDownRequest(BaseModel):
    value: Any = None
    expand: bool = False


class CalculatedFieldRequest(BaseModel):
    name: str
    formula: str
    type: str = "number"
    widget_id: Optional[str] = None
