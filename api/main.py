from __future__ import annotations

from dataclasses import asdict
import logging
import math
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
from fastapi import Body, FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.schemas import (
    CalculatedFieldRequest,
    DashboardCreate,
    DatasetRequest,
    DrillDownRequest,
    DrillStateModel,
    EvaluateRequest,
    PlaceRequest,
    SelectRequest,
    SeriesRequest,
)
from bi_core.accessors import InMemoryDatasetAccessor
from bi_core.charts import series_spec
from bi_core.errors import BIError, StoreError
from bi_core.fields import frame_to_records, records_to_frame
from bi_core.filters import apply_filters
from bi_core.grid import place
from bi_core.models import Breadcrumb, DrillDownState, GridBox, Widget, normalize_filter, normalize_widget
from bi_core.pipeline import SeriesResult, compute_series, compute_series_remote, requires_remote
from bi_core.settings import load_limits
from bi_core.store import DashboardStore


app = FastAPI(title="BI Widget Pipeline API", version="0.1.0")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

LIMITS = load_limits()
accessor = InMemoryDatasetAccessor(remote_row_threshold=LIMITS.remote_row_threshold)
store = DashboardStore(accessor, limits=LIMITS)


def _json(data: object, status_code: int = 200) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except Exception:
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        ),
    )


def _error(exc: Exception, name: str) -> JSONResponse:
    if isinstance(exc, StoreError):
        return JSONResponse(status_code=404, content={"error": str(exc), "type": type(exc).__name__})
    if isinstance(exc, (BIError, ValueError)):
        return JSONResponse(status_code=400, content={"error": str(exc), "type": type(exc).__name__})
    logger.exception("%s failed", name)
    return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


def _drill_state(widget: Widget, model: Optional[DrillStateModel]) -> Optional[DrillDownState]:
    if model is None or not widget.drill_down_hierarchy:
        return None
    hierarchy = tuple(widget.drill_down_hierarchy)
    level = max(0, min(model.current_level, len(hierarchy) - 1))
    crumbs = tuple(Breadcrumb(level=c.level, value=c.value) for c in model.breadcrumbs if c.level < level)
    return DrillDownState(hierarchy=hierarchy, current_level=level, breadcrumbs=crumbs, widget_id=widget.id)


def _series_payload(result: SeriesResult, widget: Widget, include_chart: bool = True) -> Dict[str, Any]:
    payload = result.to_dict()
    payload["widget_id"] = widget.id
    payload["chart"] = series_spec(result, widget.chart_type, widget.title) if include_chart else None
    return payload


def _drill_payload(state: Optional[DrillDownState]) -> Dict[str, Any]:
    if state is None:
        return {"drill_state": None}
    return {"drill_state": asdict(state)}


@app.get("/meta/limits")
def meta_limits():
    try:
        return _json(asdict(LIMITS))
    except Exception as exc:
        return _error(exc, "meta_limits")


@app.post("/datasets")
def register_dataset(req: DatasetRequest):
    try:
        dataset = accessor.register(req.source_id, req.rows, total_row_count=req.total_row_count)
        return _json(
            {
                "source_id": dataset.source_id,
                "row_count": dataset.row_count,
                "remote_aggregation": dataset.remote_aggregation,
                "schema": [asdict(f) for f in dataset.schema],
            }
        )
    except Exception as exc:
        return _error(exc, "register_dataset")


@app.post("/series")
async def series(req: SeriesRequest):
    try:
        widget = normalize_widget(req.widget, columns=LIMITS.grid_columns)
        overrides = {k: v for k, v in req.limits.model_dump().items() if v is not None}
        limits = load_limits({**asdict(LIMITS), **overrides}) if overrides else LIMITS
        cross = [f.model_dump() for f in req.cross_filters]
        global_filters = [f.model_dump() for f in req.global_filters]
        drill = _drill_state(widget, req.drill_state)
        if req.data_source_id:
            dataset = accessor.get_dataset(req.data_source_id)
            if requires_remote(dataset, limits):
                result = await compute_series_remote(widget, accessor, dataset.source_id, cross, global_filters, drill, limits)
                return _json(_series_payload(result, widget, req.include_chart))
            rows = dataset
        else:
            rows = records_to_frame(req.rows)
        result = compute_series(widget, rows, cross, global_filters, drill, limits)
        return _json(_series_payload(result, widget, req.include_chart))
    except Exception as exc:
        return _error(exc, "series")


@app.post("/layout/place")
def layout_place(req: PlaceRequest):
    try:
        existing = [GridBox(**b.model_dump()) for b in req.existing]
        x, y = place(
            existing,
            req.width,
            req.height,
            req.requested_x,
            req.requested_y,
            columns=LIMITS.grid_columns,
            margin=LIMITS.grid_scan_margin,
        )
        return _json({"x": x, "y": y})
    except Exception as exc:
        return _error(exc, "layout_place")


@app.post("/filters/evaluate")
def filters_evaluate(req: EvaluateRequest):
    try:
        frame = records_to_frame(req.rows)
        filtered = apply_filters(frame, [normalize_filter(f.model_dump()) for f in req.filters])
        return _json({"rows": frame_to_records(filtered), "matched": int(len(filtered)), "total": int(len(frame))})
    except Exception as exc:
        return _error(exc, "filters_evaluate")


@app.post("/dashboards")
def create_dashboard(req: DashboardCreate):
    try:
        dashboard = store.create_dashboard(req.title, data_source_id=req.data_source_id, dashboard_id=req.id)
        return _json(asdict(dashboard), status_code=201)
    except Exception as exc:
        return _error(exc, "create_dashboard")


@app.get("/dashboards/{dashboard_id}")
def get_dashboard(dashboard_id: str):
    try:
        return _json(asdict(store.get_dashboard(dashboard_id)))
    except Exception as exc:
        return _error(exc, "get_dashboard")


@app.post("/dashboards/{dashboard_id}/widgets")
def add_widget(dashboard_id: str, widget: Dict[str, Any] = Body(...), page_id: Optional[str] = Query(default=None)):
    try:
        created = store.add_widget(dashboard_id, widget, page_id=page_id)
        return _json(asdict(created), status_code=201)
    except Exception as exc:
        return _error(exc, "add_widget")


@app.patch("/dashboards/{dashboard_id}/widgets/{widget_id}")
def update_widget(dashboard_id: str, widget_id: str, changes: Dict[str, Any] = Body(...)):
    try:
        return _json(asdict(store.update_widget(dashboard_id, widget_id, changes)))
    except Exception as exc:
        return _error(exc, "update_widget")


@app.delete("/dashboards/{dashboard_id}/widgets/{widget_id}")
def delete_widget(dashboard_id: str, widget_id: str):
    try:
        store.delete_widget(dashboard_id, widget_id)
        return _json({"deleted": widget_id})
    except Exception as exc:
        return _error(exc, "delete_widget")


@app.post("/dashboards/{dashboard_id}/widgets/{widget_id}/drill-down")
def widget_drill_down(dashboard_id: str, widget_id: str, req: DrillDownRequest):
    try:
        if req.expand:
            state = store.expand_next_level(dashboard_id, widget_id)
        else:
            state = store.drill_down(dashboard_id, widget_id, req.value)
        return _json(_drill_payload(state))
    except Exception as exc:
        return _error(exc, "widget_drill_down")


@app.post("/dashboards/{dashboard_id}/widgets/{widget_id}/drill-up")
def widget_drill_up(dashboard_id: str, widget_id: str):
    try:
        return _json(_drill_payload(store.drill_up(dashboard_id, widget_id)))
    except Exception as exc:
        return _error(exc, "widget_drill_up")


@app.post("/dashboards/{dashboard_id}/widgets/{widget_id}/select")
def widget_select(dashboard_id: str, widget_id: str, req: SelectRequest):
    try:
        entry = store.select_category(dashboard_id, widget_id, req.value, field=req.field)
        return _json({"selection": asdict(entry) if entry is not None else None})
    except Exception as exc:
        return _error(exc, "widget_select")


@app.get("/dashboards/{dashboard_id}/widgets/{widget_id}/series")
async def widget_series(dashboard_id: str, widget_id: str, include_chart: bool = Query(default=True)):
    try:
        _, widget = store.get_widget(dashboard_id, widget_id)
        result = await store.refresh_widget(dashboard_id, widget_id)
        return _json(_series_payload(result, widget, include_chart))
    except Exception as exc:
        return _error(exc, "widget_series")


@app.post("/dashboards/{dashboard_id}/calculated-fields")
def add_calculated_field(dashboard_id: str, req: CalculatedFieldRequest):
    try:
        calc = store.add_calculated_field(dashboard_id, req.model_dump(exclude={"widget_id"}), widget_id=req.widget_id)
        return _json(asdict(calc), status_code=201)
    except Exception as exc:
        return _error(exc, "add_calculated_field")
