"""Widget series computation.

Local path, strictly in this order: input sampling, calculated fields, widget
filters, cross-filters from other widgets, targeted global filters,
drill-down filters, dimension resolution, aggregation, then sorting and
capping. Quick measures (dashboard ones first) run last, over the sorted
series. Sources marked for remote aggregation never take the local path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from bi_core.accessors import DatasetAccessor, RemoteQuery, measures_for_query, remote_column_name
from bi_core.aggregation import (
    AggregateResult,
    aggregate,
    apply_sort,
    cap_input,
    cap_output,
    plan_aggregation,
    series_names,
    widget_measures,
)
from bi_core.calculations import apply_calculated_fields
from bi_core.drilldown import current_field, drill_filters
from bi_core.fields import frame_to_records, records_to_frame
from bi_core.filters import apply_filters
from bi_core.models import (
    CalculatedField,
    Dataset,
    DrillDownState,
    Filter,
    GlobalFilter,
    QuickMeasure,
    Widget,
    normalize_filter,
    normalize_global_filter,
)
from bi_core.quick_measures import apply_quick_measures
from bi_core.settings import DEFAULT_LIMITS, PipelineLimits

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NOT_CONFIGURED = "not_configured"
STATUS_ERROR = "error"
STATUS_PENDING = "pending"

NOT_CONFIGURED_MESSAGE = "Axes not configured"


@dataclass
class SeriesResult:
    frame: pd.DataFrame = field(default_factory=pd.DataFrame, repr=False)
    dimension: Optional[str] = None
    series: List[str] = field(default_factory=list)
    line_series: List[str] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)
    error: Optional[str] = None
    status: str = STATUS_OK
    row_count_in: int = 0
    sampled: bool = False
    truncated: bool = False
    remote: bool = False

    @property
    def rows(self) -> List[Dict[str, Any]]:
        return frame_to_records(self.frame)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "dimension": self.dimension,
            "series": list(self.series),
            "line_series": list(self.line_series),
            "rows": self.rows,
            "notices": list(self.notices),
            "error": self.error,
            "row_count_in": self.row_count_in,
            "sampled": self.sampled,
            "truncated": self.truncated,
            "remote": self.remote,
        }


def not_configured(widget: Widget, dimension: Optional[str] = None) -> SeriesResult:
    return SeriesResult(dimension=dimension, status=STATUS_NOT_CONFIGURED, error=NOT_CONFIGURED_MESSAGE)


def pending(widget: Widget, dimension: Optional[str] = None) -> SeriesResult:
    return SeriesResult(dimension=dimension, status=STATUS_PENDING, remote=True)


def is_configured(widget: Widget, dimension: Optional[str]) -> bool:
    return bool(dimension) and bool(widget_measures(widget))


def requires_remote(dataset: Dataset, limits: PipelineLimits = DEFAULT_LIMITS) -> bool:
    return dataset.remote_aggregation or dataset.row_count > limits.remote_row_threshold


def targeted_global_filters(widget_id: str, global_filters: Optional[Iterable[GlobalFilter | Dict[str, Any]]]) -> List[Filter]:
    out: List[Filter] = []
    for raw in global_filters or []:
        gf = normalize_global_filter(raw)
        if gf.targets(widget_id):
            out.append(gf)
    return out


def composed_filters(
    widget: Widget,
    cross_filters: Optional[Sequence[Filter | Dict[str, Any]]] = None,
    global_filters: Optional[Iterable[GlobalFilter | Dict[str, Any]]] = None,
    drill_state: Optional[DrillDownState] = None,
) -> List[List[Filter]]:
    """Filter groups in application order: widget, cross, global, drill."""
    cross = [normalize_filter(f) for f in cross_filters or []] if widget.enable_cross_filter else []
    return [
        list(widget.filters),
        cross,
        targeted_global_filters(widget.id, global_filters),
        drill_filters(drill_state),
    ]


def _finish(
    result: AggregateResult,
    widget: Widget,
    limits: PipelineLimits,
    out: SeriesResult,
    dashboard_quick_measures: Sequence[QuickMeasure | Dict[str, Any]] = (),
) -> SeriesResult:
    result = apply_sort(result, widget.sort)
    frame, notice = cap_output(result.frame, limits.max_chart_items)
    if notice:
        out.notices.append(notice)
        out.truncated = True
    measures = [*dashboard_quick_measures, *widget.quick_measures]
    if measures:
        frame = apply_quick_measures(frame, measures)
    out.frame = frame
    out.dimension = result.dimension
    out.series = list(result.series)
    out.line_series = list(result.line_series)
    return out


def compute_series(
    widget: Widget,
    dataset: Dataset | pd.DataFrame | Sequence[Dict[str, Any]],
    cross_filters: Optional[Sequence[Filter | Dict[str, Any]]] = None,
    global_filters: Optional[Iterable[GlobalFilter | Dict[str, Any]]] = None,
    drill_state: Optional[DrillDownState] = None,
    limits: PipelineLimits = DEFAULT_LIMITS,
    *,
    dashboard_calculated_fields: Sequence[CalculatedField | Dict[str, Any]] = (),
    dashboard_quick_measures: Sequence[QuickMeasure | Dict[str, Any]] = (),
) -> SeriesResult:
    """Rows a widget must render for the given dataset and active filters.

    ``cross_filters`` are the selections of *other* widgets. Dashboard
    calculated fields are evaluated before the widget's own, so a widget
    field may override one of the same name. Missing axes yield a
    ``not_configured`` result rather than an exception.
    """
    dimension = current_field(widget, drill_state)
    if not is_configured(widget, dimension):
        return not_configured(widget, dimension)

    rows = dataset.rows if isinstance(dataset, Dataset) else records_to_frame(dataset)
    out = SeriesResult(row_count_in=len(rows))
    rows, notice = cap_input(rows, limits.max_processing_rows)
    if notice:
        out.notices.append(notice)
        out.sampled = True

    rows = apply_calculated_fields(rows, [*dashboard_calculated_fields, *widget.calculated_fields])
    for group in composed_filters(widget, cross_filters, global_filters, drill_state):
        rows = apply_filters(rows, group)

    plan = plan_aggregation(widget, dimension)  # type: ignore[arg-type]
    result = aggregate(rows, plan, legend_aliases=widget.legend_aliases)
    return _finish(result, widget, limits, out, dashboard_quick_measures)


def remote_query(
    widget: Widget,
    cross_filters: Optional[Sequence[Filter | Dict[str, Any]]] = None,
    global_filters: Optional[Iterable[GlobalFilter | Dict[str, Any]]] = None,
    drill_state: Optional[DrillDownState] = None,
    limits: PipelineLimits = DEFAULT_LIMITS,
) -> RemoteQuery:
    dimension = current_field(widget, drill_state)
    filters = [f for group in composed_filters(widget, cross_filters, global_filters, drill_state) for f in group if f.enabled]
    return RemoteQuery(
        dimensions=(dimension,) if dimension else (),
        measures=measures_for_query(widget_measures(widget)),
        filters=tuple(filters),
        limit=limits.remote_limit,
    )


def rename_remote_columns(frame: pd.DataFrame, widget: Widget, dimension: str) -> AggregateResult:
    """Map ``field_aggregation`` columns back to the names the local path emits."""
    measures = widget_measures(widget)
    if widget.measure_configs:
        bars, lines = series_names(list(widget.y_axis_configs), list(widget.line_axis_configs))
    else:
        bars, lines = [m.field for m in measures], []
    mapping = {}
    for measure, name in zip(measures, bars + lines):
        source = remote_column_name(measure)
        if source in frame.columns and source != name:
            mapping[source] = name
    return AggregateResult(
        frame.rename(columns=mapping),
        dimension=dimension,
        series=bars,
        line_series=lines,
        primary_field=bars[0] if len(bars) == 1 and not lines else None,
    )


async def compute_series_remote(
    widget: Widget,
    accessor: DatasetAccessor,
    source_id: str,
    cross_filters: Optional[Sequence[Filter | Dict[str, Any]]] = None,
    global_filters: Optional[Iterable[GlobalFilter | Dict[str, Any]]] = None,
    drill_state: Optional[DrillDownState] = None,
    limits: PipelineLimits = DEFAULT_LIMITS,
    *,
    dashboard_quick_measures: Sequence[QuickMeasure | Dict[str, Any]] = (),
) -> SeriesResult:
    """Delegate grouping to the accessor; the answer is trusted as filtered and aggregated."""
    dimension = current_field(widget, drill_state)
    if not is_configured(widget, dimension):
        return not_configured(widget, dimension)
    query = remote_query(widget, cross_filters, global_filters, drill_state, limits)
    try:
        records = await accessor.get_remote_aggregate(source_id, query)
    except Exception as exc:  # surfaced on the result, the caller keeps its last good series
        logger.exception("remote aggregation failed for widget %s", widget.id)
        return SeriesResult(dimension=dimension, status=STATUS_ERROR, error=str(exc) or type(exc).__name__, remote=True)

    frame = records_to_frame(records)
    result = rename_remote_columns(frame, widget, dimension)  # type: ignore[arg-type]
    out = SeriesResult(row_count_in=len(frame), remote=True)
    return _finish(result, widget, limits, out, dashboard_quick_measures)
