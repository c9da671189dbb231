from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple

import pandas as pd

from bi_core.errors import FilterError, FormulaError

AggregationType = Literal["sum", "avg", "min", "max", "count", "count_distinct", "none"]
AGGREGATIONS: Tuple[str, ...] = ("sum", "avg", "min", "max", "count", "count_distinct", "none")

OPERATORS: Tuple[str, ...] = (
    "equals",
    "not_equals",
    "greater_than",
    "greater_or_equal",
    "less_than",
    "less_or_equal",
    "between",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "in",
    "not_in",
    "is_null",
    "is_not_null",
)

# camelCase names used by saved dashboards, plus short forms.
_OPERATOR_ALIASES = {
    "eq": "equals",
    "=": "equals",
    "==": "equals",
    "notequals": "not_equals",
    "ne": "not_equals",
    "!=": "not_equals",
    "greaterthan": "greater_than",
    "gt": "greater_than",
    ">": "greater_than",
    "greaterorequal": "greater_or_equal",
    "ge": "greater_or_equal",
    "gte": "greater_or_equal",
    ">=": "greater_or_equal",
    "lessthan": "less_than",
    "lt": "less_than",
    "<": "less_than",
    "lessorequal": "less_or_equal",
    "le": "less_or_equal",
    "lte": "less_or_equal",
    "<=": "less_or_equal",
    "notcontains": "not_contains",
    "startswith": "starts_with",
    "endswith": "ends_with",
    "notin": "not_in",
    "isnull": "is_null",
    "isnotnull": "is_not_null",
}

_AGGREGATION_ALIASES = {
    "countdistinct": "count_distinct",
    "distinct": "count_distinct",
    "average": "avg",
    "mean": "avg",
    "raw": "none",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------- Filters ----------------
@dataclass(frozen=True)
class Filter:
    field: str
    operator: str = "equals"
    value: Any = None
    values: Tuple[Any, ...] = ()
    value2: Any = None
    enabled: bool = True
    id: Optional[str] = None

    def operand_set(self) -> Tuple[Any, ...]:
        if self.values:
            return self.values
        if isinstance(self.value, (list, tuple, set, frozenset)):
            return tuple(self.value)
        if self.value is None:
            return ()
        return (self.value,)


@dataclass(frozen=True)
class GlobalFilter(Filter):
    name: str = ""
    applied_to_widgets: Tuple[str, ...] = ()

    def targets(self, widget_id: str) -> bool:
        return not self.applied_to_widgets or widget_id in self.applied_to_widgets


# ---------------- Widget configuration ----------------
@dataclass(frozen=True)
class MeasureConfig:
    field: str
    aggregation: str = "sum"
    axis_side: str = "left"
    alias: Optional[str] = None


@dataclass(frozen=True)
class SortSpec:
    key: Literal["category", "value"] = "category"
    direction: Literal["asc", "desc"] = "asc"

    @property
    def ascending(self) -> bool:
        return self.direction == "asc"


@dataclass(frozen=True)
class GridBox:
    x: int = 0
    y: int = 0
    w: int = 6
    h: int = 4

    @property
    def right(self) -> int:
        return self.x + self.w

    @property
    def bottom(self) -> int:
        return self.y + self.h


@dataclass(frozen=True)
class QuickMeasure:
    field: str
    kind: str
    label: Optional[str] = None
    window: Optional[int] = None

    @property
    def output_field(self) -> str:
        return self.label or f"{self.field}_{self.kind}"


@dataclass(frozen=True)
class CalculatedField:
    name: str
    formula: str
    type: str = "number"
    id: Optional[str] = None


@dataclass
class Widget:
    id: str
    type: str = "chart"
    title: str = ""
    chart_type: Optional[str] = None
    data_source_id: Optional[str] = None
    x_axis: Optional[str] = None
    legend: Optional[str] = None
    y_axis: List[str] = field(default_factory=list)
    aggregation: str = "sum"
    y_axis_configs: List[MeasureConfig] = field(default_factory=list)
    line_axis_configs: List[MeasureConfig] = field(default_factory=list)
    filters: List[Filter] = field(default_factory=list)
    drill_down_hierarchy: List[str] = field(default_factory=list)
    sort: Optional[SortSpec] = None
    box: GridBox = field(default_factory=GridBox)
    group_id: Optional[str] = None
    enable_cross_filter: bool = True
    legend_aliases: Dict[str, str] = field(default_factory=dict)
    quick_measures: List[QuickMeasure] = field(default_factory=list)
    calculated_fields: List[CalculatedField] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    @property
    def measure_configs(self) -> List[MeasureConfig]:
        return list(self.y_axis_configs) + list(self.line_axis_configs)


@dataclass
class Page:
    id: str
    title: str = "Page 1"
    widgets: List[Widget] = field(default_factory=list)
    data_source_id: Optional[str] = None

    def widget(self, widget_id: str) -> Optional[Widget]:
        return next((w for w in self.widgets if w.id == widget_id), None)


@dataclass
class Dashboard:
    id: str
    title: str = "Untitled"
    pages: List[Page] = field(default_factory=list)
    active_page_id: Optional[str] = None
    global_filters: List[GlobalFilter] = field(default_factory=list)
    data_source_id: Optional[str] = None
    calculated_fields: List[CalculatedField] = field(default_factory=list)
    quick_measures: List[QuickMeasure] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def active_page(self) -> Optional[Page]:
        page = next((p for p in self.pages if p.id == self.active_page_id), None)
        return page or (self.pages[0] if self.pages else None)

    def find_widget(self, widget_id: str) -> Tuple[Optional[Page], Optional[Widget]]:
        for page in self.pages:
            w = page.widget(widget_id)
            if w is not None:
                return page, w
        return None, None


# ---------------- Interaction state ----------------
@dataclass(frozen=True)
class Breadcrumb:
    level: int
    value: Any


@dataclass(frozen=True)
class DrillDownState:
    hierarchy: Tuple[str, ...]
    current_level: int = 0
    breadcrumbs: Tuple[Breadcrumb, ...] = ()
    widget_id: Optional[str] = None


@dataclass(frozen=True)
class CrossFilterEntry:
    source_widget_id: str
    filters: Tuple[Filter, ...] = ()


# ---------------- Datasets ----------------
@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str = "string"


@dataclass
class Dataset:
    source_id: str
    rows: pd.DataFrame
    schema: List[FieldSpec] = field(default_factory=list)
    total_row_count: Optional[int] = None
    remote_aggregation: bool = False

    @property
    def row_count(self) -> int:
        return int(self.total_row_count if self.total_row_count is not None else len(self.rows))


# ---------------- Normalisation (raw JSON-ish dict -> dataclasses) ----------------
def _get(raw: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except Exception:
        return default


def _as_str_list(values: Optional[Iterable[object]]) -> List[str]:
    if not values:
        return []
    if isinstance(values, str):
        return [values]
    return [str(v) for v in values if v is not None and str(v) != ""]


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    ts = pd.to_datetime(value, errors="coerce", utc=True)
    if pd.isna(ts):
        return None
    return ts.to_pydatetime()


def normalize_operator(op: Any) -> str:
    if op is None or op == "":
        return "equals"
    text = str(op).strip()
    snake = text.lower().replace("-", "_")
    if snake in OPERATORS:
        return snake
    compact = snake.replace("_", "").replace(" ", "")
    if compact in _OPERATOR_ALIASES:
        return _OPERATOR_ALIASES[compact]
    if text in _OPERATOR_ALIASES:
        return _OPERATOR_ALIASES[text]
    raise FilterError(f"Unsupported filter operator: {op!r}")


def normalize_aggregation(agg: Any, default: str = "sum") -> str:
    if agg is None or agg == "":
        return default
    s = str(agg).strip().lower().replace("-", "_")
    if s in AGGREGATIONS:
        return s
    s = _AGGREGATION_ALIASES.get(s.replace("_", ""), s)
    return s if s in AGGREGATIONS else default


def _filter_kwargs(raw: Mapping[str, Any]) -> Dict[str, Any]:
    field_name = _get(raw, "field")
    if not field_name:
        raise FilterError("Filter requires a field")
    operator = normalize_operator(_get(raw, "operator", "op"))
    value = raw.get("value")
    values = _get(raw, "values", default=())
    if operator in {"in", "not_in"} and not values and isinstance(value, (list, tuple, set)):
        values, value = value, None
    if operator == "between" and raw.get("value2") is None and isinstance(value, (list, tuple)) and len(value) == 2:
        values, value = (), value[0]
        value2 = raw["value"][1]
    else:
        value2 = _get(raw, "value2")
    return {
        "field": str(field_name),
        "operator": operator,
        "value": value,
        "values": tuple(values or ()),
        "value2": value2,
        "enabled": bool(raw.get("enabled", True)),
        "id": _get(raw, "id"),
    }


def normalize_filter(raw: Mapping[str, Any] | Filter) -> Filter:
    if isinstance(raw, Filter):
        return raw
    return Filter(**_filter_kwargs(raw))


def normalize_global_filter(raw: Mapping[str, Any] | GlobalFilter) -> GlobalFilter:
    if isinstance(raw, GlobalFilter):
        return raw
    kwargs = _filter_kwargs(raw)
    kwargs["id"] = kwargs["id"] or new_id("gf")
    return GlobalFilter(
        **kwargs,
        name=str(_get(raw, "name", default=kwargs["field"])),
        applied_to_widgets=tuple(_as_str_list(_get(raw, "applied_to_widgets", "appliedToWidgets"))),
    )


def normalize_measure(raw: Mapping[str, Any] | MeasureConfig | str, default_aggregation: str = "sum") -> MeasureConfig:
    if isinstance(raw, MeasureConfig):
        return raw
    if isinstance(raw, str):
        return MeasureConfig(field=raw, aggregation=default_aggregation)
    alias = _get(raw, "alias")
    return MeasureConfig(
        field=str(_get(raw, "field", default="")),
        aggregation=normalize_aggregation(_get(raw, "aggregation"), default_aggregation),
        axis_side=str(_get(raw, "axis_side", "yAxisId", "axisSide", default="left")),
        alias=str(alias).strip() if alias and str(alias).strip() else None,
    )


def normalize_sort(raw: Any) -> Optional[SortSpec]:
    """Accepts a SortSpec, a ``{"key", "direction"}`` dict or the ``value_desc`` style string."""
    if raw is None or isinstance(raw, SortSpec):
        return raw
    if isinstance(raw, str):
        if raw in ("", "none"):
            return None
        key, _, direction = raw.partition("_")
        raw = {"key": key, "direction": direction or "asc"}
    key = str(_get(raw, "key", default="category")).lower()
    direction = str(_get(raw, "direction", default="asc")).lower()
    if key not in ("category", "value"):
        return None
    return SortSpec(key=key, direction="desc" if direction == "desc" else "asc")  # type: ignore[arg-type]


def normalize_box(raw: Mapping[str, Any] | GridBox | None, *, columns: int = 12) -> Optional[GridBox]:
    if raw is None or isinstance(raw, GridBox):
        return raw
    if not any(k in raw for k in ("x", "y", "w", "h")):
        return None
    w = max(1, min(columns, _as_int(raw.get("w"), 6)))
    h = max(1, _as_int(raw.get("h"), 4))
    x = max(0, min(columns - w, _as_int(raw.get("x"), 0)))
    y_raw = raw.get("y")
    # y=Infinity means "append below everything"; the store resolves it by scanning.
    y = max(0, _as_int(y_raw, 0)) if y_raw not in (None, float("inf")) else 0
    return GridBox(x=x, y=y, w=w, h=h)


def normalize_quick_measure(raw: Mapping[str, Any] | QuickMeasure) -> QuickMeasure:
    if isinstance(raw, QuickMeasure):
        return raw
    window = _get(raw, "window")
    return QuickMeasure(
        field=str(_get(raw, "field", default="")),
        kind=str(_get(raw, "kind", "calculation", default="running_total")),
        label=_get(raw, "label"),
        window=_as_int(window, 3) if window is not None else None,
    )


def normalize_calculated_field(raw: Mapping[str, Any] | CalculatedField) -> CalculatedField:
    if isinstance(raw, CalculatedField):
        return raw
    name = _get(raw, "name", "field")
    if not name:
        raise FormulaError("Calculated field requires a name")
    return CalculatedField(
        name=str(name),
        formula=str(_get(raw, "formula", "expression", default="")),
        type=str(_get(raw, "type", default="number")),
        id=_get(raw, "id"),
    )


def normalize_widget(raw: Mapping[str, Any] | Widget, *, columns: int = 12) -> Widget:
    if isinstance(raw, Widget):
        return raw
    aggregation = normalize_aggregation(_get(raw, "aggregation"))
    y_axis = _as_str_list(_get(raw, "y_axis", "yAxis", "values", "measures"))
    box = normalize_box(raw.get("box") if isinstance(raw.get("box"), Mapping) else raw, columns=columns)
    return Widget(
        id=str(_get(raw, "id", default=new_id("w"))),
        type=str(_get(raw, "type", default="chart")),
        title=str(_get(raw, "title", default="")),
        chart_type=_get(raw, "chart_type", "chartType"),
        data_source_id=_get(raw, "data_source_id", "dataSourceId"),
        x_axis=_get(raw, "x_axis", "xAxis") or (_as_str_list(_get(raw, "dimensions")) or [None])[0],
        legend=_get(raw, "legend", "legend_field", "legendField") or None,
        y_axis=y_axis,
        aggregation=aggregation,
        y_axis_configs=[normalize_measure(m, aggregation) for m in _get(raw, "y_axis_configs", "yAxisConfigs", default=[])],
        line_axis_configs=[normalize_measure(m, aggregation) for m in _get(raw, "line_axis_configs", "lineAxisConfigs", default=[])],
        filters=[normalize_filter(f) for f in _get(raw, "filters", default=[])],
        drill_down_hierarchy=_as_str_list(_get(raw, "drill_down_hierarchy", "drillDownHierarchy")),
        sort=normalize_sort(_get(raw, "sort", "sort_by", "sortBy")),
        box=box or GridBox(),
        group_id=_get(raw, "group_id", "groupId"),
        enable_cross_filter=bool(_get(raw, "enable_cross_filter", "enableCrossFilter", default=True)),
        legend_aliases={str(k): str(v) for k, v in (_get(raw, "legend_aliases", "legendAliases", default={}) or {}).items()},
        quick_measures=[normalize_quick_measure(q) for q in _get(raw, "quick_measures", "quickMeasures", default=[])],
        calculated_fields=[normalize_calculated_field(c) for c in _get(raw, "calculated_fields", "calculatedFields", default=[])],
        updated_at=parse_datetime(_get(raw, "updated_at", "updatedAt")),
    )


def has_explicit_box(raw: Mapping[str, Any]) -> bool:
    src = raw.get("box") if isinstance(raw.get("box"), Mapping) else raw
    y = src.get("y")
    return "x" in src and y is not None and y != float("inf")
