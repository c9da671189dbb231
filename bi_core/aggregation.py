"""Grouping and reduction of widget rows.

Three mutually exclusive strategies, picked in this order:

- ``legend``: a legend field and exactly one measure; rows are grouped by
  (dimension, legend) and the legend values are pivoted into columns.
- ``multi_measure``: bar and/or line measure configs; one column per measure.
- ``single``: the widget's value fields reduced with the widget aggregation,
  or passed through untouched when the aggregation is ``none``.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from bi_core.fields import is_null, is_number, resolve_column, to_number, to_primitive
from bi_core.models import MeasureConfig, SortSpec, Widget

logger = logging.getLogger(__name__)

UNKNOWN_LEGEND = "Unknown"


@dataclass(frozen=True)
class AggregationPlan:
    strategy: str
    dimension: str
    legend: Optional[str] = None
    measures: Tuple[MeasureConfig, ...] = ()
    line_measures: Tuple[MeasureConfig, ...] = ()


@dataclass
class AggregateResult:
    frame: pd.DataFrame
    dimension: str
    series: List[str] = field(default_factory=list)
    line_series: List[str] = field(default_factory=list)
    primary_field: Optional[str] = None


# ---------------- Reductions ----------------
def _hashable(value: Any) -> Any:
    return value if isinstance(value, Hashable) else str(value)


def _numeric(values: pd.Series) -> pd.Series:
    return pd.to_numeric(values.map(to_number), errors="coerce")


def reduce_values(values: pd.Series | List[Any], aggregation: str) -> float | int:
    """Reduce one group's raw measure values."""
    values = values if isinstance(values, pd.Series) else pd.Series(list(values), dtype=object)
    if aggregation == "count":
        return int(len(values))
    if aggregation == "count_distinct":
        present = values[~values.map(is_null).astype(bool)]
        return int(present.map(_hashable).nunique())
    nums = _numeric(values).dropna()
    if nums.empty:
        return 0
    if aggregation == "avg":
        return round(float(nums.mean()), 10)
    if aggregation == "min":
        return float(nums.min())
    if aggregation == "max":
        return float(nums.max())
    if aggregation == "none":
        return float(nums.iloc[0])
    return round(float(nums.sum()), 10)


def _reduce_grouped(values: pd.Series, keys: List[pd.Series], aggregation: str) -> pd.Series:
    keys = keys[0] if len(keys) == 1 else keys  # type: ignore[assignment]
    if aggregation == "count":
        return values.groupby(keys, sort=False, dropna=True).size()
    if aggregation == "count_distinct":
        cleaned = values.map(lambda v: None if is_null(v) else _hashable(v))
        return cleaned.groupby(keys, sort=False, dropna=True).nunique(dropna=True)
    grouped = _numeric(values).groupby(keys, sort=False, dropna=True)
    if aggregation == "avg":
        out = grouped.mean().round(10)
    elif aggregation == "min":
        out = grouped.min()
    elif aggregation == "max":
        out = grouped.max()
    elif aggregation == "none":
        out = grouped.first()
    else:
        out = grouped.sum(min_count=1).round(10)
    return out.fillna(0)


def _group_keys(frame: pd.DataFrame, dimension: str) -> pd.Series:
    keys = resolve_column(frame, dimension)
    return keys.map(lambda v: None if is_null(v) and not isinstance(v, str) else _hashable(v))


def _ordered_keys(keys: pd.Series) -> List[Any]:
    return list(pd.unique(keys.dropna()))


# ---------------- Naming ----------------
def measure_series_name(config: MeasureConfig, current: List[MeasureConfig], opposite: List[MeasureConfig]) -> str:
    if config.alias:
        return config.alias
    same = sum(1 for m in current if m.field == config.field) + sum(1 for m in opposite if m.field == config.field)
    if same > 1:
        return f"{config.aggregation.upper()}({config.field})"
    return config.field


def series_names(measures: List[MeasureConfig], line_measures: List[MeasureConfig]) -> Tuple[List[str], List[str]]:
    bars = [measure_series_name(m, measures, line_measures) for m in measures]
    lines = []
    for m in line_measures:
        name = measure_series_name(m, line_measures, measures)
        lines.append(f"{name} (Line)" if name in bars else name)
    return bars, lines


# ---------------- Strategy selection ----------------
def widget_measures(widget: Widget) -> List[MeasureConfig]:
    if widget.measure_configs:
        return widget.measure_configs
    return [MeasureConfig(field=f, aggregation=widget.aggregation) for f in widget.y_axis]


def plan_aggregation(widget: Widget, dimension: str) -> AggregationPlan:
    measures = widget_measures(widget)
    if widget.legend and len(measures) == 1:
        return AggregationPlan("legend", dimension, legend=widget.legend, measures=(measures[0],))
    if widget.measure_configs:
        return AggregationPlan(
            "multi_measure",
            dimension,
            measures=tuple(widget.y_axis_configs),
            line_measures=tuple(widget.line_axis_configs),
        )
    return AggregationPlan("single", dimension, measures=tuple(measures))


# ---------------- Strategies ----------------
def group_by_legend(
    frame: pd.DataFrame,
    dimension: str,
    legend: str,
    measure: MeasureConfig,
    legend_aliases: Optional[Dict[str, str]] = None,
) -> AggregateResult:
    aliases = legend_aliases or {}
    if frame.empty:
        return AggregateResult(pd.DataFrame(columns=[dimension]), dimension, primary_field=None)
    dim_keys = _group_keys(frame, dimension)
    legend_keys = resolve_column(frame, legend).map(lambda v: UNKNOWN_LEGEND if is_null(v) else str(v))
    values = resolve_column(frame, measure.field)
    reduced = _reduce_grouped(values, [dim_keys, legend_keys], measure.aggregation)

    legend_values = sorted(set(legend_keys[dim_keys.notna()]), key=lambda v: aliases.get(v, v))
    pivot = reduced.unstack(level=-1, fill_value=0) if not reduced.empty else pd.DataFrame()
    pivot = pivot.reindex(index=_ordered_keys(dim_keys), columns=legend_values, fill_value=0)
    pivot = pivot.rename(columns=lambda c: aliases.get(c, c))
    out = pivot.reset_index(drop=True)
    out.insert(0, dimension, _ordered_keys(dim_keys))
    series = [aliases.get(v, v) for v in legend_values]
    return AggregateResult(out, dimension, series=series)


def group_by_measures(
    frame: pd.DataFrame,
    dimension: str,
    measures: List[MeasureConfig],
    line_measures: Optional[List[MeasureConfig]] = None,
) -> AggregateResult:
    line_measures = list(line_measures or [])
    bars, lines = series_names(list(measures), line_measures)
    if not measures and not line_measures:
        return AggregateResult(pd.DataFrame(columns=[dimension]), dimension)
    keys = _group_keys(frame, dimension)
    out = pd.DataFrame({dimension: _ordered_keys(keys)})
    for name, config in zip(bars + lines, list(measures) + line_measures):
        reduced = _reduce_grouped(resolve_column(frame, config.field), [keys], config.aggregation)
        out[name] = reduced.reindex(out[dimension]).fillna(0).to_numpy() if not out.empty else []
    primary = measures[0].field if len(measures) == 1 and not line_measures else None
    return AggregateResult(out, dimension, series=bars, line_series=lines, primary_field=primary)


def pass_through(frame: pd.DataFrame, dimension: str, value_fields: List[str]) -> AggregateResult:
    columns = [dimension] + [f for f in value_fields if f != dimension]
    out = pd.DataFrame({c: resolve_column(frame, c).map(to_primitive).astype(object).to_numpy() for c in columns})
    return AggregateResult(
        out.reset_index(drop=True),
        dimension,
        series=list(value_fields),
        primary_field=value_fields[0] if value_fields else None,
    )


def group_single(frame: pd.DataFrame, dimension: str, value_fields: List[str], aggregation: str) -> AggregateResult:
    if aggregation == "none":
        return pass_through(frame, dimension, value_fields)
    keys = _group_keys(frame, dimension)
    out = pd.DataFrame({dimension: _ordered_keys(keys)})
    for value_field in value_fields:
        if value_field in out.columns:
            continue
        reduced = _reduce_grouped(resolve_column(frame, value_field), [keys], aggregation)
        out[value_field] = reduced.reindex(out[dimension]).fillna(0).to_numpy() if not out.empty else []
    return AggregateResult(
        out,
        dimension,
        series=[f for f in value_fields if f != dimension],
        primary_field=value_fields[0] if value_fields else None,
    )


def aggregate(frame: pd.DataFrame, plan: AggregationPlan, *, legend_aliases: Optional[Dict[str, str]] = None) -> AggregateResult:
    if plan.strategy == "legend" and plan.legend:
        result = group_by_legend(frame, plan.dimension, plan.legend, plan.measures[0], legend_aliases)
        result.primary_field = None
        return result
    if plan.strategy == "multi_measure":
        return group_by_measures(frame, plan.dimension, list(plan.measures), list(plan.line_measures))
    aggregation = plan.measures[0].aggregation if plan.measures else "count"
    return group_single(frame, plan.dimension, [m.field for m in plan.measures], aggregation)


# ---------------- Post-processing ----------------
def compare_cells(a: Any, b: Any) -> int:
    if is_number(a) and is_number(b):
        return (a > b) - (a < b)
    sa, sb = str(a), str(b)
    return (sa > sb) - (sa < sb)


def sort_frame(frame: pd.DataFrame, column: str, ascending: bool = True) -> pd.DataFrame:
    """Stable sort; nulls go last in either direction."""
    values = frame[column].tolist()

    def cmp(i: int, j: int) -> int:
        a, b = values[i], values[j]
        a_null, b_null = is_null(a), is_null(b)
        if a_null or b_null:
            return int(a_null) - int(b_null)
        c = compare_cells(a, b)
        return c if ascending else -c

    order = sorted(range(len(values)), key=cmp_to_key(cmp))
    return frame.iloc[order].reset_index(drop=True)


def resolve_sort_column(result: AggregateResult, sort: Optional[SortSpec]) -> Optional[str]:
    if sort is None or result.frame.empty:
        return None
    columns = set(result.frame.columns)
    if sort.key == "category":
        return result.dimension if result.dimension in columns else None
    if result.primary_field and result.primary_field in columns:
        return result.primary_field
    for name in result.series + result.line_series:
        if name in columns:
            return name
    return None


def apply_sort(result: AggregateResult, sort: Optional[SortSpec]) -> AggregateResult:
    column = resolve_sort_column(result, sort)
    if column is None:
        return result
    result.frame = sort_frame(result.frame, column, ascending=sort.ascending)  # type: ignore[union-attr]
    return result


def cap_input(frame: pd.DataFrame, max_rows: int) -> Tuple[pd.DataFrame, Optional[str]]:
    if len(frame) <= max_rows:
        return frame, None
    logger.warning("sampling %s rows down to %s before grouping", len(frame), max_rows)
    notice = f"Dataset has {len(frame):,} rows; this view is sampled from the first {max_rows:,} rows."
    return frame.head(max_rows), notice


def cap_output(frame: pd.DataFrame, max_items: int) -> Tuple[pd.DataFrame, Optional[str]]:
    if len(frame) <= max_items:
        return frame, None
    notice = f"Showing first {max_items:,} items of {len(frame):,}."
    return frame.head(max_items).reset_index(drop=True), notice
