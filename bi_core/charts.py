from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

import altair as alt
import pandas as pd

if TYPE_CHECKING:
    from bi_core.pipeline import SeriesResult

alt.data_transformers.disable_max_rows()

_MARKS = {
    "bar": "bar",
    "column": "bar",
    "stacked_bar": "bar",
    "line": "line",
    "area": "area",
    "scatter": "point",
    "pie": "arc",
    "donut": "arc",
}


def to_vega_spec(chart: alt.Chart | alt.LayerChart) -> Dict[str, Any]:
    """Convert an Altair chart into a Vega-Lite spec dict (JSON-serializable)."""
    return chart.to_dict()


def long_frame(frame: pd.DataFrame, dimension: str, series: List[str]) -> pd.DataFrame:
    """One row per (category, series) with generic column names, so odd field names never reach Vega-Lite."""
    present = [s for s in series if s in frame.columns and s != dimension]
    if frame.empty or dimension not in frame.columns or not present:
        return pd.DataFrame(columns=["category", "series", "value"])
    long = frame[[dimension] + present].melt(id_vars=[dimension], var_name="series", value_name="value")
    long = long.rename(columns={dimension: "category"})
    long["category"] = long["category"].astype(str)
    long["value"] = pd.to_numeric(long["value"], errors="coerce")
    return long


def _mark(chart: alt.Chart, mark: str) -> alt.Chart:
    if mark == "line":
        return chart.mark_line(point=True)
    if mark == "area":
        return chart.mark_area(opacity=0.6)
    if mark == "point":
        return chart.mark_point()
    if mark == "arc":
        return chart.mark_arc()
    return chart.mark_bar()


def series_chart(result: "SeriesResult", chart_type: Optional[str] = None, title: str = "") -> Optional[alt.Chart | alt.LayerChart]:
    if not result.ok or result.frame.empty or not result.dimension:
        return None
    mark = _MARKS.get(str(chart_type or "bar").lower(), "bar")
    order = result.frame[result.dimension].astype(str).tolist()
    tooltip = ["category:N", "series:N", alt.Tooltip("value:Q", format=",.2f")]

    base = long_frame(result.frame, result.dimension, result.series)
    if mark == "arc":
        return (
            alt.Chart(base, title=title)
            .mark_arc()
            .encode(theta=alt.Theta("value:Q", stack=True), color=alt.Color("category:N", sort=order), tooltip=tooltip)
        )

    x = alt.X("category:N", sort=order, title=result.dimension)
    layers = []
    if not base.empty:
        layers.append(
            _mark(alt.Chart(base), mark).encode(
                x=x,
                y=alt.Y("value:Q", title=None),
                color=alt.Color("series:N", title=None),
                tooltip=tooltip,
            )
        )
    lines = long_frame(result.frame, result.dimension, result.line_series)
    if not lines.empty:
        layers.append(
            alt.Chart(lines)
            .mark_line(point=True)
            .encode(x=x, y=alt.Y("value:Q", title=None), color=alt.Color("series:N", title=None), tooltip=tooltip)
        )
    if not layers:
        return None
    if len(layers) == 1:
        return layers[0].properties(title=title)
    return alt.layer(*layers).resolve_scale(y="independent").properties(title=title)


def series_spec(result: "SeriesResult", chart_type: Optional[str] = None, title: str = "") -> Optional[Dict[str, Any]]:
    chart = series_chart(result, chart_type, title)
    return to_vega_spec(chart) if chart is not None else None
