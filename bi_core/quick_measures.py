from __future__ import annotations

from typing import Iterable, Optional

import pandas as pd

from bi_core.fields import resolve_column, to_number
from bi_core.models import QuickMeasure, normalize_quick_measure

QUICK_MEASURES = (
    "percent_of_total",
    "running_total",
    "moving_average",
    "difference",
    "percent_change",
    "year_over_year",
)

_KIND_ALIASES = {
    "percentoftotal": "percent_of_total",
    "runningtotal": "running_total",
    "movingaverage": "moving_average",
    "percentchange": "percent_change",
    "yearoveryear": "year_over_year",
    "yoy": "year_over_year",
}

YOY_LAG = 12


def normalize_kind(kind: str) -> Optional[str]:
    s = str(kind or "").strip().lower()
    if s in QUICK_MEASURES:
        return s
    return _KIND_ALIASES.get(s.replace("_", ""))


def _pct_vs(current: pd.Series, previous: pd.Series) -> pd.Series:
    pct = (current - previous) / previous * 100
    return pct.where(previous != 0, 0.0)


def apply_quick_measure(
    rows: pd.DataFrame,
    field: str,
    kind: str,
    output_field: Optional[str] = None,
    window: Optional[int] = None,
) -> pd.DataFrame:
    """Append a derived column computed over the rows in their current order.

    Values that do not coerce to a number count as 0. Unknown kinds leave the
    rows untouched.
    """
    if rows.empty:
        return rows
    resolved = normalize_kind(kind)
    if resolved is None:
        return rows
    out_field = output_field or f"{field}_{resolved}"
    values = resolve_column(rows, field).map(to_number).astype(float).fillna(0.0).reset_index(drop=True)

    if resolved == "percent_of_total":
        total = float(values.sum())
        derived = values * 0.0 if total == 0 else values / total * 100
    elif resolved == "running_total":
        derived = values.cumsum()
    elif resolved == "moving_average":
        half = max(1, int(window or 3)) // 2
        derived = values.rolling(2 * half + 1, center=True, min_periods=1).mean()
    elif resolved == "difference":
        derived = values.diff().fillna(0.0)
    elif resolved == "percent_change":
        derived = _pct_vs(values, values.shift(1)).fillna(0.0)
        derived.iloc[0] = 0.0
    else:
        previous = values.shift(YOY_LAG)
        derived = _pct_vs(values, previous).astype(object).where(previous.notna(), None)

    result = rows.reset_index(drop=True).copy()
    result[out_field] = derived.to_numpy()
    return result


def apply_quick_measures(rows: pd.DataFrame, measures: Iterable[QuickMeasure | dict]) -> pd.DataFrame:
    for raw in measures or []:
        measure = normalize_quick_measure(raw)
        rows = apply_quick_measure(rows, measure.field, measure.kind, measure.output_field, measure.window)
    return rows
