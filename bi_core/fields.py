from __future__ import annotations

import math
import numbers
import re
from datetime import date, datetime
from typing import Any, Mapping, Optional

import numpy as np
import pandas as pd

HIERARCHY_SEPARATOR = "___"

_NULL_TOKENS = {"", "(blank)", "null", "undefined", "nan", "none", "<na>"}
_DATE_HINT = re.compile(r"\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4}")


def is_null(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, dict, set)):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def is_null_like(value: Any) -> bool:
    if is_null(value):
        return True
    if isinstance(value, str):
        return value.strip().lower() in _NULL_TOKENS
    return False


def is_number(value: Any) -> bool:
    if isinstance(value, (bool, np.bool_)):
        return False
    if isinstance(value, numbers.Number):
        return not (isinstance(value, float) and math.isnan(value)) and not is_null(value)
    return False


def to_number(value: Any) -> Optional[float]:
    if is_null(value) or isinstance(value, (bool, np.bool_)):
        return None
    if isinstance(value, numbers.Number):
        out = float(value)
        return None if math.isnan(out) else out
    if isinstance(value, str):
        try:
            out = float(value.strip())
        except ValueError:
            return None
        return None if math.isnan(out) else out
    return None


def is_date_like(value: Any) -> bool:
    if isinstance(value, (datetime, date, pd.Timestamp, np.datetime64)):
        return not is_null(value)
    if isinstance(value, str):
        return bool(_DATE_HINT.search(value)) and not pd.isna(pd.to_datetime(value, errors="coerce"))
    return False


def to_timestamp(value: Any) -> Optional[pd.Timestamp]:
    if not is_date_like(value):
        return None
    ts = pd.to_datetime(value, errors="coerce")
    if pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert(None)
    return ts


def to_primitive(value: Any) -> Any:
    if is_null(value):
        return None
    if isinstance(value, (np.bool_,)):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def split_hierarchy_field(field_name: str) -> tuple[str, Optional[str]]:
    if HIERARCHY_SEPARATOR not in field_name:
        return field_name, None
    base, _, suffix = field_name.partition(HIERARCHY_SEPARATOR)
    return base, suffix


def _coerce_date(raw: Any) -> Optional[pd.Timestamp]:
    ts = pd.to_datetime(raw, errors="coerce") if not is_number(raw) else pd.NaT
    if pd.isna(ts):
        num = to_number(raw)
        if num is not None:
            # Small values are epoch seconds, large ones milliseconds.
            ts = pd.to_datetime(num * 1000 if num < 10_000_000_000 else num, unit="ms", errors="coerce")
        elif isinstance(raw, str):
            ts = pd.to_datetime(raw.replace("/", "-"), errors="coerce")
    if pd.isna(ts):
        return None
    return ts


def date_part(raw: Any, part: str) -> Optional[str]:
    if is_null(raw):
        return None
    ts = _coerce_date(raw)
    if ts is None:
        return "Unknown"
    if part == "half":
        return f"{ts.year} H{1 if ts.month <= 6 else 2}"
    if part == "quarter":
        return f"{ts.year} Q{(ts.month - 1) // 3 + 1}"
    if part == "month":
        return f"{ts.year}-{ts.month:02d}"
    if part == "day":
        return ts.strftime("%Y-%m-%d")
    return str(ts.year)


def _resolve_key(keys: Any, field_name: str) -> Optional[str]:
    lowered = field_name.strip().lower()
    for key in keys:
        if str(key).strip().lower() == lowered:
            return key
    return None


def get_field_value(row: Mapping[str, Any] | pd.Series, field_name: Optional[str]) -> Any:
    if row is None or not field_name:
        return None
    if field_name in row:
        return row[field_name]
    key = _resolve_key(row.keys(), field_name)
    if key is not None:
        return row[key]
    base, part = split_hierarchy_field(field_name)
    if part is not None:
        return date_part(get_field_value(row, base), part)
    return None


def resolve_column(frame: pd.DataFrame, field_name: Optional[str]) -> pd.Series:
    if field_name and field_name in frame.columns:
        col = frame[field_name]
        return col.iloc[:, 0] if isinstance(col, pd.DataFrame) else col
    if field_name:
        key = _resolve_key(frame.columns, field_name)
        if key is not None:
            return frame[key]
        base, part = split_hierarchy_field(field_name)
        if part is not None:
            base_col = resolve_column(frame, base)
            return base_col.map(lambda v: date_part(v, part)).astype(object)
    return pd.Series([None] * len(frame), index=frame.index, dtype=object)


def records_to_frame(rows: Any) -> pd.DataFrame:
    if isinstance(rows, pd.DataFrame):
        return rows
    return pd.DataFrame.from_records(list(rows or []))


def frame_to_records(frame: pd.DataFrame) -> list[dict]:
    if frame.empty:
        return []
    return [{str(k): to_primitive(v) for k, v in rec.items()} for rec in frame.to_dict(orient="records")]
