from __future__ import annotations

import operator as _op
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from bi_core.fields import get_field_value, is_null, resolve_column, to_number, to_timestamp
from bi_core.models import Filter, normalize_filter


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that treats ``5`` and ``"5"`` alike and lets a null operand match null cells."""
    if is_null(right):
        return is_null(left)
    if is_null(left):
        return False
    try:
        if left == right:
            return True
    except (TypeError, ValueError):
        pass
    ln, rn = to_number(left), to_number(right)
    if ln is not None and rn is not None:
        return ln == rn
    return str(left) == str(right)


def _compare(left: Any, right: Any, cmp: Callable[[Any, Any], bool]) -> bool:
    ln, rn = to_number(left), to_number(right)
    if ln is not None and rn is not None:
        return cmp(ln, rn)
    lt, rt = to_timestamp(left), to_timestamp(right)
    if lt is not None and rt is not None:
        return cmp(lt, rt)
    return False


def _between(value: Any, flt: Filter) -> bool:
    low, high = flt.value, flt.value2
    if flt.values and len(flt.values) >= 2:
        low, high = flt.values[0], flt.values[1]
    return _compare(value, low, _op.ge) and _compare(value, high, _op.le)


def _text_test(value: Any, flt: Filter, test: Callable[[str, str], bool]) -> bool:
    if is_null(value) or flt.value is None:
        return False
    return test(str(value), str(flt.value))


def _in(value: Any, flt: Filter) -> bool:
    return any(loose_equals(value, candidate) for candidate in flt.operand_set())


_PREDICATES: Dict[str, Callable[[Any, Filter], bool]] = {
    "equals": lambda v, f: loose_equals(v, f.value),
    "not_equals": lambda v, f: not loose_equals(v, f.value),
    "greater_than": lambda v, f: _compare(v, f.value, _op.gt),
    "greater_or_equal": lambda v, f: _compare(v, f.value, _op.ge),
    "less_than": lambda v, f: _compare(v, f.value, _op.lt),
    "less_or_equal": lambda v, f: _compare(v, f.value, _op.le),
    "between": _between,
    "contains": lambda v, f: _text_test(v, f, lambda s, t: t in s),
    "not_contains": lambda v, f: not _text_test(v, f, lambda s, t: t in s),
    "starts_with": lambda v, f: _text_test(v, f, str.startswith),
    "ends_with": lambda v, f: _text_test(v, f, str.endswith),
    "in": _in,
    "not_in": lambda v, f: not _in(v, f),
    "is_null": lambda v, f: is_null(v),
    "is_not_null": lambda v, f: not is_null(v),
}


def evaluate(value: Any, flt: Filter) -> bool:
    predicate = _PREDICATES.get(flt.operator)
    if predicate is None:
        return True
    return bool(predicate(value, flt))


def matches(row: Mapping[str, Any] | pd.Series, flt: Filter | Mapping[str, Any]) -> bool:
    flt = normalize_filter(flt)
    if not flt.enabled:
        return True
    return evaluate(get_field_value(row, flt.field), flt)


def filter_mask(frame: pd.DataFrame, flt: Filter) -> pd.Series:
    if not flt.enabled:
        return pd.Series(True, index=frame.index)
    column = resolve_column(frame, flt.field)
    if flt.operator == "is_null":
        return column.map(is_null).astype(bool)
    if flt.operator == "is_not_null":
        return ~column.map(is_null).astype(bool)
    return column.map(lambda v: evaluate(v, flt)).astype(bool)


def apply_filters(rows: pd.DataFrame, filters: Optional[Iterable[Filter | Mapping[str, Any]]]) -> pd.DataFrame:
    flts: List[Filter] = [normalize_filter(f) for f in (filters or [])]
    active = [f for f in flts if f.enabled]
    if not active or rows.empty:
        return rows
    mask = pd.Series(True, index=rows.index)
    for flt in active:
        mask &= filter_mask(rows, flt)
    return rows[mask]


def apply_filter_records(rows: Sequence[Mapping[str, Any]], filters: Optional[Iterable[Filter | Mapping[str, Any]]]) -> List[Mapping[str, Any]]:
    flts = [normalize_filter(f) for f in (filters or [])]
    if not flts:
        return list(rows)
    return [row for row in rows if all(matches(row, f) for f in flts)]


def equality_filter(field_name: str, value: Any, *, filter_id: Optional[str] = None) -> Filter:
    return Filter(field=field_name, operator="equals", value=value, id=filter_id)
