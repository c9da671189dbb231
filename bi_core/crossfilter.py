from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from bi_core.fields import is_null_like
from bi_core.filters import loose_equals
from bi_core.models import CrossFilterEntry, Filter, normalize_filter

logger = logging.getLogger(__name__)

_PAYLOAD_FALLBACK_KEYS = ("_raw_axis_value", "_formatted_axis", "_combined_axis", "_auto_category", "name")


class CrossFilterBus:
    """Source widget id -> the filters that widget currently broadcasts."""

    def __init__(self) -> None:
        self._entries: Dict[str, CrossFilterEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, source_widget_id: object) -> bool:
        return source_widget_id in self._entries

    def publish(self, source_widget_id: str, filters: Iterable[Filter | Mapping[str, Any]]) -> Optional[CrossFilterEntry]:
        """Replace the source's entry. Publishing nothing clears it."""
        normalized = tuple(normalize_filter(f) for f in filters or [])
        if not normalized:
            self.revoke(source_widget_id)
            return None
        entry = CrossFilterEntry(source_widget_id=source_widget_id, filters=normalized)
        self._entries[source_widget_id] = entry
        logger.debug("cross-filter published by %s: %s", source_widget_id, normalized)
        return entry

    def revoke(self, source_widget_id: str) -> bool:
        return self._entries.pop(source_widget_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def rekey(self, old_id: str, new_id: str) -> None:
        entry = self._entries.pop(old_id, None)
        if entry is not None:
            self._entries[new_id] = CrossFilterEntry(source_widget_id=new_id, filters=entry.filters)

    def entries(self) -> List[CrossFilterEntry]:
        return list(self._entries.values())

    def own_entry(self, widget_id: str) -> Optional[CrossFilterEntry]:
        return self._entries.get(widget_id)

    def filters_for(self, widget_id: str) -> List[Filter]:
        """Filters broadcast by every widget other than ``widget_id``."""
        out: List[Filter] = []
        for source, entry in self._entries.items():
            if source != widget_id:
                out.extend(entry.filters)
        return out

    def is_filtered(self, widget_id: str) -> bool:
        return any(source != widget_id for source in self._entries)

    def selection_filter_for(self, widget_id: str, candidate_fields: Sequence[Optional[str]] = ()) -> Optional[Filter]:
        return selection_filter_for(self.own_entry(widget_id), candidate_fields)


def selection_filters(field_name: str, value: Any) -> List[Filter]:
    """Filters broadcast when a category is clicked; blank categories select nulls."""
    if is_null_like(value):
        return [Filter(field=field_name, operator="is_null", id=f"xf-{field_name}")]
    return [Filter(field=field_name, operator="equals", value=value, id=f"xf-{field_name}")]


def selection_filter_for(entry: Optional[CrossFilterEntry], candidate_fields: Sequence[Optional[str]] = ()) -> Optional[Filter]:
    if entry is None or not entry.filters:
        return None
    fields = [f for f in candidate_fields if f]
    return next((f for f in entry.filters if f.field in fields), entry.filters[0])


def read_selection_value(payload: Any, candidate_fields: Sequence[Optional[str]]) -> Any:
    if not isinstance(payload, Mapping):
        return payload
    for name in candidate_fields:
        if name and name in payload:
            return payload[name]
    for key in _PAYLOAD_FALLBACK_KEYS:
        if payload.get(key) is not None:
            return payload[key]
    return None


def is_value_selected(payload: Any, selection: Optional[Filter], candidate_fields: Sequence[Optional[str]] = ()) -> bool:
    """Highlight test for a rendered data point against the widget's own selection."""
    if selection is None:
        return True
    value = read_selection_value(payload, [selection.field, *candidate_fields])
    if selection.operator == "is_null":
        return is_null_like(value)
    if selection.operator == "is_not_null":
        return not is_null_like(value)
    if loose_equals(value, selection.value):
        return True
    return selection.operator == "equals" and is_null_like(value) and is_null_like(selection.value)
