"""Matching rendered series names back to the measure configs that produced them.

Series columns are named by alias, by field, or ``AGG(field)`` (see
``aggregation.series_names``) and remote results may carry ``field__agg``
names, so a legend entry is matched against several candidate spellings and
scored. A rename aliases every measure config that matches the entry.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Any, Dict, List, Optional

from bi_core.aggregation import measure_series_name
from bi_core.models import MeasureConfig, Widget

MATCH_THRESHOLD = 2

_AGG_CALL = re.compile(r"^(sum|avg|min|max|count|countdistinct|count_distinct|none)\((.+)\)$", re.IGNORECASE)
_AGG_SUFFIX = re.compile(r"__(sum|avg|min|max|count|countdistinct|count_distinct|none)$", re.IGNORECASE)


def normalize_token(value: Optional[str]) -> str:
    return re.sub(r'[`"]', "", str(value or "").strip().lower())


def strip_aggregation_call(value: str) -> str:
    return _AGG_CALL.sub(r"\2", value)


def strip_aggregation_suffix(value: str) -> str:
    return _AGG_SUFFIX.sub("", value)


def match_score(candidate: Optional[str], target: Optional[str]) -> int:
    """4 exact, 3 same without ``AGG(..)``, 2 same without ``__agg`` or dotted suffix, 1 same tail, else 0."""
    c, t = normalize_token(candidate), normalize_token(target)
    if not c or not t:
        return 0
    if c == t:
        return 4
    c, t = strip_aggregation_call(c), strip_aggregation_call(t)
    if c == t:
        return 3
    c, t = strip_aggregation_suffix(c), strip_aggregation_suffix(t)
    if c == t or c.endswith(f".{t}") or t.endswith(f".{c}"):
        return 2
    if c.split(".")[-1] == t.split(".")[-1]:
        return 1
    return 0


def config_candidates(config: MeasureConfig, current: List[MeasureConfig], opposite: List[MeasureConfig]) -> List[str]:
    names = [
        config.alias or "",
        config.field,
        measure_series_name(replace(config, alias=None), current, opposite),
        f"{config.field}__{config.aggregation.lower()}",
        f"{config.aggregation.upper()}({config.field})",
    ]
    return [n for n in names if n]


def config_matches(config: MeasureConfig, target: str, current: List[MeasureConfig], opposite: List[MeasureConfig]) -> bool:
    return any(match_score(c, target) >= MATCH_THRESHOLD for c in config_candidates(config, current, opposite))


def _first_aliased_match(configs: List[MeasureConfig], opposite: List[MeasureConfig], entry_id: str) -> Optional[str]:
    match = next((c for c in configs if config_matches(c, entry_id, configs, opposite)), None)
    if match is not None and match.alias and match.alias.strip():
        return match.alias.strip()
    return None


def resolve_display_name(widget: Widget, entry_id: str) -> str:
    bars, lines = list(widget.y_axis_configs), list(widget.line_axis_configs)
    alias = _first_aliased_match(bars, lines, entry_id) or _first_aliased_match(lines, bars, entry_id)
    if alias:
        return alias
    return widget.legend_aliases.get(entry_id, entry_id)


def _aliased_configs(configs: List[MeasureConfig], opposite: List[MeasureConfig], entry_id: str, alias: str) -> Optional[List[MeasureConfig]]:
    updated = [replace(c, alias=alias) if config_matches(c, entry_id, configs, opposite) else c for c in configs]
    return updated if updated != configs else None


def rename_series(widget: Widget, entry_id: str, new_name: str) -> Dict[str, Any]:
    """Widget changes that give the series ``entry_id`` the display name ``new_name``.

    Every matching bar and line measure gets the alias. Returns an empty dict
    when the name is blank.
    """
    alias = (new_name or "").strip()
    if not alias:
        return {}

    bars, lines = list(widget.y_axis_configs), list(widget.line_axis_configs)
    changes: Dict[str, Any] = {}
    new_bars = _aliased_configs(bars, lines, entry_id, alias)
    if new_bars is not None:
        changes["y_axis_configs"] = new_bars
    new_lines = _aliased_configs(lines, bars, entry_id, alias)
    if new_lines is not None:
        changes["line_axis_configs"] = new_lines
    if changes:
        return changes

    single = widget.y_axis[0] if widget.y_axis else None
    if single and not widget.measure_configs and not widget.legend and match_score(single, entry_id) >= MATCH_THRESHOLD:
        return {"y_axis_configs": [MeasureConfig(field=single, aggregation=widget.aggregation, alias=alias)]}

    source_key = next(
        (
            key
            for key, value in widget.legend_aliases.items()
            if match_score(value, entry_id) >= MATCH_THRESHOLD or match_score(key, entry_id) >= MATCH_THRESHOLD
        ),
        entry_id,
    )
    return {"legend_aliases": {**widget.legend_aliases, source_key: alias}}
