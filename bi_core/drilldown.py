"""Per-widget drill-down state transitions.

States are immutable; every transition returns a new :class:`DrillDownState`.
``len(state.breadcrumbs) == state.current_level`` holds after ``drill_down``
and ``drill_up``. ``go_to_next_level`` descends without recording a value, so
the breadcrumbs of earlier levels keep narrowing the deeper grouping.
"""

from __future__ import annotations

from typing import Any, List, Optional

from bi_core.errors import DrillDownError
from bi_core.filters import equality_filter
from bi_core.models import Breadcrumb, DrillDownState, Filter, Widget


def init_drill_down(widget: Widget) -> Optional[DrillDownState]:
    if not widget.drill_down_hierarchy:
        return None
    return DrillDownState(hierarchy=tuple(widget.drill_down_hierarchy), widget_id=widget.id)


def can_drill_down(state: Optional[DrillDownState]) -> bool:
    return state is not None and state.current_level < len(state.hierarchy) - 1


def can_drill_up(state: Optional[DrillDownState]) -> bool:
    return state is not None and state.current_level > 0


def drill_down(state: DrillDownState, value: Any) -> DrillDownState:
    if not can_drill_down(state):
        raise DrillDownError("cannot descend further")
    crumb = Breadcrumb(level=state.current_level, value=value)
    return DrillDownState(
        hierarchy=state.hierarchy,
        current_level=state.current_level + 1,
        breadcrumbs=state.breadcrumbs + (crumb,),
        widget_id=state.widget_id,
    )


def go_to_next_level(state: DrillDownState) -> DrillDownState:
    if not can_drill_down(state):
        raise DrillDownError("cannot descend further")
    return DrillDownState(
        hierarchy=state.hierarchy,
        current_level=state.current_level + 1,
        breadcrumbs=state.breadcrumbs,
        widget_id=state.widget_id,
    )


expand_next_level = go_to_next_level


def drill_up(state: DrillDownState) -> DrillDownState:
    if not can_drill_up(state):
        raise DrillDownError("already at top level")
    crumbs = state.breadcrumbs
    # After go_to_next_level there may be fewer crumbs than levels.
    if crumbs and crumbs[-1].level >= state.current_level - 1:
        crumbs = crumbs[:-1]
    return DrillDownState(
        hierarchy=state.hierarchy,
        current_level=state.current_level - 1,
        breadcrumbs=crumbs,
        widget_id=state.widget_id,
    )


def reset(state: DrillDownState) -> DrillDownState:
    return DrillDownState(hierarchy=state.hierarchy, widget_id=state.widget_id)


def current_field(widget: Widget, state: Optional[DrillDownState] = None) -> Optional[str]:
    """Active dimension: the hierarchy level when drilling, else the configured axis."""
    if state is not None and state.hierarchy:
        level = min(max(state.current_level, 0), len(state.hierarchy) - 1)
        return state.hierarchy[level]
    if widget.x_axis:
        return widget.x_axis
    return widget.drill_down_hierarchy[0] if widget.drill_down_hierarchy else None


def drill_filters(state: Optional[DrillDownState]) -> List[Filter]:
    """One equality filter per breadcrumb, on the field of the level it was chosen at."""
    if state is None:
        return []
    out: List[Filter] = []
    for crumb in state.breadcrumbs:
        if 0 <= crumb.level < len(state.hierarchy):
            field_name = state.hierarchy[crumb.level]
            out.append(equality_filter(field_name, crumb.value, filter_id=f"drill-{field_name}"))
    return out
