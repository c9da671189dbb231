import pytest

from bi_core.drilldown import (
    can_drill_down,
    can_drill_up,
    current_field,
    drill_down,
    drill_filters,
    drill_up,
    go_to_next_level,
    init_drill_down,
    reset,
)
from bi_core.errors import DrillDownError


@pytest.fixture()
def state(make_widget):
    return init_drill_down(make_widget(drill_down_hierarchy=["region", "cat", "sub"]))


def test_no_hierarchy_means_no_state(make_widget):
    assert init_drill_down(make_widget(x_axis="cat")) is None
    assert not can_drill_down(None)
    assert not can_drill_up(None)


def test_breadcrumbs_track_levels(state):
    s1 = drill_down(state, "North")
    s2 = drill_down(s1, "A")
    assert s2.current_level == 2
    assert len(s2.breadcrumbs) == s2.current_level
    assert [(c.level, c.value) for c in s2.breadcrumbs] == [(0, "North"), (1, "A")]
    assert not can_drill_down(s2)
    with pytest.raises(DrillDownError):
        drill_down(s2, "A1")


def test_down_then_up_round_trips(state):
    s1 = drill_down(state, "North")
    assert drill_up(s1) == state
    s2 = drill_down(s1, "B")
    assert drill_up(s2) == s1


def test_drill_up_at_top_raises(state):
    with pytest.raises(DrillDownError):
        drill_up(state)


def test_next_level_adds_no_breadcrumb(state):
    expanded = go_to_next_level(state)
    assert expanded.current_level == 1
    assert expanded.breadcrumbs == ()
    assert drill_up(expanded) == state


def test_mixed_expand_and_drill(state):
    s = drill_down(go_to_next_level(state), "A")
    assert [(c.level, c.value) for c in s.breadcrumbs] == [(1, "A")]
    back = drill_up(s)
    assert back.current_level == 1
    assert back.breadcrumbs == ()


def test_reset_returns_to_top(state):
    assert reset(drill_down(state, "North")) == state


def test_current_field(make_widget, state):
    widget = make_widget(x_axis="month", drill_down_hierarchy=["region", "cat", "sub"])
    assert current_field(widget) == "month"
    assert current_field(widget, drill_down(state, "North")) == "cat"
    assert current_field(make_widget(drill_down_hierarchy=["region", "cat"])) == "region"


def test_drill_filters_use_level_fields(state):
    filters = drill_filters(drill_down(drill_down(state, "North"), None))
    assert [(f.field, f.operator, f.value) for f in filters] == [("region", "equals", "North"), ("cat", "equals", None)]
    assert drill_filters(None) == []
