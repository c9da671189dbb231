import pytest

from bi_core.legend import match_score, rename_series, resolve_display_name
from bi_core.models import MeasureConfig


@pytest.mark.parametrize(
    "candidate, target, score",
    [
        ("Revenue", "revenue", 4),
        ("SUM(val)", "val", 3),
        ("val__sum", "val", 2),
        ("orders.val", "val", 2),
        ("orders.val", "items.val", 1),
        ("val", "qty", 0),
        ("", "val", 0),
    ],
)
def test_match_score(candidate, target, score):
    assert match_score(candidate, target) == score


def test_display_name_prefers_measure_alias(make_widget):
    widget = make_widget(
        x_axis="cat",
        y_axis_configs=[{"field": "val", "alias": "Revenue"}],
        legend_aliases={"North": "N"},
    )
    assert resolve_display_name(widget, "val") == "Revenue"
    assert resolve_display_name(widget, "North") == "N"
    assert resolve_display_name(widget, "South") == "South"


def test_rename_writes_alias_to_matching_line_config(make_widget):
    widget = make_widget(
        y_axis_configs=[{"field": "val"}],
        line_axis_configs=[{"field": "qty", "aggregation": "avg"}],
    )
    changes = rename_series(widget, "qty", "Units")
    assert changes == {"line_axis_configs": [MeasureConfig("qty", "avg", alias="Units")]}


def test_rename_aliases_every_matching_config(make_widget):
    widget = make_widget(y_axis_configs=[{"field": "val", "aggregation": "sum"}, {"field": "val", "aggregation": "avg"}])
    configs = rename_series(widget, "val", "Total")["y_axis_configs"]
    assert [c.alias for c in configs] == ["Total", "Total"]


def test_display_name_falls_through_to_aliased_line_config(make_widget):
    widget = make_widget(
        y_axis_configs=[{"field": "val"}],
        line_axis_configs=[{"field": "val", "aggregation": "avg", "alias": "Average"}],
        legend_aliases={"val": "Legend value"},
    )
    assert resolve_display_name(widget, "val") == "Average"


def test_rename_single_measure_creates_config(make_widget):
    widget = make_widget(x_axis="cat", y_axis=["val"], aggregation="avg")
    assert rename_series(widget, "val", " Average ") == {
        "y_axis_configs": [MeasureConfig("val", "avg", alias="Average")]
    }


def test_rename_legend_value(make_widget):
    widget = make_widget(x_axis="cat", y_axis=["val"], legend="region")
    assert rename_series(widget, "North", "N") == {"legend_aliases": {"North": "N"}}
    renamed = make_widget(x_axis="cat", y_axis=["val"], legend="region", legend_aliases={"North": "N"})
    assert rename_series(renamed, "N", "Nord") == {"legend_aliases": {"North": "Nord"}}


def test_blank_name_changes_nothing(make_widget):
    assert rename_series(make_widget(y_axis=["val"]), "val", "   ") == {}
