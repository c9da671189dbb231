import asyncio

import pandas as pd
import pytest

from bi_core.accessors import InMemoryDatasetAccessor
from bi_core.drilldown import drill_down, init_drill_down
from bi_core.models import Dataset
from bi_core.pipeline import (
    NOT_CONFIGURED_MESSAGE,
    STATUS_ERROR,
    STATUS_NOT_CONFIGURED,
    composed_filters,
    compute_series,
    compute_series_remote,
    remote_query,
    requires_remote,
)
from bi_core.settings import PipelineLimits


def test_missing_axes_are_reported_not_raised(make_widget, sales_rows):
    result = compute_series(make_widget(y_axis=["val"]), sales_rows)
    assert result.status == STATUS_NOT_CONFIGURED
    assert result.error == NOT_CONFIGURED_MESSAGE
    assert result.rows == []
    assert compute_series(make_widget(x_axis="cat"), sales_rows).status == STATUS_NOT_CONFIGURED


def test_basic_series(make_widget, sales_rows):
    result = compute_series(make_widget(x_axis="cat", y_axis=["val"]), sales_rows)
    assert result.ok
    assert result.dimension == "cat"
    assert result.series == ["val"]
    assert result.rows == [{"cat": "A", "val": 30.0}, {"cat": "B", "val": 12.0}, {"cat": "C", "val": 1.0}]
    assert result.row_count_in == 5


def test_filter_groups_are_composed_in_order(make_widget):
    widget = make_widget(
        id="w1",
        x_axis="cat",
        y_axis=["val"],
        filters=[{"field": "qty", "operator": "less_than", "value": 5}],
    )
    state = drill_down(init_drill_down(make_widget(id="w1", drill_down_hierarchy=["cat", "sub"])), "A")
    groups = composed_filters(
        widget,
        [{"field": "region", "value": "North"}],
        [
            {"field": "val", "operator": "greater_than", "value": 0, "appliedToWidgets": ["w1"]},
            {"field": "val", "operator": "less_than", "value": 0, "appliedToWidgets": ["other"]},
        ],
        state,
    )
    assert [[f.field for f in g] for g in groups] == [["qty"], ["region"], ["val"], ["cat"]]


def test_cross_and_global_filters_narrow_rows(make_widget, sales_rows):
    widget = make_widget(x_axis="cat", y_axis=["val"])
    result = compute_series(
        widget,
        sales_rows,
        cross_filters=[{"field": "region", "value": "North"}],
        global_filters=[{"field": "cat", "operator": "not_equals", "value": "C"}],
    )
    assert result.rows == [{"cat": "A", "val": 10.0}, {"cat": "B", "val": 5.0}]


def test_untargeted_global_filter_is_ignored(make_widget, sales_rows):
    widget = make_widget(id="w1", x_axis="cat", y_axis=["val"])
    result = compute_series(
        widget,
        sales_rows,
        global_filters=[{"field": "cat", "value": "A", "applied_to_widgets": ["w2"]}],
    )
    assert len(result.rows) == 3


def test_widget_can_opt_out_of_cross_filtering(make_widget, sales_rows):
    widget = make_widget(x_axis="cat", y_axis=["val"], enableCrossFilter=False)
    result = compute_series(widget, sales_rows, cross_filters=[{"field": "cat", "value": "A"}])
    assert [r["cat"] for r in result.rows] == ["A", "B", "C"]


def test_drill_state_picks_dimension_and_filters(make_widget, sales_rows):
    widget = make_widget(x_axis="cat", y_axis=["val"], drill_down_hierarchy=["cat", "sub"])
    state = drill_down(init_drill_down(widget), "B")
    result = compute_series(widget, sales_rows, drill_state=state)
    assert result.dimension == "sub"
    assert result.rows == [{"sub": "B1", "val": 12.0}]


def test_sort_then_quick_measure(make_widget, sales_rows):
    widget = make_widget(
        x_axis="cat",
        y_axis=["val"],
        sort={"key": "value", "direction": "desc"},
        quick_measures=[{"field": "val", "kind": "runningTotal", "label": "cumulative"}],
    )
    result = compute_series(widget, sales_rows)
    assert [r["cat"] for r in result.rows] == ["A", "B", "C"]
    assert [r["cumulative"] for r in result.rows] == [30.0, 42.0, 43.0]


def test_limits_are_reported(make_widget):
    rows = [{"d": f"c{i % 30}", "v": 1} for i in range(100)]
    limits = PipelineLimits(max_processing_rows=50, max_chart_items=10)
    result = compute_series(make_widget(x_axis="d", y_axis=["v"]), rows, limits=limits)
    assert result.sampled and result.truncated
    assert len(result.rows) == 10
    assert len(result.notices) == 2


def test_requires_remote():
    frame = pd.DataFrame({"a": [1]})
    assert not requires_remote(Dataset("s", frame))
    assert requires_remote(Dataset("s", frame, total_row_count=2_000_000))
    assert requires_remote(Dataset("s", frame, remote_aggregation=True))


def test_remote_query_carries_all_filters(make_widget):
    widget = make_widget(x_axis="cat", y_axis=["val"], filters=[{"field": "qty", "operator": "gt", "value": 1}])
    query = remote_query(widget, [{"field": "region", "value": "North"}], limits=PipelineLimits(remote_limit=7))
    assert query.dimensions == ("cat",)
    assert [(m.field, m.aggregation) for m in query.measures] == [("val", "sum")]
    assert [f.field for f in query.filters] == ["qty", "region"]
    assert query.limit == 7


def test_remote_series_uses_local_column_names(make_widget, accessor):
    widget = make_widget(
        x_axis="cat",
        y_axis_configs=[{"field": "val", "aggregation": "sum", "alias": "Revenue"}],
        line_axis_configs=[{"field": "qty", "aggregation": "max"}],
    )
    result = asyncio.run(compute_series_remote(widget, accessor, "sales"))
    assert result.ok and result.remote
    assert result.series == ["Revenue"]
    assert result.line_series == ["qty"]
    assert result.rows[0] == {"cat": "A", "Revenue": 30.0, "qty": 2.0}
    assert len(accessor.remote_calls) == 1


def test_remote_failure_becomes_error_result(make_widget):
    result = asyncio.run(compute_series_remote(make_widget(x_axis="cat", y_axis=["val"]), InMemoryDatasetAccessor(), "missing"))
    assert result.status == STATUS_ERROR
    assert "missing" in result.error


@pytest.mark.parametrize(
    "rows",
    [
        [{"cat": "A", "val": 10}, {"cat": "A", "val": 20}, {"cat": "B", "val": 5}],
        [{"cat": "B", "val": 5}, {"cat": "A", "val": 20}, {"cat": "A", "val": 10}],
    ],
)
def test_sum_by_category_in_ascending_order(make_widget, rows):
    widget = make_widget(x_axis="cat", y_axis=["val"], aggregation="sum", sort="category_asc")
    assert compute_series(widget, rows).rows == [{"cat": "A", "val": 30.0}, {"cat": "B", "val": 5.0}]


def test_sixty_thousand_rows_are_sampled_before_grouping(make_widget):
    frame = pd.DataFrame({"cat": ["A", "B"] * 30_000, "val": 1})
    result = compute_series(make_widget(x_axis="cat", y_axis=["val"]), frame)
    assert result.sampled
    assert result.row_count_in == 60_000
    assert result.rows == [{"cat": "A", "val": 25_000.0}, {"cat": "B", "val": 25_000.0}]
    assert "60,000" in result.notices[0] and "50,000" in result.notices[0]


def test_sampling_counts_rows_before_filtering(make_widget):
    rows = [{"cat": "A" if i % 2 else "B", "val": 1} for i in range(100)]
    widget = make_widget(x_axis="cat", y_axis=["val"], filters=[{"field": "cat", "value": "A"}])
    result = compute_series(widget, rows, limits=PipelineLimits(max_processing_rows=40))
    assert result.rows == [{"cat": "A", "val": 20.0}]
    assert result.notices[0].startswith("Dataset has 100 rows")


def test_calculated_field_can_be_filtered_and_aggregated(make_widget, sales_rows):
    widget = make_widget(
        x_axis="cat",
        y_axis=["rev"],
        calculated_fields=[{"name": "rev", "formula": "[val] * [qty]"}],
        filters=[{"field": "rev", "operator": "greaterThan", "value": 10}],
    )
    assert compute_series(widget, sales_rows).rows == [{"cat": "A", "rev": 40.0}, {"cat": "B", "rev": 43.0}]


def test_widget_calculated_field_overrides_dashboard_one(make_widget, sales_rows):
    widget = make_widget(x_axis="cat", y_axis=["rev"], calculated_fields=[{"name": "rev", "formula": "[val] * 2"}])
    result = compute_series(widget, sales_rows, dashboard_calculated_fields=[{"name": "rev", "formula": "[val]"}])
    assert result.rows[0] == {"cat": "A", "rev": 60.0}


def test_dashboard_quick_measures_run_before_widget_ones(make_widget, sales_rows):
    widget = make_widget(
        x_axis="cat",
        y_axis=["val"],
        quick_measures=[{"field": "cum", "kind": "difference", "label": "step"}],
    )
    result = compute_series(
        widget,
        sales_rows,
        dashboard_quick_measures=[{"field": "val", "kind": "runningTotal", "label": "cum"}],
    )
    assert [r["cum"] for r in result.rows] == [30.0, 42.0, 43.0]
    assert [r["step"] for r in result.rows] == [0.0, 12.0, 1.0]
