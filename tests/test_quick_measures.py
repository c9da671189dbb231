import pandas as pd
import pytest

from bi_core.quick_measures import apply_quick_measure, apply_quick_measures, normalize_kind


@pytest.fixture()
def series_frame():
    return pd.DataFrame({"d": ["a", "b", "c", "d"], "v": [1, 2, 3, 4]})


def test_kind_aliases():
    assert normalize_kind("runningTotal") == "running_total"
    assert normalize_kind("YoY") == "year_over_year"
    assert normalize_kind("median") is None


def test_percent_of_total(series_frame):
    out = apply_quick_measure(series_frame, "v", "percent_of_total")
    assert out["v_percent_of_total"].tolist() == pytest.approx([10.0, 20.0, 30.0, 40.0])
    zeros = apply_quick_measure(series_frame.assign(v=0), "v", "percent_of_total")
    assert zeros["v_percent_of_total"].tolist() == [0.0] * 4


def test_running_total_and_difference(series_frame):
    out = apply_quick_measure(series_frame, "v", "running_total", "rt")
    assert out["rt"].tolist() == [1.0, 3.0, 6.0, 10.0]
    out = apply_quick_measure(series_frame, "v", "difference", "diff")
    assert out["diff"].tolist() == [0.0, 1.0, 1.0, 1.0]


def test_moving_average_is_centred(series_frame):
    out = apply_quick_measure(series_frame, "v", "moving_average", "ma")
    assert out["ma"].tolist() == [1.5, 2.0, 3.0, 3.5]


def test_percent_change_guards_zero():
    frame = pd.DataFrame({"v": [0, 5, 10]})
    out = apply_quick_measure(frame, "v", "percent_change", "pc")
    assert out["pc"].tolist() == [0.0, 0.0, 100.0]


def test_year_over_year_uses_twelve_row_lag():
    frame = pd.DataFrame({"v": [10] * 12 + [15]})
    out = apply_quick_measure(frame, "v", "year_over_year", "yoy")
    assert out["yoy"].iloc[:12].isna().all()
    assert out["yoy"].iloc[12] == pytest.approx(50.0)


def test_non_numeric_values_count_as_zero():
    frame = pd.DataFrame({"v": ["3", "x", None]})
    out = apply_quick_measure(frame, "v", "running_total", "rt")
    assert out["rt"].tolist() == [3.0, 3.0, 3.0]


def test_unknown_kind_and_empty_rows_pass_through(series_frame):
    assert apply_quick_measure(series_frame, "v", "median") is series_frame
    empty = pd.DataFrame({"v": []})
    assert apply_quick_measure(empty, "v", "running_total") is empty


def test_apply_many_in_order(series_frame):
    out = apply_quick_measures(
        series_frame,
        [{"field": "v", "kind": "running_total", "label": "rt"}, {"field": "rt", "kind": "percent_of_total"}],
    )
    assert list(out.columns) == ["d", "v", "rt", "rt_percent_of_total"]
