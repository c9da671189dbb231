import pandas as pd
import pytest

from bi_core.errors import FilterError
from bi_core.filters import apply_filter_records, apply_filters, loose_equals, matches
from bi_core.models import Filter, normalize_filter


def test_empty_filter_list_returns_same_rows(sales_frame):
    assert apply_filters(sales_frame, []) is sales_frame
    assert apply_filters(sales_frame, None) is sales_frame


def test_splitting_filters_into_sequential_calls_gives_same_rows(sales_frame):
    first = {"field": "val", "operator": "greater_or_equal", "value": 5}
    second = {"field": "region", "operator": "equals", "value": "North"}
    together = apply_filters(sales_frame, [first, second])
    sequential = apply_filters(apply_filters(sales_frame, [first]), [second])
    pd.testing.assert_frame_equal(together, sequential)
    assert together["val"].tolist() == [10, 5]


def test_equality_is_loose_between_numbers_and_numeric_strings():
    assert matches({"val": 10}, {"field": "val", "value": "10"})
    assert matches({"val": "7"}, {"field": "val", "value": 7})
    assert not matches({"val": 10}, {"field": "val", "value": "ten"})
    assert loose_equals(None, None)
    assert not loose_equals("x", None)


def test_none_filter_value_matches_null_cells():
    flt = {"field": "cat", "operator": "equals", "value": None}
    assert matches({"cat": None}, flt)
    assert matches({"cat": ""}, flt)
    assert not matches({"cat": "A"}, flt)


def test_ordering_operators_need_numeric_operands():
    assert matches({"val": "12"}, {"field": "val", "operator": "greater_than", "value": 10})
    assert not matches({"val": "abc"}, {"field": "val", "operator": "greater_than", "value": 1})
    assert not matches({"val": 5}, {"field": "val", "operator": "less_than", "value": "n/a"})


def test_date_strings_compare_as_dates():
    flt = {"field": "day", "operator": "greater_than", "value": "2024-01-15"}
    assert matches({"day": "2024-03-01"}, flt)
    assert not matches({"day": "2023-12-31"}, flt)


def test_between_is_inclusive(sales_frame):
    out = apply_filters(sales_frame, [{"field": "val", "operator": "between", "value": 5, "value2": 10}])
    assert sorted(out["val"].tolist()) == [5, 7, 10]
    out = apply_filters(sales_frame, [{"field": "val", "operator": "between", "values": [7, 20]}])
    assert sorted(out["val"].tolist()) == [7, 10, 20]


def test_text_operators_are_case_sensitive():
    assert matches({"name": "Alpha"}, {"field": "name", "operator": "contains", "value": "lph"})
    assert not matches({"name": "Alpha"}, {"field": "name", "operator": "contains", "value": "ALP"})
    assert matches({"name": "Alpha"}, {"field": "name", "operator": "starts_with", "value": "Al"})
    assert matches({"name": "Alpha"}, {"field": "name", "operator": "ends_with", "value": "ha"})
    assert not matches({"name": None}, {"field": "name", "operator": "contains", "value": "a"})


def test_in_and_not_in(sales_frame):
    kept = apply_filters(sales_frame, [{"field": "cat", "operator": "in", "value": ["A", "C"]}])
    assert kept["cat"].tolist() == ["A", "A", "C"]
    dropped = apply_filters(sales_frame, [{"field": "cat", "operator": "notIn", "values": ["A", "C"]}])
    assert dropped["cat"].tolist() == ["B", "B"]


def test_unknown_field_is_treated_as_null():
    assert matches({"cat": "A"}, {"field": "missing", "operator": "is_null"})
    assert not matches({"cat": "A"}, {"field": "missing", "operator": "is_not_null"})
    assert not matches({"cat": "A"}, {"field": "missing", "operator": "equals", "value": "A"})


def test_field_lookup_is_case_insensitive():
    assert matches({"Category": "A"}, {"field": "category", "value": "A"})


def test_disabled_filters_are_skipped(sales_frame):
    flt = Filter(field="cat", operator="equals", value="Z", enabled=False)
    assert apply_filters(sales_frame, [flt]) is sales_frame
    assert matches({"cat": "A"}, flt)


def test_operator_aliases_and_unknown_operator():
    assert normalize_filter({"field": "x", "operator": "greaterThan", "value": 1}).operator == "greater_than"
    assert normalize_filter({"field": "x", "operator": ">=", "value": 1}).operator == "greater_or_equal"
    with pytest.raises(FilterError):
        normalize_filter({"field": "x", "operator": "resembles"})
    with pytest.raises(ValueError):
        normalize_filter({"operator": "equals"})


def test_record_variant_matches_frame_variant(sales_rows, sales_frame):
    filters = [{"field": "region", "value": "South"}]
    rows = apply_filter_records(sales_rows, filters)
    assert [r["val"] for r in rows] == apply_filters(sales_frame, filters)["val"].tolist()
