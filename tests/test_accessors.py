import asyncio

import pandas as pd
import pytest

from bi_core.accessors import InMemoryDatasetAccessor, RemoteQuery, detect_schema
from bi_core.errors import StoreError
from bi_core.models import Filter, MeasureConfig


def test_detect_schema():
    frame = pd.DataFrame(
        {
            "flag": [True, False, True, True, True],
            "amount": ["1", "2.5", 3, 4, 5],
            "day": ["2024-01-01", "2024-02-01", "2024-03-01", "2024-04-01", "2024-05-01"],
            "name": ["a", "b", "c", "1", "2"],
        }
    )
    types = {f.name: f.type for f in detect_schema(frame)}
    assert types == {"flag": "boolean", "amount": "number", "day": "date", "name": "string"}


def test_register_marks_large_sources_remote(sales_rows):
    accessor = InMemoryDatasetAccessor(remote_row_threshold=10)
    assert not accessor.register("small", sales_rows).remote_aggregation
    big = accessor.register("big", sales_rows, total_row_count=11)
    assert big.remote_aggregation
    assert big.row_count == 11
    with pytest.raises(StoreError):
        accessor.get_dataset("nope")


def test_remote_aggregate_answers_with_field_agg_columns(accessor):
    query = RemoteQuery(
        dimensions=("region",),
        measures=(MeasureConfig("val", "sum"), MeasureConfig("qty", "count")),
        filters=(Filter("cat", operator="not_equals", value="C"),),
        limit=1,
    )
    rows = asyncio.run(accessor.get_remote_aggregate("sales", query))
    assert rows == [{"region": "North", "val_sum": 15.0, "qty_count": 2}]
