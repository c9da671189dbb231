"""Dataset access boundary.

The pipeline consumes datasets through :class:`DatasetAccessor`. Real
connectors live outside this package; :class:`InMemoryDatasetAccessor` serves
registered DataFrames and answers remote aggregate queries locally.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import pandas as pd

from bi_core.aggregation import group_by_measures
from bi_core.errors import StoreError
from bi_core.fields import frame_to_records, is_date_like, is_null, records_to_frame, to_number
from bi_core.filters import apply_filters
from bi_core.models import Dataset, FieldSpec, Filter, MeasureConfig

logger = logging.getLogger(__name__)

SCHEMA_SAMPLE_ROWS = 100
SCHEMA_MATCH_RATIO = 0.8


@dataclass(frozen=True)
class RemoteQuery:
    dimensions: Tuple[str, ...]
    measures: Tuple[MeasureConfig, ...]
    filters: Tuple[Filter, ...] = ()
    limit: int = 1_000


class DatasetAccessor(Protocol):
    def get_dataset(self, source_id: str) -> Dataset: ...

    async def get_remote_aggregate(self, source_id: str, query: RemoteQuery) -> List[Dict[str, Any]]: ...


def _field_type(values: pd.Series) -> str:
    sample = values.head(SCHEMA_SAMPLE_ROWS).tolist()
    if not sample:
        return "string"
    booleans = numbers = dates = 0
    for value in sample:
        if is_null(value):
            continue
        if isinstance(value, bool) or value in ("true", "false"):
            booleans += 1
        elif to_number(value) is not None:
            numbers += 1
        elif is_date_like(value):
            dates += 1
    total = len(sample)
    if booleans / total > SCHEMA_MATCH_RATIO:
        return "boolean"
    if numbers / total > SCHEMA_MATCH_RATIO:
        return "number"
    if dates / total > SCHEMA_MATCH_RATIO:
        return "date"
    return "string"


def detect_schema(frame: pd.DataFrame) -> List[FieldSpec]:
    return [FieldSpec(name=str(col), type=_field_type(frame[col])) for col in frame.columns]


def remote_column_name(measure: MeasureConfig) -> str:
    return f"{measure.field}_{measure.aggregation}"


class InMemoryDatasetAccessor:
    def __init__(self, remote_row_threshold: Optional[int] = None) -> None:
        self._datasets: Dict[str, Dataset] = {}
        self.remote_row_threshold = remote_row_threshold
        self.remote_calls: List[Tuple[str, RemoteQuery]] = []

    def register(self, source_id: str, rows: Any, *, total_row_count: Optional[int] = None) -> Dataset:
        frame = records_to_frame(rows)
        total = int(total_row_count if total_row_count is not None else len(frame))
        remote = self.remote_row_threshold is not None and total > self.remote_row_threshold
        dataset = Dataset(
            source_id=source_id,
            rows=frame,
            schema=detect_schema(frame),
            total_row_count=total,
            remote_aggregation=remote,
        )
        self._datasets[source_id] = dataset
        logger.info("registered dataset %s (%s rows, remote=%s)", source_id, total, remote)
        return dataset

    def sources(self) -> List[str]:
        return list(self._datasets)

    def get_dataset(self, source_id: str) -> Dataset:
        try:
            return self._datasets[source_id]
        except KeyError:
            raise StoreError(f"Unknown data source: {source_id}") from None

    async def get_remote_aggregate(self, source_id: str, query: RemoteQuery) -> List[Dict[str, Any]]:
        self.remote_calls.append((source_id, query))
        dataset = self.get_dataset(source_id)
        await asyncio.sleep(0)
        frame = apply_filters(dataset.rows, list(query.filters))
        dimension = query.dimensions[0] if query.dimensions else ""
        renamed = [MeasureConfig(field=m.field, aggregation=m.aggregation, alias=remote_column_name(m)) for m in query.measures]
        result = group_by_measures(frame, dimension, renamed)
        return frame_to_records(result.frame.head(query.limit))


def measures_for_query(measures: Sequence[MeasureConfig]) -> Tuple[MeasureConfig, ...]:
    return tuple(MeasureConfig(field=m.field, aggregation=m.aggregation) for m in measures)
