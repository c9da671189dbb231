from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from bi_core.accessors import DatasetAccessor, RemoteQuery
from bi_core.models import DrillDownState, Filter, GlobalFilter, QuickMeasure, Widget
from bi_core.pipeline import STATUS_ERROR, SeriesResult, compute_series_remote, remote_query
from bi_core.settings import DEFAULT_LIMITS, PipelineLimits

logger = logging.getLogger(__name__)

STATUS_SUPERSEDED = "superseded"


class RemoteSeriesRunner:
    """One in-flight remote aggregation per widget; a newer run cancels the older one.

    The last good series is kept together with the query that produced it,
    so callers can tell whether it still answers the widget's current filters.
    """

    def __init__(self, accessor: DatasetAccessor, limits: PipelineLimits = DEFAULT_LIMITS) -> None:
        self.accessor = accessor
        self.limits = limits
        self._tasks: Dict[str, asyncio.Task] = {}
        self._latest: Dict[str, Tuple[RemoteQuery, SeriesResult]] = {}

    def latest(self, widget_id: str, query: Optional[RemoteQuery] = None) -> Optional[SeriesResult]:
        """Last good series; with ``query``, only if it was produced by that query."""
        entry = self._latest.get(widget_id)
        if entry is None:
            return None
        if query is not None and entry[0] != query:
            return None
        return entry[1]

    def in_flight(self, widget_id: str) -> bool:
        task = self._tasks.get(widget_id)
        return task is not None and not task.done()

    def cancel(self, widget_id: str) -> bool:
        task = self._tasks.pop(widget_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def forget(self, widget_id: str) -> None:
        self.cancel(widget_id)
        self._latest.pop(widget_id, None)

    async def run(
        self,
        widget: Widget,
        source_id: str,
        cross_filters: Optional[Sequence[Filter | Dict[str, Any]]] = None,
        global_filters: Optional[Iterable[GlobalFilter | Dict[str, Any]]] = None,
        drill_state: Optional[DrillDownState] = None,
        *,
        dashboard_quick_measures: Sequence[QuickMeasure | Dict[str, Any]] = (),
    ) -> SeriesResult:
        if self.cancel(widget.id):
            logger.info("superseded in-flight remote query for widget %s", widget.id)
        global_filters = list(global_filters or [])
        query = remote_query(widget, cross_filters, global_filters, drill_state, self.limits)
        task = asyncio.ensure_future(
            compute_series_remote(
                widget,
                self.accessor,
                source_id,
                cross_filters,
                global_filters,
                drill_state,
                self.limits,
                dashboard_quick_measures=dashboard_quick_measures,
            )
        )
        self._tasks[widget.id] = task
        try:
            result = await task
        except asyncio.CancelledError:
            if task.cancelled() and self._tasks.get(widget.id) is not task:
                return SeriesResult(status=STATUS_SUPERSEDED, remote=True)
            raise
        finally:
            if self._tasks.get(widget.id) is task:
                del self._tasks[widget.id]

        if result.status == STATUS_ERROR:
            previous = self.latest(widget.id)
            if previous is not None:
                return replace(previous, status=STATUS_ERROR, error=result.error, notices=list(previous.notices))
            return result
        self._latest[widget.id] = (query, result)
        return result
