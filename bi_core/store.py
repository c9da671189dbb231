"""Dashboard / page / widget store.

The store owns the entity graph and the ephemeral interaction state
(drill-down per widget, the cross-filter bus). Every mutation validates
first, commits locally, notifies subscribers with ``(event, payload)`` and,
when a persistence collaborator is attached, schedules a debounced save that
is reconciled by ``updated_at`` once the collaborator answers.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from bi_core.accessors import DatasetAccessor
from bi_core.calculations import validate_formula
from bi_core.crossfilter import CrossFilterBus, is_value_selected, selection_filter_for, selection_filters
from bi_core.drilldown import current_field, drill_down, drill_up, expand_next_level, init_drill_down, reset
from bi_core.errors import DrillDownError, FormulaError, StoreError
from bi_core.grid import align_boxes, clamp_box, find_collisions, in_bounds, offset_position, place_box
from bi_core.legend import rename_series
from bi_core.models import (
    CalculatedField,
    CrossFilterEntry,
    Dashboard,
    Dataset,
    DrillDownState,
    GlobalFilter,
    GridBox,
    Page,
    Widget,
    has_explicit_box,
    new_id,
    normalize_box,
    normalize_calculated_field,
    normalize_global_filter,
    normalize_quick_measure,
    normalize_widget,
    utcnow,
)
from bi_core.persistence import Applied, AutosaveScheduler, Failed, PersistenceCollaborator, ReconcileResult, remove, save
from bi_core.pipeline import (
    STATUS_NOT_CONFIGURED,
    SeriesResult,
    compute_series,
    is_configured,
    not_configured,
    pending,
    remote_query,
    requires_remote,
)
from bi_core.remote import RemoteSeriesRunner
from bi_core.settings import DEFAULT_LIMITS, PipelineLimits

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, Dict[str, Any]], None]

_BOX_KEYS = ("x", "y", "w", "h")
_CHANGE_ALIASES = {"sort_by": "sort", "legend_field": "legend", "values": "y_axis", "measures": "y_axis"}
_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def canonical_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in changes.items():
        name = _snake(str(key))
        out[_CHANGE_ALIASES.get(name, name)] = value
    return out


class DashboardStore:
    def __init__(
        self,
        accessor: Optional[DatasetAccessor] = None,
        *,
        limits: PipelineLimits = DEFAULT_LIMITS,
        persistence: Optional[PersistenceCollaborator] = None,
        autosave: Optional[AutosaveScheduler] = None,
    ) -> None:
        self.accessor = accessor
        self.limits = limits
        self.dashboards: Dict[str, Dashboard] = {}
        self.cross_filters = CrossFilterBus()
        self.drill_states: Dict[str, DrillDownState] = {}
        self.runner = RemoteSeriesRunner(accessor, limits) if accessor is not None else None
        self.persistence = persistence
        self.autosave = autosave or (AutosaveScheduler(limits.autosave_debounce_seconds) if persistence else None)
        self.sync_results: Dict[str, ReconcileResult] = {}
        self._subscribers: List[Subscriber] = []
        self._persisted: set = set()
        self._unsaved: Dict[str, Callable[[], Any]] = {}
        self._server_ids: Dict[str, str] = {}

    # ---------------- Observers ----------------
    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, event: str, **payload: Any) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event, payload)
            except Exception:
                logger.exception("subscriber failed handling %s", event)

    # ---------------- Lookups ----------------
    def get_dashboard(self, dashboard_id: str) -> Dashboard:
        try:
            return self.dashboards[dashboard_id]
        except KeyError:
            raise StoreError(f"Unknown dashboard: {dashboard_id}") from None

    def get_page(self, dashboard_id: str, page_id: str) -> Page:
        dashboard = self.get_dashboard(dashboard_id)
        page = next((p for p in dashboard.pages if p.id == page_id), None)
        if page is None:
            raise StoreError(f"Unknown page: {page_id}")
        return page

    def get_widget(self, dashboard_id: str, widget_id: str) -> Tuple[Page, Widget]:
        page, widget = self.get_dashboard(dashboard_id).find_widget(widget_id)
        if page is None or widget is None:
            raise StoreError(f"Unknown widget: {widget_id}")
        return page, widget

    # ---------------- Dashboards ----------------
    def create_dashboard(self, title: str = "Untitled", *, data_source_id: Optional[str] = None, dashboard_id: Optional[str] = None) -> Dashboard:
        dashboard_id = dashboard_id or new_id("d")
        if dashboard_id in self.dashboards:
            raise StoreError(f"Dashboard already exists: {dashboard_id}")
        now = utcnow()
        page = Page(id=new_id("p"))
        dashboard = Dashboard(
            id=dashboard_id,
            title=title,
            pages=[page],
            active_page_id=page.id,
            data_source_id=data_source_id,
            created_at=now,
            updated_at=now,
        )
        self.dashboards[dashboard.id] = dashboard
        self._notify("dashboard_created", dashboard_id=dashboard.id)
        self._persist_dashboard(dashboard.id)
        return dashboard

    def update_dashboard(self, dashboard_id: str, changes: Mapping[str, Any]) -> Dashboard:
        dashboard = self.get_dashboard(dashboard_id)
        changes = canonical_changes(changes)
        if "active_page_id" in changes:
            self.get_page(dashboard_id, changes["active_page_id"])
        if "calculated_fields" in changes:
            changes["calculated_fields"] = [normalize_calculated_field(c) for c in changes["calculated_fields"] or []]
        if "quick_measures" in changes:
            changes["quick_measures"] = [normalize_quick_measure(q) for q in changes["quick_measures"] or []]
        for name in ("title", "data_source_id", "active_page_id", "calculated_fields", "quick_measures"):
            if name in changes:
                setattr(dashboard, name, changes[name])
        dashboard.updated_at = utcnow()
        self._notify("dashboard_updated", dashboard_id=dashboard_id)
        self._persist_dashboard(dashboard_id)
        return dashboard

    def delete_dashboard(self, dashboard_id: str) -> None:
        dashboard = self.get_dashboard(dashboard_id)
        for page in dashboard.pages:
            for widget in page.widgets:
                self._discard_widget_state(widget.id)
        del self.dashboards[dashboard_id]
        self._notify("dashboard_deleted", dashboard_id=dashboard_id)
        self._persist_delete("dashboard", dashboard_id)

    # ---------------- Pages ----------------
    def add_page(self, dashboard_id: str, title: Optional[str] = None, *, data_source_id: Optional[str] = None) -> Page:
        dashboard = self.get_dashboard(dashboard_id)
        page = Page(id=new_id("p"), title=title or f"Page {len(dashboard.pages) + 1}", data_source_id=data_source_id)
        dashboard.pages.append(page)
        dashboard.active_page_id = page.id
        dashboard.updated_at = utcnow()
        self._notify("page_added", dashboard_id=dashboard_id, page_id=page.id)
        self._persist_dashboard(dashboard_id)
        return page

    def update_page(self, dashboard_id: str, page_id: str, changes: Mapping[str, Any]) -> Page:
        page = self.get_page(dashboard_id, page_id)
        changes = canonical_changes(changes)
        if "title" in changes:
            page.title = str(changes["title"])
        if "data_source_id" in changes:
            page.data_source_id = changes["data_source_id"]
        self._touch(dashboard_id)
        self._notify("page_updated", dashboard_id=dashboard_id, page_id=page_id)
        self._persist_dashboard(dashboard_id)
        return page

    def delete_page(self, dashboard_id: str, page_id: str) -> None:
        dashboard = self.get_dashboard(dashboard_id)
        page = self.get_page(dashboard_id, page_id)
        if len(dashboard.pages) == 1:
            raise StoreError("A dashboard needs at least one page")
        for widget in page.widgets:
            self._discard_widget_state(widget.id)
        dashboard.pages.remove(page)
        if dashboard.active_page_id == page_id:
            dashboard.active_page_id = dashboard.pages[0].id
        self._touch(dashboard_id)
        self._notify("page_deleted", dashboard_id=dashboard_id, page_id=page_id)
        self._persist_dashboard(dashboard_id)

    def set_active_page(self, dashboard_id: str, page_id: str) -> Page:
        page = self.get_page(dashboard_id, page_id)
        self.get_dashboard(dashboard_id).active_page_id = page_id
        self._notify("page_activated", dashboard_id=dashboard_id, page_id=page_id)
        return page

    # ---------------- Widgets ----------------
    def _resolve_page(self, dashboard: Dashboard, page_id: Optional[str]) -> Page:
        if page_id:
            return self.get_page(dashboard.id, page_id)
        page = dashboard.active_page
        if page is None:
            raise StoreError(f"Dashboard {dashboard.id} has no pages")
        return page

    def _placed_box(self, others: List[GridBox], box: GridBox, explicit: bool) -> GridBox:
        columns = self.limits.grid_columns
        placed = place_box(
            others,
            clamp_box(box, columns),
            honour_position=explicit,
            columns=columns,
            margin=self.limits.grid_scan_margin,
        )
        logger.info("widget placed at (%s, %s) size %sx%s", placed.x, placed.y, placed.w, placed.h)
        return placed

    def add_widget(self, dashboard_id: str, raw: Mapping[str, Any] | Widget, *, page_id: Optional[str] = None) -> Widget:
        dashboard = self.get_dashboard(dashboard_id)
        page = self._resolve_page(dashboard, page_id)
        widget = normalize_widget(raw, columns=self.limits.grid_columns)
        if dashboard.find_widget(widget.id)[1] is not None:
            raise StoreError(f"Widget already exists: {widget.id}")
        explicit = isinstance(raw, Widget) or has_explicit_box(raw)
        widget.box = self._placed_box([w.box for w in page.widgets], widget.box, explicit)
        widget.updated_at = utcnow()
        page.widgets.append(widget)
        self._touch(dashboard_id)
        self._notify("widget_added", dashboard_id=dashboard_id, page_id=page.id, widget_id=widget.id)
        self._persist_widget(dashboard_id, widget.id)
        return widget

    def update_widget(self, dashboard_id: str, widget_id: str, changes: Mapping[str, Any]) -> Widget:
        """Partial update. Box changes are clamped and moved to a free slot if they would overlap."""
        page, widget = self.get_widget(dashboard_id, widget_id)
        changes = canonical_changes(changes)
        box_raw = dict(changes.pop("box", None) or {})
        box_raw.update({k: changes.pop(k) for k in _BOX_KEYS if k in changes})

        merged = asdict(widget)
        merged.update(changes)
        merged["id"] = widget.id
        updated = normalize_widget(merged, columns=self.limits.grid_columns)
        if box_raw:
            wanted = normalize_box({**asdict(widget.box), **box_raw}, columns=self.limits.grid_columns) or widget.box
            others = [w.box for w in page.widgets if w.id != widget_id]
            updated.box = self._placed_box(others, wanted, explicit=True)
        else:
            updated.box = widget.box
        updated.updated_at = utcnow()

        page.widgets[page.widgets.index(widget)] = updated
        if tuple(updated.drill_down_hierarchy) != tuple(widget.drill_down_hierarchy):
            self.drill_states.pop(widget_id, None)
        if not updated.enable_cross_filter and widget.enable_cross_filter:
            logger.debug("widget %s opted out of cross-filtering", widget_id)
        self._touch(dashboard_id)
        self._notify("widget_updated", dashboard_id=dashboard_id, widget_id=widget_id, changes=sorted(changes) + sorted(box_raw))
        self._persist_widget(dashboard_id, widget_id)
        return updated

    def delete_widget(self, dashboard_id: str, widget_id: str) -> None:
        page, widget = self.get_widget(dashboard_id, widget_id)
        page.widgets.remove(widget)
        self._discard_widget_state(widget_id)
        self._touch(dashboard_id)
        self._notify("widget_deleted", dashboard_id=dashboard_id, widget_id=widget_id)
        self._persist_delete("widget", widget_id)

    def duplicate_widget(self, dashboard_id: str, widget_id: str) -> Widget:
        page, widget = self.get_widget(dashboard_id, widget_id)
        others = [w.box for w in page.widgets]
        copy = replace(
            normalize_widget({**asdict(widget), "id": new_id("w")}, columns=self.limits.grid_columns),
            title=f"{widget.title} (Copy)" if widget.title else "Copy",
            group_id=None,
        )
        copy.box = offset_position(widget.box, others, columns=self.limits.grid_columns, margin=self.limits.grid_scan_margin)
        copy.updated_at = utcnow()
        page.widgets.append(copy)
        self._touch(dashboard_id)
        self._notify("widget_added", dashboard_id=dashboard_id, page_id=page.id, widget_id=copy.id, source_id=widget_id)
        self._persist_widget(dashboard_id, copy.id)
        return copy

    def rename_series(self, dashboard_id: str, widget_id: str, entry_id: str, new_name: str) -> Widget:
        """Give a rendered series a display name; blank names are ignored."""
        _, widget = self.get_widget(dashboard_id, widget_id)
        changes = rename_series(widget, entry_id, new_name)
        if not changes:
            return widget
        return self.update_widget(dashboard_id, widget_id, changes)

    def _known_fields(self, dashboard: Dashboard, page: Optional[Page], widget: Optional[Widget]) -> Optional[List[str]]:
        source = dashboard.data_source_id
        if page is not None and widget is not None:
            source = self._source_for(dashboard, page, widget)
        if not source or self.accessor is None:
            return None
        names = [f.name for f in self.accessor.get_dataset(source).schema]
        names += [c.name for c in dashboard.calculated_fields]
        if widget is not None:
            names += [c.name for c in widget.calculated_fields]
        return names

    def add_calculated_field(
        self, dashboard_id: str, raw: Mapping[str, Any] | CalculatedField, *, widget_id: Optional[str] = None
    ) -> CalculatedField:
        """Validate a ``[Field]`` formula and add it to the dashboard, or to one widget.

        A field with the same name is replaced.
        """
        dashboard = self.get_dashboard(dashboard_id)
        page, widget = self.get_widget(dashboard_id, widget_id) if widget_id else (None, None)
        calc = normalize_calculated_field(raw)
        error = validate_formula(calc.formula, self._known_fields(dashboard, page, widget))
        if error:
            raise FormulaError(f"{calc.name}: {error}")
        if widget is not None:
            fields = [c for c in widget.calculated_fields if c.name != calc.name] + [calc]
            self.update_widget(dashboard_id, widget.id, {"calculated_fields": fields})
            return calc
        dashboard.calculated_fields = [c for c in dashboard.calculated_fields if c.name != calc.name] + [calc]
        self._touch(dashboard_id)
        self._notify("calculated_field_added", dashboard_id=dashboard_id, name=calc.name)
        self._persist_dashboard(dashboard_id)
        return calc

    def _selected(self, dashboard_id: str, widget_ids: Iterable[str]) -> Tuple[Page, List[Widget]]:
        ids = list(dict.fromkeys(widget_ids))
        if not ids:
            raise StoreError("No widgets selected")
        page, _ = self.get_widget(dashboard_id, ids[0])
        chosen = [w for w in page.widgets if w.id in ids]
        if len(chosen) != len(ids):
            raise StoreError("Selected widgets must exist on the same page")
        return page, chosen

    def group_widgets(self, dashboard_id: str, widget_ids: Iterable[str]) -> Optional[str]:
        _, chosen = self._selected(dashboard_id, widget_ids)
        if len(chosen) < 2:
            return None
        group_id = new_id("g")
        for widget in chosen:
            widget.group_id = group_id
            widget.updated_at = utcnow()
        self._touch(dashboard_id)
        self._notify("widgets_grouped", dashboard_id=dashboard_id, group_id=group_id, widget_ids=[w.id for w in chosen])
        for widget in chosen:
            self._persist_widget(dashboard_id, widget.id)
        return group_id

    def ungroup_widgets(self, dashboard_id: str, widget_ids: Iterable[str]) -> List[str]:
        page, chosen = self._selected(dashboard_id, widget_ids)
        groups = {w.group_id for w in chosen if w.group_id}
        if not groups:
            return []
        released = [w for w in page.widgets if w.group_id in groups]
        for widget in released:
            widget.group_id = None
            widget.updated_at = utcnow()
        self._touch(dashboard_id)
        self._notify("widgets_ungrouped", dashboard_id=dashboard_id, widget_ids=[w.id for w in released])
        for widget in released:
            self._persist_widget(dashboard_id, widget.id)
        return [w.id for w in released]

    def align_widgets(self, dashboard_id: str, widget_ids: Iterable[str], direction: str) -> List[str]:
        """Align the selection; a widget whose aligned box would overlap another stays put."""
        page, chosen = self._selected(dashboard_id, widget_ids)
        targets = align_boxes({w.id: w.box for w in chosen}, direction)
        moved: List[str] = []
        for widget in chosen:
            box = targets[widget.id]
            if box == widget.box:
                continue
            others = [w.box for w in page.widgets if w.id != widget.id]
            if not in_bounds(box, self.limits.grid_columns) or find_collisions(box, others):
                logger.info("align %s: widget %s kept in place to avoid overlap", direction, widget.id)
                continue
            widget.box = box
            widget.updated_at = utcnow()
            moved.append(widget.id)
        if moved:
            self._touch(dashboard_id)
            self._notify("widgets_aligned", dashboard_id=dashboard_id, direction=direction, widget_ids=moved)
            for widget_id in moved:
                self._persist_widget(dashboard_id, widget_id)
        return moved

    # ---------------- Global filters ----------------
    def add_global_filter(self, dashboard_id: str, raw: Mapping[str, Any] | GlobalFilter) -> GlobalFilter:
        dashboard = self.get_dashboard(dashboard_id)
        flt = normalize_global_filter(raw)
        dashboard.global_filters = [f for f in dashboard.global_filters if f.id != flt.id] + [flt]
        self._touch(dashboard_id)
        self._notify("global_filter_added", dashboard_id=dashboard_id, filter_id=flt.id)
        self._persist_dashboard(dashboard_id)
        return flt

    def remove_global_filter(self, dashboard_id: str, filter_id: str) -> bool:
        dashboard = self.get_dashboard(dashboard_id)
        kept = [f for f in dashboard.global_filters if f.id != filter_id]
        if len(kept) == len(dashboard.global_filters):
            return False
        dashboard.global_filters = kept
        self._touch(dashboard_id)
        self._notify("global_filter_removed", dashboard_id=dashboard_id, filter_id=filter_id)
        self._persist_dashboard(dashboard_id)
        return True

    # ---------------- Drill-down ----------------
    def drill_state(self, widget_id: str) -> Optional[DrillDownState]:
        return self.drill_states.get(widget_id)

    def _drill(self, dashboard_id: str, widget_id: str, gesture: str, transition: Callable[[DrillDownState], DrillDownState]) -> Optional[DrillDownState]:
        _, widget = self.get_widget(dashboard_id, widget_id)
        state = self.drill_states.get(widget_id) or init_drill_down(widget)
        if state is None:
            return None
        try:
            state = transition(state)
        except DrillDownError as exc:
            logger.info("%s ignored for widget %s: %s", gesture, widget_id, exc)
            return self.drill_states.get(widget_id)
        self.drill_states[widget_id] = state
        self._notify("drill_changed", dashboard_id=dashboard_id, widget_id=widget_id, level=state.current_level)
        return state

    def drill_down(self, dashboard_id: str, widget_id: str, value: Any) -> Optional[DrillDownState]:
        return self._drill(dashboard_id, widget_id, "drill_down", lambda s: drill_down(s, value))

    def drill_up(self, dashboard_id: str, widget_id: str) -> Optional[DrillDownState]:
        return self._drill(dashboard_id, widget_id, "drill_up", drill_up)

    def expand_next_level(self, dashboard_id: str, widget_id: str) -> Optional[DrillDownState]:
        return self._drill(dashboard_id, widget_id, "expand_next_level", expand_next_level)

    def reset_drill(self, dashboard_id: str, widget_id: str) -> Optional[DrillDownState]:
        return self._drill(dashboard_id, widget_id, "reset", reset)

    # ---------------- Cross-filtering ----------------
    def select_category(self, dashboard_id: str, widget_id: str, value: Any, *, field: Optional[str] = None) -> Optional[CrossFilterEntry]:
        """Broadcast the clicked category; clicking the current selection again clears it."""
        _, widget = self.get_widget(dashboard_id, widget_id)
        field = field or current_field(widget, self.drill_states.get(widget_id))
        if not field:
            raise StoreError(f"Widget {widget_id} has no dimension to select on")
        current = selection_filter_for(self.cross_filters.own_entry(widget_id), [field])
        if current is not None and current.field == field and is_value_selected(value, current):
            self.cross_filters.revoke(widget_id)
            entry = None
        else:
            entry = self.cross_filters.publish(widget_id, selection_filters(field, value))
        self._notify("selection_changed", dashboard_id=dashboard_id, widget_id=widget_id, selected=entry is not None)
        return entry

    def clear_selection(self, widget_id: Optional[str] = None) -> None:
        if widget_id is None:
            self.cross_filters.clear()
        elif not self.cross_filters.revoke(widget_id):
            return
        self._notify("selection_changed", widget_id=widget_id, selected=False)

    # ---------------- Series ----------------
    def _source_for(self, dashboard: Dashboard, page: Page, widget: Widget) -> Optional[str]:
        return widget.data_source_id or page.data_source_id or dashboard.data_source_id

    def dataset_for(self, dashboard_id: str, widget_id: str) -> Optional[Dataset]:
        page, widget = self.get_widget(dashboard_id, widget_id)
        source = self._source_for(self.get_dashboard(dashboard_id), page, widget)
        if not source or self.accessor is None:
            return None
        return self.accessor.get_dataset(source)

    def compute_widget(self, dashboard_id: str, widget_id: str) -> SeriesResult:
        """Series for the widget's current filters and drill state.

        Sources marked for remote aggregation are never aggregated here: the
        runner's latest series is returned only if it answers the current
        query, otherwise a ``pending`` result until :meth:`refresh_widget` runs.
        """
        dashboard = self.get_dashboard(dashboard_id)
        _, widget = self.get_widget(dashboard_id, widget_id)
        dataset = self.dataset_for(dashboard_id, widget_id)
        if dataset is None:
            return SeriesResult(status=STATUS_NOT_CONFIGURED, error="No data source")
        cross = self.cross_filters.filters_for(widget_id)
        drill = self.drill_states.get(widget_id)
        if requires_remote(dataset, self.limits):
            dimension = current_field(widget, drill)
            if not is_configured(widget, dimension):
                return not_configured(widget, dimension)
            query = remote_query(widget, cross, dashboard.global_filters, drill, self.limits)
            latest = self.runner.latest(widget_id, query) if self.runner is not None else None
            return latest if latest is not None else pending(widget, dimension)
        return compute_series(
            widget,
            dataset,
            cross,
            dashboard.global_filters,
            drill,
            self.limits,
            dashboard_calculated_fields=dashboard.calculated_fields,
            dashboard_quick_measures=dashboard.quick_measures,
        )

    async def refresh_widget(self, dashboard_id: str, widget_id: str) -> SeriesResult:
        """Like :meth:`compute_widget`, but very large sources go through the remote runner."""
        dataset = self.dataset_for(dashboard_id, widget_id)
        if dataset is None or self.runner is None or not requires_remote(dataset, self.limits):
            return self.compute_widget(dashboard_id, widget_id)
        dashboard = self.get_dashboard(dashboard_id)
        _, widget = self.get_widget(dashboard_id, widget_id)
        return await self.runner.run(
            widget,
            dataset.source_id,
            self.cross_filters.filters_for(widget_id),
            dashboard.global_filters,
            self.drill_states.get(widget_id),
            dashboard_quick_measures=dashboard.quick_measures,
        )

    # ---------------- Persistence ----------------
    def _touch(self, dashboard_id: str) -> None:
        self.get_dashboard(dashboard_id).updated_at = utcnow()

    def _discard_widget_state(self, widget_id: str) -> None:
        self.drill_states.pop(widget_id, None)
        self.cross_filters.revoke(widget_id)
        if self.runner is not None:
            self.runner.forget(widget_id)

    def _lookup_widget(self, dashboard_id: str, widget_id: str) -> Optional[Widget]:
        dashboard = self.dashboards.get(self._current_id(dashboard_id))
        return dashboard.find_widget(self._current_id(widget_id))[1] if dashboard else None

    def _current_id(self, entity_id: str) -> str:
        return self._server_ids.get(entity_id, entity_id)

    def _persist_widget(self, dashboard_id: str, widget_id: str) -> None:
        self._schedule("widget", widget_id, lambda: self._lookup_widget(dashboard_id, widget_id))

    def _persist_dashboard(self, dashboard_id: str) -> None:
        self._schedule("dashboard", dashboard_id, lambda: self.dashboards.get(self._current_id(dashboard_id)))

    def _schedule(self, kind: str, entity_id: str, getter: Callable[[], Any]) -> None:
        if self.persistence is None or self.autosave is None:
            return
        key = f"{kind}:{entity_id}"
        factory = lambda: self._save(kind, key, getter)  # noqa: E731
        self._enqueue(key, factory)

    def _persist_delete(self, kind: str, entity_id: str) -> None:
        if self.persistence is None or self.autosave is None:
            return
        key = f"{kind}:{entity_id}"
        if key not in self._persisted:
            self.autosave.cancel(key)
            self._unsaved.pop(key, None)
            return
        self._enqueue(key, lambda: self._delete(kind, key, entity_id))

    def _enqueue(self, key: str, factory: Callable[[], Any]) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Outside an event loop; picked up by flush().
            self._unsaved[key] = factory
            return
        self._unsaved.pop(key, None)
        self.autosave.schedule(key, factory)  # type: ignore[union-attr]

    async def _save(self, kind: str, key: str, getter: Callable[[], Any]) -> ReconcileResult:
        entity = getter()
        if entity is None:
            return self._record(key, Failed(error="entity no longer exists", kind=kind))
        create = key not in self._persisted
        outcome = await save(
            self.persistence,  # type: ignore[arg-type]
            kind,
            asdict(entity),
            current=lambda: {"updated_at": getattr(getter(), "updated_at", None)},
            create=create,
        )
        if isinstance(outcome, Applied):
            latest = getter()
            server_id = outcome.entity.get("id")
            if create and latest is not None and server_id and server_id != latest.id:
                self._adopt_server_id(kind, latest, str(server_id))
                key = f"{kind}:{server_id}"
            self._persisted.add(key)
            if latest is not None and outcome.updated_at is not None:
                latest.updated_at = outcome.updated_at
        return self._record(key, outcome)

    def _adopt_server_id(self, kind: str, entity: Any, server_id: str) -> None:
        """Re-key a freshly created entity under the id the collaborator assigned."""
        local_id = entity.id
        self._server_ids[local_id] = server_id
        if kind == "dashboard":
            self.dashboards[server_id] = self.dashboards.pop(local_id, entity)
        elif kind == "widget":
            state = self.drill_states.pop(local_id, None)
            if state is not None:
                self.drill_states[server_id] = replace(state, widget_id=server_id)
            self.cross_filters.rekey(local_id, server_id)
            if self.runner is not None:
                self.runner.forget(local_id)
            for dashboard in self.dashboards.values():
                dashboard.global_filters = [
                    replace(f, applied_to_widgets=tuple(server_id if w == local_id else w for w in f.applied_to_widgets))
                    for f in dashboard.global_filters
                ]
        entity.id = server_id
        logger.info("%s %s stored as %s", kind, local_id, server_id)
        self._notify("entity_rekeyed", kind=kind, local_id=local_id, server_id=server_id)

    async def _delete(self, kind: str, key: str, entity_id: str) -> ReconcileResult:
        outcome = await remove(self.persistence, kind, entity_id)  # type: ignore[arg-type]
        if isinstance(outcome, Applied):
            self._persisted.discard(key)
        return self._record(key, outcome)

    def _record(self, key: str, outcome: ReconcileResult) -> ReconcileResult:
        self.sync_results[key] = outcome
        self._notify("synced", key=key, outcome=type(outcome).__name__)
        return outcome

    async def flush(self) -> None:
        """Schedule saves recorded outside an event loop and wait for all pending saves."""
        if self.autosave is None:
            return
        for key, factory in list(self._unsaved.items()):
            self.autosave.schedule(key, factory)
        self._unsaved.clear()
        await self.autosave.flush()
