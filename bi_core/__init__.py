"""Core (UI-agnostic) widget pipeline.

This package contains:
- filter evaluation and aggregation (pandas)
- the per-widget series pipeline, local and remote
- drill-down state, the cross-filter bus and grid placement
- the dashboard store with optimistic persistence and autosave
- chart helpers (Altair -> Vega-Lite spec dict)
"""
