from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class PipelineLimits:
    max_processing_rows: int = 50_000
    max_chart_items: int = 2_000
    remote_row_threshold: int = 1_000_000
    remote_limit: int = 1_000
    grid_columns: int = 12
    grid_scan_margin: int = 10
    autosave_debounce_seconds: float = 0.8


DEFAULT_LIMITS = PipelineLimits()

_ENV_PREFIX = "BI_"


def _as_int(value: object, default: int, *, minimum: int = 1) -> int:
    try:
        out = int(value)  # type: ignore[arg-type]
    except Exception:
        return default
    return max(minimum, out)


def _as_float(value: object, default: float, *, minimum: float = 0.0) -> float:
    try:
        out = float(value)  # type: ignore[arg-type]
    except Exception:
        return default
    return max(minimum, out)


def load_limits(raw: Optional[Mapping[str, object]] = None, *, env: Optional[Mapping[str, str]] = None) -> PipelineLimits:
    """Build limits from a raw mapping, falling back to ``BI_*`` environment variables."""
    raw = dict(raw or {})
    env = os.environ if env is None else env

    def pick(name: str) -> object:
        if name in raw and raw[name] is not None:
            return raw[name]
        return env.get(_ENV_PREFIX + name.upper())

    d = DEFAULT_LIMITS
    return PipelineLimits(
        max_processing_rows=_as_int(pick("max_processing_rows"), d.max_processing_rows),
        max_chart_items=_as_int(pick("max_chart_items"), d.max_chart_items),
        remote_row_threshold=_as_int(pick("remote_row_threshold"), d.remote_row_threshold),
        remote_limit=_as_int(pick("remote_limit"), d.remote_limit),
        grid_columns=_as_int(pick("grid_columns"), d.grid_columns),
        grid_scan_margin=_as_int(pick("grid_scan_margin"), d.grid_scan_margin, minimum=0),
        autosave_debounce_seconds=_as_float(pick("autosave_debounce_seconds"), d.autosave_debounce_seconds),
    )
