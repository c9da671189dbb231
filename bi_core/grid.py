"""Collision-free placement on the page grid.

Boxes are in grid units on a ``columns``-wide canvas (12 by default). No two
boxes on a page may intersect; :func:`place` always returns a free slot.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from bi_core.errors import LayoutError
from bi_core.models import GridBox
from bi_core.settings import DEFAULT_LIMITS

logger = logging.getLogger(__name__)

ALIGN_DIRECTIONS = ("top", "bottom", "left", "right")


def collides(a: GridBox, b: GridBox) -> bool:
    return a.x < b.x + b.w and a.x + a.w > b.x and a.y < b.y + b.h and a.y + a.h > b.y


def find_collisions(box: GridBox, existing: Iterable[GridBox]) -> List[GridBox]:
    return [other for other in existing if collides(box, other)]


def clamp_size(width: int, height: int, columns: int = DEFAULT_LIMITS.grid_columns) -> Tuple[int, int]:
    return max(1, min(columns, int(width))), max(1, int(height))


def clamp_box(box: GridBox, columns: int = DEFAULT_LIMITS.grid_columns) -> GridBox:
    w, h = clamp_size(box.w, box.h, columns)
    x = max(0, min(columns - w, int(box.x)))
    return GridBox(x=x, y=max(0, int(box.y)), w=w, h=h)


def in_bounds(box: GridBox, columns: int = DEFAULT_LIMITS.grid_columns) -> bool:
    return 1 <= box.w <= columns and box.h >= 1 and 0 <= box.x <= columns - box.w and box.y >= 0


def max_bottom(existing: Iterable[GridBox]) -> int:
    return max((b.bottom for b in existing), default=0)


def place(
    existing: Sequence[GridBox],
    width: int,
    height: int,
    requested_x: Optional[int] = None,
    requested_y: Optional[int] = None,
    *,
    columns: int = DEFAULT_LIMITS.grid_columns,
    margin: int = DEFAULT_LIMITS.grid_scan_margin,
) -> Tuple[int, int]:
    """First free ``(x, y)`` in row-major order, or the requested slot when it is free."""
    w, h = clamp_size(width, height, columns)
    if requested_x is not None and requested_y is not None:
        wanted = GridBox(x=int(requested_x), y=int(requested_y), w=w, h=h)
        if in_bounds(wanted, columns) and not find_collisions(wanted, existing):
            return wanted.x, wanted.y

    bottom = max_bottom(existing)
    for y in range(0, bottom + h + margin + 1):
        for x in range(0, columns - w + 1):
            if not find_collisions(GridBox(x=x, y=y, w=w, h=h), existing):
                return x, y
    logger.warning("no free grid slot found for %sx%s; appending below row %s", w, h, bottom)
    return 0, bottom


def place_box(
    existing: Sequence[GridBox],
    box: GridBox,
    *,
    honour_position: bool = True,
    columns: int = DEFAULT_LIMITS.grid_columns,
    margin: int = DEFAULT_LIMITS.grid_scan_margin,
) -> GridBox:
    w, h = clamp_size(box.w, box.h, columns)
    if honour_position:
        x, y = place(existing, w, h, box.x, box.y, columns=columns, margin=margin)
    else:
        x, y = place(existing, w, h, columns=columns, margin=margin)
    return GridBox(x=x, y=y, w=w, h=h)


def validate_box(box: GridBox, existing: Iterable[GridBox], columns: int = DEFAULT_LIMITS.grid_columns) -> GridBox:
    """Strict check used before committing an explicit move or resize."""
    if not in_bounds(box, columns):
        raise LayoutError(f"Box {box} is outside the {columns}-column grid")
    hits = find_collisions(box, existing)
    if hits:
        raise LayoutError(f"Box {box} overlaps {len(hits)} existing widget(s)")
    return box


def offset_position(
    box: GridBox,
    existing: Sequence[GridBox],
    dx: int = 1,
    dy: int = 1,
    *,
    columns: int = DEFAULT_LIMITS.grid_columns,
    margin: int = DEFAULT_LIMITS.grid_scan_margin,
) -> GridBox:
    """Slot for a copy of ``box``: shifted by (dx, dy) if free, else the first free slot."""
    shifted = clamp_box(GridBox(x=box.x + dx, y=box.y + dy, w=box.w, h=box.h), columns)
    return place_box(existing, shifted, columns=columns, margin=margin)


def align_boxes(boxes: Dict[str, GridBox], direction: str) -> Dict[str, GridBox]:
    """Align a selection to its shared top/bottom/left/right edge. Collisions are not checked."""
    if direction not in ALIGN_DIRECTIONS:
        raise LayoutError(f"Unknown alignment: {direction!r}")
    if len(boxes) < 2:
        return dict(boxes)
    values = boxes.values()
    if direction == "top":
        edge = min(b.y for b in values)
        return {k: GridBox(b.x, edge, b.w, b.h) for k, b in boxes.items()}
    if direction == "bottom":
        edge = max(b.bottom for b in values)
        return {k: GridBox(b.x, edge - b.h, b.w, b.h) for k, b in boxes.items()}
    if direction == "left":
        edge = min(b.x for b in values)
        return {k: GridBox(edge, b.y, b.w, b.h) for k, b in boxes.items()}
    edge = max(b.right for b in values)
    return {k: GridBox(edge - b.w, b.y, b.w, b.h) for k, b in boxes.items()}
