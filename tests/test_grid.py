import random

import pytest

from bi_core.errors import LayoutError
from bi_core.grid import (
    align_boxes,
    clamp_box,
    collides,
    in_bounds,
    offset_position,
    place,
    place_box,
    validate_box,
)
from bi_core.models import GridBox

from conftest import assert_no_overlaps


def test_touching_edges_do_not_collide():
    assert not collides(GridBox(0, 0, 6, 4), GridBox(6, 0, 6, 4))
    assert not collides(GridBox(0, 0, 6, 4), GridBox(0, 4, 6, 4))
    assert collides(GridBox(0, 0, 6, 4), GridBox(5, 3, 2, 2))


def test_first_widget_goes_top_left():
    assert place([], 6, 4) == (0, 0)


def test_scan_is_row_major():
    existing = [GridBox(0, 0, 6, 4)]
    assert place(existing, 6, 4) == (6, 0)
    existing.append(GridBox(6, 0, 6, 4))
    assert place(existing, 4, 2) == (0, 4)


def test_requested_slot_is_honoured_when_free():
    existing = [GridBox(0, 0, 6, 4)]
    assert place(existing, 3, 3, requested_x=8, requested_y=10) == (8, 10)


def test_requested_slot_that_overlaps_is_rescanned():
    existing = [GridBox(0, 0, 6, 4)]
    assert place(existing, 6, 4, requested_x=2, requested_y=1) == (6, 0)


def test_out_of_bounds_request_is_rescanned():
    assert place([], 6, 4, requested_x=9, requested_y=0) == (0, 0)


def test_width_is_clamped_to_grid():
    existing = [GridBox(0, 0, 12, 2)]
    box = place_box(existing, GridBox(0, 0, 30, 2), honour_position=False)
    assert box == GridBox(0, 2, 12, 2)


def test_placement_is_deterministic():
    existing = [GridBox(0, 0, 5, 3), GridBox(7, 1, 5, 2), GridBox(2, 5, 4, 4)]
    assert place(existing, 4, 3) == place(list(existing), 4, 3)


@pytest.mark.parametrize("seed", range(20))
def test_random_placements_never_overlap(seed):
    rng = random.Random(seed)
    boxes = []
    for _ in range(25):
        w, h = rng.randint(1, 12), rng.randint(1, 6)
        wanted = (rng.randint(0, 11), rng.randint(0, 20)) if rng.random() < 0.5 else (None, None)
        x, y = place(boxes, w, h, *wanted)
        box = GridBox(x, y, w, h)
        assert in_bounds(box)
        boxes.append(box)
    assert_no_overlaps(boxes)


def test_clamp_box_pulls_inside():
    assert clamp_box(GridBox(10, -3, 6, 0)) == GridBox(6, 0, 6, 1)


def test_validate_box():
    existing = [GridBox(0, 0, 6, 4)]
    assert validate_box(GridBox(6, 0, 6, 4), existing) == GridBox(6, 0, 6, 4)
    with pytest.raises(LayoutError):
        validate_box(GridBox(3, 0, 6, 4), existing)
    with pytest.raises(LayoutError):
        validate_box(GridBox(8, 0, 6, 4), [])


def test_offset_position_uses_shift_when_free():
    free = offset_position(GridBox(0, 0, 2, 2), [GridBox(0, 0, 2, 2)], dx=3, dy=0)
    assert free == GridBox(3, 0, 2, 2)


def test_offset_position_falls_back_to_scan():
    source = GridBox(0, 0, 4, 2)
    assert offset_position(source, [source]) == GridBox(4, 0, 4, 2)


def test_align_boxes():
    boxes = {"a": GridBox(0, 2, 4, 2), "b": GridBox(5, 6, 4, 3)}
    assert {k: b.y for k, b in align_boxes(boxes, "top").items()} == {"a": 2, "b": 2}
    assert {k: b.bottom for k, b in align_boxes(boxes, "bottom").items()} == {"a": 9, "b": 9}
    assert {k: b.x for k, b in align_boxes(boxes, "left").items()} == {"a": 0, "b": 0}
    assert {k: b.right for k, b in align_boxes(boxes, "right").items()} == {"a": 9, "b": 9}
    with pytest.raises(LayoutError):
        align_boxes(boxes, "diagonal")
