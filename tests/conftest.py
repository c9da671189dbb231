import importlib

import pandas as pd
import pytest

from bi_core.accessors import InMemoryDatasetAccessor
from bi_core.models import normalize_widget
from bi_core.store import DashboardStore


SALES_ROWS = [
    {"region": "North", "cat": "A", "sub": "A1", "val": 10, "qty": 1},
    {"region": "South", "cat": "A", "sub": "A2", "val": 20, "qty": 2},
    {"region": "North", "cat": "B", "sub": "B1", "val": 5, "qty": 3},
    {"region": "South", "cat": "B", "sub": "B1", "val": 7, "qty": 4},
    {"region": "North", "cat": "C", "sub": "C1", "val": 1, "qty": 5},
]


def boxes_overlap(a, b):
    return a.x < b.x + b.w and a.x + a.w > b.x and a.y < b.y + b.h and a.y + a.h > b.y


def assert_no_overlaps(boxes):
    boxes = list(boxes)
    for i, a in enumerate(boxes):
        for b in boxes[i + 1 :]:
            assert not boxes_overlap(a, b), f"{a} overlaps {b}"


@pytest.fixture()
def sales_rows():
    return [dict(r) for r in SALES_ROWS]


@pytest.fixture()
def sales_frame():
    return pd.DataFrame(SALES_ROWS)


@pytest.fixture()
def make_widget():
    def _make(**raw):
        raw.setdefault("id", "w1")
        return normalize_widget(raw)

    return _make


@pytest.fixture()
def accessor():
    acc = InMemoryDatasetAccessor(remote_row_threshold=1_000_000)
    acc.register("sales", SALES_ROWS)
    return acc


@pytest.fixture()
def store(accessor):
    return DashboardStore(accessor)


@pytest.fixture()
def api_client():
    from fastapi.testclient import TestClient

    from api import main as api_main

    importlib.reload(api_main)
    with TestClient(api_main.app) as client:
        yield client
