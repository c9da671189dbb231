import asyncio

from bi_core.accessors import InMemoryDatasetAccessor
from bi_core.errors import RemoteAggregationError
from bi_core.pipeline import STATUS_ERROR, remote_query
from bi_core.remote import STATUS_SUPERSEDED, RemoteSeriesRunner

from conftest import SALES_ROWS


class SlowAccessor(InMemoryDatasetAccessor):
    def __init__(self, delay=0.01):
        super().__init__(remote_row_threshold=0)
        self.delay = delay
        self.fail = False
        self.register("sales", SALES_ROWS)

    async def get_remote_aggregate(self, source_id, query):
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RemoteAggregationError("warehouse timed out")
        return await super().get_remote_aggregate(source_id, query)


def test_newer_run_supersedes_in_flight_one(make_widget):
    accessor = SlowAccessor()
    runner = RemoteSeriesRunner(accessor)
    widget = make_widget(x_axis="cat", y_axis=["val"])

    async def scenario():
        first = asyncio.ensure_future(runner.run(widget, "sales"))
        await asyncio.sleep(0)
        second = await runner.run(widget, "sales", cross_filters=[{"field": "region", "value": "North"}])
        return await first, second

    first, second = asyncio.run(scenario())
    assert first.status == STATUS_SUPERSEDED
    assert second.ok
    assert [r["val"] for r in second.rows] == [10.0, 5.0, 1.0]
    assert runner.latest(widget.id) is second
    assert not runner.in_flight(widget.id)


def test_failure_keeps_previous_series(make_widget):
    accessor = SlowAccessor(delay=0)
    runner = RemoteSeriesRunner(accessor)
    widget = make_widget(x_axis="cat", y_axis=["val"])

    good = asyncio.run(runner.run(widget, "sales"))
    accessor.fail = True
    failed = asyncio.run(runner.run(widget, "sales"))

    assert failed.status == STATUS_ERROR
    assert failed.error == "warehouse timed out"
    assert failed.rows == good.rows
    assert runner.latest(widget.id) is good


def test_failure_without_previous_series(make_widget):
    accessor = SlowAccessor(delay=0)
    accessor.fail = True
    result = asyncio.run(RemoteSeriesRunner(accessor).run(make_widget(x_axis="cat", y_axis=["val"]), "sales"))
    assert result.status == STATUS_ERROR
    assert result.rows == []


def test_forget_drops_latest(make_widget):
    runner = RemoteSeriesRunner(SlowAccessor(delay=0))
    widget = make_widget(x_axis="cat", y_axis=["val"])
    asyncio.run(runner.run(widget, "sales"))
    runner.forget(widget.id)
    assert runner.latest(widget.id) is None


def test_latest_only_answers_the_query_that_produced_it(make_widget):
    runner = RemoteSeriesRunner(SlowAccessor(delay=0))
    widget = make_widget(x_axis="cat", y_axis=["val"])
    result = asyncio.run(runner.run(widget, "sales"))
    assert runner.latest(widget.id, remote_query(widget)) is result
    assert runner.latest(widget.id, remote_query(widget, [{"field": "region", "value": "North"}])) is None
