import time

import pytest

from bulk_data.errors import TaskCanceledError
from bulk_data.importer.task import Task, uint


class CountingTask(Task):
    def start(self):
        self.start_time = time.time()
        return self


def test_uint():
    assert uint("12") == 12
    assert uint(" 3 ") == 3
    assert uint(-1) == 0
    assert uint("abc", 5) == 5
    assert uint(None) == 0


def test_ids_are_unique_hex():
    a, b = Task(), Task()
    assert a.id != b.id
    assert len(a.id) == 64
    int(a.id, 16)


def test_progress_is_unknown_until_started():
    task = CountingTask()
    task.total = 10
    assert task.progress == -1
    assert task.remaining_time == -1

    task.position = 5
    assert task.started
    assert task.progress == 0.5


def test_progress_is_unknown_without_total():
    task = CountingTask().start()
    assert task.progress == -1


def test_progress_is_one_once_ended_even_with_error():
    task = CountingTask()
    task.total = 100
    task.position = 1
    task.end(RuntimeError("boom"))
    assert task.progress == 1
    assert task.remaining_time == 0


def test_remaining_time_needs_ten_percent():
    task = CountingTask()
    task.total = 100
    task.position = 9
    assert task.remaining_time == -1

    task._start_time -= 10
    task.position = 50
    assert task.remaining_time == pytest.approx(10, rel=0.1)


def test_start_and_progress_events():
    task = CountingTask()
    task.total = 10
    events = []
    task.on("start", lambda info: events.append(("start", info["position"])))
    task.on("progress", lambda info: events.append(("progress", info["position"])))

    task.position = 2
    task.position = 2
    task.position = 4

    assert events == [("start", 2), ("progress", 2), ("progress", 4)]


def test_reaching_total_ends_the_task():
    task = CountingTask()
    task.total = 3
    ended = []
    task.on("end", ended.append)

    task.position = 3

    assert task.ended
    assert len(ended) == 1
    assert ended[0]["ended"] is True
    assert ended[0]["error"] is None


def test_end_is_idempotent():
    task = CountingTask().start()
    calls = []
    task.on("end", calls.append)

    first = RuntimeError("first")
    task.end(first)
    end_time = task.end_time
    task.end(RuntimeError("second"))

    assert task.error is first
    assert task.end_time == end_time
    assert len(calls) == 1


def test_end_without_start_sets_start_time():
    task = CountingTask()
    task.end()
    assert task.start_time == task.end_time
    assert task.up_time == 0


def test_first_start_time_wins():
    task = CountingTask()
    task.start_time = 100.0
    task.start_time = 200.0
    assert task.start_time == 100.0


def test_cancel_records_cancellation_error():
    task = CountingTask().start()
    task.cancel()
    assert task.ended
    assert isinstance(task.error, TaskCanceledError)
    assert task.to_json()["error"] == "The task was canceled"


def test_once_and_off():
    task = CountingTask()
    seen = []

    def listener(info):
        seen.append(info["position"])

    task.once("progress", listener)
    task.position = 1
    task.position = 2
    assert seen == [1]

    task.on("progress", listener)
    task.off("progress", listener)
    task.position = 3
    assert seen == [1]


def test_listeners_get_their_own_snapshot():
    task = CountingTask()
    snapshots = []

    def mutate(info):
        info["position"] = 999
        snapshots.append(info)

    task.on("progress", mutate)
    task.on("progress", snapshots.append)
    task.position = 1

    assert snapshots[0]["position"] == 999
    assert snapshots[1]["position"] == 1
    assert task.position == 1


def test_failing_listener_does_not_break_others():
    task = CountingTask()
    seen = []

    def broken(_info):
        raise ValueError("listener bug")

    task.on("progress", broken)
    task.on("progress", seen.append)
    task.position = 1
    assert len(seen) == 1


def test_base_start_is_abstract():
    with pytest.raises(NotImplementedError):
        Task().start()
