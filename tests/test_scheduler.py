import functools
import threading
import time

import pytest

from coroserve.scheduler import Scheduler, ScheduleTask, current_fiber


def _reschedule_then_finish(steps):
    steps.append("first")
    Scheduler.current().schedule(current_fiber())
    yield
    steps.append("second")


def _two_steps(steps):
    steps.append("first")
    yield
    steps.append("second")


def _start_only(steps):
    steps.append("started")
    yield


class _CountingScheduler(Scheduler):
    def __init__(self):
        self.tickles = 0
        super().__init__(1, True, "count")

    def tickle(self):
        self.tickles += 1
        super().tickle()


def test_caller_scheduler_runs_tasks_in_order_on_stop():
    sched = Scheduler(1, True, "caller")
    seen = []
    for value in range(5):
        sched.schedule(lambda v=value: seen.append(v))
    assert seen == []
    sched.stop()
    assert seen == [0, 1, 2, 3, 4]


def test_worker_pool_runs_every_task():
    sched = Scheduler(3, False, "pool")
    sched.start()
    lock = threading.Lock()
    counter = [0]

    def bump():
        with lock:
            counter[0] += 1

    for _ in range(50):
        sched.schedule(bump)
    sched.stop()
    assert counter[0] == 50
    assert sched.stopping() is True


def test_zero_threads_rejected():
    with pytest.raises(ValueError):
        Scheduler(0, False, "none")


def test_current_inside_and_outside_tasks():
    sched = Scheduler(1, True, "cur")
    found = []
    sched.schedule(lambda: found.append(Scheduler.current()))
    assert Scheduler.current() is sched
    sched.stop()
    assert found == [sched]
    assert Scheduler.current() is None


def test_second_caller_scheduler_in_same_thread_rejected():
    first = Scheduler(1, True, "first")
    try:
        with pytest.raises(RuntimeError):
            Scheduler(1, True, "second")
    finally:
        first.stop()
    assert Scheduler.current() is None


def test_fiber_reschedules_itself_and_finishes():
    sched = Scheduler(1, True, "fiber")
    steps = []
    sched.schedule(_reschedule_then_finish(steps))
    sched.stop()
    assert steps == ["first", "second"]
    assert sched.stopping() is True


def test_yielded_fiber_stays_suspended_until_rescheduled():
    sched = Scheduler(1, True, "suspend")
    steps = []
    sched.schedule(functools.partial(_two_steps, steps))
    sched.stop()
    assert steps == ["first"]
    assert sched.stopping() is True


def test_current_fiber_outside_fiber_is_none():
    assert current_fiber() is None


def test_pinned_task_runs_on_its_thread():
    sched = Scheduler(3, True, "pinned")
    sched.start()
    caller_id = threading.get_native_id()
    ran_on = []
    sched.schedule(lambda: ran_on.append(threading.get_native_id()), caller_id)
    sched.stop()
    assert ran_on == [caller_id]
    assert caller_id in sched.thread_ids
    assert len(sched.thread_ids) == 3


def test_start_after_stop_is_ignored():
    sched = Scheduler(2, False, "restart")
    sched.start()
    sched.stop()
    ids = sched.thread_ids
    sched.start()
    assert sched.thread_ids == ids


def test_start_twice_rejected():
    sched = Scheduler(2, False, "twice")
    sched.start()
    try:
        with pytest.raises(RuntimeError):
            sched.start()
    finally:
        sched.stop()


def test_stop_from_own_worker_rejected():
    sched = Scheduler(1, False, "self-stop")
    sched.start()
    errors = []

    def stopper():
        try:
            sched.stop()
        except RuntimeError as exc:
            errors.append(exc)

    sched.schedule(stopper)
    sched.stop()
    assert [type(exc) for exc in errors] == [RuntimeError]
    assert sched.stopping() is True


def test_schedule_none_ignored_and_bad_task_rejected():
    sched = Scheduler(1, True, "types")
    try:
        sched.schedule(None)
        assert sched.stopping() is False
        with pytest.raises(TypeError):
            sched.schedule(42)
    finally:
        sched.stop()
    assert sched.stopping() is True


def test_failing_task_does_not_stop_others():
    sched = Scheduler(1, True, "errors")
    seen = []

    def boom():
        raise ValueError("boom")

    sched.schedule(boom)
    sched.schedule(lambda: seen.append("after"))
    sched.stop()
    assert seen == ["after"]


def test_idle_threads_reported():
    sched = Scheduler(1, False, "idle")
    sched.start()
    deadline = time.monotonic() + 5
    while not sched.has_idle_threads() and time.monotonic() < deadline:
        time.sleep(0.01)
    assert sched.has_idle_threads() is True
    sched.stop()
    assert sched.has_idle_threads() is False


def test_tickle_only_when_queue_was_empty():
    sched = _CountingScheduler()
    assert Scheduler.current() is sched
    sched.schedule(lambda: None)
    assert sched.tickles == 1
    sched.schedule(lambda: None)
    assert sched.tickles == 1
    sched.stop()
    assert sched.stopping() is True


def test_schedule_task_runs_callback_generator():
    steps = []
    callback = functools.partial(_start_only, steps)
    task = ScheduleTask(callback=callback)
    assert task.callback is callback
    task.run()
    assert steps == ["started"]