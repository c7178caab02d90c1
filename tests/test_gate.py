import threading
import time

import pytest

from treegrep import ConcurrencyGate


def _run_tasks(limit: int, count: int):
    gate = ConcurrencyGate(limit)
    lock = threading.Lock()
    state = {"running": 0, "peak": 0, "done": 0}

    def task():
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        time.sleep(0.005)
        with lock:
            state["running"] -= 1
            state["done"] += 1

    for _ in range(count):
        gate.dispatch(task)
    gate.drain_all()
    return gate, state


@pytest.mark.parametrize("limit", [1, 2, 10])
def test_gate_bounds_and_drains(limit):
    gate, state = _run_tasks(limit, 25)
    assert state["done"] == 25
    assert state["peak"] <= limit
    assert gate.dispatched == 25
    assert gate.drained == 25


def test_fewer_tasks_than_limit():
    gate, state = _run_tasks(10, 3)
    assert state["done"] == 3
    assert gate.drained == 3


def test_drain_without_tasks_returns():
    gate = ConcurrencyGate(4)
    gate.drain_all()
    gate.drain_all()
    assert gate.dispatched == 0


def test_failing_task_still_signals_completion():
    gate = ConcurrencyGate(1)
    ran = []

    def boom():
        ran.append(1)
        raise RuntimeError("broken file")

    for _ in range(3):
        gate.dispatch(boom)
    gate.drain_all()
    assert len(ran) == 3
    assert gate.drained == 3


def test_invalid_limit():
    with pytest.raises(ValueError):
        ConcurrencyGate(0)
