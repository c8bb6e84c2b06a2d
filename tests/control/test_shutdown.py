import threading
import time

import pytest

from gsfleet.control.shutdown import ShutdownCoordinator
from gsfleet.errors import ShutdownInProgress


def test_run_returns_action_result():
    coordinator = ShutdownCoordinator()
    assert coordinator.run(lambda a, b=0: a + b, 2, b=3) == 5
    assert coordinator.in_flight == 0


def test_run_propagates_errors_and_untracks():
    coordinator = ShutdownCoordinator()

    def fail():
        raise ValueError("nope")

    with pytest.raises(ValueError):
        coordinator.run(fail)
    assert coordinator.in_flight == 0


def test_wait_with_nothing_in_flight_returns_immediately():
    coordinator = ShutdownCoordinator()
    assert coordinator.on_shutdown_wait(timeout=1) is True
    assert coordinator.is_draining


def test_drain_waits_for_two_concurrent_actions():
    coordinator = ShutdownCoordinator()
    started = [threading.Event(), threading.Event()]
    release = [threading.Event(), threading.Event()]
    results = []

    def action(i):
        started[i].set()
        release[i].wait(5)
        results.append(i)
        return i

    workers = [threading.Thread(target=coordinator.run, args=(action, i)) for i in range(2)]
    for w in workers:
        w.start()
    for e in started:
        assert e.wait(5)
    assert coordinator.in_flight == 2

    drained = threading.Event()
    waiter = threading.Thread(target=lambda: coordinator.on_shutdown_wait() and drained.set())
    waiter.start()

    # New work is refused as soon as draining begins
    while not coordinator.is_draining:
        time.sleep(0.001)
    with pytest.raises(ShutdownInProgress):
        coordinator.run(lambda: None)

    release[0].set()
    assert not drained.wait(0.2)

    release[1].set()
    assert drained.wait(5)
    waiter.join(5)
    for w in workers:
        w.join(5)
    assert sorted(results) == [0, 1]
    assert coordinator.in_flight == 0


def test_same_action_tracked_independently():
    coordinator = ShutdownCoordinator()
    gate = threading.Event()
    entered = threading.Barrier(3)

    def action():
        entered.wait(5)
        gate.wait(5)

    workers = [threading.Thread(target=coordinator.run, args=(action,)) for _ in range(2)]
    for w in workers:
        w.start()
    entered.wait(5)
    assert coordinator.in_flight == 2
    gate.set()
    for w in workers:
        w.join(5)
    assert coordinator.in_flight == 0


def test_wait_times_out_while_work_is_running():
    coordinator = ShutdownCoordinator()
    gate = threading.Event()
    entered = threading.Event()

    def action():
        entered.set()
        gate.wait(5)

    worker = threading.Thread(target=coordinator.run, args=(action,))
    worker.start()
    entered.wait(5)
    assert coordinator.on_shutdown_wait(timeout=0.05) is False
    gate.set()
    worker.join(5)


def test_begin_drain_refuses_without_waiting():
    coordinator = ShutdownCoordinator()
    started = threading.Event()
    release = threading.Event()

    def long_action():
        started.set()
        release.wait(5)

    worker = threading.Thread(target=coordinator.run, args=(long_action,))
    worker.start()
    assert started.wait(5)

    coordinator.begin_drain()
    assert coordinator.is_draining
    assert coordinator.in_flight == 1
    with pytest.raises(ShutdownInProgress):
        coordinator.run(lambda: None)

    release.set()
    worker.join(5)
    assert coordinator.on_shutdown_wait(timeout=5) is True
