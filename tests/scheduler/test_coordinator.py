import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from engine.scheduler.coordinator import LoadCoordinator
from engine.scheduler.dag import TaskDescriptor
from engine.scheduler.events import AllDone, FatalError
from engine.scheduler.exceptions import (
    CycleOrMissingDependencyError,
    FetchError,
    ProtocolError,
    SessionCancelled,
)
from engine.scheduler.registry import TaskRegistry
from engine.scheduler.types import CoordinatorState, EventKind


class FakeFetch:
    """
    Records begin_unit calls. With auto_finish, reports success
    from inside begin_unit (re-entrant delivery).
    """

    def __init__(self, auto_finish=False):
        self.begun = []
        self.auto_finish = auto_finish
        self.coordinator = None

    def __call__(self, unit):
        self.begun.append(unit.unit_id)
        if self.auto_finish:
            self.coordinator.finished(unit.unit_id)


def make_session(*specs, auto_finish=False):
    registry = TaskRegistry()
    registry.register(
        TaskDescriptor(unit_id=name, resource=f"/js/{name}.js", depends_on=frozenset(deps))
        for name, deps in specs
    )
    fetch = FakeFetch(auto_finish=auto_finish)
    coordinator = LoadCoordinator(registry, fetch)
    fetch.coordinator = coordinator

    events = []
    coordinator.dispatcher.subscribe(events.append)
    return coordinator, fetch, events


def terminal_events(events):
    return [e for e in events if e.kind.is_terminal]


# -------------------------
# Scenarios
# -------------------------

def test_fan_out_after_shared_dependency():
    coordinator, fetch, events = make_session(("A", []), ("B", ["A"]), ("C", ["A"]))

    coordinator.start()
    assert fetch.begun == ["A"]
    assert coordinator.state is CoordinatorState.WAITING_ON_IN_FLIGHT

    coordinator.finished("A")
    assert fetch.begun == ["A", "B", "C"]

    coordinator.finished("C")
    assert coordinator.state is CoordinatorState.WAITING_ON_IN_FLIGHT
    coordinator.finished("B")

    assert coordinator.state is CoordinatorState.FINISHED
    assert [e.kind for e in events] == [
        EventKind.STARTED,
        EventKind.FINISHED,
        EventKind.STARTED,
        EventKind.STARTED,
        EventKind.FINISHED,
        EventKind.FINISHED,
        EventKind.ALL_DONE,
    ]
    done = events[-1]
    assert isinstance(done, AllDone)
    assert done.stats.units_completed == 3
    assert done.stats.units_registered == 3
    assert done.stats.elapsed_seconds >= 0


def test_cycle_is_detected_without_dispatch():
    coordinator, fetch, events = make_session(("A", ["B"]), ("B", ["A"]))

    coordinator.start()

    assert fetch.begun == []
    assert coordinator.state is CoordinatorState.FAILED
    assert isinstance(coordinator.error, CycleOrMissingDependencyError)
    assert coordinator.error.missing == []
    assert coordinator.error.unresolved == {"A": ["B"], "B": ["A"]}
    assert [type(e) for e in events] == [FatalError]


def test_missing_dependency_is_detected():
    coordinator, fetch, events = make_session(("A", ["Z"]))

    coordinator.start()

    assert fetch.begun == []
    assert isinstance(coordinator.error, CycleOrMissingDependencyError)
    assert coordinator.error.missing == ["Z"]
    assert "missing dependencies: Z" in str(coordinator.error)


def test_fetch_failure_fails_session():
    coordinator, fetch, events = make_session(("A", []))

    coordinator.start()
    coordinator.failed("A", "404 Not Found")

    assert coordinator.state is CoordinatorState.FAILED
    assert isinstance(coordinator.error, FetchError)
    assert coordinator.error.unit_id == "A"
    assert "404" in coordinator.error.reason
    assert [e.kind for e in terminal_events(events)] == [EventKind.FATAL_ERROR]


def test_duplicate_finished_is_protocol_error():
    coordinator, fetch, events = make_session(("A", []), ("B", ["A"]))

    coordinator.start()
    coordinator.finished("A")
    coordinator.finished("A")

    assert coordinator.state is CoordinatorState.FAILED
    assert isinstance(coordinator.error, ProtocolError)
    assert "already completed" in str(coordinator.error)

    # B's late completion is ignored
    coordinator.finished("B")
    assert len(terminal_events(events)) == 1
    assert fetch.begun == ["A", "B"]


def test_finished_for_unit_never_dispatched_is_protocol_error():
    coordinator, fetch, events = make_session(("A", []), ("B", ["A"]))

    coordinator.start()
    coordinator.finished("B")

    assert isinstance(coordinator.error, ProtocolError)
    assert "never dispatched" in str(coordinator.error)


# -------------------------
# Edge cases
# -------------------------

def test_empty_session_finishes_immediately():
    coordinator, fetch, events = make_session()

    coordinator.start()

    assert coordinator.state is CoordinatorState.FINISHED
    assert events[-1].stats.units_completed == 0


def test_start_twice_is_rejected():
    coordinator, _, _ = make_session(("A", []))
    coordinator.start()

    with pytest.raises(ProtocolError):
        coordinator.start()


def test_completion_without_cleared_dependency_rescans_before_deadlock():
    coordinator, fetch, events = make_session(("A", []), ("B", ["Z"]))

    coordinator.start()
    assert fetch.begun == ["A"]

    coordinator.finished("A")

    assert isinstance(coordinator.error, CycleOrMissingDependencyError)
    assert coordinator.error.unresolved == {"B": ["Z"]}


def test_begin_unit_raising_fails_session():
    registry = TaskRegistry()
    registry.register([TaskDescriptor(unit_id="A", resource="a.js")])

    def explode(unit):
        raise RuntimeError("connection refused")

    coordinator = LoadCoordinator(registry, explode)
    coordinator.start()

    assert isinstance(coordinator.error, FetchError)
    assert "connection refused" in str(coordinator.error)


def test_reentrant_completions_are_queued_and_coalesced():
    coordinator, fetch, events = make_session(
        ("A", []), ("B", []), ("C", []), ("D", ["A", "B"]),
        auto_finish=True,
    )

    coordinator.start()

    assert coordinator.state is CoordinatorState.FINISHED
    assert fetch.begun == ["A", "B", "C", "D"]
    # three completions in one round trigger a single follow-up scan
    assert coordinator.metrics.counters["dispatch_rounds_total"] == 2


def test_long_chain_with_reentrant_fetch_does_not_recurse():
    specs = [("u0", [])] + [(f"u{i}", [f"u{i - 1}"]) for i in range(1, 500)]
    coordinator, fetch, _ = make_session(*specs, auto_finish=True)

    coordinator.start()

    assert coordinator.state is CoordinatorState.FINISHED
    assert fetch.begun == [name for name, _ in specs]


# -------------------------
# Misbehaving observers
# -------------------------

def test_raising_finished_listener_does_not_redispatch():
    coordinator, fetch, events = make_session(("A", []), ("B", []))
    calls = []

    def flaky(event):
        calls.append(event.unit_id)
        if len(calls) == 1:
            raise RuntimeError("observer bug")

    coordinator.dispatcher.subscribe(flaky, kinds=[EventKind.FINISHED])
    coordinator.start()

    coordinator.finished("A")
    coordinator.finished("B")

    assert fetch.begun == ["A", "B"]
    assert calls == ["A", "B"]
    assert coordinator.state is CoordinatorState.FINISHED
    assert coordinator.registry.is_empty()
    assert [e.kind for e in terminal_events(events)] == [EventKind.ALL_DONE]


def test_raising_started_listener_still_dispatches():
    coordinator, fetch, events = make_session(("A", []))

    def broken(event):
        raise RuntimeError("observer bug")

    coordinator.dispatcher.subscribe(broken, kinds=[EventKind.STARTED])
    coordinator.start()

    assert fetch.begun == ["A"]
    assert coordinator.state is CoordinatorState.WAITING_ON_IN_FLIGHT

    coordinator.finished("A")

    assert coordinator.state is CoordinatorState.FINISHED
    assert len(terminal_events(events)) == 1


def test_raising_terminal_listener_keeps_single_terminal_event():
    coordinator, fetch, events = make_session(("A", ["B"]), ("B", ["A"]))

    def broken(event):
        raise RuntimeError("observer bug")

    coordinator.dispatcher.subscribe(broken, kinds=[EventKind.FATAL_ERROR])
    coordinator.start()

    assert coordinator.state is CoordinatorState.FAILED
    assert [type(e) for e in events] == [FatalError]


# -------------------------
# Cancellation
# -------------------------

def test_cancel_waits_for_in_flight_then_fails():
    coordinator, fetch, events = make_session(("A", []), ("B", []), ("C", ["A"]))

    coordinator.start()
    coordinator.cancel()
    assert coordinator.state is CoordinatorState.CANCELLING

    coordinator.finished("A")
    assert coordinator.state is CoordinatorState.CANCELLING
    assert fetch.begun == ["A", "B"]

    coordinator.failed("B", "aborted")

    assert coordinator.state is CoordinatorState.FAILED
    assert isinstance(coordinator.error, SessionCancelled)
    assert len(terminal_events(events)) == 1


def test_cancel_before_start_fails_immediately():
    coordinator, fetch, events = make_session(("A", []))

    coordinator.cancel()
    coordinator.start()

    assert isinstance(coordinator.error, SessionCancelled)
    assert fetch.begun == []
    assert len(terminal_events(events)) == 1


# -------------------------
# Properties under real concurrency
# -------------------------

def layered_graph(layers=5, width=6, seed=7):
    rng = random.Random(seed)
    specs = []
    previous = []
    for layer in range(layers):
        current = []
        for i in range(width):
            name = f"L{layer}_{i}"
            deps = rng.sample(previous, k=min(len(previous), rng.randint(0, 3)))
            specs.append((name, deps))
            current.append(name)
        previous += current
    return specs


def test_threaded_session_respects_dependencies():
    specs = layered_graph()
    deps_of = {name: set(deps) for name, deps in specs}

    registry = TaskRegistry()
    registry.register(
        TaskDescriptor(unit_id=name, resource=name, depends_on=frozenset(deps))
        for name, deps in specs
    )

    journal = []
    journal_lock = threading.Lock()
    pool = ThreadPoolExecutor(max_workers=8)
    done = threading.Event()

    def work(unit_id):
        time.sleep(random.uniform(0, 0.005))
        with journal_lock:
            journal.append(("finish", unit_id))
        coordinator.finished(unit_id)

    def begin(unit):
        with journal_lock:
            journal.append(("begin", unit.unit_id))
        pool.submit(work, unit.unit_id)

    coordinator = LoadCoordinator(registry, begin)
    coordinator.dispatcher.subscribe(
        lambda e: done.set(), kinds=(EventKind.ALL_DONE, EventKind.FATAL_ERROR)
    )
    coordinator.start()

    assert done.wait(10)
    pool.shutdown(wait=True)

    assert coordinator.state is CoordinatorState.FINISHED

    begun = [unit_id for step, unit_id in journal if step == "begin"]
    assert sorted(begun) == sorted(deps_of)  # every unit exactly once

    finished_so_far = set()
    for step, unit_id in journal:
        if step == "begin":
            assert deps_of[unit_id] <= finished_so_far
        else:
            finished_so_far.add(unit_id)

    assert isinstance(coordinator.dispatcher.terminal_event, AllDone)
    assert coordinator.dispatcher.terminal_event.stats.units_completed == len(specs)
