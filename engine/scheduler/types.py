from enum import Enum


class CoordinatorState(str, Enum):
    """
    Finite-state machine for one load session.
    Runtime-only. Never persisted.
    """

    IDLE = "IDLE"
    SCANNING = "SCANNING"
    DISPATCHING = "DISPATCHING"
    WAITING_ON_IN_FLIGHT = "WAITING_ON_IN_FLIGHT"
    CANCELLING = "CANCELLING"
    DRAINING = "DRAINING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (CoordinatorState.FINISHED, CoordinatorState.FAILED)


class EventKind(str, Enum):
    """
    Closed set of events a session emits to its observers.
    """

    STARTED = "started"
    FINISHED = "finished"
    FATAL_ERROR = "fatalError"
    ALL_DONE = "allDone"

    @property
    def is_terminal(self) -> bool:
        return self in (EventKind.FATAL_ERROR, EventKind.ALL_DONE)
