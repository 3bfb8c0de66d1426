import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional, Set

from .dag import Unit
from .eligibility import find_eligible
from .events import AllDone, CompletionDispatcher, FatalError, UnitFinished, UnitStarted
from .exceptions import (
    CycleOrMissingDependencyError,
    FetchError,
    LoaderError,
    ProtocolError,
    SessionCancelled,
)
from .metrics import SessionMetrics
from .registry import InFlightRegistry, TaskRegistry
from .types import CoordinatorState
from engine.utils import get_logger

log = get_logger("scheduler.coordinator")

BeginUnit = Callable[[Unit], None]


class _NoteKind(str, Enum):
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    CANCEL = "CANCEL"


@dataclass(frozen=True, slots=True)
class _Notification:
    kind: _NoteKind
    unit_id: Optional[str] = None
    reason: Optional[str] = None


class LoadCoordinator:
    """
    Authoritative scheduler for one load session.

    Owns:
    - session FSM
    - eligibility scans and dispatch
    - dependency clearing on completion
    - the single terminal event

    Does NOT:
    - fetch anything
    - parse manifests
    - block waiting for work

    Every state transition runs inside the pump. Whichever thread
    delivers a notification while no pump is active becomes the pump
    and drains the inbox; everyone else just enqueues. Notifications
    delivered from inside begin_unit() are therefore queued, never
    handled re-entrantly.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        begin_unit: BeginUnit,
        dispatcher: Optional[CompletionDispatcher] = None,
        metrics: Optional[SessionMetrics] = None,
    ):
        self.registry = registry
        self.in_flight = InFlightRegistry()
        self.dispatcher = dispatcher or CompletionDispatcher()
        self.metrics = metrics or SessionMetrics()

        self._begin_unit = begin_unit
        self._state = CoordinatorState.IDLE
        self._error: Optional[LoaderError] = None
        self._completed: Set[str] = set()
        self._dispatched: Set[str] = set()

        # guarded by _lock
        self._lock = threading.Lock()
        self._inbox: Deque[_Notification] = deque()
        self._rescan_pending = False
        self._pumping = False
        self._started = False

    # -------------------------
    # PUBLIC API
    # -------------------------

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def error(self) -> Optional[LoaderError]:
        return self._error

    def start(self) -> None:
        """
        Leave IDLE and run the first scan.
        """
        with self._lock:
            if self._started:
                raise ProtocolError("Session already started")
            self._started = True
            self._rescan_pending = True

        self.metrics.mark_time("session_started")
        self.metrics.inc("units_registered_total", len(self.registry))
        log.info(f"Session started with {len(self.registry)} unit(s)")

        self._pump()

    def finished(self, unit_id: str) -> None:
        """Fetch mechanism callback: unit loaded."""
        self._deliver(_Notification(_NoteKind.FINISHED, unit_id=unit_id))

    def failed(self, unit_id: str, reason: str) -> None:
        """Fetch mechanism callback: unit could not be loaded."""
        self._deliver(_Notification(_NoteKind.FAILED, unit_id=unit_id, reason=reason))

    def cancel(self) -> None:
        """
        Stop dispatching. The session fails with SessionCancelled
        once nothing is in flight any more.
        """
        self._deliver(_Notification(_NoteKind.CANCEL))

    # -------------------------
    # PUMP
    # -------------------------

    def _deliver(self, note: _Notification) -> None:
        with self._lock:
            self._inbox.append(note)
        self._pump()

    def _request_rescan(self) -> None:
        # A second request while one is pending collapses into the first.
        with self._lock:
            self._rescan_pending = True

    def _pump(self) -> None:
        with self._lock:
            if self._pumping:
                return
            self._pumping = True

        try:
            while True:
                with self._lock:
                    if self._inbox:
                        note = self._inbox.popleft()
                    elif self._rescan_pending:
                        self._rescan_pending = False
                        note = None
                    else:
                        self._pumping = False
                        return

                if note is None:
                    self._scan_and_dispatch()
                else:
                    self._handle(note)
        except BaseException:
            with self._lock:
                self._pumping = False
            raise

    def _handle(self, note: _Notification) -> None:
        if self._state.is_terminal:
            log.warning(
                f"Ignoring {note.kind.value} for {note.unit_id or 'session'}: "
                f"session already {self._state.value}"
            )
            return

        if note.kind is _NoteKind.CANCEL:
            self._cancel()
        elif note.kind is _NoteKind.FINISHED:
            self._on_finished(note.unit_id)
        else:
            self._on_failed(note.unit_id, note.reason or "unknown error")

    # -------------------------
    # TRANSITIONS
    # -------------------------

    def _scan_and_dispatch(self) -> None:
        if self._state.is_terminal or self._state is CoordinatorState.CANCELLING:
            return

        self._state = CoordinatorState.SCANNING
        eligible = find_eligible(self.registry, self.in_flight)

        if not eligible:
            if self.in_flight:
                # completions will retrigger a scan
                self._state = CoordinatorState.WAITING_ON_IN_FLIGHT
            elif self.registry.is_empty():
                self._finish()
            else:
                self._fail(CycleOrMissingDependencyError(
                    unresolved=self.registry.unresolved(),
                    missing=self.registry.missing_dependencies(),
                ))
            return

        self._state = CoordinatorState.DISPATCHING

        for unit in eligible:
            self.in_flight.add(unit.unit_id)
            self._dispatched.add(unit.unit_id)

        self.metrics.inc("dispatch_rounds_total")
        log.info(f"Dispatching {', '.join(u.unit_id for u in eligible)}")

        for unit in eligible:
            self.dispatcher.emit(UnitStarted(unit.unit_id))
            try:
                self._begin_unit(unit)
            except Exception as exc:
                log.exception(f"begin_unit failed for {unit.unit_id}")
                self._fail(FetchError(unit.unit_id, str(exc)))
                return
            self.metrics.inc("units_dispatched_total")

        self._state = CoordinatorState.WAITING_ON_IN_FLIGHT

    def _on_finished(self, unit_id: str) -> None:
        if not self._take_in_flight(unit_id):
            return

        self._completed.add(unit_id)
        self.metrics.inc("units_completed_total")
        dependency_cleared = self.registry.remove(unit_id)

        # registry and in_flight agree before any observer runs
        self.dispatcher.emit(UnitFinished(unit_id))

        if self._state is CoordinatorState.CANCELLING:
            self._settle_cancel()
            return

        if dependency_cleared:
            self._request_rescan()
        elif not self.in_flight and self.registry.is_empty():
            self._finish()
        elif self.in_flight:
            self._state = CoordinatorState.WAITING_ON_IN_FLIGHT
        else:
            self._request_rescan()

    def _on_failed(self, unit_id: str, reason: str) -> None:
        if not self._take_in_flight(unit_id):
            return

        if self._state is CoordinatorState.CANCELLING:
            log.warning(f"{unit_id} failed while cancelling: {reason}")
            self._settle_cancel()
            return

        self._fail(FetchError(unit_id, reason))

    def _take_in_flight(self, unit_id: str) -> bool:
        if unit_id in self.in_flight:
            self.in_flight.remove(unit_id)
            return True

        if unit_id in self._completed:
            problem = "already completed"
        elif unit_id in self._dispatched:
            problem = "already reported"
        else:
            problem = "never dispatched"
        self._fail(ProtocolError(f"Completion reported for {unit_id}: {problem}"))
        return False

    def _cancel(self) -> None:
        if self._state is CoordinatorState.CANCELLING:
            return
        log.warning(f"Cancelling session with {len(self.in_flight)} unit(s) in flight")
        self._state = CoordinatorState.CANCELLING
        self._settle_cancel()

    def _settle_cancel(self) -> None:
        if not self.in_flight:
            self._fail(SessionCancelled(
                f"Session cancelled with {len(self.registry)} unit(s) not loaded"
            ))

    def _finish(self) -> None:
        self._state = CoordinatorState.DRAINING
        stats = self.metrics.snapshot()
        self._state = CoordinatorState.FINISHED

        log.info(f"{stats.units_completed} files loaded in {stats.elapsed_ms}ms.")
        self.dispatcher.emit(AllDone(stats))

    def _fail(self, error: LoaderError) -> None:
        if self._state.is_terminal:
            return

        self._state = CoordinatorState.FAILED
        self._error = error
        self.metrics.inc("sessions_failed_total")

        log.error(f"Session failed: {error}")
        self.dispatcher.emit(FatalError(error))
