from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple, Union

from .exceptions import LoaderError, ProtocolError
from .metrics import LoadStats
from .types import EventKind
from engine.utils import get_logger

log = get_logger("scheduler.events")


@dataclass(frozen=True, slots=True)
class UnitStarted:
    unit_id: str
    kind: EventKind = EventKind.STARTED


@dataclass(frozen=True, slots=True)
class UnitFinished:
    unit_id: str
    kind: EventKind = EventKind.FINISHED


@dataclass(frozen=True, slots=True)
class FatalError:
    error: LoaderError
    kind: EventKind = EventKind.FATAL_ERROR


@dataclass(frozen=True, slots=True)
class AllDone:
    stats: LoadStats
    kind: EventKind = EventKind.ALL_DONE


SessionEvent = Union[UnitStarted, UnitFinished, FatalError, AllDone]
Listener = Callable[[SessionEvent], None]


class CompletionDispatcher:
    """
    Delivers session events to observers.

    Listeners run synchronously, in subscription order, on the
    thread that is driving the coordinator. At most one terminal
    event (allDone / fatalError) is ever delivered.
    """

    def __init__(self):
        self._listeners: List[Tuple[Listener, Optional[FrozenSet[EventKind]]]] = []
        self._terminal: Optional[SessionEvent] = None

    def subscribe(
        self,
        listener: Listener,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> None:
        """
        Register a listener for every event, or only for the given kinds.
        """
        self._listeners.append((listener, frozenset(kinds) if kinds is not None else None))

    @property
    def terminal_event(self) -> Optional[SessionEvent]:
        return self._terminal

    def emit(self, event: SessionEvent) -> None:
        if event.kind.is_terminal:
            if self._terminal is not None:
                raise ProtocolError(
                    f"Terminal event already emitted ({self._terminal.kind.value}), "
                    f"refusing {event.kind.value}"
                )
            self._terminal = event

        for listener, kinds in list(self._listeners):
            if kinds is None or event.kind in kinds:
                try:
                    listener(event)
                except Exception:
                    # observers never unwind the scheduler
                    log.exception(f"Listener {listener!r} failed on {event.kind.value}")
