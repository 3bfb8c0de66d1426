# engine/scheduler/exceptions.py

from typing import Dict, List, Optional


class LoaderError(Exception):
    """Base class for load session errors"""


class ValidationError(LoaderError):
    """Malformed, duplicate or self-dependent task descriptor."""


class CycleOrMissingDependencyError(LoaderError):
    """
    Nothing is eligible, nothing is in flight, and units remain.

    Either the dependency graph has a cycle or a unit depends on
    an id that was never registered.
    """

    def __init__(
        self,
        unresolved: Dict[str, List[str]],
        missing: Optional[List[str]] = None,
    ):
        self.unresolved = unresolved
        self.missing = missing or []

        if self.missing:
            detail = f"missing dependencies: {', '.join(self.missing)}"
        else:
            detail = "circular dependency"

        blocked = ", ".join(
            f"{unit_id} <- [{', '.join(deps)}]" for unit_id, deps in unresolved.items()
        )
        super().__init__(
            f"Not all units could be loaded ({detail}). Blocked: {blocked}"
        )


class FetchError(LoaderError):
    """A dispatched unit could not be retrieved."""

    def __init__(self, unit_id: str, reason: str):
        self.unit_id = unit_id
        self.reason = reason
        super().__init__(f"{unit_id} could not be loaded: {reason}")


class ProtocolError(LoaderError):
    """A collaborator broke the completion contract."""


class SessionCancelled(LoaderError):
    """The session was cancelled before every unit loaded."""
