from dataclasses import dataclass, field
from typing import FrozenSet, Set


@dataclass(frozen=True, slots=True)
class TaskDescriptor:
    """
    Immutable load descriptor.

    Describes WHAT to load and what it waits for.
    Supplied by the planner, never mutated by the scheduler.
    """

    unit_id: str
    resource: str
    depends_on: FrozenSet[str] = frozenset()
    cache: bool = True


@dataclass(slots=True)
class Unit:
    """
    Scheduler-owned runtime copy of a descriptor.

    depends_on shrinks as dependencies complete.
    Exists only for the duration of one session.
    """

    unit_id: str
    resource: str
    depends_on: Set[str] = field(default_factory=set)
    cache: bool = True

    @classmethod
    def from_descriptor(cls, td: TaskDescriptor) -> "Unit":
        return cls(
            unit_id=td.unit_id,
            resource=td.resource,
            depends_on=set(td.depends_on),
            cache=td.cache,
        )
