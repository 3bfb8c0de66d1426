from typing import Dict, Iterable, Iterator, List, Optional, Set

from .dag import TaskDescriptor, Unit
from .exceptions import ProtocolError, ValidationError


class TaskRegistry:
    """
    Pending units of one load session and their dependency edges.

    Single source of truth for:
    - what still has to load
    - what each unit is still waiting for
    """

    __slots__ = ("_pending",)

    def __init__(self):
        self._pending: Dict[str, Unit] = {}  # unit_id -> Unit, registration order

    def register(self, descriptors: Iterable[TaskDescriptor]) -> int:
        """
        Admit a batch of descriptors.

        The whole batch is validated before anything is stored, so a
        single malformed descriptor leaves the registry untouched.

        Raises:
            ValidationError
        """
        batch = list(descriptors)
        seen: Set[str] = set()

        for index, td in enumerate(batch):
            unit_id = getattr(td, "unit_id", None)
            resource = getattr(td, "resource", None)

            if not isinstance(unit_id, str) or not unit_id:
                raise ValidationError(f"Descriptor #{index} has no unit id")
            if not isinstance(resource, str) or not resource:
                raise ValidationError(f"Unit {unit_id!r} has no resource locator")
            if unit_id in seen or unit_id in self._pending:
                raise ValidationError(f"Duplicate unit id: {unit_id}")
            if unit_id in td.depends_on:
                raise ValidationError(f"Unit {unit_id!r} depends on itself")

            seen.add(unit_id)

        for td in batch:
            self._pending[td.unit_id] = Unit.from_descriptor(td)

        return len(batch)

    def remove(self, unit_id: str) -> bool:
        """
        Drop a completed unit and clear it from every other unit's dependencies.

        Returns True if at least one remaining unit lost a dependency.
        """
        if unit_id not in self._pending:
            raise ProtocolError(f"Unit not pending: {unit_id}")

        del self._pending[unit_id]

        cleared = False
        for unit in self._pending.values():
            if unit_id in unit.depends_on:
                unit.depends_on.discard(unit_id)
                cleared = True

        return cleared

    def is_empty(self) -> bool:
        return not self._pending

    def get(self, unit_id: str) -> Optional[Unit]:
        return self._pending.get(unit_id)

    def units(self) -> List[Unit]:
        return list(self._pending.values())

    def unresolved(self) -> Dict[str, List[str]]:
        """Remaining dependencies per pending unit, for diagnostics."""
        return {
            unit_id: sorted(unit.depends_on)
            for unit_id, unit in self._pending.items()
        }

    def missing_dependencies(self) -> List[str]:
        """Dependency ids that name no pending unit."""
        missing: Set[str] = set()
        for unit in self._pending.values():
            missing.update(dep for dep in unit.depends_on if dep not in self._pending)
        return sorted(missing)

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._pending

    def __iter__(self) -> Iterator[Unit]:
        return iter(list(self._pending.values()))

    def __len__(self) -> int:
        return len(self._pending)


class InFlightRegistry:
    """
    Tracks units dispatched to the fetch mechanism but not yet reported back.
    """

    __slots__ = ("_units",)

    def __init__(self):
        self._units: Set[str] = set()

    def add(self, unit_id: str) -> None:
        if unit_id in self._units:
            raise ProtocolError(f"Unit already in flight: {unit_id}")
        self._units.add(unit_id)

    def remove(self, unit_id: str) -> None:
        if unit_id not in self._units:
            raise ProtocolError(f"Unit not in flight: {unit_id}")
        self._units.discard(unit_id)

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    def __bool__(self) -> bool:
        return bool(self._units)
