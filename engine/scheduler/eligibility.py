from typing import Container, List

from .dag import Unit
from .registry import TaskRegistry


def find_eligible(registry: TaskRegistry, in_flight: Container[str]) -> List[Unit]:
    """
    Units with no outstanding dependencies that are not already loading.

    Recomputed from current state on every call: clearing one dependency
    can free units that were blocked a moment ago.
    """
    return [
        unit
        for unit in registry.units()
        if not unit.depends_on and unit.unit_id not in in_flight
    ]
