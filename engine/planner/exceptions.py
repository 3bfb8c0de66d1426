# engine/planner/exceptions.py

from engine.scheduler.exceptions import ValidationError


class PlannerError(Exception):
    """Base class for planning errors"""


class InvalidManifest(PlannerError, ValidationError):
    pass


class ManifestNotFound(PlannerError):
    pass
