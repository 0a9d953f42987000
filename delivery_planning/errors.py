class PlanningError(Exception):
    """Base class for planning failures."""


class PlanningInputError(PlanningError):
    """Raised before a run when the snapshot is malformed."""


class CapacityViolationError(PlanningError):
    """Raised when a reservation exceeds an assignee's free hours on a date."""
