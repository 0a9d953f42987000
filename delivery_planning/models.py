from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set, Tuple


HOURS_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


def _freeze(obj, name: str) -> None:
    object.__setattr__(obj, name, MappingProxyType(dict(getattr(obj, name))))


def to_hours(value) -> Decimal:
    """Normalize a number of hours to a 2-place Decimal, rounding half up."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(HOURS_QUANTUM, rounding=ROUND_HALF_UP)


class Role(str, Enum):
    SA = "SA"
    DEV = "DEV"
    QA = "QA"


PIPELINE = (Role.SA, Role.DEV, Role.QA)


class WarningType(str, Enum):
    NO_ESTIMATE = "NO_ESTIMATE"
    NO_CAPACITY = "NO_CAPACITY"
    FLAGGED = "FLAGGED"


@dataclass(frozen=True)
class PhaseHours:
    sa_hours: Decimal = ZERO
    dev_hours: Decimal = ZERO
    qa_hours: Decimal = ZERO

    def __post_init__(self):
        for name in ("sa_hours", "dev_hours", "qa_hours"):
            object.__setattr__(self, name, to_hours(getattr(self, name)))

    def for_role(self, role: Role) -> Decimal:
        if role == Role.SA:
            return self.sa_hours
        if role == Role.DEV:
            return self.dev_hours
        return self.qa_hours

    def total(self) -> Decimal:
        return to_hours(self.sa_hours + self.dev_hours + self.qa_hours)

    def is_empty(self) -> bool:
        return all(self.for_role(role) <= 0 for role in PIPELINE)

    def with_buffer(self, risk_buffer) -> "PhaseHours":
        multiplier = Decimal(1) + Decimal(str(risk_buffer))
        return PhaseHours(
            sa_hours=to_hours(self.sa_hours * multiplier),
            dev_hours=to_hours(self.dev_hours * multiplier),
            qa_hours=to_hours(self.qa_hours * multiplier),
        )

    @classmethod
    def from_rough_days(cls, days_by_role: Dict[str, Decimal], hours_per_day) -> "PhaseHours":
        hours = {}
        for role in PIPELINE:
            days = days_by_role.get(role.value) if days_by_role else None
            if days is None or Decimal(str(days)) <= 0:
                hours[role] = ZERO
            else:
                hours[role] = to_hours(Decimal(str(days)) * Decimal(str(hours_per_day)))
        return cls(sa_hours=hours[Role.SA], dev_hours=hours[Role.DEV], qa_hours=hours[Role.QA])


@dataclass
class TeamMember:
    account_id: str
    display_name: str
    role: Role
    effective_hours_per_day: Decimal
    active: bool = True


@dataclass
class Epic:
    key: str
    summary: str = ""
    priority_score: Decimal = ZERO
    status: Optional[str] = None
    due_date: Optional[date] = None
    team_id: Optional[str] = None
    flagged: bool = False
    rough_estimates: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class Story:
    key: str
    epic_key: Optional[str]
    summary: str = ""
    priority_score: Decimal = ZERO
    status: Optional[str] = None
    flagged: bool = False
    blocked_by: List[str] = field(default_factory=list)
    blocks: List[str] = field(default_factory=list)
    phase_hours: PhaseHours = field(default_factory=PhaseHours)
    rough_estimates: Dict[str, Decimal] = field(default_factory=dict)
    estimate_seconds: Optional[int] = None
    logged_seconds: Optional[int] = None


@dataclass
class PlanningSnapshot:
    team_id: Optional[str]
    members: List[TeamMember]
    epics: List[Epic]
    stories: List[Story]
    absences: Dict[str, Set[date]] = field(default_factory=dict)

    def stories_for_epic(self, epic_key: str) -> List[Story]:
        return [story for story in self.stories if story.epic_key == epic_key]


@dataclass(frozen=True)
class AllocationResult:
    start_date: date
    end_date: date
    hours_allocated: Decimal


@dataclass(frozen=True)
class PhaseSchedule:
    assignee_id: Optional[str]
    assignee_name: Optional[str]
    start_date: Optional[date]
    end_date: Optional[date]
    hours: Decimal
    no_capacity: bool = False

    @classmethod
    def without_capacity(cls, hours: Decimal) -> "PhaseSchedule":
        return cls(None, None, None, None, hours, no_capacity=True)


@dataclass(frozen=True)
class PlanningWarning:
    issue_key: str
    type: WarningType
    message: str


@dataclass(frozen=True)
class PlannedStory:
    key: str
    summary: str
    priority_score: Decimal
    status: Optional[str]
    start_date: Optional[date]
    end_date: Optional[date]
    phases: Mapping[Role, PhaseSchedule]
    blocked_by: Tuple[str, ...]
    warnings: Tuple[PlanningWarning, ...]
    flagged: bool = False
    estimate_seconds: Optional[int] = None
    logged_seconds: Optional[int] = None
    progress_percent: int = 0

    def __post_init__(self):
        _freeze(self, "phases")


@dataclass(frozen=True)
class PhaseAggregation:
    hours: Decimal
    start_date: Optional[date]
    end_date: Optional[date]


@dataclass(frozen=True)
class PlannedEpic:
    key: str
    summary: str
    priority_score: Decimal
    status: Optional[str]
    due_date: Optional[date]
    start_date: Optional[date]
    end_date: Optional[date]
    stories: Tuple[PlannedStory, ...]
    aggregation: Mapping[Role, PhaseAggregation]
    estimate_seconds: int = 0
    logged_seconds: int = 0
    progress_percent: int = 0
    stories_total: int = 0
    stories_active: int = 0
    is_rough_estimate: bool = False
    flagged: bool = False

    def __post_init__(self):
        _freeze(self, "aggregation")


@dataclass(frozen=True)
class AssigneeUtilization:
    display_name: str
    role: Role
    total_assigned_hours: Decimal
    effective_hours_per_day: Decimal
    daily_load: Mapping[date, Decimal]

    def __post_init__(self):
        _freeze(self, "daily_load")


@dataclass(frozen=True)
class PlanningResult:
    team_id: Optional[str]
    planned_on: date
    epics: Tuple[PlannedEpic, ...]
    warnings: Tuple[PlanningWarning, ...]
    utilization: Mapping[str, AssigneeUtilization]

    def __post_init__(self):
        _freeze(self, "utilization")


class UtilizationStatus(str, Enum):
    NORMAL = "NORMAL"
    OVERLOAD = "OVERLOAD"
    IDLE = "IDLE"
    NO_CAPACITY = "NO_CAPACITY"


class RoleLoadAlertType(str, Enum):
    ROLE_OVERLOAD = "ROLE_OVERLOAD"
    ROLE_IDLE = "ROLE_IDLE"
    NO_CAPACITY = "NO_CAPACITY"
    IMBALANCE = "IMBALANCE"


@dataclass(frozen=True)
class RoleLoad:
    role: Role
    member_count: int
    capacity_hours: Decimal
    assigned_hours: Decimal
    demand_hours: Decimal
    utilization_percent: Decimal
    demand_percent: Decimal
    status: UtilizationStatus


@dataclass(frozen=True)
class RoleLoadAlert:
    type: RoleLoadAlertType
    role: Optional[Role]
    message: str


@dataclass(frozen=True)
class RoleLoadSummary:
    team_id: Optional[str]
    period_start: date
    period_end: date
    workdays: int
    roles: Mapping[Role, RoleLoad]
    alerts: Tuple[RoleLoadAlert, ...]

    def __post_init__(self):
        _freeze(self, "roles")
