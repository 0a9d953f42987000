"""
Team load per role over a window of upcoming workdays.

Assigned hours come from the per-assignee daily loads of a finished plan,
so they are exact rather than spread evenly over each phase. Demand is
everything the plan gives a role, including work that lands after the
window; a role whose demand does not fit into the window is overloaded.
"""

import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Set

from .errors import PlanningInputError
from .models import (
    PIPELINE,
    ZERO,
    PlanningResult,
    Role,
    RoleLoad,
    RoleLoadAlert,
    RoleLoadAlertType,
    RoleLoadSummary,
    UtilizationStatus,
    to_hours,
)
from .work_calendar import WorkCalendar, ensure_workday


logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30
OVERLOAD_THRESHOLD = Decimal("100")
IDLE_THRESHOLD = Decimal("50")
IMBALANCE_THRESHOLD = Decimal("40")

PERCENT_QUANTUM = Decimal("0.1")


def period_workdays(start: date, calendar: WorkCalendar, period_days: int) -> List[date]:
    days = [ensure_workday(calendar, start)]
    while len(days) < period_days:
        days.append(calendar.next_workday(days[-1]))
    return days


def _percent(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= 0:
        return Decimal("0.0")
    return (part * 100 / whole).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def _status(utilization_percent: Decimal, demand_percent: Decimal) -> UtilizationStatus:
    if demand_percent > OVERLOAD_THRESHOLD:
        return UtilizationStatus.OVERLOAD
    if utilization_percent < IDLE_THRESHOLD:
        return UtilizationStatus.IDLE
    return UtilizationStatus.NORMAL


def _unscheduled_hours(result: PlanningResult, role: Role) -> Decimal:
    total = ZERO
    for epic in result.epics:
        aggregation = epic.aggregation.get(role)
        if aggregation is not None and aggregation.start_date is None:
            total = to_hours(total + aggregation.hours)
    return total


def _role_load(
    role: Role,
    result: PlanningResult,
    window: List[date],
    absences: Dict[str, Set[date]],
) -> RoleLoad:
    in_window = set(window)
    members = [
        (account_id, utilization)
        for account_id, utilization in result.utilization.items()
        if utilization.role == role
    ]
    if not members:
        return RoleLoad(
            role=role,
            member_count=0,
            capacity_hours=ZERO,
            assigned_hours=ZERO,
            demand_hours=_unscheduled_hours(result, role),
            utilization_percent=Decimal("0.0"),
            demand_percent=Decimal("0.0"),
            status=UtilizationStatus.NO_CAPACITY,
        )

    capacity = assigned = demand = ZERO
    for account_id, utilization in members:
        absent = absences.get(account_id) or set()
        present_days = sum(1 for day in window if day not in absent)
        capacity = to_hours(capacity + utilization.effective_hours_per_day * present_days)
        assigned = to_hours(assigned + sum(
            (hours for day, hours in utilization.daily_load.items() if day in in_window), ZERO
        ))
        demand = to_hours(demand + utilization.total_assigned_hours)

    utilization_percent = _percent(assigned, capacity)
    demand_percent = _percent(demand, capacity)
    return RoleLoad(
        role=role,
        member_count=len(members),
        capacity_hours=capacity,
        assigned_hours=assigned,
        demand_hours=demand,
        utilization_percent=utilization_percent,
        demand_percent=demand_percent,
        status=_status(utilization_percent, demand_percent),
    )


def _alerts(roles: Dict[Role, RoleLoad], workdays: int) -> List[RoleLoadAlert]:
    alerts = []
    for role, load in roles.items():
        if load.status == UtilizationStatus.OVERLOAD:
            alerts.append(RoleLoadAlert(
                RoleLoadAlertType.ROLE_OVERLOAD, role,
                f"{role.value} overloaded: {load.demand_percent}% of capacity over {workdays} workdays",
            ))
        elif load.status == UtilizationStatus.IDLE:
            alerts.append(RoleLoadAlert(
                RoleLoadAlertType.ROLE_IDLE, role,
                f"{role.value} underloaded: {load.utilization_percent}%",
            ))
        elif load.status == UtilizationStatus.NO_CAPACITY and load.demand_hours > 0:
            alerts.append(RoleLoadAlert(
                RoleLoadAlertType.NO_CAPACITY, role,
                f"No {role.value} in team, but {load.demand_hours}h of work is waiting",
            ))

    staffed = [load for load in roles.values() if load.status != UtilizationStatus.NO_CAPACITY]
    if len(staffed) >= 2:
        busiest = max(staffed, key=lambda load: load.utilization_percent)
        idlest = min(staffed, key=lambda load: load.utilization_percent)
        if busiest.utilization_percent - idlest.utilization_percent > IMBALANCE_THRESHOLD:
            alerts.append(RoleLoadAlert(
                RoleLoadAlertType.IMBALANCE, None,
                "Load imbalance: {} ({}%) vs {} ({}%)".format(
                    busiest.role.value, busiest.utilization_percent.quantize(Decimal("1"), rounding=ROUND_HALF_UP),
                    idlest.role.value, idlest.utilization_percent.quantize(Decimal("1"), rounding=ROUND_HALF_UP),
                ),
            ))
    return alerts


def calculate_role_load(
    result: PlanningResult,
    calendar: WorkCalendar,
    absences: Optional[Dict[str, Set[date]]] = None,
    period_days: int = DEFAULT_PERIOD_DAYS,
) -> RoleLoadSummary:
    """
    Compare each role's capacity with the hours the plan gives it over
    ``period_days`` workdays starting at the plan date.

    Capacity counts effective hours per day on every workday of the window
    the member is not absent. Roles are reported in pipeline order and
    each role gets at most one alert for its status. A spread of
    utilization above the imbalance threshold adds one more.
    """
    if period_days <= 0:
        raise PlanningInputError("period_days must be positive")
    window = period_workdays(result.planned_on, calendar, period_days)
    roles = {role: _role_load(role, result, window, absences or {}) for role in PIPELINE}
    alerts = _alerts(roles, period_days)

    logger.info(
        "Role load for team %s: %s",
        result.team_id,
        ", ".join(f"{role.value}={load.utilization_percent}%" for role, load in roles.items()),
    )
    return RoleLoadSummary(
        team_id=result.team_id,
        period_start=window[0],
        period_end=window[-1],
        workdays=len(window),
        roles=roles,
        alerts=tuple(alerts),
    )
