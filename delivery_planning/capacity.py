import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from .errors import CapacityViolationError
from .models import ZERO, AllocationResult, Role, TeamMember, to_hours
from .work_calendar import WorkCalendar, ensure_workday


logger = logging.getLogger(__name__)

# Upper bound on workdays scanned per query
MAX_ITERATIONS = 365


class AssigneeCapacityTracker:
    """
    Per-assignee ledger of hours committed per date.

    Several phases may share one day as long as their hours fit into the
    assignee's effective hours per day (3h on one story + 5h on another).
    """

    def __init__(self, account_id: str, display_name: str, role: Role, effective_hours_per_day):
        self.account_id = account_id
        self.display_name = display_name
        self.role = role
        self.effective_hours_per_day = to_hours(effective_hours_per_day)
        self.total_assigned_hours = ZERO
        self._used_hours: Dict[date, Decimal] = {}
        self._blocked_dates: Set[date] = set()

    def __repr__(self):
        return (
            f"AssigneeCapacityTracker({self.display_name} ({self.role.value}), "
            f"{self.effective_hours_per_day}h/day, assigned={self.total_assigned_hours}h)"
        )

    def committed_hours(self, day: date) -> Decimal:
        if day in self._blocked_dates:
            return ZERO
        return self._used_hours.get(day, ZERO)

    def available_hours(self, day: date) -> Decimal:
        if day in self._blocked_dates:
            return ZERO
        return max(ZERO, to_hours(self.effective_hours_per_day - self.committed_hours(day)))

    def reserve_hours(self, day: date, hours) -> None:
        hours = to_hours(hours)
        if hours < 0:
            raise CapacityViolationError(
                f"Cannot reserve negative hours ({hours}h) on {day.isoformat()} for {self.display_name}"
            )
        available = self.available_hours(day)
        if hours > available:
            raise CapacityViolationError(
                f"Cannot reserve {hours}h on {day.isoformat()} for {self.display_name} "
                f"- only {available}h available"
            )
        self._used_hours[day] = to_hours(self._used_hours.get(day, ZERO) + hours)
        self.total_assigned_hours = to_hours(self.total_assigned_hours + hours)

    def block_absence_dates(self, dates: Optional[Iterable[date]]) -> None:
        if not dates:
            return
        self._blocked_dates.update(dates)

    def is_blocked(self, day: date) -> bool:
        return day in self._blocked_dates

    def find_first_available_date(self, start_date: date, calendar: WorkCalendar) -> date:
        current = ensure_workday(calendar, start_date)
        for _ in range(MAX_ITERATIONS):
            if self.available_hours(current) > 0:
                return current
            current = calendar.next_workday(current)
        logger.warning(
            "No free capacity for %s within %d workdays after %s",
            self.account_id, MAX_ITERATIONS, start_date.isoformat(),
        )
        return current

    def allocate_hours(self, hours_needed, start_after: date, calendar: WorkCalendar) -> AllocationResult:
        hours_needed = to_hours(hours_needed)
        if hours_needed <= 0:
            return AllocationResult(start_after, start_after, ZERO)

        remaining = hours_needed
        current = ensure_workday(calendar, start_after)
        start_date = None
        end_date = None

        for _ in range(MAX_ITERATIONS):
            if remaining <= 0:
                break
            current = ensure_workday(calendar, current)
            available = self.available_hours(current)
            if available > 0:
                if start_date is None:
                    start_date = current
                portion = min(remaining, available)
                self.reserve_hours(current, portion)
                remaining = to_hours(remaining - portion)
                end_date = current
            if remaining > 0:
                current = calendar.next_workday(current)

        if remaining > 0:
            logger.warning(
                "Allocation for %s stopped after %d workdays with %sh left",
                self.account_id, MAX_ITERATIONS, remaining,
            )

        return AllocationResult(
            start_date=start_date or start_after,
            end_date=end_date or start_after,
            hours_allocated=to_hours(hours_needed - remaining),
        )

    def simulate_allocation(self, hours_needed, start_after: date, calendar: WorkCalendar) -> AllocationResult:
        """Dry run of allocate_hours on a throwaway copy of the ledger."""
        return self._copy().allocate_hours(hours_needed, start_after, calendar)

    def daily_load(self) -> Dict[date, Decimal]:
        return {
            day: hours
            for day, hours in sorted(self._used_hours.items())
            if hours > 0 and day not in self._blocked_dates
        }

    def _copy(self) -> "AssigneeCapacityTracker":
        clone = AssigneeCapacityTracker(
            self.account_id, self.display_name, self.role, self.effective_hours_per_day
        )
        clone.total_assigned_hours = self.total_assigned_hours
        clone._used_hours = dict(self._used_hours)
        clone._blocked_dates = set(self._blocked_dates)
        return clone


def build_capacity_trackers(
    members: List[TeamMember],
    absences: Optional[Dict[str, Set[date]]] = None,
) -> Dict[str, AssigneeCapacityTracker]:
    absences = absences or {}
    trackers = {}
    for member in members:
        if not member.active:
            continue
        tracker = AssigneeCapacityTracker(
            account_id=member.account_id,
            display_name=member.display_name,
            role=member.role,
            effective_hours_per_day=member.effective_hours_per_day,
        )
        tracker.block_absence_dates(absences.get(member.account_id))
        trackers[member.account_id] = tracker
    return trackers
