from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
import logging
from typing import Dict, FrozenSet, List, Optional, Tuple

from .capacity import AssigneeCapacityTracker, build_capacity_trackers
from .dependencies import topo_sort
from .errors import PlanningInputError
from .models import (
    PIPELINE,
    ZERO,
    AllocationResult,
    AssigneeUtilization,
    Epic,
    PhaseAggregation,
    PhaseHours,
    PhaseSchedule,
    PlannedEpic,
    PlannedStory,
    PlanningResult,
    PlanningSnapshot,
    PlanningWarning,
    Role,
    Story,
    WarningType,
    to_hours,
)
from .work_calendar import WorkCalendar


logger = logging.getLogger(__name__)

DEFAULT_DONE_STATUSES = frozenset({"done", "closed", "resolved", "killed"})
DEFAULT_ROUGH_ESTIMATE_STATUSES = frozenset({"planned"})


def _normalize_statuses(statuses) -> Optional[FrozenSet[str]]:
    if statuses is None:
        return None
    return frozenset(status.strip().lower() for status in statuses if status and status.strip())


@dataclass
class PlanningConfig:
    calendar: WorkCalendar
    today: date
    risk_buffer: Decimal = Decimal("0.2")
    done_statuses: FrozenSet[str] = DEFAULT_DONE_STATUSES
    # None allows every status that is not done
    planning_statuses: Optional[FrozenSet[str]] = None
    rough_estimate_statuses: FrozenSet[str] = DEFAULT_ROUGH_ESTIMATE_STATUSES
    rough_hours_per_day: Decimal = Decimal("8")

    def __post_init__(self):
        self.risk_buffer = Decimal(str(self.risk_buffer))
        self.done_statuses = _normalize_statuses(self.done_statuses) or frozenset()
        self.planning_statuses = _normalize_statuses(self.planning_statuses)
        self.rough_estimate_statuses = _normalize_statuses(self.rough_estimate_statuses) or frozenset()
        if self.risk_buffer < 0:
            raise PlanningInputError(f"Risk buffer must not be negative, got {self.risk_buffer}")

    def is_done(self, status: Optional[str]) -> bool:
        return (status or "").strip().lower() in self.done_statuses

    def is_planning_allowed(self, status: Optional[str]) -> bool:
        if self.is_done(status):
            return False
        if self.planning_statuses is None:
            return True
        return (status or "").strip().lower() in self.planning_statuses

    def allows_rough_estimates(self, status: Optional[str]) -> bool:
        return (status or "").strip().lower() in self.rough_estimate_statuses


def validate_snapshot(snapshot: PlanningSnapshot) -> None:
    """Reject malformed input before any tracker is built."""
    seen_members = set()
    for member in snapshot.members:
        if not member.account_id:
            raise PlanningInputError("Team member without account id")
        if member.account_id in seen_members:
            raise PlanningInputError(f"Duplicate team member {member.account_id}")
        seen_members.add(member.account_id)
        if not isinstance(member.role, Role):
            raise PlanningInputError(f"Team member {member.account_id} has unknown role {member.role!r}")
        if member.effective_hours_per_day is None or member.effective_hours_per_day <= 0:
            raise PlanningInputError(
                f"Team member {member.account_id} needs positive hours per day, "
                f"got {member.effective_hours_per_day}"
            )

    seen_items = set()
    for item in list(snapshot.epics) + list(snapshot.stories):
        if not item.key:
            raise PlanningInputError("Work item without key")
        if item.key in seen_items:
            raise PlanningInputError(f"Duplicate work item {item.key}")
        seen_items.add(item.key)

    for story in snapshot.stories:
        for role in PIPELINE:
            if story.phase_hours.for_role(role) < 0:
                raise PlanningInputError(
                    f"Story {story.key} has negative {role.value} hours"
                )


def _progress_percent(estimate_seconds: int, logged_seconds: int) -> int:
    if estimate_seconds <= 0:
        return 0
    return min(100, (logged_seconds * 100) // estimate_seconds)


@dataclass
class _EpicTotals:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    role_hours: Dict[Role, Decimal] = field(default_factory=dict)
    role_starts: Dict[Role, date] = field(default_factory=dict)
    role_ends: Dict[Role, date] = field(default_factory=dict)
    estimate_seconds: int = 0
    logged_seconds: int = 0

    def add_story(self, story: PlannedStory) -> None:
        if story.start_date and (self.start_date is None or story.start_date < self.start_date):
            self.start_date = story.start_date
        if story.end_date and (self.end_date is None or story.end_date > self.end_date):
            self.end_date = story.end_date
        for role, phase in story.phases.items():
            self.add_phase(role, phase.hours, phase.start_date, phase.end_date)
        self.estimate_seconds += story.estimate_seconds or 0
        self.logged_seconds += story.logged_seconds or 0

    def add_phase(self, role: Role, hours: Decimal, start: Optional[date], end: Optional[date]) -> None:
        self.role_hours[role] = to_hours(self.role_hours.get(role, ZERO) + hours)
        if start and (role not in self.role_starts or start < self.role_starts[role]):
            self.role_starts[role] = start
        if end and (role not in self.role_ends or end > self.role_ends[role]):
            self.role_ends[role] = end

    def aggregation(self) -> Dict[Role, PhaseAggregation]:
        result = {}
        for role in PIPELINE:
            hours = self.role_hours.get(role, ZERO)
            if hours > 0 or role in self.role_starts:
                result[role] = PhaseAggregation(hours, self.role_starts.get(role), self.role_ends.get(role))
        return result


class PlanningEngine:
    """
    Builds a full SA -> DEV -> QA schedule for one team snapshot.

    Epics are planned by priority, stories inside an epic in dependency
    order, and every phase goes to the assignee of the matching role who
    frees up first. The engine keeps no state between calls to ``plan``.
    """

    def __init__(self, config: PlanningConfig):
        self.config = config

    def plan(self, snapshot: PlanningSnapshot) -> PlanningResult:
        plan, _ = self._run(snapshot)
        return plan

    def what_if(self, snapshot: PlanningSnapshot, role: Role, hours) -> Dict[str, AllocationResult]:
        """
        Project where ``hours`` of extra ``role`` work would land for each
        assignee of that role once the current backlog is planned.
        """
        extra = PhaseHours(**{f"{role.value.lower()}_hours": to_hours(hours)})
        buffered = extra.with_buffer(self.config.risk_buffer).for_role(role)
        _, trackers = self._run(snapshot)
        return {
            account_id: tracker.simulate_allocation(buffered, self.config.today, self.config.calendar)
            for account_id, tracker in trackers.items()
            if tracker.role == role
        }

    def _run(self, snapshot: PlanningSnapshot) -> Tuple[PlanningResult, Dict[str, AssigneeCapacityTracker]]:
        validate_snapshot(snapshot)
        logger.info(
            "Starting planning for team %s: %d members, %d epics, %d stories",
            snapshot.team_id, len(snapshot.members), len(snapshot.epics), len(snapshot.stories),
        )

        trackers = build_capacity_trackers(snapshot.members, snapshot.absences)
        warnings: List[PlanningWarning] = []
        story_end_dates: Dict[str, date] = {}
        planned_epics = []

        for epic in self._epics_in_order(snapshot.epics):
            planned_epics.append(
                self._plan_epic(epic, snapshot.stories_for_epic(epic.key), trackers, story_end_dates, warnings)
            )

        utilization = {
            account_id: AssigneeUtilization(
                display_name=tracker.display_name,
                role=tracker.role,
                total_assigned_hours=tracker.total_assigned_hours,
                effective_hours_per_day=tracker.effective_hours_per_day,
                daily_load=tracker.daily_load(),
            )
            for account_id, tracker in trackers.items()
        }

        logger.info("Planning completed: %d epics, %d warnings", len(planned_epics), len(warnings))
        result = PlanningResult(
            team_id=snapshot.team_id,
            planned_on=self.config.today,
            epics=tuple(planned_epics),
            warnings=tuple(warnings),
            utilization=utilization,
        )
        return result, trackers

    def _epics_in_order(self, epics: List[Epic]) -> List[Epic]:
        eligible = [epic for epic in epics if self.config.is_planning_allowed(epic.status)]
        return sorted(eligible, key=lambda epic: (-(epic.priority_score or 0), epic.key))

    def _plan_epic(
        self,
        epic: Epic,
        stories: List[Story],
        trackers: Dict[str, AssigneeCapacityTracker],
        story_end_dates: Dict[str, date],
        warnings: List[PlanningWarning],
    ) -> PlannedEpic:
        logger.debug("Planning epic %s with %d stories", epic.key, len(stories))
        if not stories and self.config.allows_rough_estimates(epic.status) and epic.rough_estimates:
            rough = PhaseHours.from_rough_days(epic.rough_estimates, self.config.rough_hours_per_day)
            if not rough.is_empty():
                return self._plan_epic_by_rough_estimates(epic, rough, trackers, warnings)

        planned_stories = []
        totals = _EpicTotals()
        stories_active = 0

        for story in topo_sort(stories):
            if self.config.is_done(story.status):
                continue
            if story.flagged:
                warnings.append(PlanningWarning(story.key, WarningType.FLAGGED, "Story is flagged (work paused)"))
                continue

            phase_hours = self._phase_hours(story, epic)
            if phase_hours.is_empty():
                warning = PlanningWarning(story.key, WarningType.NO_ESTIMATE, "Story has no subtasks with estimates")
                warnings.append(warning)
                planned_stories.append(self._unscheduled_story(story, warning))
                continue

            planned = self._plan_story(
                story, phase_hours.with_buffer(self.config.risk_buffer), trackers, story_end_dates, warnings
            )
            planned_stories.append(planned)
            if planned.end_date is not None:
                story_end_dates[story.key] = planned.end_date
            totals.add_story(planned)
            stories_active += 1

        return PlannedEpic(
            key=epic.key,
            summary=epic.summary,
            priority_score=epic.priority_score,
            status=epic.status,
            due_date=epic.due_date,
            start_date=totals.start_date,
            end_date=totals.end_date,
            stories=tuple(planned_stories),
            aggregation=totals.aggregation(),
            estimate_seconds=totals.estimate_seconds,
            logged_seconds=totals.logged_seconds,
            progress_percent=_progress_percent(totals.estimate_seconds, totals.logged_seconds),
            stories_total=len(stories),
            stories_active=stories_active,
            is_rough_estimate=False,
            flagged=epic.flagged,
        )

    def _phase_hours(self, story: Story, epic: Epic) -> PhaseHours:
        if story.phase_hours.is_empty() and self.config.allows_rough_estimates(epic.status):
            return PhaseHours.from_rough_days(story.rough_estimates, self.config.rough_hours_per_day)
        return story.phase_hours

    def _plan_story(
        self,
        story: Story,
        phase_hours: PhaseHours,
        trackers: Dict[str, AssigneeCapacityTracker],
        story_end_dates: Dict[str, date],
        warnings: List[PlanningWarning],
    ) -> PlannedStory:
        calendar = self.config.calendar
        earliest_start = self.config.today
        for blocker in story.blocked_by or []:
            blocker_end = story_end_dates.get(blocker)
            if blocker_end is None:
                continue
            after_blocker = calendar.next_workday(blocker_end)
            if after_blocker > earliest_start:
                earliest_start = after_blocker

        story_warnings: List[PlanningWarning] = []
        phases = self._plan_pipeline(story.key, phase_hours, earliest_start, trackers, story_warnings)
        warnings.extend(story_warnings)

        scheduled = [phase for phase in phases.values() if phase.start_date is not None]
        start_date = scheduled[0].start_date if scheduled else None
        end_date = scheduled[-1].end_date if scheduled else None
        logger.debug("Story %s planned %s..%s", story.key, start_date, end_date)

        return PlannedStory(
            key=story.key,
            summary=story.summary,
            priority_score=story.priority_score,
            status=story.status,
            start_date=start_date,
            end_date=end_date,
            phases=phases,
            blocked_by=tuple(story.blocked_by or ()),
            warnings=tuple(story_warnings),
            flagged=story.flagged,
            estimate_seconds=story.estimate_seconds,
            logged_seconds=story.logged_seconds,
            progress_percent=_progress_percent(story.estimate_seconds or 0, story.logged_seconds or 0),
        )

    def _plan_pipeline(
        self,
        issue_key: str,
        phase_hours: PhaseHours,
        start_after: date,
        trackers: Dict[str, AssigneeCapacityTracker],
        warnings: List[PlanningWarning],
    ) -> Dict[Role, PhaseSchedule]:
        cursor = start_after
        phases = {}
        for role in PIPELINE:
            hours = phase_hours.for_role(role)
            if hours <= 0:
                continue
            schedule = self._plan_phase(issue_key, role, hours, cursor, trackers, warnings)
            phases[role] = schedule
            if schedule.end_date is not None:
                cursor = self.config.calendar.next_workday(schedule.end_date)
        return phases

    def _plan_phase(
        self,
        issue_key: str,
        role: Role,
        hours: Decimal,
        start_after: date,
        trackers: Dict[str, AssigneeCapacityTracker],
        warnings: List[PlanningWarning],
    ) -> PhaseSchedule:
        calendar = self.config.calendar
        best = None
        best_date = None
        for tracker in trackers.values():
            if tracker.role != role:
                continue
            available = tracker.find_first_available_date(start_after, calendar)
            if best is None or available < best_date:
                best = tracker
                best_date = available

        if best is None:
            warnings.append(PlanningWarning(issue_key, WarningType.NO_CAPACITY, f"No {role.value} capacity in team"))
            return PhaseSchedule.without_capacity(hours)

        allocation = best.allocate_hours(hours, start_after, calendar)
        return PhaseSchedule(
            assignee_id=best.account_id,
            assignee_name=best.display_name,
            start_date=allocation.start_date,
            end_date=allocation.end_date,
            hours=hours,
        )

    def _plan_epic_by_rough_estimates(
        self,
        epic: Epic,
        rough_hours: PhaseHours,
        trackers: Dict[str, AssigneeCapacityTracker],
        warnings: List[PlanningWarning],
    ) -> PlannedEpic:
        logger.info("Planning epic %s by rough estimates (no stories)", epic.key)
        buffered = rough_hours.with_buffer(self.config.risk_buffer)
        phases = self._plan_pipeline(epic.key, buffered, self.config.today, trackers, warnings)

        totals = _EpicTotals()
        for role, phase in phases.items():
            totals.add_phase(role, phase.hours, phase.start_date, phase.end_date)
        scheduled = [phase for phase in phases.values() if phase.start_date is not None]

        return PlannedEpic(
            key=epic.key,
            summary=epic.summary,
            priority_score=epic.priority_score,
            status=epic.status,
            due_date=epic.due_date,
            start_date=scheduled[0].start_date if scheduled else None,
            end_date=scheduled[-1].end_date if scheduled else None,
            stories=(),
            aggregation=totals.aggregation(),
            is_rough_estimate=True,
            flagged=epic.flagged,
        )

    def _unscheduled_story(self, story: Story, warning: PlanningWarning) -> PlannedStory:
        return PlannedStory(
            key=story.key,
            summary=story.summary,
            priority_score=story.priority_score,
            status=story.status,
            start_date=None,
            end_date=None,
            phases={},
            blocked_by=tuple(story.blocked_by or ()),
            warnings=(warning,),
            flagged=story.flagged,
            estimate_seconds=story.estimate_seconds,
            logged_seconds=story.logged_seconds,
            progress_percent=_progress_percent(story.estimate_seconds or 0, story.logged_seconds or 0),
        )
