from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill

from .dependencies import DependencyGraph
from .models import (
    AllocationResult,
    AssigneeUtilization,
    PhaseAggregation,
    PhaseSchedule,
    PlannedEpic,
    PlannedStory,
    PlanningResult,
    PlanningWarning,
    RoleLoad,
    RoleLoadSummary,
)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _number(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def warning_to_dict(warning: PlanningWarning) -> Dict[str, Any]:
    return {
        'issueKey': warning.issue_key,
        'type': warning.type.value,
        'message': warning.message,
    }


def phase_to_dict(phase: PhaseSchedule) -> Dict[str, Any]:
    return {
        'assigneeAccountId': phase.assignee_id,
        'assigneeDisplayName': phase.assignee_name,
        'startDate': _iso(phase.start_date),
        'endDate': _iso(phase.end_date),
        'hours': _number(phase.hours),
        'noCapacity': phase.no_capacity,
    }


def aggregation_to_dict(aggregation: PhaseAggregation) -> Dict[str, Any]:
    return {
        'hours': _number(aggregation.hours),
        'startDate': _iso(aggregation.start_date),
        'endDate': _iso(aggregation.end_date),
    }


def story_to_dict(story: PlannedStory) -> Dict[str, Any]:
    return {
        'storyKey': story.key,
        'summary': story.summary,
        'priorityScore': _number(story.priority_score),
        'status': story.status,
        'startDate': _iso(story.start_date),
        'endDate': _iso(story.end_date),
        'phases': {role.value: phase_to_dict(phase) for role, phase in story.phases.items()},
        'blockedBy': list(story.blocked_by),
        'warnings': [warning_to_dict(w) for w in story.warnings],
        'flagged': story.flagged,
        'totalEstimateSeconds': story.estimate_seconds,
        'totalLoggedSeconds': story.logged_seconds,
        'progressPercent': story.progress_percent,
    }


def epic_to_dict(epic: PlannedEpic) -> Dict[str, Any]:
    return {
        'epicKey': epic.key,
        'summary': epic.summary,
        'priorityScore': _number(epic.priority_score),
        'status': epic.status,
        'dueDate': _iso(epic.due_date),
        'startDate': _iso(epic.start_date),
        'endDate': _iso(epic.end_date),
        'stories': [story_to_dict(s) for s in epic.stories],
        'phaseAggregation': {role.value: aggregation_to_dict(a) for role, a in epic.aggregation.items()},
        'totalEstimateSeconds': epic.estimate_seconds,
        'totalLoggedSeconds': epic.logged_seconds,
        'progressPercent': epic.progress_percent,
        'storiesTotal': epic.stories_total,
        'storiesActive': epic.stories_active,
        'isRoughEstimate': epic.is_rough_estimate,
        'flagged': epic.flagged,
    }


def utilization_to_dict(utilization: AssigneeUtilization) -> Dict[str, Any]:
    return {
        'displayName': utilization.display_name,
        'role': utilization.role.value,
        'totalHoursAssigned': _number(utilization.total_assigned_hours),
        'effectiveHoursPerDay': _number(utilization.effective_hours_per_day),
        'dailyLoad': {day.isoformat(): _number(hours) for day, hours in utilization.daily_load.items()},
    }


def plan_to_dict(result: PlanningResult) -> Dict[str, Any]:
    return {
        'teamId': result.team_id,
        'plannedOn': result.planned_on.isoformat(),
        'epics': [epic_to_dict(e) for e in result.epics],
        'warnings': [warning_to_dict(w) for w in result.warnings],
        'assigneeUtilization': {
            account_id: utilization_to_dict(u) for account_id, u in result.utilization.items()
        },
    }


def allocation_to_dict(allocation: AllocationResult) -> Dict[str, Any]:
    return {
        'startDate': _iso(allocation.start_date),
        'endDate': _iso(allocation.end_date),
        'hoursAllocated': _number(allocation.hours_allocated),
    }


def role_load_to_dict(load: RoleLoad) -> Dict[str, Any]:
    return {
        'memberCount': load.member_count,
        'capacityHours': _number(load.capacity_hours),
        'assignedHours': _number(load.assigned_hours),
        'demandHours': _number(load.demand_hours),
        'utilizationPercent': _number(load.utilization_percent),
        'demandPercent': _number(load.demand_percent),
        'status': load.status.value,
    }


def role_load_summary_to_dict(summary: RoleLoadSummary) -> Dict[str, Any]:
    return {
        'teamId': summary.team_id,
        'periodStart': summary.period_start.isoformat(),
        'periodEnd': summary.period_end.isoformat(),
        'workdays': summary.workdays,
        'roles': {role.value: role_load_to_dict(load) for role, load in summary.roles.items()},
        'alerts': [
            {'type': a.type.value, 'role': a.role.value if a.role else None, 'message': a.message}
            for a in summary.alerts
        ],
    }


def dependency_graph_to_dict(graph: DependencyGraph) -> Dict[str, Any]:
    return {
        'nodes': list(graph.nodes),
        'edges': [{'from': e.source, 'to': e.target, 'type': e.type} for e in graph.edges],
    }


HEADER_FILL = PatternFill(start_color='107C41', end_color='107C41', fill_type='solid')
HEADER_FONT = Font(bold=True, color='FFFFFF', size=12)
HEADER_ALIGNMENT = Alignment(horizontal='center', vertical='center')


def _write_header(ws, headers, widths):
    for col_num, (header, width) in enumerate(zip(headers, widths), 1):
        cell = ws.cell(row=1, column=col_num)
        cell.value = header
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = HEADER_ALIGNMENT
        ws.column_dimensions[cell.column_letter].width = width


def build_plan_workbook(result: PlanningResult) -> Workbook:
    """One row per story phase, plus a sheet with assignee utilization."""
    wb = Workbook()
    ws = wb.active
    ws.title = 'Plan'
    _write_header(
        ws,
        ['Epic', 'Story', 'Phase', 'Assignee', 'Start', 'End', 'Hours', 'Warning'],
        [15, 15, 10, 25, 14, 14, 10, 40],
    )

    row = 2
    for epic in result.epics:
        if epic.is_rough_estimate:
            for role, aggregation in epic.aggregation.items():
                ws.cell(row=row, column=1, value=epic.key)
                ws.cell(row=row, column=3, value=role.value)
                ws.cell(row=row, column=5, value=aggregation.start_date)
                ws.cell(row=row, column=6, value=aggregation.end_date)
                ws.cell(row=row, column=7, value=_number(aggregation.hours))
                ws.cell(row=row, column=8, value='Rough estimate')
                row += 1
            continue
        for story in epic.stories:
            warning_text = '; '.join(w.message for w in story.warnings)
            if not story.phases:
                ws.cell(row=row, column=1, value=epic.key)
                ws.cell(row=row, column=2, value=story.key)
                ws.cell(row=row, column=8, value=warning_text)
                row += 1
                continue
            for role, phase in story.phases.items():
                ws.cell(row=row, column=1, value=epic.key)
                ws.cell(row=row, column=2, value=story.key)
                ws.cell(row=row, column=3, value=role.value)
                ws.cell(row=row, column=4, value=phase.assignee_name or '')
                ws.cell(row=row, column=5, value=phase.start_date)
                ws.cell(row=row, column=6, value=phase.end_date)
                ws.cell(row=row, column=7, value=_number(phase.hours))
                ws.cell(row=row, column=8, value=warning_text)
                row += 1

    for data_row in range(2, row):
        ws.cell(row=data_row, column=3).alignment = Alignment(horizontal='center')
        ws.cell(row=data_row, column=7).alignment = Alignment(horizontal='center')

    load = wb.create_sheet('Utilization')
    _write_header(load, ['Assignee', 'Role', 'Hours/Day', 'Total Hours'], [25, 10, 12, 14])
    for row_num, utilization in enumerate(result.utilization.values(), 2):
        load.cell(row=row_num, column=1, value=utilization.display_name)
        load.cell(row=row_num, column=2, value=utilization.role.value)
        load.cell(row=row_num, column=3, value=_number(utilization.effective_hours_per_day))
        load.cell(row=row_num, column=4, value=_number(utilization.total_assigned_hours))

    return wb
