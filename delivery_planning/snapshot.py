"""
Conversion of request payloads into planning snapshots.

The payload mirrors what the board front end already has in memory:

    {
        "teamId": "T1",
        "members": [{"accountId": "u1", "displayName": "Ann", "role": "SA",
                     "hoursPerDay": 8, "grade": "senior"}],
        "absences": {"u1": ["2026-03-03", {"startDate": "2026-03-09", "endDate": "2026-03-13"}]},
        "epics": [{"key": "E-1", "priorityScore": 80, "status": "In Progress"}],
        "stories": [{"key": "S-1", "epicKey": "E-1", "blockedBy": [],
                     "phaseHours": {"SA": 4, "DEV": 16, "QA": 8}}]
    }

Grade adjustment happens here: the engine only sees effective hours per day.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Set

from .errors import PlanningInputError
from .models import (
    Epic,
    PhaseHours,
    PlanningSnapshot,
    Role,
    Story,
    TeamMember,
    to_hours,
)


DEFAULT_GRADE_COEFFICIENTS = {
    "senior": Decimal("0.8"),
    "middle": Decimal("1.0"),
    "junior": Decimal("1.5"),
}


def parse_date(value: Any, field_name: str = "date") -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        raise PlanningInputError(f"Invalid {field_name}: {value!r}")


def parse_decimal(value: Any, field_name: str, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value in (None, ""):
        return default
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PlanningInputError(f"Invalid number for {field_name}: {value!r}")
    if not number.is_finite():
        raise PlanningInputError(f"Invalid number for {field_name}: {value!r}")
    return number


def parse_seconds(value: Any, field_name: str) -> Optional[int]:
    if value in (None, ""):
        return None
    number = None if isinstance(value, bool) else parse_decimal(value, field_name)
    if number is None or number != number.to_integral_value():
        raise PlanningInputError(f"Invalid number of seconds for {field_name}: {value!r}")
    seconds = int(number)
    if seconds < 0:
        raise PlanningInputError(f"{field_name} must not be negative")
    return seconds


def parse_keys(value: Any, field_name: str) -> List[str]:
    if value in (None, ""):
        return []
    if not isinstance(value, (list, tuple)):
        raise PlanningInputError(f"{field_name} must be a list of issue keys, got {value!r}")
    return [str(key) for key in value]


def parse_role(value: Any, field_name: str = "role") -> Role:
    try:
        return Role(str(value).strip().upper())
    except ValueError:
        raise PlanningInputError(f"Unknown {field_name} {value!r}, expected one of SA, DEV, QA")


def effective_hours_per_day(hours_per_day: Decimal, grade: Optional[str], coefficients: Dict[str, Decimal]) -> Decimal:
    """Seniors get more done per real hour: 8h / 0.8 = 10 effective hours."""
    coefficient = coefficients.get((grade or "middle").strip().lower())
    if coefficient is None:
        raise PlanningInputError(f"Unknown grade {grade!r}")
    if coefficient <= 0:
        raise PlanningInputError(f"Grade coefficient for {grade!r} must be positive")
    return to_hours(hours_per_day / coefficient)


def expand_absences(entries: Iterable[Any]) -> Set[date]:
    days = set()
    for entry in entries or []:
        if isinstance(entry, dict):
            start = parse_date(entry.get("startDate"), "absence startDate")
            end = parse_date(entry.get("endDate"), "absence endDate") or start
            if start is None:
                raise PlanningInputError(f"Absence without startDate: {entry!r}")
            if end < start:
                raise PlanningInputError(f"Absence ends before it starts: {entry!r}")
            current = start
            while current <= end:
                days.add(current)
                current += timedelta(days=1)
        else:
            days.add(parse_date(entry, "absence date"))
    return days


def _parse_role_map(raw: Optional[Dict[str, Any]], field_name: str) -> Dict[str, Decimal]:
    result = {}
    for role, value in (raw or {}).items():
        amount = parse_decimal(value, f"{field_name}.{role}")
        if amount is not None:
            result[parse_role(role, field_name).value] = amount
    return result


def _require(raw: Dict[str, Any], name: str, kind: str) -> Any:
    value = raw.get(name)
    if value in (None, ""):
        raise PlanningInputError(f"{kind} is missing required field '{name}'")
    return value


def member_from_payload(raw: Dict[str, Any], coefficients: Dict[str, Decimal]) -> TeamMember:
    account_id = _require(raw, "accountId", "Team member")
    role = parse_role(_require(raw, "role", f"Team member {account_id}"))
    effective = parse_decimal(raw.get("effectiveHoursPerDay"), "effectiveHoursPerDay")
    if effective is None:
        hours = parse_decimal(raw.get("hoursPerDay"), "hoursPerDay", Decimal("8"))
        effective = effective_hours_per_day(hours, raw.get("grade"), coefficients)
    return TeamMember(
        account_id=account_id,
        display_name=raw.get("displayName") or account_id,
        role=role,
        effective_hours_per_day=to_hours(effective),
        active=raw.get("active", True),
    )


def epic_from_payload(raw: Dict[str, Any]) -> Epic:
    key = _require(raw, "key", "Epic")
    return Epic(
        key=key,
        summary=raw.get("summary") or "",
        priority_score=parse_decimal(raw.get("priorityScore"), f"{key}.priorityScore", Decimal("0")),
        status=raw.get("status"),
        due_date=parse_date(raw.get("dueDate"), f"{key}.dueDate"),
        team_id=raw.get("teamId"),
        flagged=bool(raw.get("flagged")),
        rough_estimates=_parse_role_map(raw.get("roughEstimates"), f"{key}.roughEstimates"),
    )


def story_from_payload(raw: Dict[str, Any]) -> Story:
    key = _require(raw, "key", "Story")
    hours = _parse_role_map(raw.get("phaseHours"), f"{key}.phaseHours")
    for role, value in hours.items():
        if value < 0:
            raise PlanningInputError(f"Story {key} has negative {role} hours")
    return Story(
        key=key,
        epic_key=raw.get("epicKey"),
        summary=raw.get("summary") or "",
        priority_score=parse_decimal(raw.get("priorityScore"), f"{key}.priorityScore", Decimal("0")),
        status=raw.get("status"),
        flagged=bool(raw.get("flagged")),
        blocked_by=parse_keys(raw.get("blockedBy"), f"{key}.blockedBy"),
        blocks=parse_keys(raw.get("blocks"), f"{key}.blocks"),
        phase_hours=PhaseHours(
            sa_hours=to_hours(hours.get(Role.SA.value)),
            dev_hours=to_hours(hours.get(Role.DEV.value)),
            qa_hours=to_hours(hours.get(Role.QA.value)),
        ),
        rough_estimates=_parse_role_map(raw.get("roughEstimates"), f"{key}.roughEstimates"),
        estimate_seconds=parse_seconds(raw.get("estimateSeconds"), f"{key}.estimateSeconds"),
        logged_seconds=parse_seconds(raw.get("loggedSeconds"), f"{key}.loggedSeconds"),
    )


def snapshot_from_payload(
    payload: Dict[str, Any],
    grade_coefficients: Optional[Dict[str, Decimal]] = None,
) -> PlanningSnapshot:
    if not isinstance(payload, dict):
        raise PlanningInputError("Planning payload must be a JSON object")
    coefficients = grade_coefficients or DEFAULT_GRADE_COEFFICIENTS

    members: List[TeamMember] = [member_from_payload(raw, coefficients) for raw in payload.get("members") or []]
    absences = {
        account_id: expand_absences(entries)
        for account_id, entries in (payload.get("absences") or {}).items()
    }
    return PlanningSnapshot(
        team_id=payload.get("teamId"),
        members=members,
        epics=[epic_from_payload(raw) for raw in payload.get("epics") or []],
        stories=[story_from_payload(raw) for raw in payload.get("stories") or []],
        absences=absences,
    )
