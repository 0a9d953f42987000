from datetime import date, timedelta
from typing import Iterable, Protocol


class WorkCalendar(Protocol):
    def is_workday(self, day: date) -> bool:
        ...

    def next_workday(self, day: date) -> date:
        """Return the first workday strictly after ``day``."""
        ...


def ensure_workday(calendar: WorkCalendar, day: date) -> date:
    if calendar.is_workday(day):
        return day
    return calendar.next_workday(day)


class WeekdayCalendar:
    """Monday to Friday, minus an explicit set of holidays supplied by the caller."""

    def __init__(self, holidays: Iterable[date] = ()):
        self.holidays = frozenset(holidays)

    def is_workday(self, day: date) -> bool:
        return day.weekday() < 5 and day not in self.holidays

    def next_workday(self, day: date) -> date:
        candidate = day + timedelta(days=1)
        # A year of consecutive holidays would be a configuration error
        for _ in range(366):
            if self.is_workday(candidate):
                return candidate
            candidate += timedelta(days=1)
        return candidate
