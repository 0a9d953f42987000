from decimal import Decimal

import pytest

from delivery_planning.scheduler import PlanningConfig, PlanningEngine
from delivery_planning.work_calendar import WeekdayCalendar

from tests.factories import MONDAY


@pytest.fixture
def calendar():
    return WeekdayCalendar()


@pytest.fixture
def config(calendar):
    return PlanningConfig(calendar=calendar, today=MONDAY, risk_buffer=Decimal("0"))


@pytest.fixture
def engine(config):
    return PlanningEngine(config)
