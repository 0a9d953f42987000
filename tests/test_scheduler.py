"""
Tests for the planning engine: pipeline ordering, capacity sharing,
dependencies across stories and epics, warnings and aggregation.
"""

from decimal import Decimal

import pytest

from delivery_planning.errors import PlanningInputError
from delivery_planning.models import PhaseHours, Role, WarningType
from delivery_planning.report import plan_to_dict
from delivery_planning.scheduler import PlanningConfig, PlanningEngine

from tests.factories import MONDAY, day, make_epic, make_member, make_snapshot, make_story


def only_story(result):
    return result.epics[0].stories[0]


def warning_types(result):
    return [(w.issue_key, w.type) for w in result.warnings]


class TestPipeline:
    def test_sa_then_dev_on_following_workday(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA"), make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [make_story("S-1", sa=4, dev=16)],
        )

        story = only_story(engine.plan(snapshot))

        sa, dev = story.phases[Role.SA], story.phases[Role.DEV]
        assert (sa.assignee_id, sa.start_date, sa.end_date, sa.hours) == ("sa1", MONDAY, MONDAY, Decimal("4"))
        assert (dev.assignee_id, dev.start_date, dev.end_date) == ("dev1", day(1), day(2))
        assert (story.start_date, story.end_date) == (MONDAY, day(2))
        assert Role.QA not in story.phases

    def test_sa_keeps_remaining_hours_on_shared_day(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA"), make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [make_story("S-1", sa=4, dev=16)],
        )

        result = engine.plan(snapshot)

        assert result.utilization["sa1"].daily_load == {MONDAY: Decimal("4")}
        assert result.utilization["dev1"].daily_load == {day(1): Decimal("8"), day(2): Decimal("8")}

    def test_two_stories_split_one_sa_day(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA")],
            [make_epic("E-1")],
            [make_story("S-1", sa=4, priority=60), make_story("S-2", sa=4, priority=40)],
        )

        stories = engine.plan(snapshot).epics[0].stories

        assert [s.key for s in stories] == ["S-1", "S-2"]
        for story in stories:
            assert story.phases[Role.SA].start_date == MONDAY
            assert story.phases[Role.SA].end_date == MONDAY

    def test_phases_are_strictly_sequential(self, engine):
        snapshot = make_snapshot(
            [
                make_member("sa1", "SA"),
                make_member("dev1", "DEV", hours=6),
                make_member("dev2", "DEV", hours="7.5"),
                make_member("qa1", "QA"),
            ],
            [make_epic("E-1", priority=90), make_epic("E-2", priority=10)],
            [
                make_story("S-1", sa=6, dev=20, qa=5),
                make_story("S-2", sa=3, dev=11, qa=9, blocked_by=["S-1"]),
                make_story("S-3", sa=10, dev=3, qa=2),
                make_story("S-4", epic_key="E-2", sa=2, dev=30, qa=4),
                make_story("S-5", epic_key="E-2", dev=8, qa=8),
            ],
        )

        result = engine.plan(snapshot)

        for epic in result.epics:
            for story in epic.stories:
                scheduled = [story.phases[r] for r in (Role.SA, Role.DEV, Role.QA) if r in story.phases]
                for earlier, later in zip(scheduled, scheduled[1:]):
                    assert earlier.end_date < later.start_date

    def test_parallel_work_across_assignees(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA"), make_member("sa2", "SA")],
            [make_epic("E-1")],
            [make_story("S-1", sa=8, priority=90), make_story("S-2", sa=8, priority=10)],
        )

        s1, s2 = engine.plan(snapshot).epics[0].stories

        assert s1.phases[Role.SA].assignee_id == "sa1"
        assert s2.phases[Role.SA].assignee_id == "sa2"
        assert s1.start_date == s2.start_date == MONDAY

    def test_earliest_free_assignee_is_chosen(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV"), make_member("dev2", "DEV")],
            [make_epic("E-1")],
            [make_story("S-1", dev=8)],
            absences={"dev1": {MONDAY, day(1)}},
        )

        phase = only_story(engine.plan(snapshot)).phases[Role.DEV]

        assert phase.assignee_id == "dev2"
        assert phase.start_date == MONDAY

    def test_absence_delays_phase(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA")],
            [make_epic("E-1")],
            [make_story("S-1", sa=12)],
            absences={"sa1": {MONDAY}},
        )

        result = engine.plan(snapshot)
        phase = only_story(result).phases[Role.SA]

        assert (phase.start_date, phase.end_date) == (day(1), day(2))
        assert MONDAY not in result.utilization["sa1"].daily_load

    def test_weekend_today_starts_on_monday(self, calendar):
        engine = PlanningEngine(PlanningConfig(calendar=calendar, today=day(5), risk_buffer=0))
        snapshot = make_snapshot([make_member("qa1", "QA")], [make_epic("E-1")], [make_story("S-1", qa=4)])

        assert only_story(engine.plan(snapshot)).start_date == day(7)


class TestDependencies:
    def test_blocked_story_waits_for_blocker_end(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA"), make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [
                make_story("S-2", sa=4, priority=99, blocked_by=["S-1"]),
                make_story("S-1", sa=4, dev=16, priority=1),
            ],
        )

        stories = {s.key: s for s in engine.plan(snapshot).epics[0].stories}

        assert stories["S-1"].end_date == day(2)
        assert stories["S-2"].phases[Role.SA].start_date == day(3)

    def test_blocker_in_earlier_epic_constrains_later_epic(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV"), make_member("dev2", "DEV")],
            [make_epic("E-1", priority=90), make_epic("E-2", priority=10)],
            [
                make_story("S-1", epic_key="E-1", dev=24),
                make_story("S-2", epic_key="E-2", dev=4, blocked_by=["S-1"]),
            ],
        )

        result = engine.plan(snapshot)
        blocked = result.epics[1].stories[0]

        assert result.epics[0].stories[0].end_date == day(2)
        assert blocked.start_date == day(3)

    def test_blocker_in_later_epic_imposes_nothing(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV"), make_member("dev2", "DEV")],
            [make_epic("E-1", priority=90), make_epic("E-2", priority=10)],
            [
                make_story("S-2", epic_key="E-1", dev=4, blocked_by=["S-1"]),
                make_story("S-1", epic_key="E-2", dev=24),
            ],
        )

        result = engine.plan(snapshot)

        assert result.epics[0].stories[0].start_date == MONDAY

    def test_cycle_does_not_abort_the_run(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [
                make_story("S-1", dev=4, blocked_by=["S-2"]),
                make_story("S-2", dev=4, blocked_by=["S-1"]),
            ],
        )

        stories = engine.plan(snapshot).epics[0].stories

        assert sorted(s.key for s in stories) == ["S-1", "S-2"]
        assert all(s.start_date is not None for s in stories)


class TestWarnings:
    def test_story_without_estimate(self, engine):
        snapshot = make_snapshot([make_member("sa1", "SA")], [make_epic("E-1")], [make_story("S-1")])

        result = engine.plan(snapshot)
        story = only_story(result)

        assert warning_types(result) == [("S-1", WarningType.NO_ESTIMATE)]
        assert story.start_date is None and story.end_date is None
        assert story.phases == {}
        assert story.warnings[0].type == WarningType.NO_ESTIMATE

    def test_missing_role_marks_phase_without_capacity(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [make_story("S-1", sa=4, dev=8)],
        )

        result = engine.plan(snapshot)
        story = only_story(result)
        sa = story.phases[Role.SA]

        assert warning_types(result) == [("S-1", WarningType.NO_CAPACITY)]
        assert sa.no_capacity is True
        assert sa.start_date is None and sa.end_date is None
        assert sa.hours == Decimal("4")
        assert story.phases[Role.DEV].start_date == MONDAY
        assert story.start_date == MONDAY

    def test_flagged_story_is_excluded(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [make_story("S-1", dev=8, flagged=True), make_story("S-2", dev=8)],
        )

        result = engine.plan(snapshot)

        assert warning_types(result) == [("S-1", WarningType.FLAGGED)]
        assert [s.key for s in result.epics[0].stories] == ["S-2"]
        assert result.epics[0].stories[0].start_date == MONDAY

    def test_done_story_is_skipped_silently(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [make_story("S-1", dev=8, status="Done"), make_story("S-2", dev=8)],
        )

        result = engine.plan(snapshot)

        assert result.warnings == ()
        assert [s.key for s in result.epics[0].stories] == ["S-2"]
        assert result.epics[0].stories_total == 2
        assert result.epics[0].stories_active == 1


class TestEpics:
    def test_epics_planned_by_priority(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA")],
            [make_epic("E-LOW", priority=10), make_epic("E-HIGH", priority=90), make_epic("E-DONE", status="Done")],
            [make_story("S-1", epic_key="E-LOW", sa=8), make_story("S-2", epic_key="E-HIGH", sa=8)],
        )

        result = engine.plan(snapshot)

        assert [e.key for e in result.epics] == ["E-HIGH", "E-LOW"]
        assert result.epics[0].start_date == MONDAY
        assert result.epics[1].start_date == day(1)

    def test_planning_statuses_filter_epics(self, calendar):
        config = PlanningConfig(
            calendar=calendar, today=MONDAY, risk_buffer=0, planning_statuses={"In Progress", "Planned"}
        )
        snapshot = make_snapshot(
            [make_member("sa1", "SA")],
            [make_epic("E-1"), make_epic("E-2", status="Backlog")],
            [make_story("S-1", sa=2), make_story("S-2", epic_key="E-2", sa=2)],
        )

        result = PlanningEngine(config).plan(snapshot)

        assert [e.key for e in result.epics] == ["E-1"]

    def test_aggregation_per_role(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA"), make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [
                make_story("S-1", sa=4, dev=8, priority=90, estimate_seconds=36000, logged_seconds=7200),
                make_story("S-2", sa=8, priority=10, estimate_seconds=14400, logged_seconds=0),
            ],
        )

        epic = engine.plan(snapshot).epics[0]

        assert (epic.start_date, epic.end_date) == (MONDAY, day(1))
        sa, dev = epic.aggregation[Role.SA], epic.aggregation[Role.DEV]
        assert (sa.hours, sa.start_date, sa.end_date) == (Decimal("12"), MONDAY, day(1))
        assert (dev.hours, dev.start_date, dev.end_date) == (Decimal("8"), day(1), day(1))
        assert Role.QA not in epic.aggregation
        assert (epic.estimate_seconds, epic.logged_seconds, epic.progress_percent) == (50400, 7200, 14)
        assert epic.stories[0].progress_percent == 20

    def test_rough_estimates_for_stories_of_planned_epic(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV")],
            [make_epic("E-1", status="Planned"), make_epic("E-2", priority=10)],
            [
                make_story("S-1", rough_estimates={"DEV": Decimal("1.5")}),
                make_story("S-2", epic_key="E-2", rough_estimates={"DEV": Decimal("1")}),
            ],
        )

        result = engine.plan(snapshot)
        rough = result.epics[0].stories[0]

        assert rough.phases[Role.DEV].hours == Decimal("12")
        assert (rough.start_date, rough.end_date) == (MONDAY, day(1))
        assert warning_types(result) == [("S-2", WarningType.NO_ESTIMATE)]

    def test_epic_without_stories_planned_by_rough_estimates(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA"), make_member("dev1", "DEV")],
            [make_epic("E-1", status="Planned", rough_estimates={"SA": Decimal("1"), "DEV": Decimal("2")})],
            [],
        )

        epic = engine.plan(snapshot).epics[0]

        assert epic.is_rough_estimate
        assert epic.stories == ()
        assert (epic.start_date, epic.end_date) == (MONDAY, day(2))
        assert epic.aggregation[Role.SA].hours == Decimal("8")
        assert (epic.aggregation[Role.DEV].start_date, epic.aggregation[Role.DEV].end_date) == (day(1), day(2))


class TestRiskBuffer:
    def test_buffer_inflates_hours_and_splits_days(self, calendar):
        engine = PlanningEngine(PlanningConfig(calendar=calendar, today=MONDAY, risk_buffer=Decimal("0.2")))
        snapshot = make_snapshot(
            [make_member("sa1", "SA")],
            [make_epic("E-1")],
            [make_story("S-1", sa=4, priority=90), make_story("S-2", sa=4, priority=10)],
        )

        result = engine.plan(snapshot)
        s1, s2 = result.epics[0].stories

        assert s1.phases[Role.SA].hours == Decimal("4.80")
        assert (s1.start_date, s1.end_date) == (MONDAY, MONDAY)
        assert (s2.start_date, s2.end_date) == (MONDAY, day(1))
        assert result.utilization["sa1"].daily_load == {MONDAY: Decimal("8"), day(1): Decimal("1.6")}

    def test_buffered_hours_round_half_up(self, calendar):
        engine = PlanningEngine(PlanningConfig(calendar=calendar, today=MONDAY, risk_buffer=Decimal("0.15")))
        snapshot = make_snapshot([make_member("qa1", "QA")], [make_epic("E-1")], [make_story("S-1", qa="2.3")])

        # 2.3 * 1.15 = 2.645
        assert only_story(engine.plan(snapshot)).phases[Role.QA].hours == Decimal("2.65")

    def test_plain_numbers_in_phase_hours_are_normalized(self):
        hours = PhaseHours(sa_hours=4.5, dev_hours="2.345")

        assert (hours.sa_hours, hours.dev_hours, hours.qa_hours) == (Decimal("4.50"), Decimal("2.35"), Decimal("0"))
        assert hours.with_buffer("0.2").sa_hours == Decimal("5.40")


class TestRunProperties:
    def build_snapshot(self):
        return make_snapshot(
            [
                make_member("sa1", "SA", hours="6.4"),
                make_member("dev1", "DEV"),
                make_member("dev2", "DEV", hours=10),
                make_member("qa1", "QA", hours="7.5"),
            ],
            [make_epic("E-1", priority=70), make_epic("E-2", priority=70), make_epic("E-3", priority=20)],
            [
                make_story("S-1", sa=5, dev=13, qa=6),
                make_story("S-2", sa="2.5", dev=9, qa=3, blocked_by=["S-1"]),
                make_story("S-3", epic_key="E-2", sa=7, dev=21),
                make_story("S-4", epic_key="E-2", qa=4, blocked_by=["S-3"]),
                make_story("S-5", epic_key="E-3", sa=1, dev=1, qa=1, blocked_by=["S-2", "S-4"]),
                make_story("S-6", epic_key="E-3"),
            ],
            absences={"dev1": {day(1), day(2)}, "qa1": {day(8)}},
        )

    def test_rerun_is_identical(self, engine):
        first = engine.plan(self.build_snapshot())
        second = engine.plan(self.build_snapshot())

        assert first == second
        assert plan_to_dict(first) == plan_to_dict(second)

    def test_capacity_never_exceeded_and_absences_respected(self, engine):
        snapshot = self.build_snapshot()
        result = engine.plan(snapshot)

        for account_id, utilization in result.utilization.items():
            for load_day, hours in utilization.daily_load.items():
                assert 0 < hours <= utilization.effective_hours_per_day
                assert load_day not in snapshot.absences.get(account_id, set())

    def test_total_hours_match_scheduled_phases(self, engine):
        result = engine.plan(self.build_snapshot())

        scheduled = sum(
            phase.hours
            for epic in result.epics
            for story in epic.stories
            for phase in story.phases.values()
        )
        committed = sum(u.total_assigned_hours for u in result.utilization.values())
        assert scheduled == committed

    def test_result_mappings_are_read_only(self, engine):
        result = engine.plan(self.build_snapshot())
        epic = result.epics[0]

        with pytest.raises(TypeError):
            result.utilization["ghost"] = None
        with pytest.raises(TypeError):
            result.utilization["dev1"].daily_load[MONDAY] = Decimal("99")
        with pytest.raises(TypeError):
            epic.aggregation[Role.SA] = None
        with pytest.raises(TypeError):
            del epic.stories[0].phases[Role.SA]


class TestWhatIf:
    def test_projection_leaves_plan_unchanged(self, engine):
        snapshot = make_snapshot(
            [make_member("sa1", "SA"), make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [make_story("S-1", sa=4, dev=16)],
        )

        projection = engine.what_if(snapshot, Role.SA, Decimal("8"))

        assert list(projection) == ["sa1"]
        assert (projection["sa1"].start_date, projection["sa1"].end_date) == (MONDAY, day(1))
        assert engine.what_if(snapshot, Role.SA, Decimal("8")) == projection
        assert engine.plan(snapshot).utilization["sa1"].total_assigned_hours == Decimal("4")

    def test_role_without_members_projects_nothing(self, engine):
        snapshot = make_snapshot([make_member("dev1", "DEV")], [make_epic("E-1")], [])
        assert engine.what_if(snapshot, Role.QA, 8) == {}


class TestValidation:
    def test_negative_hours_rejected(self, engine):
        snapshot = make_snapshot([make_member("dev1", "DEV")], [make_epic("E-1")], [make_story("S-1", dev=-1)])
        with pytest.raises(PlanningInputError):
            engine.plan(snapshot)

    def test_zero_capacity_member_rejected(self, engine):
        snapshot = make_snapshot([make_member("dev1", "DEV", hours=0)], [], [])
        with pytest.raises(PlanningInputError):
            engine.plan(snapshot)

    def test_missing_account_id_rejected(self, engine):
        snapshot = make_snapshot([make_member("", "DEV")], [], [])
        with pytest.raises(PlanningInputError):
            engine.plan(snapshot)

    def test_duplicate_story_keys_rejected(self, engine):
        snapshot = make_snapshot(
            [make_member("dev1", "DEV")],
            [make_epic("E-1")],
            [make_story("S-1", dev=1), make_story("S-1", dev=2)],
        )
        with pytest.raises(PlanningInputError):
            engine.plan(snapshot)

    def test_negative_risk_buffer_rejected(self, calendar):
        with pytest.raises(PlanningInputError):
            PlanningConfig(calendar=calendar, today=MONDAY, risk_buffer=Decimal("-0.1"))
