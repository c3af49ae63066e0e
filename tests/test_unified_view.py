from __future__ import annotations

import datetime
import unittest
from unittest import mock

from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from staffing import unified
from staffing.database import Base, GeneratedShift, ShiftTemplate, upsert_manual_shift
from staffing.errors import PersistenceError
from staffing.generator.api import generate_shifts_from_template, get_shifts_to_generate, run_scheduled_generation
from staffing.generator.engine import ShiftGenerator
from staffing.templates import create_template, deactivate_template
from staffing.unified import collect_unified_shifts, get_unified_shifts

MONDAY = datetime.date(2025, 2, 3)


def _boom(*_args, **_kwargs):
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


class UnifiedViewTests(unittest.TestCase):
    """Merging generated and manual shifts into one scoped feed."""

    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.session = self.session_factory()
        self.day_template = self._template("North Day RN", facility_id=1, start="07:00", end="15:00")
        self.night_template = self._template("South Night CNA", facility_id=2, start="19:00", end="07:00")

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _template(self, name: str, *, facility_id: int, start: str, end: str) -> ShiftTemplate:
        return create_template(
            self.session_factory,
            {
                "name": name,
                "facility_id": facility_id,
                "facility_name": f"Facility {facility_id}",
                "department": "Nursing",
                "specialty": "RN",
                "start_time": start,
                "end_time": end,
                "days_of_week": [1, 2, 3, 4, 5],
                "min_staff": 1,
                "max_staff": 2,
                "hourly_rate": 40,
                "horizon_days": 6,
            },
        )

    def _manual(self, facility_id: int, date: datetime.date, start: str = "09:00", end: str = "17:00") -> int:
        return upsert_manual_shift(
            self.session,
            {
                "title": "Coverage call-out",
                "facility_id": facility_id,
                "facility_name": f"Facility {facility_id}",
                "department": "Nursing",
                "specialty": "RN",
                "date": date,
                "start_time": start,
                "end_time": end,
                "rate": 65,
            },
        )

    def _generate_week(self) -> None:
        for template in (self.day_template, self.night_template):
            generate_shifts_from_template(
                self.session_factory, template.id, MONDAY, MONDAY + datetime.timedelta(days=4)
            )

    def test_union_is_tagged_and_sorted(self) -> None:
        self._generate_week()
        manual_id = self._manual(1, MONDAY, start="12:00")

        feed = collect_unified_shifts(self.session_factory, "super_admin")

        self.assertEqual(len(feed.shifts), 11)
        self.assertEqual(feed.metadata["generated_shifts"], 10)
        self.assertEqual(feed.metadata["manual_shifts"], 1)
        self.assertFalse(feed.metadata["facility_filtered"])
        keys = [(shift.date, shift.start_time) for shift in feed.shifts]
        self.assertEqual(keys, sorted(keys))
        monday = [shift for shift in feed.shifts if shift.date == MONDAY]
        self.assertEqual([shift.source for shift in monday], ["generated", "manual", "generated"])
        self.assertEqual(monday[1].id, manual_id)
        self.assertIsNone(monday[1].template_id)
        self.assertEqual(monday[0].template_id, self.day_template.id)
        self.assertTrue(str(monday[0].id).endswith("-0"))

    def test_ties_keep_source_order(self) -> None:
        self._generate_week()
        self._manual(1, MONDAY, start="07:00")

        monday = [shift for shift in get_unified_shifts(self.session_factory, "super_admin") if shift.date == MONDAY]

        self.assertEqual([shift.source for shift in monday[:2]], ["generated", "manual"])

    def test_facility_scoped_caller_only_sees_their_facilities(self) -> None:
        self._generate_week()
        self._manual(1, MONDAY)
        self._manual(2, MONDAY)

        feed = collect_unified_shifts(self.session_factory, "facility_admin", [2])

        self.assertTrue(feed.metadata["facility_filtered"])
        self.assertEqual(len(feed.shifts), 6)
        self.assertTrue(all(shift.facility_id == 2 for shift in feed.shifts))

    def test_scoped_caller_without_facilities_sees_nothing(self) -> None:
        self._generate_week()
        self.assertEqual(get_unified_shifts(self.session_factory, "facility_manager", None), [])

    def test_cold_start_generates_from_active_templates(self) -> None:
        deactivate_template(self.session_factory, self.night_template.id)

        shifts = get_unified_shifts(self.session_factory, "super_admin", today=MONDAY)

        self.assertTrue(shifts)
        self.assertTrue(all(shift.source == "generated" for shift in shifts))
        self.assertEqual({shift.facility_id for shift in shifts}, {1})
        self.assertEqual(min(shift.date for shift in shifts), MONDAY)
        stored = list(self.session.scalars(select(GeneratedShift)))
        self.assertEqual(len(stored), len(shifts))

    def test_manual_source_failure_degrades_to_generated(self) -> None:
        self._generate_week()
        with mock.patch.object(unified, "_read_manual", side_effect=_boom):
            feed = collect_unified_shifts(self.session_factory, "super_admin")

        self.assertEqual(feed.metadata["failed_sources"], ["manual"])
        self.assertEqual(len(feed.shifts), 10)

    def test_generated_source_failure_degrades_to_manual(self) -> None:
        self._manual(1, MONDAY)
        with mock.patch.object(unified, "_read_generated", side_effect=_boom):
            feed = collect_unified_shifts(self.session_factory, "super_admin")

        self.assertEqual(feed.metadata["failed_sources"], ["generated"])
        self.assertEqual([shift.source for shift in feed.shifts], ["manual"])

    def test_both_sources_failing_raises(self) -> None:
        with mock.patch.object(unified, "_read_manual", side_effect=_boom), mock.patch.object(
            unified, "_read_generated", side_effect=_boom
        ):
            with self.assertRaises(PersistenceError):
                collect_unified_shifts(self.session_factory, "super_admin")

    def test_to_dict_formats_dates_and_times(self) -> None:
        self._generate_week()
        payload = collect_unified_shifts(self.session_factory, "super_admin").to_dict()
        first = payload["shifts"][0]
        self.assertEqual(first["date"], MONDAY.isoformat())
        self.assertEqual(first["start_time"], "07:00")
        self.assertEqual(first["source"], "generated")


class SchedulerSweepTests(unittest.TestCase):
    """Daily top-up across templates and the missing-dates report."""

    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.templates = [
            create_template(
                self.session_factory,
                {
                    "name": f"Template {idx}",
                    "facility_id": idx,
                    "department": "Nursing",
                    "specialty": "RN",
                    "start_time": "07:00",
                    "end_time": "15:00",
                    "days_of_week": [1, 2, 3, 4, 5],
                    "min_staff": 2,
                    "max_staff": 2,
                    "horizon_days": 6,
                },
            )
            for idx in (1, 2, 3)
        ]

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_sweep_reports_aggregate_and_is_idempotent(self) -> None:
        first = run_scheduled_generation(self.session_factory, today=MONDAY)
        second = run_scheduled_generation(self.session_factory, today=MONDAY)

        self.assertEqual(first["processed"], 3)
        self.assertEqual(first["succeeded"], 3)
        self.assertEqual(first["errors"], [])
        self.assertEqual(first["shifts_generated"], 3 * 5 * 2)
        self.assertEqual(second["shifts_generated"], 0)

    def test_one_failing_template_does_not_abort_the_sweep(self) -> None:
        failing_id = self.templates[1].id
        original = ShiftGenerator.generate

        def flaky(engine_self, template, start, end, **kwargs):
            if template == failing_id:
                raise PersistenceError("connection reset")
            return original(engine_self, template, start, end, **kwargs)

        with mock.patch("staffing.generator.engine.ShiftGenerator.generate", flaky):
            summary = run_scheduled_generation(self.session_factory, today=MONDAY)

        self.assertEqual(summary["processed"], 3)
        self.assertEqual(summary["succeeded"], 2)
        self.assertEqual(summary["errors"], [{"template_id": failing_id, "error": "connection reset"}])
        self.assertEqual(summary["shifts_generated"], 2 * 5 * 2)

    def test_horizon_override(self) -> None:
        summary = run_scheduled_generation(self.session_factory, horizon_days=0, today=MONDAY)
        self.assertEqual(summary["shifts_generated"], 3 * 2)

    def test_missing_dates_report(self) -> None:
        generate_shifts_from_template(self.session_factory, self.templates[0].id, MONDAY, MONDAY + datetime.timedelta(days=6))
        with self.session_factory() as session:
            lone = session.scalars(
                select(GeneratedShift).where(
                    GeneratedShift.template_id == self.templates[0].id,
                    GeneratedShift.date == MONDAY,
                    GeneratedShift.shift_position == 1,
                )
            ).one()
            session.delete(lone)
            session.commit()

        report = get_shifts_to_generate(self.session_factory, 6, today=MONDAY)

        by_template = {item["template"].id: item["missing_dates"] for item in report}
        self.assertEqual(by_template[self.templates[0].id], [MONDAY.isoformat()])
        self.assertEqual(len(by_template[self.templates[1].id]), 5)
        self.assertEqual(len(report), 3)


if __name__ == "__main__":
    unittest.main()
