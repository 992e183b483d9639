from __future__ import annotations

import unittest
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from app.errors import InvalidInput, NotFound
from app.models import Employee, ScanMethod
from app.services.reports import month_bounds, monthly_report, session_report
from db_support import add_employees, add_record, add_session, make_session_factory

MANILA = ZoneInfo("Asia/Manila")


class MonthBoundsTests(unittest.TestCase):
    def test_bounds_follow_local_midnight(self) -> None:
        start, end = month_bounds("2026-03", MANILA)

        self.assertEqual(start, datetime(2026, 2, 28, 16, 0, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 3, 31, 16, 0, tzinfo=timezone.utc))

    def test_default_bounds_are_utc_midnights(self) -> None:
        start, end = month_bounds("2026-03")

        self.assertEqual(start, datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 4, 1, tzinfo=timezone.utc))

    def test_december_rolls_into_next_year(self) -> None:
        start, end = month_bounds("2025-12", ZoneInfo("UTC"))

        self.assertEqual(start, datetime(2025, 12, 1, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 1, 1, tzinfo=timezone.utc))

    def test_malformed_month_is_rejected(self) -> None:
        for raw in ("2026-13", "2026-3", "March", ""):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidInput) as ctx:
                    month_bounds(raw, MANILA)
                self.assertEqual(ctx.exception.code, "INVALID_MONTH")


class SessionReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        add_employees(
            self.db,
            [
                ("F1", "Ana Cruz", "Finance"),
                ("F2", "Ben Reyes", "Finance"),
                ("I1", "Carla Diaz", "IT"),
            ],
        )
        self.attendance_session = add_session(
            self.db,
            event_name="Safety Orientation",
            started_at=datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc),
            ended_at=datetime(2026, 3, 2, 2, 30, tzinfo=timezone.utc),
        )
        session_id = self.attendance_session.session_id
        add_record(
            self.db,
            session_id=session_id,
            employee_id="I1",
            method=ScanMethod.MANUAL,
            scanned_at=datetime(2026, 3, 2, 1, 10, tzinfo=timezone.utc),
        )
        add_record(
            self.db,
            session_id=session_id,
            employee_id="F1",
            scanned_at=datetime(2026, 3, 2, 1, 5, tzinfo=timezone.utc),
        )

    def tearDown(self) -> None:
        self.db.close()

    def test_present_and_absent_partition_the_roster(self) -> None:
        report = session_report(self.db, self.attendance_session.session_id)

        self.assertEqual([item.employee_id for item in report.present], ["F1", "I1"])
        self.assertEqual([item.employee_id for item in report.absent], ["F2"])
        self.assertEqual(report.present[0].scanned_at, datetime(2026, 3, 2, 1, 5, tzinfo=timezone.utc))
        self.assertEqual(report.present[1].method, ScanMethod.MANUAL)
        self.assertEqual(report.session.duration_minutes, 90)
        self.assertEqual(report.stats.present_total, 2)
        self.assertEqual(report.stats.attendance_rate, 66.7)
        self.assertEqual(
            [(item.department, item.present, item.total, item.rate) for item in report.departments],
            [("IT", 1, 1, 100.0), ("Finance", 1, 2, 50.0)],
        )

    def test_deactivated_attendee_leaves_the_partition_but_keeps_its_record(self) -> None:
        employee = self.db.get(Employee, "F1")
        employee.is_active = False
        self.db.commit()

        report = session_report(self.db, self.attendance_session.session_id)

        present_ids = {item.employee_id for item in report.present}
        absent_ids = {item.employee_id for item in report.absent}
        active_ids = {"F2", "I1"}
        self.assertEqual(present_ids | absent_ids, active_ids)
        self.assertEqual(present_ids & absent_ids, set())
        self.assertEqual([item.employee_id for item in report.records], ["F1", "I1"])
        self.assertEqual(report.stats.present_total, 2)
        self.assertEqual(report.stats.roster_total, 2)
        self.assertEqual(report.stats.attendance_rate, 50.0)
        self.assertEqual(
            [(item.department, item.present, item.total) for item in report.departments],
            [("IT", 1, 1), ("Finance", 0, 1)],
        )

    def test_unknown_session_raises_not_found(self) -> None:
        with self.assertRaises(NotFound):
            session_report(self.db, "missing")


class MonthlyReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        add_employees(
            self.db,
            [
                ("F1", "Ana Cruz", "Finance"),
                ("F2", "Ben Reyes", "Finance"),
                ("H1", "Dina Sy", "HR"),
                ("I1", "Carla Diaz", "IT"),
            ],
        )
        # One minute before the UTC month starts.
        february = add_session(
            self.db,
            event_name="Late February",
            started_at=datetime(2026, 2, 28, 23, 59, tzinfo=timezone.utc),
            ended_at=datetime(2026, 3, 1, 0, 30, tzinfo=timezone.utc),
        )
        self.first = add_session(
            self.db,
            event_name="Kickoff",
            started_at=datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc),
            ended_at=datetime(2026, 3, 1, 1, 0, tzinfo=timezone.utc),
        )
        self.second = add_session(
            self.db,
            event_name="Midmonth",
            started_at=datetime(2026, 3, 15, 2, 0, tzinfo=timezone.utc),
            ended_at=datetime(2026, 3, 15, 3, 0, tzinfo=timezone.utc),
        )
        outside = add_session(
            self.db,
            event_name="April Fools",
            started_at=datetime(2026, 4, 1, 2, 0, tzinfo=timezone.utc),
            ended_at=datetime(2026, 4, 1, 3, 0, tzinfo=timezone.utc),
        )
        add_record(self.db, session_id=self.first.session_id, employee_id="F1")
        add_record(self.db, session_id=self.first.session_id, employee_id="F2")
        add_record(self.db, session_id=self.second.session_id, employee_id="F1")
        add_record(self.db, session_id=self.second.session_id, employee_id="I1")
        add_record(self.db, session_id=outside.session_id, employee_id="H1")
        add_record(self.db, session_id=february.session_id, employee_id="H1")

    def tearDown(self) -> None:
        self.db.close()

    def test_average_is_mean_of_session_rates(self) -> None:
        report = monthly_report(self.db, "2026-03")

        self.assertEqual(report.timezone, "UTC")
        self.assertEqual(report.period_start, datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(report.period_end, datetime(2026, 4, 1, tzinfo=timezone.utc))
        self.assertEqual(
            [item.session_id for item in report.sessions],
            [self.first.session_id, self.second.session_id],
        )
        rows = {row.department: row for row in report.departments}
        self.assertEqual([row.department for row in report.departments], ["Finance", "HR", "IT"])
        self.assertEqual([cell.rate for cell in rows["Finance"].cells], [100.0, 50.0])
        self.assertEqual(rows["Finance"].average_rate, 75.0)
        self.assertEqual(rows["Finance"].present_unique, 2)
        self.assertEqual(rows["Finance"].unique_rate, 100.0)
        self.assertEqual(rows["IT"].average_rate, 50.0)

    def test_department_with_no_attendance_shows_zero(self) -> None:
        report = monthly_report(self.db, "2026-03")

        hr = next(row for row in report.departments if row.department == "HR")
        self.assertEqual([cell.present for cell in hr.cells], [0, 0])
        self.assertEqual(hr.average_rate, 0.0)
        self.assertEqual(hr.present_unique, 0)

    def test_month_without_sessions_lists_departments_at_zero(self) -> None:
        report = monthly_report(self.db, "2026-06")

        self.assertEqual(report.sessions, [])
        self.assertEqual([row.department for row in report.departments], ["Finance", "HR", "IT"])
        self.assertTrue(all(row.average_rate == 0.0 and row.cells == [] for row in report.departments))


if __name__ == "__main__":
    unittest.main()
