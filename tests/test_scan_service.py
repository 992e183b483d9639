from __future__ import annotations

import os
import tempfile
import threading
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.errors import InvalidInput
from app.models import AttendanceRecord, Employee, ScanMethod
from app.services.live_updates import EVENT_ATTENDANCE_RECORDED, EVENT_SESSION_ENDED, StatsBroker
from app.services.scans import ScanOutcome, submit_scan
from app.services.sessions import end_session, get_active_session, start_session
from db_support import add_employees, make_engine, make_session_factory


class _StaticRoster:
    def __init__(self, employees: list[Employee]):
        self._by_id = {item.employee_id: item for item in employees}

    def lookup(self, employee_id: str) -> Employee | None:
        return self._by_id.get(employee_id)

    def list_active(self) -> list[Employee]:
        return [item for item in self._by_id.values() if item.is_active]


class ScanServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.db = self.session_factory()
        add_employees(
            self.db,
            [
                ("E001", "Ana Cruz", "Finance"),
                ("E002", "Ben Reyes", "Finance"),
                ("E003", "Carla Diaz", "IT"),
                ("E009", "Old Timer", "IT", False),
            ],
        )
        self.broker = StatsBroker()

    def tearDown(self) -> None:
        self.db.close()

    def _scan(self, employee_id: str, method: ScanMethod = ScanMethod.QR, device_id: str = "scanner-1"):
        return submit_scan(
            self.db,
            employee_id_raw=employee_id,
            method=method,
            device_id=device_id,
            broker=self.broker,
        )

    def test_scan_without_active_session_is_rejected(self) -> None:
        result = self._scan("E001")

        self.assertEqual(result.outcome, ScanOutcome.NO_ACTIVE_SESSION)
        self.assertIsNone(result.session_id)
        self.assertFalse(result.retryable)
        self.assertEqual(self.db.scalar(select(func.count(AttendanceRecord.id))), 0)

    def test_first_scan_records_and_repeat_reports_first_timestamp(self) -> None:
        attendance_session = start_session(self.db, "Town Hall", actor="hr")

        first = self._scan("E001")
        second = self._scan("E001", method=ScanMethod.MANUAL, device_id="laptop-2")

        self.assertEqual(first.outcome, ScanOutcome.RECORDED)
        self.assertEqual(first.session_id, attendance_session.session_id)
        self.assertEqual(first.department, "Finance")
        self.assertEqual(first.message, "Recorded via QR.")
        self.assertEqual(second.outcome, ScanOutcome.DUPLICATE)
        self.assertEqual(second.scanned_at, first.scanned_at)
        self.assertEqual(second.method, ScanMethod.QR)
        self.assertEqual(second.device_id, "scanner-1")
        self.assertIn("(qr)", second.message)
        self.assertEqual(self.db.scalar(select(func.count(AttendanceRecord.id))), 1)

    def test_manual_entry_is_recorded_with_its_method(self) -> None:
        start_session(self.db, "Town Hall")

        result = self._scan("  E003  ", method=ScanMethod.MANUAL, device_id="")

        self.assertEqual(result.outcome, ScanOutcome.RECORDED)
        self.assertEqual(result.employee_id, "E003")
        self.assertEqual(result.method, ScanMethod.MANUAL)
        self.assertEqual(result.device_id, "unknown-device")
        self.assertEqual(result.message, "Recorded via manual entry.")

    def test_unknown_and_inactive_employees_are_invalid(self) -> None:
        start_session(self.db, "Town Hall")

        unknown = self._scan("E404")
        inactive = self._scan("E009")

        self.assertEqual(unknown.outcome, ScanOutcome.INVALID_EMPLOYEE)
        self.assertEqual(inactive.outcome, ScanOutcome.INVALID_EMPLOYEE)
        self.assertEqual(self.db.scalar(select(func.count(AttendanceRecord.id))), 0)

    def test_blank_employee_id_raises_invalid_input(self) -> None:
        start_session(self.db, "Town Hall")

        with self.assertRaises(InvalidInput) as ctx:
            self._scan("   ")

        self.assertEqual(ctx.exception.code, "EMPLOYEE_ID_REQUIRED")

    def test_scans_after_session_end_are_rejected(self) -> None:
        attendance_session = start_session(self.db, "Town Hall")
        self._scan("E001")
        end_session(self.db, attendance_session.session_id, broker=self.broker)

        result = self._scan("E002")

        self.assertEqual(result.outcome, ScanOutcome.NO_ACTIVE_SESSION)

    def test_session_ended_between_lookup_and_insert_records_nothing(self) -> None:
        attendance_session = start_session(self.db, "Town Hall")
        subscription = self.broker.subscribe(attendance_session.session_id)

        def _lookup_then_end(db):  # type: ignore[no-untyped-def]
            active = get_active_session(db)
            end_session(db, active.session_id, broker=self.broker)
            return active

        with patch("app.services.scans.get_active_session", side_effect=_lookup_then_end):
            result = self._scan("E001")

        self.assertEqual(result.outcome, ScanOutcome.NO_ACTIVE_SESSION)
        self.assertEqual(self.db.scalar(select(func.count(AttendanceRecord.id))), 0)
        event = subscription.wait(timeout=0)
        self.assertEqual(event.kind, EVENT_SESSION_ENDED)
        subscription.close()

    def test_session_lookup_failure_is_retryable_system_error(self) -> None:
        start_session(self.db, "Town Hall")
        failure = OperationalError("SELECT", {}, Exception("connection reset"))

        with patch("app.services.scans.get_active_session", side_effect=failure):
            result = self._scan("E001")

        self.assertEqual(result.outcome, ScanOutcome.SYSTEM_ERROR)
        self.assertIsNone(result.session_id)
        self.assertTrue(result.retryable)

    def test_roster_lookup_failure_is_retryable_system_error(self) -> None:
        attendance_session = start_session(self.db, "Town Hall")

        class _FailingRoster(_StaticRoster):
            def lookup(self, employee_id: str) -> Employee | None:
                raise OperationalError("SELECT", {}, Exception("connection reset"))

        result = submit_scan(
            self.db,
            employee_id_raw="E001",
            method=ScanMethod.QR,
            device_id="d",
            roster=_FailingRoster([]),
        )

        self.assertEqual(result.outcome, ScanOutcome.SYSTEM_ERROR)
        self.assertEqual(result.session_id, attendance_session.session_id)
        self.assertTrue(result.retryable)
        self.assertEqual(self.db.scalar(select(func.count(AttendanceRecord.id))), 0)

    def test_custom_roster_is_consulted_for_lookup(self) -> None:
        start_session(self.db, "Town Hall")
        roster = _StaticRoster([self.db.get(Employee, "E002")])

        allowed = submit_scan(self.db, employee_id_raw="E002", method=ScanMethod.QR, device_id="d", roster=roster)
        rejected = submit_scan(self.db, employee_id_raw="E001", method=ScanMethod.QR, device_id="d", roster=roster)

        self.assertEqual(allowed.outcome, ScanOutcome.RECORDED)
        self.assertEqual(rejected.outcome, ScanOutcome.INVALID_EMPLOYEE)

    def test_recorded_scan_notifies_session_listeners(self) -> None:
        attendance_session = start_session(self.db, "Town Hall")
        subscription = self.broker.subscribe(attendance_session.session_id)

        self._scan("E001")
        self._scan("E001")

        event = subscription.wait(timeout=0)
        self.assertIsNotNone(event)
        self.assertEqual(event.kind, EVENT_ATTENDANCE_RECORDED)
        self.assertEqual(event.payload["employee_id"], "E001")
        self.assertIsNone(subscription.wait(timeout=0))
        subscription.close()

    def test_broker_failure_does_not_undo_recorded_scan(self) -> None:
        start_session(self.db, "Town Hall")

        with patch.object(StatsBroker, "publish", side_effect=RuntimeError("boom")):
            result = self._scan("E001")

        self.assertEqual(result.outcome, ScanOutcome.RECORDED)
        self.assertEqual(self.db.scalar(select(func.count(AttendanceRecord.id))), 1)

    def test_persistence_failure_is_reported_as_retryable_system_error(self) -> None:
        start_session(self.db, "Town Hall")
        failure = OperationalError("INSERT", {}, Exception("database is locked"))

        with patch.object(self.db, "commit", side_effect=failure):
            result = self._scan("E001")

        self.assertEqual(result.outcome, ScanOutcome.SYSTEM_ERROR)
        self.assertTrue(result.retryable)
        self.assertEqual(self.db.scalar(select(func.count(AttendanceRecord.id))), 0)

        retried = self._scan("E001")
        self.assertEqual(retried.outcome, ScanOutcome.RECORDED)


class ConcurrentScanTests(unittest.TestCase):
    def setUp(self) -> None:
        handle, self.db_path = tempfile.mkstemp(suffix=".sqlite3")
        os.close(handle)
        self.engine = make_engine(f"sqlite:///{self.db_path}")
        self.session_factory = make_session_factory(self.engine)
        with self.session_factory() as db:
            add_employees(db, [("E100", "Dana Lim", "Operations")])
            start_session(db, "Quarterly Assembly")

    def tearDown(self) -> None:
        self.engine.dispose()
        os.remove(self.db_path)

    def test_simultaneous_scans_record_exactly_one_row(self) -> None:
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()
        broker = StatsBroker()

        def _worker(index: int) -> None:
            with self.session_factory() as db:
                barrier.wait()
                result = submit_scan(
                    db,
                    employee_id_raw="E100",
                    method=ScanMethod.QR if index % 2 == 0 else ScanMethod.MANUAL,
                    device_id=f"device-{index}",
                    broker=broker,
                )
            with lock:
                results.append(result)

        threads = [threading.Thread(target=_worker, args=(index,)) for index in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        outcomes = [item.outcome for item in results]
        self.assertEqual(len(results), workers)
        self.assertEqual(outcomes.count(ScanOutcome.RECORDED), 1)
        self.assertEqual(outcomes.count(ScanOutcome.DUPLICATE), workers - 1)

        recorded = next(item for item in results if item.outcome == ScanOutcome.RECORDED)
        for item in results:
            self.assertEqual(item.scanned_at, recorded.scanned_at)
            self.assertEqual(item.device_id, recorded.device_id)

        with self.session_factory() as db:
            rows = db.scalars(select(AttendanceRecord)).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].scanned_at.replace(tzinfo=timezone.utc), recorded.scanned_at)
        self.assertIsInstance(recorded.scanned_at, datetime)


if __name__ == "__main__":
    unittest.main()
