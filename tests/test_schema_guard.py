from __future__ import annotations

import unittest
from unittest.mock import patch

from app.services.schema_guard import verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        indexes_by_table: dict[str, list[dict[str, object]]],
        constraints_by_table: dict[str, list[dict[str, object]]],
    ):
        self._columns_by_table = columns_by_table
        self._indexes_by_table = indexes_by_table
        self._constraints_by_table = constraints_by_table

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return self._indexes_by_table.get(table_name, [])

    def get_unique_constraints(self, table_name: str):  # type: ignore[no-untyped-def]
        return self._constraints_by_table.get(table_name, [])


def _healthy_columns() -> dict[str, set[str]]:
    return {
        "employees": {"employee_id", "full_name", "department", "is_active"},
        "attendance_sessions": {"session_id", "event_name", "status", "started_at", "ended_at"},
        "attendance_records": {"id", "session_id", "employee_id", "method", "device_id", "scanned_at"},
        "alembic_version": {"version_num"},
    }


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_objects_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_healthy_columns(),
            indexes_by_table={
                "attendance_sessions": [{"name": "uq_attendance_sessions_single_active", "unique": True}],
            },
            constraints_by_table={
                "attendance_records": [{"name": "uq_attendance_records_session_employee"}],
            },
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.to_dict()["issue_count"], 0)

    def test_verify_runtime_schema_reports_missing_columns_and_uniqueness(self) -> None:
        columns = _healthy_columns()
        columns["attendance_records"] = {"id", "session_id", "employee_id"}
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            indexes_by_table={
                "attendance_sessions": [{"name": "uq_attendance_sessions_single_active", "unique": False}],
            },
            constraints_by_table={"attendance_records": []},
        )
        fake_engine = _FakeEngine("")

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:attendance_records:method,scanned_at", result.issues)
        self.assertIn(
            "MISSING_UNIQUE_INDEX:attendance_sessions:uq_attendance_sessions_single_active",
            result.issues,
        )
        self.assertIn(
            "MISSING_UNIQUE_CONSTRAINT:attendance_records:uq_attendance_records_session_employee",
            result.issues,
        )
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_metadata_created_schema_passes_without_alembic(self) -> None:
        from db_support import make_engine

        engine = make_engine()
        result = verify_runtime_schema(engine, require_alembic=False)

        self.assertTrue(result.ok, result.issues)


if __name__ == "__main__":
    unittest.main()
