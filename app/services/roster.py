from __future__ import annotations

import csv
import io
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import InvalidInput
from app.models import Employee, MasterlistUpload

logger = logging.getLogger("app.roster")

REQUIRED_COLUMNS = ("employee_id", "full_name", "department")
TRUE_VALUES = {"1", "true", "yes", "y"}
FALSE_VALUES = {"0", "false", "no", "n"}
MAX_REPORTED_ERRORS = 12
# Matches the employees table column widths.
COLUMN_LIMITS = {"employee_id": 64, "full_name": 255, "department": 255}


class Roster(Protocol):
    def lookup(self, employee_id: str) -> Employee | None: ...

    def list_active(self) -> list[Employee]: ...


class SqlRoster:
    def __init__(self, db: Session) -> None:
        self._db = db

    def lookup(self, employee_id: str) -> Employee | None:
        return self._db.get(Employee, employee_id)

    def list_active(self) -> list[Employee]:
        return list(
            self._db.scalars(
                select(Employee)
                .where(Employee.is_active.is_(True))
                .order_by(Employee.department, Employee.full_name, Employee.employee_id)
            ).all()
        )


def department_totals(employees: Iterable[Employee]) -> dict[str, int]:
    return dict(Counter(employee.department for employee in employees))


@dataclass(frozen=True)
class MasterlistRow:
    employee_id: str
    full_name: str
    department: str
    is_active: bool = True


def parse_active_flag(raw: str | None) -> bool:
    value = (raw or "").strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    return True


def parse_masterlist_csv(text: str) -> tuple[list[MasterlistRow], list[str]]:
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        return [], ["CSV must contain a header row and at least one data row."]

    reader = csv.reader(io.StringIO("\n".join(lines)), skipinitialspace=True)
    headers = [header.strip().lower() for header in next(reader)]
    missing = [column for column in REQUIRED_COLUMNS if column not in headers]
    if missing:
        return [], [f"Missing column: {column}" for column in missing]

    index = {name: headers.index(name) for name in (*REQUIRED_COLUMNS, "is_active") if name in headers}

    def _cell(values: list[str], column: str) -> str:
        position = index.get(column)
        if position is None or position >= len(values):
            return ""
        return values[position].strip()

    rows: list[MasterlistRow] = []
    errors: list[str] = []
    for line_number, values in enumerate(reader, start=2):
        employee_id = _cell(values, "employee_id")
        full_name = _cell(values, "full_name")
        department = _cell(values, "department")
        if not employee_id or not full_name or not department:
            errors.append(f"Row {line_number}: employee_id, full_name, department required.")
            continue
        too_long = [
            column
            for column, value in (
                ("employee_id", employee_id),
                ("full_name", full_name),
                ("department", department),
            )
            if len(value) > COLUMN_LIMITS[column]
        ]
        if too_long:
            errors.extend(
                f"Row {line_number}: {column} exceeds {COLUMN_LIMITS[column]} characters." for column in too_long
            )
            continue
        is_active = parse_active_flag(_cell(values, "is_active")) if "is_active" in index else True
        rows.append(
            MasterlistRow(
                employee_id=employee_id,
                full_name=full_name,
                department=department,
                is_active=is_active,
            )
        )

    if len(errors) > MAX_REPORTED_ERRORS:
        extra = len(errors) - MAX_REPORTED_ERRORS
        errors = [*errors[:MAX_REPORTED_ERRORS], f"...and {extra} more."]
    return rows, errors


def upsert_masterlist(
    db: Session,
    rows: list[MasterlistRow],
    *,
    filename: str | None,
    actor: str,
) -> MasterlistUpload:
    if not rows:
        raise InvalidInput("No valid rows to upload.", code="MASTERLIST_EMPTY")

    # Later rows win when a file repeats an employee_id.
    deduplicated = {row.employee_id: row for row in rows}
    existing = {
        employee.employee_id: employee
        for employee in db.scalars(
            select(Employee).where(Employee.employee_id.in_(list(deduplicated)))
        ).all()
    }

    created = 0
    for employee_id, row in deduplicated.items():
        employee = existing.get(employee_id)
        if employee is None:
            db.add(
                Employee(
                    employee_id=employee_id,
                    full_name=row.full_name,
                    department=row.department,
                    is_active=row.is_active,
                )
            )
            created += 1
            continue
        employee.full_name = row.full_name
        employee.department = row.department
        employee.is_active = row.is_active

    upload = MasterlistUpload(filename=filename, row_count=len(deduplicated), actor=actor)
    db.add(upload)
    db.commit()
    db.refresh(upload)

    logger.info(
        "masterlist_upserted",
        extra={
            "upload_filename": filename,
            "row_count": len(deduplicated),
            "created_count": created,
            "updated_count": len(deduplicated) - created,
            "actor": actor,
        },
    )
    return upload
