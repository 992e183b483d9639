from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.models import AttendanceRecord, Employee, ScanMethod


@dataclass(frozen=True)
class SessionStats:
    session_id: str
    roster_total: int
    present_total: int
    scanned_total: int
    manual_total: int
    attendance_rate: float


@dataclass(frozen=True)
class DepartmentStat:
    department: str
    present: int
    total: int
    rate: float


def round_rate(value: float | Decimal) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def compute_rate(present: int, total: int) -> float:
    """Percentage with one decimal, rounded half up; 0.0 for an empty denominator."""
    if total <= 0:
        return 0.0
    return round_rate(Decimal(present) * 100 / Decimal(total))


def sort_department_stats(items: Iterable[DepartmentStat]) -> list[DepartmentStat]:
    return sorted(items, key=lambda item: (-item.rate, -item.present, item.department))


def active_roster_totals(db: Session) -> dict[str, int]:
    rows = db.execute(
        select(Employee.department, func.count(Employee.employee_id))
        .where(Employee.is_active.is_(True))
        .group_by(Employee.department)
    ).all()
    return {department: int(count) for department, count in rows}


def roster_present_count(db: Session, session_id: str) -> int:
    return int(
        db.scalar(
            select(func.count(func.distinct(AttendanceRecord.employee_id)))
            .select_from(AttendanceRecord)
            .join(Employee, Employee.employee_id == AttendanceRecord.employee_id)
            .where(
                AttendanceRecord.session_id == session_id,
                Employee.is_active.is_(True),
            )
        )
        or 0
    )


def session_stats(db: Session, session_id: str) -> SessionStats:
    """Record counts for the session and its rate against the active roster.

    present_total counts every record, including employees deactivated since
    they checked in; attendance_rate only counts roster members, so it stays
    within 0..100.
    """
    roster_total = int(
        db.scalar(select(func.count(Employee.employee_id)).where(Employee.is_active.is_(True))) or 0
    )
    present_total, scanned_total, manual_total = db.execute(
        select(
            func.count(AttendanceRecord.id),
            func.coalesce(func.sum(case((AttendanceRecord.method == ScanMethod.QR, 1), else_=0)), 0),
            func.coalesce(func.sum(case((AttendanceRecord.method == ScanMethod.MANUAL, 1), else_=0)), 0),
        ).where(AttendanceRecord.session_id == session_id)
    ).one()

    return SessionStats(
        session_id=session_id,
        roster_total=roster_total,
        present_total=int(present_total),
        scanned_total=int(scanned_total),
        manual_total=int(manual_total),
        attendance_rate=compute_rate(roster_present_count(db, session_id), roster_total),
    )


def present_by_department(db: Session, session_ids: list[str]) -> dict[str, Counter[str]]:
    """Distinct recorded active employees per session, keyed by department."""
    if not session_ids:
        return {}
    rows = db.execute(
        select(AttendanceRecord.session_id, Employee.department, AttendanceRecord.employee_id)
        .join(Employee, Employee.employee_id == AttendanceRecord.employee_id)
        .where(
            AttendanceRecord.session_id.in_(session_ids),
            Employee.is_active.is_(True),
        )
    ).all()

    seen: set[tuple[str, str]] = set()
    counts: dict[str, Counter[str]] = {session_id: Counter() for session_id in session_ids}
    for session_id, department, employee_id in rows:
        if (session_id, employee_id) in seen:
            continue
        seen.add((session_id, employee_id))
        counts[session_id][department] += 1
    return counts


def build_department_stats(totals: dict[str, int], present: Counter[str]) -> list[DepartmentStat]:
    return sort_department_stats(
        DepartmentStat(
            department=department,
            present=present.get(department, 0),
            total=total,
            rate=compute_rate(present.get(department, 0), total),
        )
        for department, total in totals.items()
    )


def department_stats(db: Session, session_id: str) -> list[DepartmentStat]:
    totals = active_roster_totals(db)
    present = present_by_department(db, [session_id]).get(session_id, Counter())
    return build_department_stats(totals, present)
