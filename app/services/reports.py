from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from functools import lru_cache
from statistics import fmean
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import InvalidInput
from app.models import AttendanceRecord, AttendanceSession, Employee, ScanMethod, SessionStatus
from app.services.roster import SqlRoster, department_totals
from app.services.scans import normalize_ts
from app.services.sessions import get_session
from app.services.stats import (
    DepartmentStat,
    SessionStats,
    active_roster_totals,
    build_department_stats,
    compute_rate,
    present_by_department,
    round_rate,
    session_stats,
)
from app.settings import get_settings

MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class SessionHeader:
    session_id: str
    event_name: str
    status: SessionStatus
    started_at: datetime
    ended_at: datetime | None
    duration_minutes: int


@dataclass(frozen=True)
class PresentEntry:
    employee_id: str
    full_name: str
    department: str
    method: ScanMethod
    device_id: str
    scanned_at: datetime


@dataclass(frozen=True)
class AbsentEntry:
    employee_id: str
    full_name: str
    department: str


@dataclass(frozen=True)
class SessionReport:
    session: SessionHeader
    stats: SessionStats
    departments: list[DepartmentStat]
    present: list[PresentEntry]
    absent: list[AbsentEntry]
    # Every record of the session, deactivated employees included.
    records: list[PresentEntry] = field(default_factory=list)


@dataclass(frozen=True)
class MonthlySessionColumn:
    session_id: str
    event_name: str
    started_at: datetime


@dataclass(frozen=True)
class MonthlyCell:
    session_id: str
    present: int
    total: int
    rate: float


@dataclass(frozen=True)
class MonthlyDepartmentRow:
    department: str
    total: int
    cells: list[MonthlyCell]
    average_rate: float
    present_unique: int
    unique_rate: float


@dataclass(frozen=True)
class MonthlyReport:
    month: str
    timezone: str
    period_start: datetime
    period_end: datetime
    sessions: list[MonthlySessionColumn]
    departments: list[MonthlyDepartmentRow] = field(default_factory=list)


@lru_cache
def report_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _session_header(attendance_session: AttendanceSession, *, now_utc: datetime | None = None) -> SessionHeader:
    started_at = normalize_ts(attendance_session.started_at)
    ended_at = normalize_ts(attendance_session.ended_at) if attendance_session.ended_at else None
    reference = ended_at or now_utc or datetime.now(timezone.utc)
    duration_minutes = max(0, int((reference - started_at).total_seconds() // 60))
    return SessionHeader(
        session_id=attendance_session.session_id,
        event_name=attendance_session.event_name,
        status=attendance_session.status,
        started_at=started_at,
        ended_at=ended_at,
        duration_minutes=duration_minutes,
    )


def session_report(db: Session, session_id: str) -> SessionReport:
    attendance_session = get_session(db, session_id)
    active_roster = SqlRoster(db).list_active()

    rows = db.execute(
        select(AttendanceRecord, Employee)
        .join(Employee, Employee.employee_id == AttendanceRecord.employee_id)
        .where(AttendanceRecord.session_id == session_id)
        .order_by(AttendanceRecord.scanned_at.asc(), AttendanceRecord.id.asc())
    ).all()

    records: list[PresentEntry] = []
    present: list[PresentEntry] = []
    recorded_ids: set[str] = set()
    for record, employee in rows:
        if record.employee_id in recorded_ids:
            continue
        recorded_ids.add(record.employee_id)
        entry = PresentEntry(
            employee_id=employee.employee_id,
            full_name=employee.full_name,
            department=employee.department,
            method=record.method,
            device_id=record.device_id,
            scanned_at=normalize_ts(record.scanned_at),
        )
        records.append(entry)
        if employee.is_active:
            present.append(entry)

    absent = [
        AbsentEntry(
            employee_id=employee.employee_id,
            full_name=employee.full_name,
            department=employee.department,
        )
        for employee in active_roster
        if employee.employee_id not in recorded_ids
    ]

    present_active = Counter(
        employee.department for employee in active_roster if employee.employee_id in recorded_ids
    )
    return SessionReport(
        session=_session_header(attendance_session),
        stats=session_stats(db, session_id),
        departments=build_department_stats(department_totals(active_roster), present_active),
        present=present,
        absent=absent,
        records=records,
    )


def month_bounds(month: str, tz: ZoneInfo | None = None) -> tuple[datetime, datetime]:
    match = MONTH_PATTERN.match((month or "").strip())
    if match is None:
        raise InvalidInput("Month must use the YYYY-MM format.", code="INVALID_MONTH")
    year, month_number = int(match.group(1)), int(match.group(2))
    if not 1 <= month_number <= 12:
        raise InvalidInput("Month must use the YYYY-MM format.", code="INVALID_MONTH")

    zone = tz or report_timezone()
    start_local = datetime.combine(date(year, month_number, 1), time.min, tzinfo=zone)
    if month_number == 12:
        end_local = datetime.combine(date(year + 1, 1, 1), time.min, tzinfo=zone)
    else:
        end_local = datetime.combine(date(year, month_number + 1, 1), time.min, tzinfo=zone)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def monthly_report(db: Session, month: str) -> MonthlyReport:
    zone = report_timezone()
    period_start, period_end = month_bounds(month, zone)

    sessions = list(
        db.scalars(
            select(AttendanceSession)
            .where(
                AttendanceSession.started_at >= period_start,
                AttendanceSession.started_at < period_end,
            )
            .order_by(AttendanceSession.started_at.asc())
        ).all()
    )
    session_ids = [item.session_id for item in sessions]
    totals = active_roster_totals(db)
    present_map = present_by_department(db, session_ids)
    unique_present = _unique_present_by_department(db, session_ids)

    departments: list[MonthlyDepartmentRow] = []
    for department in sorted(totals):
        total = totals[department]
        cells = [
            MonthlyCell(
                session_id=session_id,
                present=present_map[session_id].get(department, 0),
                total=total,
                rate=compute_rate(present_map[session_id].get(department, 0), total),
            )
            for session_id in session_ids
        ]
        # Unweighted mean of the per-session rates, not a pooled ratio.
        average_rate = round_rate(fmean(cell.rate for cell in cells)) if cells else 0.0
        present_unique = unique_present.get(department, 0)
        departments.append(
            MonthlyDepartmentRow(
                department=department,
                total=total,
                cells=cells,
                average_rate=average_rate,
                present_unique=present_unique,
                unique_rate=compute_rate(present_unique, total),
            )
        )

    return MonthlyReport(
        month=month.strip(),
        timezone=zone.key,
        period_start=period_start,
        period_end=period_end,
        sessions=[
            MonthlySessionColumn(
                session_id=item.session_id,
                event_name=item.event_name,
                started_at=normalize_ts(item.started_at),
            )
            for item in sessions
        ],
        departments=departments,
    )


def _unique_present_by_department(db: Session, session_ids: list[str]) -> Counter[str]:
    if not session_ids:
        return Counter()
    rows = db.execute(
        select(Employee.department, Employee.employee_id)
        .join(AttendanceRecord, AttendanceRecord.employee_id == Employee.employee_id)
        .where(
            AttendanceRecord.session_id.in_(session_ids),
            Employee.is_active.is_(True),
        )
        .distinct()
    ).all()
    return Counter(department for department, _employee_id in rows)
