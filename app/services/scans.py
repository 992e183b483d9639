from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import InvalidInput
from app.models import AttendanceRecord, AttendanceSession, Employee, ScanMethod, SessionStatus
from app.services.live_updates import EVENT_ATTENDANCE_RECORDED, StatsBroker, get_broker, notify_safely
from app.services.roster import Roster, SqlRoster
from app.services.sessions import get_active_session

logger = logging.getLogger("app.scans")

UNIQUE_VIOLATION_SQLSTATE = "23505"
RECORD_UNIQUE_CONSTRAINT = "uq_attendance_records_session_employee"


class ScanOutcome(str, enum.Enum):
    RECORDED = "RECORDED"
    DUPLICATE = "DUPLICATE"
    INVALID_EMPLOYEE = "INVALID_EMPLOYEE"
    NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"
    SYSTEM_ERROR = "SYSTEM_ERROR"


@dataclass(frozen=True)
class ScanResult:
    outcome: ScanOutcome
    employee_id: str
    session_id: str | None = None
    full_name: str | None = None
    department: str | None = None
    method: ScanMethod | None = None
    device_id: str | None = None
    scanned_at: datetime | None = None
    message: str = ""

    @property
    def retryable(self) -> bool:
        return self.outcome == ScanOutcome.SYSTEM_ERROR


def normalize_ts(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_unique_violation(exc: IntegrityError) -> bool:
    original = exc.orig
    if getattr(original, "sqlstate", None) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    if getattr(original, "pgcode", None) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    text = str(original)
    return "UNIQUE constraint failed" in text or RECORD_UNIQUE_CONSTRAINT in text


def find_first_record(db: Session, *, session_id: str, employee_id: str) -> AttendanceRecord | None:
    return db.scalar(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.session_id == session_id,
            AttendanceRecord.employee_id == employee_id,
        )
        .order_by(AttendanceRecord.scanned_at.asc(), AttendanceRecord.id.asc())
        .limit(1)
    )


def lock_active_session(db: Session, session_id: str) -> bool:
    """Re-check the session inside the insert transaction.

    On PostgreSQL the row stays share-locked until commit, so an end_session
    UPDATE waits for the pending check-in instead of slipping in before it.
    """
    locked = db.scalar(
        select(AttendanceSession.session_id)
        .where(
            AttendanceSession.session_id == session_id,
            AttendanceSession.status == SessionStatus.ACTIVE,
        )
        .with_for_update(read=True)
    )
    return locked is not None


def _log_outcome(result: ScanResult, *, level: int = logging.INFO) -> None:
    logger.log(
        level,
        f"scan_{result.outcome.value.lower()}",
        extra={
            "session_id": result.session_id,
            "employee_id": result.employee_id,
            "method": result.method.value if result.method else None,
            "device_id": result.device_id,
            "outcome": result.outcome.value,
        },
    )


def _no_active_session(*, employee_id: str, method: ScanMethod, device_id: str) -> ScanResult:
    result = ScanResult(
        outcome=ScanOutcome.NO_ACTIVE_SESSION,
        employee_id=employee_id,
        method=method,
        device_id=device_id,
        message="Scanning is disabled. Ask an admin to start a session.",
    )
    _log_outcome(result)
    return result


def _system_error(
    *,
    employee_id: str,
    session_id: str | None,
    method: ScanMethod,
    device_id: str,
) -> ScanResult:
    return ScanResult(
        outcome=ScanOutcome.SYSTEM_ERROR,
        employee_id=employee_id,
        session_id=session_id,
        method=method,
        device_id=device_id,
        message="Submit failed. It is safe to retry.",
    )


def submit_scan(
    db: Session,
    *,
    employee_id_raw: str,
    method: ScanMethod,
    device_id: str,
    roster: Roster | None = None,
    broker: StatsBroker | None = None,
) -> ScanResult:
    """Classify one check-in and record it at most once per session.

    The unique constraint on (session_id, employee_id) decides races: the first
    committed insert wins and every later attempt is answered with that record.
    Read and write failures alike come back as a retryable SYSTEM_ERROR.
    """
    employee_id = (employee_id_raw or "").strip()
    if not employee_id:
        raise InvalidInput("Employee ID is required.", code="EMPLOYEE_ID_REQUIRED")
    device_id = (device_id or "").strip() or "unknown-device"

    try:
        active_session = get_active_session(db)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("scan_session_lookup_failed", extra={"employee_id": employee_id})
        return _system_error(employee_id=employee_id, session_id=None, method=method, device_id=device_id)
    if active_session is None:
        return _no_active_session(employee_id=employee_id, method=method, device_id=device_id)
    session_id = active_session.session_id

    roster = roster or SqlRoster(db)
    try:
        employee: Employee | None = roster.lookup(employee_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("scan_roster_lookup_failed", extra={"session_id": session_id, "employee_id": employee_id})
        return _system_error(employee_id=employee_id, session_id=session_id, method=method, device_id=device_id)
    if employee is None or not employee.is_active:
        result = ScanResult(
            outcome=ScanOutcome.INVALID_EMPLOYEE,
            employee_id=employee_id,
            session_id=session_id,
            method=method,
            device_id=device_id,
            message="Employee ID not found in masterlist.",
        )
        _log_outcome(result)
        return result

    try:
        still_active = lock_active_session(db, session_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("scan_session_lock_failed", extra={"session_id": session_id, "employee_id": employee_id})
        return _system_error(employee_id=employee_id, session_id=session_id, method=method, device_id=device_id)
    if not still_active:
        db.rollback()
        return _no_active_session(employee_id=employee_id, method=method, device_id=device_id)

    record = AttendanceRecord(
        session_id=session_id,
        employee_id=employee.employee_id,
        method=method,
        device_id=device_id,
        scanned_at=datetime.now(timezone.utc),
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if not _is_unique_violation(exc):
            logger.exception("scan_insert_failed", extra={"session_id": session_id, "employee_id": employee_id})
            return _system_error(employee_id=employee_id, session_id=session_id, method=method, device_id=device_id)
        return _duplicate_result(
            db,
            employee=employee,
            session_id=session_id,
            device_id=device_id,
            method=method,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("scan_insert_failed", extra={"session_id": session_id, "employee_id": employee_id})
        return _system_error(employee_id=employee_id, session_id=session_id, method=method, device_id=device_id)

    result = ScanResult(
        outcome=ScanOutcome.RECORDED,
        employee_id=employee.employee_id,
        session_id=session_id,
        full_name=employee.full_name,
        department=employee.department,
        method=record.method,
        device_id=record.device_id,
        scanned_at=normalize_ts(record.scanned_at),
        message="Recorded via QR." if method == ScanMethod.QR else "Recorded via manual entry.",
    )
    _log_outcome(result)
    notify_safely(
        broker or get_broker(),
        session_id,
        EVENT_ATTENDANCE_RECORDED,
        {"employee_id": employee.employee_id, "method": method.value},
    )
    return result


def _duplicate_result(
    db: Session,
    *,
    employee: Employee,
    session_id: str,
    device_id: str,
    method: ScanMethod,
) -> ScanResult:
    try:
        first = find_first_record(db, session_id=session_id, employee_id=employee.employee_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "scan_duplicate_lookup_failed",
            extra={"session_id": session_id, "employee_id": employee.employee_id},
        )
        first = None
    if first is None:
        return _system_error(
            employee_id=employee.employee_id,
            session_id=session_id,
            method=method,
            device_id=device_id,
        )

    first_at = normalize_ts(first.scanned_at)
    result = ScanResult(
        outcome=ScanOutcome.DUPLICATE,
        employee_id=employee.employee_id,
        session_id=session_id,
        full_name=employee.full_name,
        department=employee.department,
        method=first.method,
        device_id=first.device_id,
        scanned_at=first_at,
        message=f"Duplicate. First recorded: {first_at.isoformat()} ({first.method.value}).",
    )
    _log_outcome(result)
    return result
