from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.db import Base
from app.models import AttendanceRecord, AttendanceSession, Employee, ScanMethod, SessionStatus


def _enable_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_engine(url: str = "sqlite://") -> Engine:
    if url == "sqlite://":
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    _enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    return sessionmaker(bind=engine or make_engine(), autoflush=False, expire_on_commit=False)


def add_employees(db: Session, rows: Iterable[tuple[str, str, str] | tuple[str, str, str, bool]]) -> None:
    for row in rows:
        employee_id, full_name, department = row[:3]
        is_active = row[3] if len(row) > 3 else True
        db.add(
            Employee(
                employee_id=employee_id,
                full_name=full_name,
                department=department,
                is_active=is_active,
            )
        )
    db.commit()


def add_session(
    db: Session,
    *,
    event_name: str,
    started_at: datetime,
    ended_at: datetime | None = None,
) -> AttendanceSession:
    attendance_session = AttendanceSession(
        event_name=event_name,
        status=SessionStatus.ACTIVE if ended_at is None else SessionStatus.ENDED,
        started_at=started_at,
        ended_at=ended_at,
    )
    db.add(attendance_session)
    db.commit()
    return attendance_session


def add_record(
    db: Session,
    *,
    session_id: str,
    employee_id: str,
    method: ScanMethod = ScanMethod.QR,
    scanned_at: datetime | None = None,
) -> AttendanceRecord:
    record = AttendanceRecord(
        session_id=session_id,
        employee_id=employee_id,
        method=method,
        device_id="test-device",
        scanned_at=scanned_at or datetime.now(timezone.utc),
    )
    db.add(record)
    db.commit()
    return record
