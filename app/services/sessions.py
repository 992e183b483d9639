from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import ConflictError, InvalidInput, NotFound
from app.models import AttendanceSession, SessionStatus
from app.services.live_updates import EVENT_SESSION_ENDED, StatsBroker, get_broker, notify_safely

logger = logging.getLogger("app.sessions")


def get_active_session(db: Session) -> AttendanceSession | None:
    return db.scalar(
        select(AttendanceSession)
        .where(AttendanceSession.status == SessionStatus.ACTIVE)
        .execution_options(populate_existing=True)
    )


def get_session(db: Session, session_id: str) -> AttendanceSession:
    attendance_session = db.get(AttendanceSession, session_id, populate_existing=True)
    if attendance_session is None:
        raise NotFound("Session not found.", code="SESSION_NOT_FOUND")
    return attendance_session


def list_sessions(db: Session, *, limit: int = 50) -> list[AttendanceSession]:
    return list(
        db.scalars(
            select(AttendanceSession)
            .order_by(AttendanceSession.started_at.desc())
            .limit(max(1, limit))
        ).all()
    )


def start_session(db: Session, event_name: str, *, actor: str | None = None) -> AttendanceSession:
    name = (event_name or "").strip()
    if not name:
        raise InvalidInput("Event name is required.", code="EVENT_NAME_REQUIRED")

    current = get_active_session(db)
    if current is not None:
        raise ConflictError(
            f"Session {current.session_id} is already active.",
            code="SESSION_ALREADY_ACTIVE",
        )

    attendance_session = AttendanceSession(
        event_name=name,
        status=SessionStatus.ACTIVE,
        started_at=datetime.now(timezone.utc),
        started_by=actor,
    )
    db.add(attendance_session)
    try:
        db.commit()
    except IntegrityError as exc:
        # Another admin won the race for the active slot.
        db.rollback()
        raise ConflictError(
            "Another session became active concurrently.",
            code="SESSION_ALREADY_ACTIVE",
        ) from exc

    logger.info(
        "session_started",
        extra={
            "session_id": attendance_session.session_id,
            "event_name": name,
            "actor": actor,
        },
    )
    return attendance_session


def end_session(
    db: Session,
    session_id: str,
    *,
    actor: str | None = None,
    broker: StatsBroker | None = None,
) -> AttendanceSession:
    attendance_session = get_session(db, session_id)
    if attendance_session.status != SessionStatus.ACTIVE:
        raise ConflictError("Session is not active.", code="SESSION_NOT_ACTIVE")

    ended_at = datetime.now(timezone.utc)
    result = db.execute(
        update(AttendanceSession)
        .where(
            AttendanceSession.session_id == session_id,
            AttendanceSession.status == SessionStatus.ACTIVE,
        )
        .values(status=SessionStatus.ENDED, ended_at=ended_at, ended_by=actor)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise ConflictError("Session was ended concurrently.", code="SESSION_NOT_ACTIVE")
    db.commit()

    attendance_session = get_session(db, session_id)
    logger.info(
        "session_ended",
        extra={"session_id": session_id, "actor": actor},
    )
    notify_safely(broker or get_broker(), session_id, EVENT_SESSION_ENDED)
    return attendance_session
