from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.db import SessionLocal, get_db
from app.errors import ApiError
from app.models import SessionStatus
from app.schemas import (
    ActiveSessionResponse,
    DepartmentStatRead,
    LiveStatsResponse,
    ScanRequest,
    ScanResultRead,
    SessionRead,
    SessionStatsRead,
)
from app.security import SCANNER_ROLES, require_roles
from app.services.live_updates import EVENT_SESSION_ENDED, StatsBroker, get_broker
from app.services.scans import ScanOutcome, submit_scan
from app.services.sessions import get_active_session, get_session
from app.services.stats import department_stats, session_stats
from app.settings import get_settings

router = APIRouter(tags=["attendance"])
logger = logging.getLogger("app.live")

LIVE_POLL_SECONDS = 1.0


def build_live_stats(db: Session, session_id: str) -> LiveStatsResponse:
    return LiveStatsResponse(
        stats=SessionStatsRead.model_validate(session_stats(db, session_id)),
        departments=[DepartmentStatRead.model_validate(item) for item in department_stats(db, session_id)],
    )


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _snapshot(session_factory: Callable[[], Session], session_id: str) -> tuple[dict[str, Any], bool]:
    with session_factory() as db:
        payload = build_live_stats(db, session_id).model_dump(mode="json")
        finished = get_session(db, session_id).status != SessionStatus.ACTIVE
    return payload, finished


async def stream_session_stats(
    session_id: str,
    *,
    session_factory: Callable[[], Session],
    broker: StatsBroker,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Yield server-sent events with a freshly pulled snapshot after each notification.

    Waits run in worker threads in short slices so a departed client is noticed
    and its subscription released within one slice.
    """
    subscription = broker.subscribe(session_id)
    poll_seconds = min(LIVE_POLL_SECONDS, keepalive_seconds)
    try:
        initial, finished = await asyncio.to_thread(_snapshot, session_factory, session_id)
        yield _sse("stats", initial)
        if finished:
            yield _sse("session_ended", {"session_id": session_id})
            return

        idle_seconds = 0.0
        while not subscription.closed:
            if is_disconnected is not None and await is_disconnected():
                break
            event = await asyncio.to_thread(subscription.wait, poll_seconds)
            if event is None:
                idle_seconds += poll_seconds
                if idle_seconds >= keepalive_seconds:
                    idle_seconds = 0.0
                    yield ": keepalive\n\n"
                continue
            idle_seconds = 0.0
            snapshot, _finished = await asyncio.to_thread(_snapshot, session_factory, session_id)
            snapshot["sequence"] = event.sequence
            yield _sse("stats", snapshot)
            if event.kind == EVENT_SESSION_ENDED:
                yield _sse("session_ended", {"session_id": session_id})
                break
    finally:
        subscription.close()
        logger.info("live_stream_closed", extra={"session_id": session_id})


@router.get(
    "/api/sessions/active",
    response_model=ActiveSessionResponse,
    dependencies=[Depends(require_roles(*SCANNER_ROLES))],
)
def read_active_session(db: Session = Depends(get_db)) -> ActiveSessionResponse:
    active = get_active_session(db)
    if active is None:
        return ActiveSessionResponse(session=None)
    return ActiveSessionResponse(session=SessionRead.model_validate(active))


@router.post(
    "/api/scans",
    response_model=ScanResultRead,
    dependencies=[Depends(require_roles(*SCANNER_ROLES))],
)
def create_scan(
    payload: ScanRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ScanResultRead:
    result = submit_scan(
        db,
        employee_id_raw=payload.employee_id,
        method=payload.method,
        device_id=payload.device_id,
    )
    request.state.session_id = result.session_id
    request.state.employee_id = result.employee_id
    request.state.outcome = result.outcome.value
    if result.outcome == ScanOutcome.SYSTEM_ERROR:
        raise ApiError(status_code=503, code="SYSTEM_ERROR", message=result.message)
    return ScanResultRead.model_validate(result)


@router.get(
    "/api/sessions/{session_id}/stats",
    response_model=LiveStatsResponse,
    dependencies=[Depends(require_roles(*SCANNER_ROLES))],
)
def read_session_stats(session_id: str, db: Session = Depends(get_db)) -> LiveStatsResponse:
    get_session(db, session_id)
    return build_live_stats(db, session_id)


@router.get(
    "/api/sessions/{session_id}/live",
    dependencies=[Depends(require_roles(*SCANNER_ROLES))],
)
def stream_live_stats(
    session_id: str,
    request: Request,
    db: Session = Depends(get_db),
) -> StreamingResponse:
    get_session(db, session_id)
    return StreamingResponse(
        stream_session_stats(
            session_id,
            session_factory=SessionLocal,
            broker=get_broker(),
            keepalive_seconds=max(1, get_settings().live_keepalive_seconds),
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
