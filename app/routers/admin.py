from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.audit import log_audit
from app.db import get_db
from app.errors import ApiError, ConflictError
from app.models import AppUser, AuditActorType, AuditLog, Employee, UserRole
from app.schemas import (
    AppUserCreateRequest,
    AppUserRead,
    AuditLogRead,
    AuthResponse,
    EmployeeRead,
    LoginRequest,
    MasterlistUploadRequest,
    MasterlistUploadResponse,
    MonthlyReportRead,
    SessionRead,
    SessionReportRead,
    SessionStartRequest,
)
from app.security import (
    ADMIN_ROLES,
    MASTER_ROLES,
    create_access_token,
    ensure_login_attempt_allowed,
    hash_password,
    register_login_failure,
    register_login_success,
    require_roles,
    verify_bootstrap_credentials,
    verify_password,
)
from app.services.exports import build_monthly_report_xlsx_bytes, build_session_report_xlsx_bytes
from app.services.reports import monthly_report, report_timezone, session_report
from app.services.roster import MasterlistRow, parse_masterlist_csv, upsert_masterlist
from app.services.sessions import end_session, list_sessions, start_session
from app.settings import get_settings

router = APIRouter(tags=["admin"])
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _audit_user_action(
    db: Session,
    request: Request,
    claims: dict[str, Any],
    *,
    action: str,
    entity_type: str,
    entity_id: str | None,
    details: dict[str, Any] | None = None,
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(claims.get("sub") or "unknown"),
        action=action,
        success=True,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details={"role": claims.get("role"), **(details or {})},
        request_id=_request_id(request),
    )


def _safe_filename_part(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in value.strip())
    return cleaned or "session"


@router.post("/api/auth/login", response_model=AuthResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AuthResponse:
    username = payload.username.strip()
    ip = _client_ip(request)
    if ip:
        ensure_login_attempt_allowed(ip)

    role: UserRole | None = None
    if verify_bootstrap_credentials(username, payload.password):
        role = UserRole.APP_MASTER
    else:
        user = db.scalar(select(AppUser).where(AppUser.username == username))
        if user is not None and user.is_active and verify_password(payload.password, user.password_hash):
            role = user.role

    if role is None:
        if ip:
            register_login_failure(ip)
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM,
            actor_id=username or "unknown",
            action="LOGIN_FAIL",
            success=False,
            ip=ip,
            user_agent=_user_agent(request),
            details={"reason": "INVALID_CREDENTIALS"},
            request_id=_request_id(request),
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid credentials.")

    if ip:
        register_login_success(ip)
    token, expires_in, _claims = create_access_token(username=username, role=role)
    request.state.actor = role.value
    request.state.actor_id = username
    return AuthResponse(access_token=token, expires_in=expires_in, username=username, role=role)


@router.post(
    "/api/admin/users",
    response_model=AppUserRead,
    status_code=status.HTTP_201_CREATED,
)
def create_app_user(
    payload: AppUserCreateRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_roles(*MASTER_ROLES)),
    db: Session = Depends(get_db),
) -> AppUserRead:
    user = AppUser(
        username=payload.username.strip(),
        password_hash=hash_password(payload.password),
        role=payload.role,
        is_active=payload.is_active,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Username already exists.", code="USERNAME_TAKEN") from exc
    db.refresh(user)

    _audit_user_action(
        db,
        request,
        claims,
        action="USER_CREATED",
        entity_type="app_user",
        entity_id=str(user.id),
        details={"username": user.username, "user_role": user.role.value},
    )
    return AppUserRead.model_validate(user)


@router.post(
    "/api/admin/sessions",
    response_model=SessionRead,
    status_code=status.HTTP_201_CREATED,
)
def start_attendance_session(
    payload: SessionStartRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> SessionRead:
    attendance_session = start_session(db, payload.event_name, actor=str(claims.get("sub")))
    request.state.session_id = attendance_session.session_id
    _audit_user_action(
        db,
        request,
        claims,
        action="SESSION_STARTED",
        entity_type="session",
        entity_id=attendance_session.session_id,
        details={"event_name": attendance_session.event_name},
    )
    return SessionRead.model_validate(attendance_session)


@router.post(
    "/api/admin/sessions/{session_id}/end",
    response_model=SessionRead,
)
def end_attendance_session(
    session_id: str,
    request: Request,
    claims: dict[str, Any] = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> SessionRead:
    attendance_session = end_session(db, session_id, actor=str(claims.get("sub")))
    request.state.session_id = session_id
    _audit_user_action(
        db,
        request,
        claims,
        action="SESSION_ENDED",
        entity_type="session",
        entity_id=session_id,
    )
    return SessionRead.model_validate(attendance_session)


@router.get(
    "/api/admin/sessions",
    response_model=list[SessionRead],
    dependencies=[Depends(require_roles(*ADMIN_ROLES))],
)
def list_attendance_sessions(
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[SessionRead]:
    resolved_limit = limit or get_settings().sessions_list_limit
    return [SessionRead.model_validate(item) for item in list_sessions(db, limit=resolved_limit)]


@router.get(
    "/api/admin/sessions/{session_id}/report",
    response_model=SessionReportRead,
    dependencies=[Depends(require_roles(*ADMIN_ROLES))],
)
def read_session_report(session_id: str, db: Session = Depends(get_db)) -> SessionReportRead:
    return SessionReportRead.model_validate(session_report(db, session_id))


@router.get("/api/admin/sessions/{session_id}/report.xlsx")
def export_session_report(
    session_id: str,
    request: Request,
    claims: dict[str, Any] = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> Response:
    report = session_report(db, session_id)
    payload = build_session_report_xlsx_bytes(report, tz=report_timezone())
    _audit_user_action(
        db,
        request,
        claims,
        action="SESSION_REPORT_EXPORTED",
        entity_type="session",
        entity_id=session_id,
        details={"present": len(report.present), "absent": len(report.absent)},
    )

    date_tag = report.session.started_at.astimezone(report_timezone()).date().isoformat()
    filename = f"Attendance_{_safe_filename_part(report.session.event_name)}_{date_tag}.xlsx"
    return Response(
        content=payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get(
    "/api/admin/reports/monthly",
    response_model=MonthlyReportRead,
    dependencies=[Depends(require_roles(*ADMIN_ROLES))],
)
def read_monthly_report(
    month: str = Query(..., description="Calendar month as YYYY-MM"),
    db: Session = Depends(get_db),
) -> MonthlyReportRead:
    return MonthlyReportRead.model_validate(monthly_report(db, month))


@router.get("/api/admin/reports/monthly.xlsx")
def export_monthly_report(
    request: Request,
    month: str = Query(..., description="Calendar month as YYYY-MM"),
    claims: dict[str, Any] = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> Response:
    report = monthly_report(db, month)
    payload = build_monthly_report_xlsx_bytes(report, tz=report_timezone())
    _audit_user_action(
        db,
        request,
        claims,
        action="MONTHLY_REPORT_EXPORTED",
        entity_type="report",
        entity_id=report.month,
        details={"sessions": len(report.sessions)},
    )
    return Response(
        content=payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="Monthly_Trend_{report.month}.xlsx"'},
    )


@router.post(
    "/api/admin/masterlist",
    response_model=MasterlistUploadResponse,
)
def upload_masterlist(
    payload: MasterlistUploadRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_roles(*MASTER_ROLES)),
    db: Session = Depends(get_db),
) -> MasterlistUploadResponse:
    rows = [
        MasterlistRow(
            employee_id=item.employee_id,
            full_name=item.full_name,
            department=item.department,
            is_active=item.is_active,
        )
        for item in payload.rows
    ]
    return _store_masterlist(db, request, claims, rows=rows, filename=payload.filename, errors=[])


@router.post(
    "/api/admin/masterlist/csv",
    response_model=MasterlistUploadResponse,
)
def upload_masterlist_csv(
    request: Request,
    content: str = Body(..., media_type="text/csv"),
    filename: str | None = Query(default=None, max_length=512),
    claims: dict[str, Any] = Depends(require_roles(*MASTER_ROLES)),
    db: Session = Depends(get_db),
) -> MasterlistUploadResponse:
    rows, errors = parse_masterlist_csv(content)
    if not rows:
        raise ApiError(
            status_code=422,
            code="MASTERLIST_INVALID",
            message="; ".join(errors) or "No valid rows to upload.",
        )
    return _store_masterlist(db, request, claims, rows=rows, filename=filename, errors=errors)


def _store_masterlist(
    db: Session,
    request: Request,
    claims: dict[str, Any],
    *,
    rows: list[MasterlistRow],
    filename: str | None,
    errors: list[str],
) -> MasterlistUploadResponse:
    upload = upsert_masterlist(db, rows, filename=filename, actor=str(claims.get("sub")))
    _audit_user_action(
        db,
        request,
        claims,
        action="MASTERLIST_UPLOADED",
        entity_type="masterlist_upload",
        entity_id=str(upload.id),
        details={"filename": filename, "rows": upload.row_count, "rejected": len(errors)},
    )
    return MasterlistUploadResponse(
        upload_id=upload.id,
        filename=upload.filename,
        row_count=upload.row_count,
        errors=errors,
    )


@router.get(
    "/api/admin/employees",
    response_model=list[EmployeeRead],
    dependencies=[Depends(require_roles(*MASTER_ROLES))],
)
def list_employees(
    include_inactive: bool = Query(default=False),
    department: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[EmployeeRead]:
    stmt = select(Employee).order_by(Employee.department, Employee.full_name, Employee.employee_id)
    if not include_inactive:
        stmt = stmt.where(Employee.is_active.is_(True))
    if department:
        stmt = stmt.where(Employee.department == department.strip())
    return [EmployeeRead.model_validate(item) for item in db.scalars(stmt).all()]


@router.get(
    "/api/admin/audit-logs",
    response_model=list[AuditLogRead],
    dependencies=[Depends(require_roles(*MASTER_ROLES))],
)
def list_audit_logs(
    action: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[AuditLogRead]:
    stmt = select(AuditLog).order_by(AuditLog.ts_utc.desc(), AuditLog.id.desc()).limit(limit)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    return [AuditLogRead.model_validate(item) for item in db.scalars(stmt).all()]
