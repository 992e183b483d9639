from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models import AuditActorType, ScanMethod, SessionStatus, UserRole
from app.services.scans import ScanOutcome


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str
    role: UserRole


class AppUserCreateRequest(BaseModel):
    username: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=255)
    role: UserRole
    is_active: bool = True


class AppUserRead(BaseModel):
    id: int
    username: str
    role: UserRole
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SessionStartRequest(BaseModel):
    event_name: str = Field(max_length=255)


class SessionRead(BaseModel):
    session_id: str
    event_name: str
    status: SessionStatus
    started_at: datetime
    ended_at: datetime | None = None
    started_by: str | None = None
    ended_by: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ActiveSessionResponse(BaseModel):
    session: SessionRead | None = None


class ScanRequest(BaseModel):
    employee_id: str = Field(max_length=64)
    method: ScanMethod = ScanMethod.QR
    device_id: str = Field(default="", max_length=255)

    # Length limits apply to the trimmed value.
    @field_validator("employee_id", "device_id", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class ScanResultRead(BaseModel):
    outcome: ScanOutcome
    employee_id: str
    session_id: str | None = None
    full_name: str | None = None
    department: str | None = None
    method: ScanMethod | None = None
    device_id: str | None = None
    scanned_at: datetime | None = None
    message: str
    retryable: bool

    model_config = ConfigDict(from_attributes=True)


class SessionStatsRead(BaseModel):
    session_id: str
    roster_total: int
    present_total: int
    scanned_total: int
    manual_total: int
    attendance_rate: float

    model_config = ConfigDict(from_attributes=True)


class DepartmentStatRead(BaseModel):
    department: str
    present: int
    total: int
    rate: float

    model_config = ConfigDict(from_attributes=True)


class LiveStatsResponse(BaseModel):
    stats: SessionStatsRead
    departments: list[DepartmentStatRead]


class SessionHeaderRead(BaseModel):
    session_id: str
    event_name: str
    status: SessionStatus
    started_at: datetime
    ended_at: datetime | None = None
    duration_minutes: int

    model_config = ConfigDict(from_attributes=True)


class PresentEntryRead(BaseModel):
    employee_id: str
    full_name: str
    department: str
    method: ScanMethod
    device_id: str
    scanned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AbsentEntryRead(BaseModel):
    employee_id: str
    full_name: str
    department: str

    model_config = ConfigDict(from_attributes=True)


class SessionReportRead(BaseModel):
    session: SessionHeaderRead
    stats: SessionStatsRead
    departments: list[DepartmentStatRead]
    present: list[PresentEntryRead]
    absent: list[AbsentEntryRead]
    records: list[PresentEntryRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class MonthlySessionColumnRead(BaseModel):
    session_id: str
    event_name: str
    started_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MonthlyCellRead(BaseModel):
    session_id: str
    present: int
    total: int
    rate: float

    model_config = ConfigDict(from_attributes=True)


class MonthlyDepartmentRowRead(BaseModel):
    department: str
    total: int
    cells: list[MonthlyCellRead]
    average_rate: float
    present_unique: int
    unique_rate: float

    model_config = ConfigDict(from_attributes=True)


class MonthlyReportRead(BaseModel):
    month: str
    timezone: str
    period_start: datetime
    period_end: datetime
    sessions: list[MonthlySessionColumnRead]
    departments: list[MonthlyDepartmentRowRead]

    model_config = ConfigDict(from_attributes=True)


class MasterlistRowIn(BaseModel):
    employee_id: str = Field(max_length=64)
    full_name: str = Field(max_length=255)
    department: str = Field(max_length=255)
    is_active: bool = True

    @field_validator("employee_id", "full_name", "department", mode="before")
    @classmethod
    def _strip_required(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be empty")
        return stripped


class MasterlistUploadRequest(BaseModel):
    filename: str | None = Field(default=None, max_length=512)
    rows: list[MasterlistRowIn]


class MasterlistUploadResponse(BaseModel):
    upload_id: int
    filename: str | None = None
    row_count: int
    errors: list[str] = Field(default_factory=list)


class EmployeeRead(BaseModel):
    employee_id: str
    full_name: str
    department: str
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class AuditLogRead(BaseModel):
    id: int
    ts_utc: datetime
    actor_type: AuditActorType
    actor_id: str
    action: str
    entity_type: str | None = None
    entity_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    success: bool
    details: dict[str, Any]

    model_config = ConfigDict(from_attributes=True)
