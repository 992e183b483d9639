from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO
from zoneinfo import ZoneInfo

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from app.services.reports import MonthlyReport, SessionReport

XLSX_DATETIME_FORMAT = "yyyy-mm-dd hh:mm"

HEADER_FILL = PatternFill(fill_type="solid", fgColor="0B4F73")
META_LABEL_FILL = PatternFill(fill_type="solid", fgColor="EAF4F9")
META_VALUE_FILL = PatternFill(fill_type="solid", fgColor="F8FCFF")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
LOW_RATE_FILL = PatternFill(fill_type="solid", fgColor="FDE2E4")
FULL_RATE_FILL = PatternFill(fill_type="solid", fgColor="E6F4EA")

HEADER_FONT = Font(bold=True, color="FFFFFF")
BOLD_FONT = Font(bold=True, color="0F172A")
TITLE_FONT = Font(bold=True, color="0B4F73", size=14)
MUTED_FONT = Font(color="334155")

THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)

LOW_RATE_THRESHOLD = 50.0


def _to_local_excel_datetime(value: datetime | None, tz: ZoneInfo) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Excel has no tz-aware cells.
    return value.astimezone(tz).replace(tzinfo=None)


def _format_duration(minutes: int) -> str:
    value = max(0, int(minutes))
    return f"{value // 60}h {value % 60}m"


def _style_header(ws: Worksheet, row: int = 1) -> None:
    for cell in ws[row]:
        if cell.value is None:
            continue
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        cell.border = THIN_BORDER


def _auto_width(ws: Worksheet) -> None:
    for column_cells in ws.iter_cols(min_row=1, max_row=ws.max_row, min_col=1, max_col=ws.max_column):
        max_len = 0
        col_letter = get_column_letter(column_cells[0].column)
        for cell in column_cells:
            if cell.coordinate in ws.merged_cells:
                continue
            value = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(value))
        ws.column_dimensions[col_letter].width = min(max(max_len + 2, 12), 45)


def _merge_title(ws: Worksheet, row: int, text: str, *, width: int = 6) -> None:
    ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=max(width, 2))
    cell = ws.cell(row=row, column=1, value=text)
    cell.font = TITLE_FONT
    cell.alignment = Alignment(horizontal="left", vertical="center")


def _style_metadata_rows(ws: Worksheet, *, start_row: int, end_row: int) -> None:
    for row_idx in range(start_row, end_row + 1):
        label_cell = ws.cell(row=row_idx, column=1)
        value_cell = ws.cell(row=row_idx, column=2)
        label_cell.font = BOLD_FONT
        label_cell.fill = META_LABEL_FILL
        label_cell.alignment = Alignment(horizontal="left", vertical="center")
        label_cell.border = THIN_BORDER

        value_cell.font = MUTED_FONT
        value_cell.fill = META_VALUE_FILL
        value_cell.alignment = Alignment(horizontal="left", vertical="center")
        value_cell.border = THIN_BORDER
        if isinstance(value_cell.value, datetime):
            value_cell.number_format = XLSX_DATETIME_FORMAT


def _style_table_region(
    ws: Worksheet,
    *,
    header_row: int,
    data_start_row: int,
    data_end_row: int,
    rate_columns: tuple[int, ...] = (),
) -> None:
    ws.freeze_panes = f"A{header_row + 1}"
    if data_end_row < data_start_row:
        return

    ws.auto_filter.ref = f"A{header_row}:{get_column_letter(ws.max_column)}{data_end_row}"
    for row_idx in range(data_start_row, data_end_row + 1):
        for col_idx in range(1, ws.max_column + 1):
            cell = ws.cell(row=row_idx, column=col_idx)
            cell.border = THIN_BORDER
            if row_idx % 2 == 0:
                cell.fill = ZEBRA_FILL
            if isinstance(cell.value, datetime):
                cell.number_format = XLSX_DATETIME_FORMAT
                cell.alignment = Alignment(horizontal="center", vertical="center")
            elif isinstance(cell.value, (int, float)):
                cell.alignment = Alignment(horizontal="center", vertical="center")
            else:
                cell.alignment = Alignment(horizontal="left", vertical="center")

        for col_idx in rate_columns:
            rate_cell = ws.cell(row=row_idx, column=col_idx)
            if not isinstance(rate_cell.value, (int, float)):
                continue
            if rate_cell.value >= 100:
                rate_cell.fill = FULL_RATE_FILL
            elif rate_cell.value < LOW_RATE_THRESHOLD:
                rate_cell.fill = LOW_RATE_FILL


def _append_table(
    ws: Worksheet,
    headers: list[str],
    rows: list[list[object]],
    *,
    rate_columns: tuple[int, ...] = (),
) -> None:
    ws.append(headers)
    header_row = ws.max_row
    _style_header(ws, header_row)
    for row in rows:
        ws.append(row)
    _style_table_region(
        ws,
        header_row=header_row,
        data_start_row=header_row + 1,
        data_end_row=header_row + len(rows),
        rate_columns=rate_columns,
    )


def _save(wb: Workbook) -> bytes:
    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()


def build_session_report_xlsx_bytes(report: SessionReport, *, tz: ZoneInfo) -> bytes:
    header = report.session
    wb = Workbook()

    summary = wb.active
    summary.title = "Summary"
    _merge_title(summary, 1, f"{header.event_name} - Attendance Summary")
    summary.append(["Event", header.event_name])
    summary.append(["Session started", _to_local_excel_datetime(header.started_at, tz)])
    summary.append(["Session ended", _to_local_excel_datetime(header.ended_at, tz) or "-"])
    summary.append(["Duration", _format_duration(header.duration_minutes)])
    summary.append(["Session ID", header.session_id])
    summary.append(["Status", header.status.value])
    summary.append(["Present", f"{report.stats.present_total} / {report.stats.roster_total}"])
    summary.append(["Attendance rate (%)", report.stats.attendance_rate])
    summary.append(["Scanned (QR)", report.stats.scanned_total])
    summary.append(["Manual", report.stats.manual_total])
    _style_metadata_rows(summary, start_row=2, end_row=summary.max_row)
    summary.append([])
    _append_table(
        summary,
        ["Department", "Present", "Total", "Rate (%)"],
        [[item.department, item.present, item.total, item.rate] for item in report.departments],
        rate_columns=(4,),
    )
    _auto_width(summary)

    raw = wb.create_sheet("Raw Attendance")
    _append_table(
        raw,
        ["Employee ID", "Full Name", "Department", "Method", "Device", f"Recorded At ({tz.key})"],
        [
            [
                item.employee_id,
                item.full_name,
                item.department,
                item.method.value,
                item.device_id,
                _to_local_excel_datetime(item.scanned_at, tz),
            ]
            for item in report.records
        ],
    )
    _auto_width(raw)

    absent = wb.create_sheet("Absent")
    _append_table(
        absent,
        ["Employee ID", "Full Name", "Department"],
        [[item.employee_id, item.full_name, item.department] for item in report.absent],
    )
    _auto_width(absent)

    return _save(wb)


def _session_column_label(event_name: str, started_at: datetime, tz: ZoneInfo) -> str:
    local = started_at.astimezone(tz)
    return f"{local.strftime('%Y-%m-%d %H:%M')} {event_name}"


def build_monthly_report_xlsx_bytes(report: MonthlyReport, *, tz: ZoneInfo) -> bytes:
    wb = Workbook()

    pivot = wb.active
    pivot.title = "Monthly Pivot"
    _merge_title(pivot, 1, f"Monthly attendance {report.month}", width=len(report.sessions) + 3)
    session_headers = [
        f"{_session_column_label(item.event_name, item.started_at, tz)} (%)" for item in report.sessions
    ]
    _append_table(
        pivot,
        ["Department", *session_headers, "Total Employees", "Average Rate (%)"],
        [
            [row.department, *[cell.rate for cell in row.cells], row.total, row.average_rate]
            for row in report.departments
        ],
        rate_columns=(*range(2, len(report.sessions) + 2), len(report.sessions) + 3),
    )
    _auto_width(pivot)

    summary = wb.create_sheet("Monthly Summary")
    summary.append(["Month", report.month])
    summary.append(["Time zone", report.timezone])
    summary.append(["Sessions", len(report.sessions)])
    _style_metadata_rows(summary, start_row=1, end_row=3)
    summary.append([])
    summary_rows = sorted(
        report.departments,
        key=lambda row: (-row.unique_rate, -row.present_unique, row.department),
    )
    _append_table(
        summary,
        ["Department", "Present (unique)", "Total", "Rate (%)"],
        [[row.department, row.present_unique, row.total, row.unique_rate] for row in summary_rows],
        rate_columns=(4,),
    )
    _auto_width(summary)

    breakdown = wb.create_sheet("Sessions Breakdown")
    breakdown_rows: list[list[object]] = []
    for column in report.sessions:
        for row in report.departments:
            cell = next(item for item in row.cells if item.session_id == column.session_id)
            breakdown_rows.append(
                [
                    _to_local_excel_datetime(column.started_at, tz),
                    column.event_name,
                    column.session_id,
                    row.department,
                    cell.present,
                    cell.total,
                    cell.rate,
                ]
            )
    _append_table(
        breakdown,
        [f"Session Date ({tz.key})", "Event Name", "Session ID", "Department", "Present", "Total", "Rate (%)"],
        breakdown_rows,
        rate_columns=(7,),
    )
    _auto_width(breakdown)

    return _save(wb)
