from __future__ import annotations

from datetime import date, datetime, timezone
from io import BytesIO
from typing import Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from sqlalchemy.orm import Session

from point_engine.models import AttendancePoint
from point_engine.services.queries import PointFilters, query_points
from point_engine.services.stats import calculate_totals

POINT_HEADERS = [
    "Point ID",
    "Employee",
    "Shift Date",
    "Type",
    "Points",
    "Status",
    "Manual",
    "Excused",
    "Excuse Reason",
    "Expires (SRO)",
    "GBRO Expires",
    "Expiration Type",
    "Expired",
    "Expired On",
    "Violation Details",
]

HEADER_FILL = PatternFill(fill_type="solid", fgColor="0B4F73")
META_LABEL_FILL = PatternFill(fill_type="solid", fgColor="EAF4F9")
META_VALUE_FILL = PatternFill(fill_type="solid", fgColor="F8FCFF")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
WARNING_FILL = PatternFill(fill_type="solid", fgColor="FFF3CD")
MUTED_ROW_FILL = PatternFill(fill_type="solid", fgColor="EEF2F6")

HEADER_FONT = Font(bold=True, color="FFFFFF")
BOLD_FONT = Font(bold=True, color="0F172A")
TITLE_FONT = Font(bold=True, color="0B4F73", size=14)
MUTED_FONT = Font(color="334155")

THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)


def _style_header(ws: Worksheet, row: int = 1) -> None:
    for cell in ws[row]:
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
        ws.column_dimensions[col_letter].width = min(max_len + 2, 60)


def _point_row(point: AttendancePoint) -> list[object]:
    return [
        point.id,
        point.user.full_name if point.user is not None else str(point.user_id),
        point.shift_date,
        point.point_type.value,
        float(point.points),
        point.status or "",
        "Yes" if point.is_manual else "No",
        "Yes" if point.is_excused else "No",
        point.excuse_reason or "",
        point.expires_at,
        point.gbro_expires_at,
        point.expiration_type.value,
        "Yes" if point.is_expired else "No",
        point.expired_at,
        point.violation_details or "",
    ]


def _style_point_rows(ws: Worksheet, points: Sequence[AttendancePoint], *, header_row: int) -> None:
    data_end_row = header_row + len(points)
    ws.freeze_panes = f"A{header_row + 1}"
    if not points:
        return
    ws.auto_filter.ref = f"A{header_row}:{get_column_letter(ws.max_column)}{data_end_row}"

    for offset, point in enumerate(points, start=1):
        row_idx = header_row + offset
        if point.is_excused or point.is_expired:
            row_fill = MUTED_ROW_FILL
        elif point.gbro_expires_at is None and point.eligible_for_gbro:
            row_fill = WARNING_FILL
        elif row_idx % 2 == 0:
            row_fill = ZEBRA_FILL
        else:
            row_fill = None

        for col_idx in range(1, ws.max_column + 1):
            cell = ws.cell(row=row_idx, column=col_idx)
            cell.border = THIN_BORDER
            if row_fill is not None:
                cell.fill = row_fill
            if isinstance(cell.value, (int, float, date)):
                cell.alignment = Alignment(horizontal="center", vertical="center")
            else:
                cell.alignment = Alignment(horizontal="left", vertical="center", wrap_text=col_idx == len(POINT_HEADERS))
            if isinstance(cell.value, date):
                cell.number_format = "yyyy-mm-dd"


def _append_summary(ws: Worksheet, points: Sequence[AttendancePoint], *, generated_at: datetime) -> None:
    totals = calculate_totals(points)
    ws.append(["Attendance Points Export"])
    ws.cell(row=1, column=1).font = TITLE_FONT
    rows = [
        ("Generated (UTC)", generated_at.strftime("%Y-%m-%d %H:%M")),
        ("Records", len(points)),
        ("Active Points", totals["active_points"]),
        ("Excused Points", totals["excused_points"]),
        ("Expired Points", totals["expired_points"]),
    ]
    for label, value in rows:
        ws.append([label, value])
        row_idx = ws.max_row
        label_cell = ws.cell(row=row_idx, column=1)
        value_cell = ws.cell(row=row_idx, column=2)
        label_cell.font = BOLD_FONT
        label_cell.fill = META_LABEL_FILL
        label_cell.border = THIN_BORDER
        value_cell.font = MUTED_FONT
        value_cell.fill = META_VALUE_FILL
        value_cell.border = THIN_BORDER
        value_cell.alignment = Alignment(horizontal="left", vertical="center")
    ws.append([])


def build_points_xlsx_bytes(points: Sequence[AttendancePoint], *, generated_at: datetime | None = None) -> bytes:
    generated_at = generated_at or datetime.now(timezone.utc)
    wb = Workbook()
    ws = wb.active
    ws.title = "Attendance Points"

    _append_summary(ws, points, generated_at=generated_at)
    ws.append(POINT_HEADERS)
    header_row = ws.max_row
    _style_header(ws, header_row)
    for point in points:
        ws.append(_point_row(point))
    _style_point_rows(ws, points, header_row=header_row)
    _auto_width(ws)

    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()


def export_points_xlsx(
    db: Session,
    filters: PointFilters,
    *,
    scope_user_id: int | None = None,
) -> bytes:
    points = query_points(db, filters, scope_user_id=scope_user_id)
    return build_points_xlsx_bytes(points)
