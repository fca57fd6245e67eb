from __future__ import annotations

from decimal import Decimal
from io import BytesIO

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from sqlalchemy import select
from sqlalchemy.orm import Session

from hrms.errors import not_found
from hrms.models import Employee, PayrollBatch, PayrollStatus, SalarySlip
from hrms.services.payroll_calc import DEDUCTION_KEYS, money

SLIP_HEADERS = [
    "Employee Code",
    "Employee",
    "Present",
    "Half Days",
    "Absent",
    "Days in Month",
    "Basic",
    "HRA",
    "DA",
    "Bonus",
    "Reimbursements",
    "PF",
    "ESI",
    "Tax",
    "Loss of Pay",
    "Other Deductions",
    "Gross",
    "Net",
    "Status",
]
MONEY_HEADERS = {
    "Basic",
    "HRA",
    "DA",
    "Bonus",
    "Reimbursements",
    "PF",
    "ESI",
    "Tax",
    "Loss of Pay",
    "Other Deductions",
    "Gross",
    "Net",
}
MONEY_FORMAT = "#,##0.00"

HEADER_FILL = PatternFill(fill_type="solid", fgColor="0B4F73")
META_LABEL_FILL = PatternFill(fill_type="solid", fgColor="EAF4F9")
META_VALUE_FILL = PatternFill(fill_type="solid", fgColor="F8FCFF")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
SUMMARY_FILL = PatternFill(fill_type="solid", fgColor="E9F1F7")
PAID_FILL = PatternFill(fill_type="solid", fgColor="E6F4EA")

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
        ws.column_dimensions[col_letter].width = min(max_len + 2, 45)


def _merge_title(ws: Worksheet, row: int, text: str) -> None:
    ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=len(SLIP_HEADERS))
    cell = ws.cell(row=row, column=1, value=text)
    cell.font = TITLE_FONT
    cell.alignment = Alignment(horizontal="left", vertical="center")


def _style_metadata_rows(ws: Worksheet, *, start_row: int, end_row: int) -> None:
    for row_idx in range(start_row, end_row + 1):
        label_cell = ws.cell(row=row_idx, column=1)
        value_cell = ws.cell(row=row_idx, column=2)
        label_cell.font = BOLD_FONT
        label_cell.fill = META_LABEL_FILL
        label_cell.border = THIN_BORDER
        value_cell.font = MUTED_FONT
        value_cell.fill = META_VALUE_FILL
        value_cell.border = THIN_BORDER


def _excel_money(value: object) -> float:
    # openpyxl writes floats; the two-decimal value is exact at cent precision.
    return float(money(value))


def _slip_row(slip: SalarySlip, employee: Employee) -> list[object]:
    deductions = slip.deductions or {}
    return [
        employee.employee_code,
        employee.full_name,
        slip.present_days,
        slip.half_days,
        slip.absent_days,
        slip.total_days,
        _excel_money(slip.basic_salary),
        _excel_money(slip.hra),
        _excel_money(slip.da),
        _excel_money(slip.bonus),
        _excel_money(slip.reimbursements),
        *(_excel_money(deductions.get(key)) for key in DEDUCTION_KEYS),
        _excel_money(slip.gross_salary),
        _excel_money(slip.net_salary),
        slip.status.value,
    ]


def build_payroll_batch_xlsx_bytes(db: Session, batch_id: int) -> bytes:
    batch = db.get(PayrollBatch, batch_id)
    if batch is None:
        raise not_found("PAYROLL_BATCH_NOT_FOUND", "Payroll batch not found.", batch_id=batch_id)

    rows = db.execute(
        select(SalarySlip, Employee)
        .join(Employee, Employee.id == SalarySlip.employee_id)
        .where(SalarySlip.batch_id == batch.id)
        .order_by(Employee.employee_code.asc())
    ).all()

    wb = Workbook()
    ws = wb.active
    ws.title = f"Payroll {batch.year}-{batch.month:02d}"

    _merge_title(ws, 1, f"Payroll Register {batch.year}-{batch.month:02d}")
    metadata = [
        ("Month", batch.month),
        ("Year", batch.year),
        ("Status", batch.status.value),
        ("Employees", batch.total_employees),
        ("Total Net", _excel_money(batch.total_amount)),
    ]
    for offset, (label, value) in enumerate(metadata, start=2):
        ws.cell(row=offset, column=1, value=label)
        ws.cell(row=offset, column=2, value=value)
    meta_end = 1 + len(metadata)
    _style_metadata_rows(ws, start_row=2, end_row=meta_end)
    ws.cell(row=meta_end, column=2).number_format = MONEY_FORMAT

    header_row = meta_end + 2
    for col_idx, header in enumerate(SLIP_HEADERS, start=1):
        ws.cell(row=header_row, column=col_idx, value=header)
    _style_header(ws, header_row)

    money_cols = [idx for idx, header in enumerate(SLIP_HEADERS, start=1) if header in MONEY_HEADERS]
    net_total = Decimal("0.00")
    row_idx = header_row
    for row_idx, (slip, employee) in enumerate(rows, start=header_row + 1):
        for col_idx, value in enumerate(_slip_row(slip, employee), start=1):
            cell = ws.cell(row=row_idx, column=col_idx, value=value)
            cell.border = THIN_BORDER
            if (row_idx - header_row) % 2 == 0:
                cell.fill = ZEBRA_FILL
            if slip.status == PayrollStatus.PAID and col_idx == len(SLIP_HEADERS):
                cell.fill = PAID_FILL
        for col_idx in money_cols:
            ws.cell(row=row_idx, column=col_idx).number_format = MONEY_FORMAT
        net_total += money(slip.net_salary)

    if rows:
        ws.auto_filter.ref = f"A{header_row}:{get_column_letter(len(SLIP_HEADERS))}{row_idx}"
        summary_row = row_idx + 1
        ws.cell(row=summary_row, column=1, value="Total")
        net_col = SLIP_HEADERS.index("Net") + 1
        ws.cell(row=summary_row, column=net_col, value=float(net_total)).number_format = MONEY_FORMAT
        for col_idx in range(1, len(SLIP_HEADERS) + 1):
            cell = ws.cell(row=summary_row, column=col_idx)
            cell.font = BOLD_FONT
            cell.fill = SUMMARY_FILL
            cell.border = THIN_BORDER
    ws.freeze_panes = f"A{header_row + 1}"
    _auto_width(ws)

    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()
