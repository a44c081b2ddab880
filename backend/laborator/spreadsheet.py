import io
import logging
import zipfile
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from openpyxl import Workbook
from openpyxl.drawing.image import Image
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from .collation import sorted_by_name
from .totals import TWO_PLACES, to_decimal

logger = logging.getLogger('laborator')

GREY = 'FFB3B3B3'
MONEY_FORMAT = '#,##0.00'
RON_FORMAT = '#,##0.00 "RON"'
SUBTOTAL_LABEL = 'Total Client'
FIRST_DATA_ROW = 6

@dataclass
class ProductLine:
    name: str
    quantity: Any
    unit_price: Any

    @property
    def total(self) -> Decimal:
        return to_decimal(self.quantity) * to_decimal(self.unit_price)

@dataclass
class PatientGroup:
    patient: str
    products: List[ProductLine] = field(default_factory=list)

@dataclass
class MatrixRow:
    patient: str
    quantities: Dict[int, Any]
    total: Any

def _fill(color: str) -> PatternFill:
    return PatternFill(start_color=color, end_color=color, fill_type="solid")

def _border(top: str = 'thin', bottom: str = 'thin', left: str = 'thin', right: str = 'thin', color: Optional[str] = GREY) -> Border:
    return Border(
        top=Side(style=top, color=color),
        bottom=Side(style=bottom, color=color),
        left=Side(style=left, color=color),
        right=Side(style=right, color=color),
    )

def build_lab_sheet_workbook(doctor_name: str, groups: Sequence[PatientGroup], logo: Any = None) -> Workbook:
    wb = Workbook()
    ws = wb.active
    ws.title = "Fișa Laborator"

    for letter, width in zip("ABCD", (30, 40, 10, 15)):
        ws.column_dimensions[letter].width = width

    title = ws['A1']
    title.value = "Fișa Laborator"
    title.font = Font(size=16, bold=True, color="FF333333")
    title.alignment = Alignment(horizontal="center", vertical="center")
    title.fill = _fill("FFFFFFFF")
    ws.merge_cells('A1:D2')

    doctor_cell = ws['A3']
    doctor_cell.value = f"Dr. {doctor_name}"
    doctor_cell.font = Font(bold=True, color="FF333333")
    doctor_cell.alignment = Alignment(horizontal="center")
    doctor_cell.fill = _fill("FFF2F2F2")
    ws.merge_cells('A3:D3')

    if logo is not None:
        image = Image(logo)
        if image.height:
            image.width, image.height = int(image.width * 38 / image.height), 38
        ws.add_image(image, 'D1')

    ws.row_dimensions[5].height = 20
    for col_idx, header in enumerate(['PACIENT', 'PRODUS', 'BUCĂȚI', 'PREȚ'], 1):
        cell = ws.cell(row=5, column=col_idx, value=header)
        cell.font = Font(bold=True, color="FF274E13")
        cell.alignment = Alignment(horizontal="center", vertical="center")
        cell.fill = _fill("FFD9EAD3")
        cell.border = _border()

    current_row = FIRST_DATA_ROW
    for group_idx, group in enumerate(groups):
        background = _fill("FFFAFAFA" if group_idx % 2 else "FFFFFFFF")
        start_row = current_row
        patient_total = Decimal('0')
        for product in group.products:
            if current_row == start_row:
                ws.cell(row=current_row, column=1, value=group.patient)
            ws.cell(row=current_row, column=2, value=product.name)
            ws.cell(row=current_row, column=3, value=product.quantity)
            line_total = product.total
            patient_total += line_total
            ws.cell(row=current_row, column=4, value=line_total).number_format = MONEY_FORMAT
            for col in range(1, 5):
                cell = ws.cell(row=current_row, column=col)
                cell.fill = background
                cell.border = _border()
                cell.alignment = Alignment(vertical="center", horizontal="left" if col == 2 else "center")
            ws.cell(row=current_row, column=4).fill = _fill("FFE8F5E9")
            current_row += 1

        if len(group.products) > 1:
            ws.merge_cells(start_row=start_row, start_column=1, end_row=current_row - 1, end_column=1)

        label = ws.cell(row=current_row, column=1, value=SUBTOTAL_LABEL)
        label.font = Font(bold=True, color="FF333333")
        label.alignment = Alignment(horizontal="center", vertical="center")
        subtotal = ws.cell(row=current_row, column=4, value=patient_total)
        subtotal.number_format = MONEY_FORMAT
        subtotal.font = Font(bold=True, color="FF0056B3")
        subtotal.alignment = Alignment(horizontal="center", vertical="center")
        for col in range(1, 5):
            cell = ws.cell(row=current_row, column=col)
            cell.fill = _fill("FFFEF5E7")
            cell.border = _border()
        ws.merge_cells(start_row=current_row, start_column=1, end_row=current_row, end_column=3)
        current_row += 1

    # Subtotal rows sit inside the data range, so the grand total skips them by label.
    last_row = current_row - 1
    total_row = current_row + 1
    ws.cell(row=total_row, column=1, value="TOTAL").font = Font(bold=True)
    ws.cell(row=total_row, column=1).alignment = Alignment(horizontal="right")
    if last_row >= FIRST_DATA_ROW:
        formula = f'=SUMIF(A{FIRST_DATA_ROW}:A{last_row},"<>{SUBTOTAL_LABEL}",D{FIRST_DATA_ROW}:D{last_row})'
    else:
        formula = 0
    grand_total = ws.cell(row=total_row, column=4, value=formula)
    grand_total.number_format = MONEY_FORMAT
    for col in range(1, 5):
        cell = ws.cell(row=total_row, column=col)
        cell.fill = _fill("FFFFF3CD")
        cell.border = _border(top='thick')
    grand_total.font = Font(bold=True, color="FF0056B3")
    grand_total.alignment = Alignment(horizontal="center")

    logger.info(f"Lab sheet built for Dr. {doctor_name} with {len(groups)} patient(s)")
    return wb

def build_order_workbook(doctor_name: str, patient_name: str, lines: Iterable[Tuple[str, Any]], total: Any) -> Workbook:
    wb = Workbook()
    ws = wb.active
    ws.title = "Fisa Laborator"
    ws.column_dimensions['A'].width = 50

    rows = [
        ("Fisa Laborator", Font(size=14, bold=True), "center", "FFE8F4F8", ('thick', 'thin')),
        (f"Doctor: {doctor_name or 'N/A'}", Font(size=12), "center", None, ('thin', 'thin')),
        (f"Pacient: {patient_name or 'N/A'}", Font(size=12), "center", None, ('thin', 'thin')),
        ("Produse", Font(size=12, bold=True), "left", "FFFFF4E6", ('thin', 'thin')),
    ]
    for name, quantity in lines:
        rows.append((f"- {name} x {quantity}", Font(size=11), "left", None, ('thin', 'thin')))
    total_text = f"Total: {to_decimal(total).quantize(TWO_PLACES)}"
    rows.append((total_text, Font(size=12, bold=True), "center", "FFE8F5E9", ('thin', 'thick')))

    for row_idx, (value, font, horizontal, fill, (top, bottom)) in enumerate(rows, 1):
        cell = ws.cell(row=row_idx, column=1, value=value)
        cell.font = font
        cell.alignment = Alignment(horizontal=horizontal, vertical="center")
        cell.border = _border(top=top, bottom=bottom, left='thick', right='thick', color=None)
        if fill:
            cell.fill = _fill(fill)

    logger.info(f"Order sheet built for {patient_name} with {len(rows) - 5} product line(s)")
    return wb

def build_doctor_matrix_workbook(doctor_name: str, products: Iterable[Any], rows: Sequence[MatrixRow]) -> Workbook:
    """One row per order, one column per product the doctor actually ordered."""
    products = [p for p in sorted_by_name(products) if any(row.quantities.get(p.id) not in (None, '') for row in rows)]
    headers = ['PACIENT'] + [p.name.upper() for p in products] + ['TOTAL']

    wb = Workbook()
    ws = wb.active
    ws.title = "Comenzi"

    border = _border(color=None)
    center = Alignment(horizontal="center", vertical="center")

    title = ws.cell(row=1, column=1, value=(doctor_name or '').upper())
    title.font = Font(name='Calibri', size=16, bold=True)
    title.alignment = center
    ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=len(headers))
    ws.row_dimensions[1].height = 25

    for col_idx, header in enumerate(headers, 1):
        cell = ws.cell(row=2, column=col_idx, value=header)
        cell.font = Font(name='Calibri', size=12, bold=True)
        cell.fill = _fill("FFE0E0E0")
        cell.border = border
        cell.alignment = center

    grand_total = Decimal('0')
    for row_idx, row in enumerate(rows, 3):
        values = [row.patient or 'N/A']
        values += [row.quantities.get(p.id) if row.quantities.get(p.id) not in (None, '') else '-' for p in products]
        values.append(to_decimal(row.total))
        grand_total += to_decimal(row.total)
        for col_idx, value in enumerate(values, 1):
            cell = ws.cell(row=row_idx, column=col_idx, value=value)
            cell.border = border
            cell.alignment = center
        ws.cell(row=row_idx, column=len(headers)).number_format = RON_FORMAT

    total_row = len(rows) + 3
    for col_idx in range(1, len(headers) + 1):
        cell = ws.cell(row=total_row, column=col_idx)
        cell.font = Font(name='Calibri', size=12, bold=True)
        cell.border = border
        cell.alignment = center
    ws.cell(row=total_row, column=1, value="TOTAL SUMĂ")
    ws.cell(row=total_row, column=len(headers), value=grand_total).number_format = RON_FORMAT

    for col_idx, header in enumerate(headers, 1):
        values = [header] + [ws.cell(row=r, column=col_idx).value for r in range(3, total_row + 1)]
        max_length = max(len(str(v)) for v in values if v is not None)
        ws.column_dimensions[get_column_letter(col_idx)].width = max_length + 5

    logger.info(f"Matrix sheet built for Dr. {doctor_name}: {len(rows)} order(s), {len(products)} product column(s)")
    return wb

def workbook_bytes(wb: Workbook) -> bytes:
    output = io.BytesIO()
    wb.save(output)
    content = output.getvalue()
    output.close()
    return content

def archive_workbooks(files: Iterable[Tuple[str, bytes]]) -> bytes:
    output = io.BytesIO()
    with zipfile.ZipFile(output, 'w', compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for filename, content in files:
            archive.writestr(filename, content)
    content = output.getvalue()
    output.close()
    return content
