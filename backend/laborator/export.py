import logging
import os
import re
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Tuple
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from .entities import product_from_row
from .gateway import DOCTORS, ORDER_LINES, ORDERS, PATIENTS, PRODUCTS, RecordNotFound, RemoteGateway
from .models import OrderStatus
from .spreadsheet import (
    MatrixRow, PatientGroup, ProductLine,
    archive_workbooks, build_doctor_matrix_workbook, build_lab_sheet_workbook, build_order_workbook, workbook_bytes,
)

logger = logging.getLogger('laborator')

ARCHIVE_FILENAME = 'export_laborator.zip'
XLSX_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

class OrderNotFound(Exception):
    pass

class DoctorNotFound(Exception):
    pass

def parse_range_bound(value: Any, end: bool = False) -> datetime:
    """Parse a range boundary; a bare date as end bound covers the whole day."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time(23, 59, 59) if end else time.min)
    else:
        text = str(value or '').strip()
        day = parse_date(text)
        if day is not None:
            parsed = datetime.combine(day, time(23, 59, 59) if end else time.min)
        else:
            parsed = parse_datetime(text)
            if parsed is None:
                raise ValueError(f"Invalid date: {value!r}")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed

def _safe_name(name: str) -> str:
    return re.sub(r'\s+', '_', (name or '').strip())

def doctor_filename(doctor_name: str) -> str:
    return f"Doctor_{_safe_name(doctor_name)}.xlsx"

def order_filename(order_id: Any, patient_name: str) -> str:
    return f"Comanda_{order_id}_{_safe_name(patient_name)}.xlsx"

def matrix_filename(doctor_name: str, start: datetime, end: datetime) -> str:
    return f"{_safe_name(doctor_name)}_{start.strftime('%d-%m-%Y')}_{end.strftime('%d-%m-%Y')}.xlsx"

def get_finalized_orders(gateway: RemoteGateway, doctor_id: int, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    orders = gateway.select(
        ORDERS,
        eq={'doctor_id': doctor_id, 'status': OrderStatus.FINALIZED},
        gte={'finalized_at': start},
        lte={'finalized_at': end},
        not_null=['finalized_at'],
        order_by=['finalized_at', 'id'],
    )
    logger.info(f"Doctor {doctor_id}: {len(orders)} finalized order(s) between {start} and {end}")
    return orders

def _lines_with_products(gateway: RemoteGateway, order_ids: List[int]) -> Tuple[List[Dict[str, Any]], Dict[int, Dict[str, Any]]]:
    # Lines whose product no longer exists are left out.
    lines = gateway.select(ORDER_LINES, in_={'order_id': order_ids})
    product_ids = {line['product_id'] for line in lines}
    products = {p['id']: p for p in gateway.select(PRODUCTS, in_={'id': product_ids})}
    return [line for line in lines if line['product_id'] in products], products

def get_grouped_rows_for_doctor(gateway: RemoteGateway, doctor_id: int, start: datetime, end: datetime) -> List[PatientGroup]:
    orders = get_finalized_orders(gateway, doctor_id, start, end)
    if not orders:
        return []

    patients = {p['id']: p for p in gateway.select(PATIENTS, in_={'id': {o['patient_id'] for o in orders}})}
    orders = [o for o in orders if o['patient_id'] in patients]
    lines, products = _lines_with_products(gateway, [o['id'] for o in orders])

    groups: Dict[str, PatientGroup] = {}
    for order in orders:
        patient_name = patients[order['patient_id']]['name'] or 'Necunoscut'
        for line in lines:
            if line['order_id'] != order['id']:
                continue
            product = products[line['product_id']]
            groups.setdefault(patient_name, PatientGroup(patient_name)).products.append(ProductLine(
                name=product['name'] or 'Produs',
                quantity=line['quantity'] or 1,
                unit_price=product['price'] or 0,
            ))

    return list(groups.values())

def export_lab_archive(gateway: RemoteGateway, start: datetime, end: datetime, logo_path: Optional[str] = None) -> bytes:
    if logo_path and not os.path.exists(logo_path):
        logger.warning(f"Logo not found at {logo_path}, exporting without it")
        logo_path = None

    files = []
    for doctor in gateway.select(DOCTORS):
        groups = get_grouped_rows_for_doctor(gateway, doctor['id'], start, end)
        if not groups:
            continue
        wb = build_lab_sheet_workbook(doctor['name'], groups, logo=logo_path)
        files.append((doctor_filename(doctor['name']), workbook_bytes(wb)))

    content = archive_workbooks(files)
    logger.info(f"Lab export generated with {len(files)} doctor file(s) for {start} - {end}")
    return content

def export_order_sheet(gateway: RemoteGateway, order_id: int) -> Tuple[bytes, str]:
    try:
        order = gateway.select_one(ORDERS, id=order_id)
        doctor = gateway.select_one(DOCTORS, id=order['doctor_id'])
        patient = gateway.select_one(PATIENTS, id=order['patient_id'])
    except RecordNotFound as e:
        raise OrderNotFound(f"Order {order_id} not found") from e

    lines, products = _lines_with_products(gateway, [order_id])
    items = [(products[line['product_id']]['name'] or 'Produs', line['quantity']) for line in lines]
    wb = build_order_workbook(doctor['name'], patient['name'], items, order['total'])

    filename = order_filename(order_id, patient['name'] or 'N/A')
    logger.info(f"Order sheet generated for order {order_id} with {len(items)} product(s)")
    return workbook_bytes(wb), filename

def export_doctor_matrix(gateway: RemoteGateway, doctor_id: int, start: datetime, end: datetime) -> Tuple[bytes, str]:
    try:
        doctor = gateway.select_one(DOCTORS, id=doctor_id)
    except RecordNotFound as e:
        raise DoctorNotFound(f"Doctor {doctor_id} not found") from e

    orders = get_finalized_orders(gateway, doctor_id, start, end)
    patients = {p['id']: p['name'] for p in gateway.select(PATIENTS, eq={'doctor_id': doctor_id})}
    lines = gateway.select(ORDER_LINES, in_={'order_id': [o['id'] for o in orders]}) if orders else []
    products = [product_from_row(row) for row in gateway.select(PRODUCTS)]

    rows = []
    for order in orders:
        quantities = {}
        for line in lines:
            if line['order_id'] == order['id']:
                quantities.setdefault(line['product_id'], line['quantity'])
        rows.append(MatrixRow(patient=patients.get(order['patient_id']) or 'N/A', quantities=quantities, total=order['total']))

    wb = build_doctor_matrix_workbook(doctor['name'], products, rows)
    return workbook_bytes(wb), matrix_filename(doctor['name'], start, end)
