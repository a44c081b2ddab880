from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from django.utils.dateparse import parse_date, parse_datetime

from .models import OrderStatus
from .totals import derive_status, to_decimal


@dataclass
class Patient:
    id: int
    name: str
    doctor_id: Optional[int]


@dataclass
class Doctor:
    id: int
    name: str
    email: str = ''
    phone: str = ''
    patients: List[Patient] = field(default_factory=list)


@dataclass
class Product:
    id: int
    name: str
    price: Decimal


@dataclass
class Technician:
    id: int
    name: str


@dataclass
class OrderLine:
    product_id: int
    quantity: Any
    id: Optional[int] = None


@dataclass
class Order:
    id: int
    doctor_id: Optional[int]
    patient_id: Optional[int]
    lines: List[OrderLine] = field(default_factory=list)
    start_date: Optional[date] = None
    deadline: Optional[date] = None
    discount: Decimal = Decimal('0')
    total: Decimal = Decimal('0')
    status: str = OrderStatus.IN_PROGRESS
    finalized_at: Optional[datetime] = None
    technician: Optional[str] = None
    invalid: bool = False

    @property
    def is_finalized(self) -> bool:
        return self.status == OrderStatus.FINALIZED


@dataclass(frozen=True)
class ExistingRef:
    id: int


@dataclass(frozen=True)
class NewByName:
    name: str


EntityRef = Union[ExistingRef, NewByName]


def as_ref(value: Any) -> EntityRef:
    if isinstance(value, (ExistingRef, NewByName)):
        return value
    if isinstance(value, bool):
        raise TypeError(f"Cannot use {value!r} as a doctor/patient reference")
    if isinstance(value, int):
        return ExistingRef(value)
    if isinstance(value, str):
        return NewByName(value.strip())
    raise TypeError(f"Cannot use {value!r} as a doctor/patient reference")


def as_line(value: Any) -> OrderLine:
    if isinstance(value, OrderLine):
        return OrderLine(product_id=value.product_id, quantity=value.quantity, id=value.id)
    if isinstance(value, Mapping):
        return OrderLine(product_id=_to_int(value['product_id']), quantity=value.get('quantity', 1), id=_to_int(value.get('id')))
    product_id, quantity = value
    return OrderLine(product_id=_to_int(product_id), quantity=quantity)


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    return int(value)


def to_date(value: Any) -> Optional[date]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_date(str(value)[:10])
    if parsed is None:
        raise ValueError(f"Invalid date: {value!r}")
    return parsed


def to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    parsed = parse_datetime(str(value))
    if parsed is None:
        raise ValueError(f"Invalid datetime: {value!r}")
    return parsed


def doctor_from_row(row: Mapping[str, Any]) -> Doctor:
    return Doctor(id=int(row['id']), name=row.get('name') or '', email=row.get('email') or '', phone=row.get('phone') or '')


def patient_from_row(row: Mapping[str, Any]) -> Patient:
    return Patient(id=int(row['id']), name=row.get('name') or '', doctor_id=_to_int(row.get('doctor_id')))


def product_from_row(row: Mapping[str, Any]) -> Product:
    return Product(id=int(row['id']), name=row.get('name') or '', price=to_decimal(row.get('price')))


def technician_from_row(row: Mapping[str, Any]) -> Technician:
    return Technician(id=int(row['id']), name=row.get('name') or '')


def line_from_row(row: Mapping[str, Any]) -> OrderLine:
    return OrderLine(id=_to_int(row.get('id')), product_id=_to_int(row.get('product_id')), quantity=int(row.get('quantity') or 0))


def order_from_row(row: Mapping[str, Any], lines: Optional[List[OrderLine]], now: datetime) -> Order:
    deadline = to_date(row.get('deadline'))
    return Order(
        id=int(row['id']),
        doctor_id=_to_int(row.get('doctor_id')),
        patient_id=_to_int(row.get('patient_id')),
        lines=list(lines or []),
        start_date=to_date(row.get('start_date')),
        deadline=deadline,
        discount=to_decimal(row.get('discount')),
        total=to_decimal(row.get('total')),
        status=row.get('status') or derive_status(deadline, now),
        finalized_at=to_datetime(row.get('finalized_at')),
        technician=row.get('technician') or None,
    )


def order_to_row(order: Order) -> Dict[str, Any]:
    return {
        'doctor_id': order.doctor_id,
        'patient_id': order.patient_id,
        'start_date': order.start_date,
        'deadline': order.deadline,
        'discount': order.discount,
        'total': order.total,
        'status': order.status,
        'finalized_at': order.finalized_at,
        'technician': order.technician,
    }


def line_to_row(order_id: int, line: OrderLine) -> Dict[str, Any]:
    return {'order_id': order_id, 'product_id': line.product_id, 'quantity': line.quantity}
