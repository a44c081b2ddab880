from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from .models import OrderStatus

TWO_PLACES = Decimal('0.01')

PriceLookup = Union[Mapping[int, Any], Callable[[int], Any]]


def to_decimal(value: Any) -> Decimal:
    # Quantities may transiently be '' while an order is being edited.
    if value is None or value == '':
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")


def _line_parts(line: Any):
    if isinstance(line, (tuple, list)):
        product_id, quantity = line[0], line[1]
    else:
        product_id, quantity = line.product_id, line.quantity
    return product_id, quantity


def compute_total(lines: Iterable[Any], discount: Any, price_of: PriceLookup) -> Decimal:
    """Return sum(quantity * price) - discount for an order's lines.

    ``lines`` holds ``OrderLine`` objects or ``(product_id, quantity)`` pairs.
    ``price_of`` is a mapping or callable from product id to unit price; a
    product it cannot resolve contributes nothing. The result is not clamped,
    so a discount larger than the subtotal gives a negative total.
    """
    lookup = price_of.get if isinstance(price_of, Mapping) else price_of
    subtotal = Decimal('0')
    for line in lines:
        product_id, quantity = _line_parts(line)
        price = lookup(product_id)
        if price is None:
            continue
        subtotal += to_decimal(quantity) * to_decimal(price)
    return (subtotal - to_decimal(discount)).quantize(TWO_PLACES)


def is_overdue(deadline: Optional[Union[date, datetime]], now: datetime) -> bool:
    if deadline is None:
        return False
    if not isinstance(deadline, datetime):
        deadline = datetime.combine(deadline, time.min, tzinfo=now.tzinfo)
    return deadline < now


def derive_status(deadline: Optional[Union[date, datetime]], now: datetime) -> str:
    return OrderStatus.DELAYED if is_overdue(deadline, now) else OrderStatus.IN_PROGRESS
