import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional
from django.utils import timezone
from .collation import ro_sort_key
from .gateway import ORDERS, TECHNICIANS, RemoteGateway
from .models import OrderStatus
from .totals import to_decimal

logger = logging.getLogger('laborator')

def _finalized_local(order: Mapping[str, Any]) -> Optional[datetime]:
    finalized_at = order.get('finalized_at')
    if not finalized_at:
        return None
    return timezone.localtime(finalized_at) if timezone.is_aware(finalized_at) else finalized_at

def _in_period(order: Mapping[str, Any], month: Optional[int] = None, year: Optional[int] = None) -> bool:
    finalized_at = _finalized_local(order)
    if finalized_at is None:
        return False
    if year is not None and finalized_at.year != year:
        return False
    if month is not None and finalized_at.month != month:
        return False
    return True

def revenue_for_month(orders: Iterable[Mapping[str, Any]], now: datetime) -> Decimal:
    now = timezone.localtime(now) if timezone.is_aware(now) else now
    return sum((to_decimal(o['total']) for o in orders if _in_period(o, now.month, now.year)), Decimal('0'))

def status_counts(orders: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    counts = {status: 0 for status in OrderStatus.values}
    for order in orders:
        counts[order['status']] = counts.get(order['status'], 0) + 1
    return counts

def status_breakdown(orders: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    total = len(orders)
    return [
        {
            "status": status,
            "count": count,
            "percentage": round(count * 100 / total, 1) if total else 0,
        }
        for status, count in status_counts(orders).items()
    ]

def monthly_revenue(orders: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    buckets: Dict[str, Decimal] = {}
    for order in orders:
        finalized_at = _finalized_local(order)
        if finalized_at is None:
            continue
        key = finalized_at.strftime('%Y-%m')
        buckets[key] = buckets.get(key, Decimal('0')) + to_decimal(order['total'])
    return [{"month": key, "revenue": buckets[key]} for key in sorted(buckets)]

def available_years(orders: Iterable[Mapping[str, Any]], now: datetime) -> List[int]:
    years = {f.year for f in map(_finalized_local, orders) if f is not None}
    years.add(now.year)
    return sorted(years, reverse=True)

def _completed_by(order: Mapping[str, Any], technician: str) -> bool:
    return order['status'] == OrderStatus.FINALIZED and order.get('technician') == technician

def technician_summary(
    orders: List[Mapping[str, Any]],
    technicians: Iterable[str],
    month: Optional[int] = None,
    year: Optional[int] = None,
    order: str = 'desc',
) -> List[Dict[str, Any]]:
    summary = []
    for name in technicians:
        count = sum(
            1 for o in orders
            if _completed_by(o, name) and (month is None and year is None or _in_period(o, month, year))
        )
        summary.append({"name": name, "completedOrders": count})
    summary.sort(key=lambda row: ro_sort_key(row["name"]))
    summary.sort(key=lambda row: row["completedOrders"], reverse=(order == 'desc'))
    return summary

def technician_orders(
    orders: Iterable[Mapping[str, Any]],
    technician: str,
    month: Optional[int] = None,
    year: Optional[int] = None,
) -> List[Mapping[str, Any]]:
    selected = [
        o for o in orders
        if _completed_by(o, technician) and (month is None and year is None or _in_period(o, month, year))
    ]
    selected.sort(key=lambda o: (o.get('finalized_at') is not None, o.get('finalized_at')), reverse=True)
    return selected

def dashboard_summary(
    gateway: RemoteGateway,
    now: Optional[datetime] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    order: str = 'desc',
) -> Dict[str, Any]:
    now = now or timezone.now()
    orders = gateway.select(ORDERS)
    technicians = [t['name'] for t in gateway.select(TECHNICIANS)]
    summary = {
        "revenueThisMonth": revenue_for_month(orders, now),
        "totalOrders": len(orders),
        "statusCounts": status_counts(orders),
        "statusBreakdown": status_breakdown(orders),
        "monthlyRevenue": monthly_revenue(orders),
        "years": available_years(orders, timezone.localtime(now) if timezone.is_aware(now) else now),
        "technicianSummary": technician_summary(orders, technicians, month, year, order),
    }
    logger.info(f"Dashboard stats computed over {len(orders)} orders (month={month}, year={year}, order={order})")
    return summary
