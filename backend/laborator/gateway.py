import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models.signals import post_delete, post_save
from django.utils import timezone

from .models import Doctor, Order, OrderLine, Patient, Product, Technician

logger = logging.getLogger('laborator')

DOCTORS = 'doctors'
PATIENTS = 'patients'
PRODUCTS = 'products'
TECHNICIANS = 'technicians'
ORDERS = 'orders'
ORDER_LINES = 'order_lines'

TABLES = {
    DOCTORS: Doctor,
    PATIENTS: Patient,
    PRODUCTS: Product,
    TECHNICIANS: Technician,
    ORDERS: Order,
    ORDER_LINES: OrderLine,
}

_WRITE_ERRORS = (DatabaseError, ValidationError, ValueError, TypeError)


class GatewayError(Exception):
    pass


class RecordNotFound(GatewayError):
    pass


@dataclass
class LineFailure:
    index: int
    product_id: Any
    error: str

    def to_dict(self):
        return {"index": self.index, "product_id": self.product_id, "error": self.error}


class OrderWriteError(GatewayError):
    def __init__(self, message: str, failures: List[LineFailure]):
        super().__init__(message)
        self.failures = failures


def row_from_instance(instance) -> Dict[str, Any]:
    return {f.attname: getattr(instance, f.attname) for f in instance._meta.concrete_fields}


class Subscription:
    """Change feed for one table, delivered after the writing transaction commits."""

    def __init__(self, table: str, model, callback: Callable[[Dict[str, Any]], None]):
        self.table = table
        self.model = model
        self.callback = callback
        self._uid = f"laborator-realtime:{table}:{id(self)}"
        self.active = False

    def open(self):
        post_save.connect(self._on_save, sender=self.model, weak=False, dispatch_uid=self._uid)
        post_delete.connect(self._on_delete, sender=self.model, weak=False, dispatch_uid=self._uid)
        self.active = True
        logger.debug(f"Subscribed to changes on {self.table}")

    def unsubscribe(self):
        post_save.disconnect(sender=self.model, dispatch_uid=self._uid)
        post_delete.disconnect(sender=self.model, dispatch_uid=self._uid)
        self.active = False
        logger.debug(f"Unsubscribed from changes on {self.table}")

    def _on_save(self, sender, instance, created, **kwargs):
        row = row_from_instance(instance)
        payload = {
            "eventType": "INSERT" if created else "UPDATE",
            "new": row,
            "old": {"id": instance.pk},
            "commit_timestamp": row.get('updated_at'),
        }
        transaction.on_commit(lambda: self._deliver(payload))

    def _on_delete(self, sender, instance, **kwargs):
        payload = {
            "eventType": "DELETE",
            "new": {},
            "old": row_from_instance(instance),
            "commit_timestamp": timezone.now(),
        }
        transaction.on_commit(lambda: self._deliver(payload))

    def _deliver(self, payload):
        if not self.active:
            return
        try:
            self.callback(payload)
        except Exception:
            logger.exception(f"Change handler for {self.table} failed on {payload['eventType']}")


class RemoteGateway:
    """Row-level access to the lab tables. Holds no state besides open subscriptions."""

    def _model(self, table: str):
        try:
            return TABLES[table]
        except KeyError:
            raise GatewayError(f"Unknown table: {table}")

    def _check_columns(self, model, columns: Iterable[str]):
        known = {f.attname for f in model._meta.concrete_fields}
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise GatewayError(f"Unknown column(s) for {model._meta.db_table}: {', '.join(unknown)}")

    def select(
        self,
        table: str,
        eq: Optional[Mapping[str, Any]] = None,
        gte: Optional[Mapping[str, Any]] = None,
        lte: Optional[Mapping[str, Any]] = None,
        in_: Optional[Mapping[str, Iterable[Any]]] = None,
        not_null: Iterable[str] = (),
        order_by: Iterable[str] = ('id',),
    ) -> List[Dict[str, Any]]:
        model = self._model(table)
        lookups = dict(eq or {})
        lookups.update({f"{column}__gte": value for column, value in (gte or {}).items()})
        lookups.update({f"{column}__lte": value for column, value in (lte or {}).items()})
        lookups.update({f"{column}__in": list(values) for column, values in (in_ or {}).items()})
        lookups.update({f"{column}__isnull": False for column in not_null})
        try:
            rows = list(model.objects.filter(**lookups).order_by(*order_by).values())
        except _WRITE_ERRORS as e:
            raise GatewayError(f"Select from {table} failed: {e}") from e
        logger.debug(f"Selected {len(rows)} row(s) from {table} with {lookups}")
        return rows

    def select_one(self, table: str, **eq) -> Dict[str, Any]:
        rows = self.select(table, eq=eq)
        if not rows:
            raise RecordNotFound(f"No row in {table} matching {eq}")
        return rows[0]

    def _insert(self, model, values: Mapping[str, Any], validate: bool = False) -> Dict[str, Any]:
        self._check_columns(model, values.keys())
        instance = model(**values)
        if validate:
            # References are left to the database; orders may point at deleted rows.
            instance.clean_fields(exclude=[f.name for f in model._meta.concrete_fields if f.is_relation])
        instance.save()
        return row_from_instance(instance)

    def insert(self, table: str, values: Mapping[str, Any]) -> Dict[str, Any]:
        model = self._model(table)
        try:
            with transaction.atomic():
                row = self._insert(model, values)
        except _WRITE_ERRORS as e:
            raise GatewayError(f"Insert into {table} failed: {e}") from e
        logger.debug(f"Inserted row {row['id']} into {table}")
        return row

    def update(self, table: str, values: Mapping[str, Any], **eq) -> int:
        model = self._model(table)
        self._check_columns(model, values.keys())
        try:
            with transaction.atomic():
                instances = list(model.objects.select_for_update().filter(**eq))
                for instance in instances:
                    for column, value in values.items():
                        setattr(instance, column, value)
                    instance.save()
        except _WRITE_ERRORS as e:
            raise GatewayError(f"Update of {table} failed: {e}") from e
        logger.debug(f"Updated {len(instances)} row(s) in {table} matching {eq}")
        return len(instances)

    def delete(self, table: str, **eq) -> int:
        model = self._model(table)
        try:
            with transaction.atomic():
                deleted, _ = model.objects.filter(**eq).delete()
        except _WRITE_ERRORS as e:
            raise GatewayError(f"Delete from {table} failed: {e}") from e
        logger.debug(f"Deleted {deleted} row(s) from {table} matching {eq}")
        return deleted

    def _insert_lines(self, order_id: int, lines: List[Mapping[str, Any]]):
        line_rows, failures = [], []
        for index, line in enumerate(lines):
            try:
                with transaction.atomic():
                    line_rows.append(self._insert(OrderLine, dict(line, order_id=order_id), validate=True))
            except _WRITE_ERRORS as e:
                logger.error(f"Order line {index} (product {line.get('product_id')}) failed: {e}")
                failures.append(LineFailure(index=index, product_id=line.get('product_id'), error=str(e)))
        if failures:
            raise OrderWriteError(f"{len(failures)} of {len(lines)} order line(s) could not be saved", failures)
        return line_rows

    def insert_order_with_lines(
        self, order_values: Mapping[str, Any], lines: List[Mapping[str, Any]]
    ) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        """Insert an order and its lines in one transaction.

        Every line is attempted in its own savepoint so all failures can be
        reported together; if any line fails the order is rolled back too and
        ``OrderWriteError`` lists the failed lines.
        """
        try:
            with transaction.atomic():
                order_row = self._insert(Order, order_values)
                line_rows = self._insert_lines(order_row['id'], lines)
        except OrderWriteError:
            raise
        except _WRITE_ERRORS as e:
            raise GatewayError(f"Insert into {ORDERS} failed: {e}") from e
        logger.info(f"Order {order_row['id']} inserted with {len(line_rows)} line(s)")
        return order_row, line_rows

    def update_order_with_lines(
        self, order_id: int, order_values: Mapping[str, Any], lines: List[Mapping[str, Any]]
    ) -> Tuple[int, List[Dict[str, Any]]]:
        """Update an order row and replace all of its lines in one transaction."""
        self._check_columns(Order, order_values.keys())
        try:
            with transaction.atomic():
                updated = 0
                for order in Order.objects.select_for_update().filter(id=order_id):
                    for column, value in order_values.items():
                        setattr(order, column, value)
                    order.save()
                    updated += 1
                if not updated:
                    return 0, []
                OrderLine.objects.filter(order_id=order_id).delete()
                line_rows = self._insert_lines(order_id, lines)
        except OrderWriteError:
            raise
        except _WRITE_ERRORS as e:
            raise GatewayError(f"Update of {ORDERS} failed: {e}") from e
        logger.info(f"Order {order_id} updated with {len(line_rows)} line(s)")
        return updated, line_rows

    def subscribe(self, table: str, callback: Callable[[Dict[str, Any]], None]) -> Subscription:
        subscription = Subscription(table, self._model(table), callback)
        subscription.open()
        return subscription
