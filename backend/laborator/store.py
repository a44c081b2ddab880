import copy
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from django.conf import settings
from django.utils import timezone

from .collation import sorted_by_name
from .entities import (
    Doctor, NewByName, Order, OrderLine, Patient, Product, Technician,
    as_line, as_ref, doctor_from_row, line_from_row, line_to_row, order_from_row,
    order_to_row, patient_from_row, product_from_row, technician_from_row, to_date, to_datetime,
)
from .gateway import (
    DOCTORS, ORDER_LINES, ORDERS, PATIENTS, PRODUCTS, TECHNICIANS,
    GatewayError, LineFailure, OrderWriteError, RemoteGateway,
)
from .models import OrderStatus
from .totals import compute_total, derive_status, to_decimal

logger = logging.getLogger('laborator')


@dataclass
class Notice:
    level: str  # 'success' | 'warning' | 'error'
    message: str


@dataclass
class Revision:
    number: int
    stamped_at: datetime


@dataclass
class OrderCreation:
    order: Order
    new_doctor: Optional[Doctor] = None
    new_patient: Optional[Patient] = None
    failed_lines: List[LineFailure] = field(default_factory=list)


class LabStore:
    """In-memory view of the lab's doctors, patients, products, technicians and orders.

    Every mutation is applied locally and, when a gateway is configured,
    persisted remotely. A failed remote write never blocks the local change;
    it is reported through ``notify`` instead. Change notifications from the
    gateway are folded back in by ``apply_change``.
    """

    def __init__(
        self,
        gateway: Optional[RemoteGateway] = None,
        clock: Optional[Callable[[], datetime]] = None,
        notify: Optional[Callable[[Notice], None]] = None,
        doctors: Iterable[Doctor] = (),
        patients: Iterable[Patient] = (),
        products: Iterable[Product] = (),
        technicians: Iterable[Technician] = (),
        orders: Iterable[Order] = (),
    ):
        self.gateway = gateway
        self.clock = clock or timezone.now
        self._notify_callback = notify
        self.notices: List[Notice] = []

        patients = list(patients)
        self._doctors: Dict[int, Doctor] = {}
        for doctor in doctors:
            self._doctors[doctor.id] = replace(doctor, patients=[])
            patients.extend(doctor.patients)
        self._patients: Dict[int, Patient] = {p.id: replace(p) for p in patients}
        self._products: Dict[int, Product] = {p.id: replace(p) for p in products}
        self._technicians: Dict[int, Technician] = {t.id: replace(t) for t in technicians}
        self._orders: Dict[int, Order] = {o.id: copy.deepcopy(o) for o in orders}

        self._revisions: Dict[tuple, Revision] = {}
        self._revision_counter = 0
        self._last_local_id = 0
        # ids that only exist in memory because their remote insert failed
        self._local_only = set()
        self._subscriptions = []

    def _notify(self, level: str, message: str):
        notice = Notice(level, message)
        self.notices.append(notice)
        if level == 'error':
            logger.error(message)
        elif level == 'warning':
            logger.warning(message)
        else:
            logger.info(message)
        if self._notify_callback is not None:
            self._notify_callback(notice)
        return notice

    def _next_local_id(self, existing: Mapping[int, Any]) -> int:
        candidate = max(int(self.clock().timestamp() * 1000), self._last_local_id + 1)
        while candidate in existing:
            candidate += 1
        self._last_local_id = candidate
        return candidate

    def _touch(self, table: str, entity_id: int) -> Revision:
        self._revision_counter += 1
        revision = Revision(self._revision_counter, self.clock())
        self._revisions[(table, entity_id)] = revision
        return revision

    def revision(self, table: str, entity_id: int) -> Optional[Revision]:
        return self._revisions.get((table, entity_id))

    def _is_stale(self, table: str, entity_id: Any, commit_timestamp: Any) -> bool:
        revision = self._revisions.get((table, entity_id))
        if revision is None or not commit_timestamp:
            return False
        committed = to_datetime(commit_timestamp)
        stamped = revision.stamped_at
        if timezone.is_naive(committed) and timezone.is_aware(stamped):
            committed = timezone.make_aware(committed, dt_timezone.utc)
        elif timezone.is_aware(committed) and timezone.is_naive(stamped):
            stamped = timezone.make_aware(stamped, dt_timezone.utc)
        return committed < stamped

    def _remote(self, table: str, entity_id: Any, *refs) -> bool:
        """True when a write for this entity should go to the gateway."""
        if self.gateway is None:
            return False
        if (table, entity_id) in self._local_only:
            return False
        return not any(ref in self._local_only for ref in refs)

    def _insert_or_local(self, table: str, values: Dict[str, Any], existing: Mapping[int, Any], label: str, *refs):
        """Insert ``values`` remotely; fall back to a local id. Returns (row, remote_ok)."""
        if self.gateway is not None and not any(ref in self._local_only for ref in refs):
            try:
                return self.gateway.insert(table, values), True
            except GatewayError as e:
                self._notify('error', f"Could not save {label} remotely, kept locally: {e}")
        elif self.gateway is not None:
            self._notify('warning', f"{label.capitalize()} kept locally because it depends on unsaved data")
        row = dict(values, id=self._next_local_id(existing))
        self._local_only.add((table, row['id']))
        return row, False

    def _check_refs(self, order: Order) -> bool:
        order.invalid = order.doctor_id not in self._doctors or order.patient_id not in self._patients
        if order.invalid:
            logger.warning(
                f"Order {order.id} references missing doctor {order.doctor_id} or patient {order.patient_id}"
            )
        return order.invalid

    def _missing_order(self, order_id: Any, action: str):
        logger.warning(f"Cannot {action}: order {order_id} not found")
        self._notify('error', f"Order {order_id} not found")
        return None

    def _price_of(self, product_id: Any) -> Optional[Decimal]:
        product = self._products.get(product_id)
        return product.price if product is not None else None

    @property
    def doctors(self) -> List[Doctor]:
        result = []
        for doctor in sorted_by_name(self._doctors.values()):
            patients = [replace(p) for p in self._patients.values() if p.doctor_id == doctor.id]
            result.append(replace(doctor, patients=sorted_by_name(patients)))
        return result

    @property
    def patients(self) -> List[Patient]:
        return [replace(p) for p in sorted_by_name(self._patients.values())]

    @property
    def products(self) -> List[Product]:
        return [replace(p) for p in sorted_by_name(self._products.values())]

    @property
    def technicians(self) -> List[Technician]:
        return [replace(t) for t in sorted_by_name(self._technicians.values())]

    @property
    def orders(self) -> List[Order]:
        return [copy.deepcopy(o) for o in self._orders.values()]

    def get_order(self, order_id: int) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order is not None else None

    def get_doctor(self, doctor_id: int) -> Optional[Doctor]:
        return next((d for d in self.doctors if d.id == doctor_id), None)

    def find_doctor_by_name(self, name: str) -> Optional[Doctor]:
        wanted = (name or '').strip().casefold()
        if not wanted:
            return None
        for doctor in self.doctors:
            if doctor.name.strip().casefold() == wanted:
                return doctor
        return None

    def find_patient_by_name(self, name: str, doctor_id: Optional[int] = None) -> Optional[Patient]:
        wanted = (name or '').strip().casefold()
        if not wanted:
            return None
        for patient in self.patients:
            if doctor_id is not None and patient.doctor_id != doctor_id:
                continue
            if patient.name.strip().casefold() == wanted:
                return patient
        return None

    def load(self) -> bool:
        """Replace the in-memory collections with the remote tables.

        Tables that come back empty keep whatever seed data the store was
        built with. Returns False (and keeps the current data) on failure.
        """
        if self.gateway is None:
            return False
        try:
            doctor_rows = self.gateway.select(DOCTORS)
            patient_rows = self.gateway.select(PATIENTS)
            product_rows = self.gateway.select(PRODUCTS)
            technician_rows = self.gateway.select(TECHNICIANS)
            order_rows = self.gateway.select(ORDERS)
            line_rows = self.gateway.select(ORDER_LINES)
        except GatewayError as e:
            self._notify('error', f"Could not load data, using local data: {e}")
            return False

        now = self.clock()
        lines_by_order: Dict[int, List[OrderLine]] = {}
        for row in line_rows:
            lines_by_order.setdefault(row['order_id'], []).append(line_from_row(row))

        if doctor_rows:
            self._doctors = {d.id: d for d in map(doctor_from_row, doctor_rows)}
        if patient_rows:
            self._patients = {p.id: p for p in map(patient_from_row, patient_rows)}
        if product_rows:
            self._products = {p.id: p for p in map(product_from_row, product_rows)}
        if technician_rows:
            self._technicians = {t.id: t for t in map(technician_from_row, technician_rows)}
        if order_rows:
            self._orders = {}
            for row in order_rows:
                order = order_from_row(row, lines_by_order.get(row['id']), now)
                self._check_refs(order)
                self._orders[order.id] = order
        logger.info(
            f"Loaded {len(self._doctors)} doctors, {len(self._patients)} patients, "
            f"{len(self._products)} products, {len(self._technicians)} technicians, {len(self._orders)} orders"
        )
        return True

    def start_realtime(self):
        if self.gateway is None or self._subscriptions:
            return
        for table in (DOCTORS, PATIENTS, PRODUCTS, TECHNICIANS, ORDERS, ORDER_LINES):
            self._subscriptions.append(
                self.gateway.subscribe(table, lambda payload, table=table: self.apply_change(table, payload))
            )
        logger.info(f"Realtime sync started on {len(self._subscriptions)} tables")

    def stop_realtime(self):
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def add_doctor(self, name: str, email: str = '', phone: str = '') -> Doctor:
        name = (name or '').strip()
        if not name:
            raise ValueError("Doctor name is required")
        row, ok = self._insert_or_local(
            DOCTORS, {'name': name, 'email': email or '', 'phone': phone or ''}, self._doctors, 'doctor'
        )
        doctor = doctor_from_row(row)
        self._doctors[doctor.id] = doctor
        self._touch(DOCTORS, doctor.id)
        if ok:
            self._notify('success', f"Doctor {doctor.name} added")
        return replace(doctor)

    def update_doctor(self, doctor: Doctor) -> Optional[Doctor]:
        if doctor.id not in self._doctors:
            logger.warning(f"Cannot update: doctor {doctor.id} not found")
            self._notify('error', f"Doctor {doctor.id} not found")
            return None
        updated = replace(doctor, patients=[])
        if self._remote(DOCTORS, doctor.id):
            try:
                self.gateway.update(DOCTORS, {'name': doctor.name, 'email': doctor.email, 'phone': doctor.phone}, id=doctor.id)
            except GatewayError as e:
                self._notify('warning', f"Doctor {doctor.name} updated locally only: {e}")
        self._doctors[doctor.id] = updated
        self._touch(DOCTORS, doctor.id)
        return replace(updated)

    def delete_doctor(self, doctor_id: int) -> bool:
        """Remove a doctor and their patients. Orders are kept and become invalid when next touched."""
        existed = doctor_id in self._doctors
        if self._remote(DOCTORS, doctor_id):
            try:
                self.gateway.delete(PATIENTS, doctor_id=doctor_id)
                self.gateway.delete(DOCTORS, id=doctor_id)
            except GatewayError as e:
                self._notify('warning', f"Doctor {doctor_id} deleted locally only: {e}")
        self._doctors.pop(doctor_id, None)
        for patient_id in [p.id for p in self._patients.values() if p.doctor_id == doctor_id]:
            del self._patients[patient_id]
            self._touch(PATIENTS, patient_id)
        self._touch(DOCTORS, doctor_id)
        return existed

    def add_patient(self, name: str, doctor_id: int) -> Patient:
        name = (name or '').strip()
        if not name:
            raise ValueError("Patient name is required")
        row, _ = self._insert_or_local(
            PATIENTS, {'name': name, 'doctor_id': doctor_id}, self._patients, 'patient', (DOCTORS, doctor_id)
        )
        patient = patient_from_row(row)
        self._patients[patient.id] = patient
        self._touch(PATIENTS, patient.id)
        return replace(patient)

    def delete_patient(self, patient_id: int) -> bool:
        existed = patient_id in self._patients
        if self._remote(PATIENTS, patient_id):
            try:
                self.gateway.delete(PATIENTS, id=patient_id)
            except GatewayError as e:
                self._notify('warning', f"Patient {patient_id} deleted locally only: {e}")
        self._patients.pop(patient_id, None)
        self._touch(PATIENTS, patient_id)
        return existed

    def add_product(self, name: str, price: Any) -> Product:
        name = (name or '').strip()
        price = to_decimal(price)
        if not name:
            raise ValueError("Product name is required")
        if price < 0:
            raise ValueError("Product price cannot be negative")
        row, ok = self._insert_or_local(PRODUCTS, {'name': name, 'price': price}, self._products, 'product')
        product = product_from_row(row)
        self._products[product.id] = product
        self._touch(PRODUCTS, product.id)
        if ok:
            self._notify('success', f"Product {product.name} added")
        return replace(product)

    def update_product(self, product: Product) -> Optional[Product]:
        if product.id not in self._products:
            logger.warning(f"Cannot update: product {product.id} not found")
            self._notify('error', f"Product {product.id} not found")
            return None
        updated = replace(product, price=to_decimal(product.price))
        if updated.price < 0:
            raise ValueError("Product price cannot be negative")
        if self._remote(PRODUCTS, product.id):
            try:
                self.gateway.update(PRODUCTS, {'name': updated.name, 'price': updated.price}, id=product.id)
            except GatewayError as e:
                self._notify('warning', f"Product {updated.name} updated locally only: {e}")
        # Stored order totals are snapshots and keep the old price.
        self._products[product.id] = updated
        self._touch(PRODUCTS, product.id)
        return replace(updated)

    def delete_product(self, product_id: int) -> bool:
        existed = product_id in self._products
        if self._remote(PRODUCTS, product_id):
            try:
                self.gateway.delete(PRODUCTS, id=product_id)
            except GatewayError as e:
                self._notify('warning', f"Product {product_id} deleted locally only: {e}")
        self._products.pop(product_id, None)
        self._touch(PRODUCTS, product_id)
        return existed

    def add_technician(self, name: str) -> Technician:
        name = (name or '').strip()
        if not name:
            raise ValueError("Technician name is required")
        row, ok = self._insert_or_local(TECHNICIANS, {'name': name}, self._technicians, 'technician')
        technician = technician_from_row(row)
        self._technicians[technician.id] = technician
        self._touch(TECHNICIANS, technician.id)
        if ok:
            self._notify('success', f"Technician {technician.name} added")
        return replace(technician)

    def delete_technician(self, technician_id: int) -> bool:
        existed = technician_id in self._technicians
        if self._remote(TECHNICIANS, technician_id):
            try:
                self.gateway.delete(TECHNICIANS, id=technician_id)
            except GatewayError as e:
                self._notify('warning', f"Technician {technician_id} deleted locally only: {e}")
        self._technicians.pop(technician_id, None)
        self._touch(TECHNICIANS, technician_id)
        return existed

    def add_order(
        self,
        doctor: Any,
        patient: Any,
        lines: Iterable[Any],
        start_date=None,
        deadline=None,
        discount: Any = 0,
    ) -> OrderCreation:
        """Create an order, creating its doctor and patient first when given by name.

        ``doctor`` and ``patient`` are ``ExistingRef``/``NewByName`` values (a
        plain int or str is accepted too). A name matching an existing doctor,
        or an existing patient of the resolved doctor, reuses that record.
        """
        doctor_ref, patient_ref = as_ref(doctor), as_ref(patient)
        lines = [as_line(line) for line in lines]
        discount = to_decimal(discount)
        if discount < 0:
            raise ValueError("Discount cannot be negative")
        start_date, deadline = to_date(start_date), to_date(deadline)

        new_doctor = new_patient = None
        if isinstance(doctor_ref, NewByName):
            existing = self.find_doctor_by_name(doctor_ref.name)
            if existing is not None:
                doctor_id = existing.id
            else:
                new_doctor = self.add_doctor(doctor_ref.name)
                doctor_id = new_doctor.id
        else:
            doctor_id = doctor_ref.id

        if isinstance(patient_ref, NewByName):
            existing = None if new_doctor is not None else self.find_patient_by_name(patient_ref.name, doctor_id)
            if existing is not None:
                patient_id = existing.id
            else:
                new_patient = self.add_patient(patient_ref.name, doctor_id)
                patient_id = new_patient.id
        else:
            patient_id = patient_ref.id

        now = self.clock()
        order = Order(
            id=0,
            doctor_id=doctor_id,
            patient_id=patient_id,
            lines=lines,
            start_date=start_date,
            deadline=deadline,
            discount=discount,
            total=compute_total(lines, discount, self._price_of),
            status=derive_status(deadline, now),
        )

        failed_lines: List[LineFailure] = []
        saved = False
        if self._remote(ORDERS, None, (DOCTORS, doctor_id), (PATIENTS, patient_id)):
            try:
                order_row, line_rows = self.gateway.insert_order_with_lines(
                    order_to_row(order), [line_to_row(None, line) for line in lines]
                )
                order = order_from_row(order_row, [line_from_row(r) for r in line_rows], now)
                saved = True
            except OrderWriteError as e:
                failed_lines = e.failures
                self._notify(
                    'warning',
                    f"Order kept locally: {len(failed_lines)} of {len(lines)} product line(s) could not be saved",
                )
            except GatewayError as e:
                self._notify('error', f"Could not save order remotely, kept locally: {e}")
        elif self.gateway is not None:
            self._notify('warning', "Order kept locally because its doctor or patient is not saved")

        if not saved:
            order.id = self._next_local_id(self._orders)
            if self.gateway is not None:
                self._local_only.add((ORDERS, order.id))
        else:
            self._notify('success', f"Order {order.id} saved")

        self._check_refs(order)
        self._orders[order.id] = order
        self._touch(ORDERS, order.id)
        return OrderCreation(
            order=copy.deepcopy(order), new_doctor=new_doctor, new_patient=new_patient, failed_lines=failed_lines
        )

    def update_order(self, order: Order) -> Optional[Order]:
        """Save an edited order. The total is recomputed from current product prices."""
        if order.id not in self._orders:
            return self._missing_order(order.id, 'update')
        updated = copy.deepcopy(order)
        updated.lines = [as_line(line) for line in updated.lines]
        updated.discount = to_decimal(updated.discount)
        updated.total = compute_total(updated.lines, updated.discount, self._price_of)
        self._check_refs(updated)

        refs = ((DOCTORS, updated.doctor_id), (PATIENTS, updated.patient_id))
        if self._remote(ORDERS, updated.id, *refs):
            try:
                count, line_rows = self.gateway.update_order_with_lines(
                    updated.id, order_to_row(updated), [line_to_row(updated.id, line) for line in updated.lines]
                )
                if count:
                    updated.lines = [line_from_row(r) for r in line_rows]
                else:
                    logger.warning(f"Order {updated.id} no longer exists remotely")
            except OrderWriteError as e:
                self._notify(
                    'warning',
                    f"Order {updated.id} updated locally only: {len(e.failures)} product line(s) could not be saved",
                )
            except GatewayError as e:
                self._notify('warning', f"Order {updated.id} updated locally only: {e}")
        elif self.gateway is not None and any(ref in self._local_only for ref in refs):
            self._notify('warning', f"Order {updated.id} updated locally only because its doctor or patient is not saved")

        self._orders[updated.id] = updated
        self._touch(ORDERS, updated.id)
        return copy.deepcopy(updated)

    def _patch_order(self, order_id: int, action: str, **changes) -> Optional[Order]:
        current = self._orders.get(order_id)
        if current is None:
            return self._missing_order(order_id, action)
        if self._remote(ORDERS, order_id):
            try:
                self.gateway.update(ORDERS, changes, id=order_id)
            except GatewayError as e:
                self._notify('warning', f"Could not {action} order {order_id} remotely: {e}")
        # The write's own notification may already have replaced the stored order.
        current = self._orders.setdefault(order_id, current)
        for column, value in changes.items():
            setattr(current, column, value)
        self._touch(ORDERS, order_id)
        return copy.deepcopy(current)

    def update_order_technician(self, order_id: int, technician: Optional[str]) -> Optional[Order]:
        return self._patch_order(order_id, 'reassign', technician=(technician or '').strip() or None)

    def finalize_order(self, order_id: int, technician: Optional[str]) -> Optional[Order]:
        order = self._patch_order(
            order_id,
            'finalize',
            status=OrderStatus.FINALIZED,
            finalized_at=self.clock(),
            technician=(technician or '').strip() or None,
        )
        if order is not None:
            self._notify('success', f"Order {order_id} finalized")
        return order

    def reopen_order(self, order_id: int) -> Optional[Order]:
        current = self._orders.get(order_id)
        if current is None:
            return self._missing_order(order_id, 'reopen')
        return self._patch_order(
            order_id,
            'reopen',
            status=derive_status(current.deadline, self.clock()),
            finalized_at=None,
            technician=None,
        )

    def delete_order(self, order_id: int) -> bool:
        if order_id not in self._orders:
            self._missing_order(order_id, 'delete')
            return False
        if self._remote(ORDERS, order_id):
            try:
                self.gateway.delete(ORDERS, id=order_id)
            except GatewayError as e:
                self._notify('warning', f"Order {order_id} deleted locally only: {e}")
        self._orders.pop(order_id, None)
        self._touch(ORDERS, order_id)
        return True

    def apply_change(self, table: str, payload: Mapping[str, Any]) -> bool:
        """Fold one change notification into memory. Returns True when it changed anything."""
        handler = getattr(self, f"_apply_{table}", None)
        if handler is None:
            logger.warning(f"Ignoring change on unknown table {table}")
            return False
        event = payload.get('eventType')
        new = payload.get('new') or {}
        old = payload.get('old') or {}
        try:
            return handler(event, new, old, payload.get('commit_timestamp'))
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Could not apply {event} on {table}: {e}")
            return False

    def _apply_simple(self, table, collection, from_row, event, new, old, committed):
        entity_id = (new or old).get('id')
        if self._is_stale(table, entity_id, committed):
            logger.debug(f"Discarding stale {event} on {table} {entity_id}")
            return False
        if event == 'INSERT':
            if entity_id in collection:
                return False
            collection[entity_id] = from_row(new)
            return True
        if event == 'UPDATE':
            if entity_id not in collection:
                return False
            collection[entity_id] = from_row(new)
            return True
        if event == 'DELETE':
            return collection.pop(entity_id, None) is not None
        return False

    def _apply_doctors(self, event, new, old, committed):
        changed = self._apply_simple(DOCTORS, self._doctors, doctor_from_row, event, new, old, committed)
        if changed and event == 'DELETE':
            doctor_id = old['id']
            self._patients = {pid: p for pid, p in self._patients.items() if p.doctor_id != doctor_id}
        if changed and event == 'INSERT':
            self._revalidate_orders()
        return changed

    def _apply_patients(self, event, new, old, committed):
        changed = self._apply_simple(PATIENTS, self._patients, patient_from_row, event, new, old, committed)
        if changed and event == 'INSERT':
            self._revalidate_orders()
        return changed

    def _apply_products(self, event, new, old, committed):
        return self._apply_simple(PRODUCTS, self._products, product_from_row, event, new, old, committed)

    def _apply_technicians(self, event, new, old, committed):
        return self._apply_simple(TECHNICIANS, self._technicians, technician_from_row, event, new, old, committed)

    def _apply_orders(self, event, new, old, committed):
        order_id = (new or old).get('id')
        if self._is_stale(ORDERS, order_id, committed):
            logger.debug(f"Discarding stale {event} on orders {order_id}")
            return False
        if event == 'DELETE':
            return self._orders.pop(order_id, None) is not None
        current = self._orders.get(order_id)
        if event == 'INSERT':
            if current is not None:
                return False
            order = order_from_row(new, [], self.clock())
        elif event == 'UPDATE':
            if current is None:
                return False
            row = dict(new)
            row.setdefault('status', current.status)
            row.setdefault('technician', current.technician)
            order = order_from_row(row, current.lines, self.clock())
        else:
            return False
        self._check_refs(order)
        self._orders[order_id] = order
        return True

    def _apply_order_lines(self, event, new, old, committed):
        row = new if event != 'DELETE' else old
        order_id = row.get('order_id')
        line_id = row.get('id')
        if order_id is None:
            order_id = next((o.id for o in self._orders.values() if any(l.id == line_id for l in o.lines)), None)
        order = self._orders.get(order_id)
        if order is None:
            return False
        if self._is_stale(ORDERS, order_id, committed):
            logger.debug(f"Discarding stale {event} on order_lines {line_id}")
            return False
        index = next((i for i, l in enumerate(order.lines) if l.id is not None and l.id == line_id), None)
        if event == 'INSERT':
            if index is not None:
                return False
            order.lines.append(line_from_row(new))
            return True
        if event == 'UPDATE':
            if index is None:
                return False
            order.lines[index] = line_from_row(new)
            return True
        if event == 'DELETE':
            if index is None:
                return False
            del order.lines[index]
            return True
        return False

    def _revalidate_orders(self):
        for order in self._orders.values():
            if order.invalid and order.doctor_id in self._doctors and order.patient_id in self._patients:
                order.invalid = False
                logger.info(f"Order {order.id} references resolved, no longer invalid")


def build_store(notify: Optional[Callable[[Notice], None]] = None) -> LabStore:
    """Build a store from settings, loading remote data and starting realtime sync when enabled."""
    gateway = RemoteGateway() if settings.LAB_REMOTE_ENABLED else None
    store = LabStore(gateway=gateway, notify=notify)
    if gateway is not None:
        store.load()
        if settings.LAB_REALTIME_ENABLED:
            store.start_realtime()
    return store
