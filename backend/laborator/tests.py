from django.core.exceptions import ValidationError
from django.test import TestCase, TransactionTestCase, Client, override_settings
from django.utils import timezone
from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import BytesIO
from unittest import mock
import json
import zipfile
from openpyxl import load_workbook
from . import entities
from .collation import sorted_by_name
from .entities import ExistingRef, NewByName, as_ref, order_to_row
from .export import (
    DoctorNotFound, OrderNotFound, export_doctor_matrix, export_lab_archive, export_order_sheet,
    get_grouped_rows_for_doctor, parse_range_bound,
)
from .gateway import ORDERS, TECHNICIANS, GatewayError, OrderWriteError, RecordNotFound, RemoteGateway
from .models import Doctor, Order, OrderLine, OrderStatus, Patient, Product, Technician
from .spreadsheet import (
    MatrixRow, PatientGroup, ProductLine,
    archive_workbooks, build_doctor_matrix_workbook, build_lab_sheet_workbook, build_order_workbook, workbook_bytes,
)
from .stats import monthly_revenue, revenue_for_month, status_breakdown, status_counts, technician_orders, technician_summary
from .store import LabStore
from .totals import compute_total, derive_status, is_overdue


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=dt_timezone.utc)


def reopen(content):
    return load_workbook(BytesIO(content))


class TotalsTest(TestCase):
    def test_total_with_discount(self):
        prices = {1: Decimal('100'), 2: Decimal('50')}
        self.assertEqual(compute_total([(1, 2), (2, 1)], 20, prices), Decimal('230.00'))

    def test_total_is_not_clamped(self):
        self.assertEqual(compute_total([(1, 1)], 150, {1: Decimal('100')}), Decimal('-50.00'))

    def test_empty_quantity_counts_as_zero(self):
        self.assertEqual(compute_total([(1, ''), (2, 3)], 0, {1: 100, 2: 10}), Decimal('30.00'))

    def test_unknown_product_contributes_nothing(self):
        self.assertEqual(compute_total([(1, 2), (99, 5)], 0, lambda product_id: {1: 10}.get(product_id)), Decimal('20.00'))

    def test_accepts_order_lines(self):
        lines = [entities.OrderLine(product_id=1, quantity=3)]
        self.assertEqual(compute_total(lines, '5', {1: '2.50'}), Decimal('2.50'))

    def test_status_from_deadline(self):
        self.assertEqual(derive_status(date(2025, 3, 9), NOW), OrderStatus.DELAYED)
        self.assertEqual(derive_status(date(2025, 3, 11), NOW), OrderStatus.IN_PROGRESS)
        self.assertEqual(derive_status(None, NOW), OrderStatus.IN_PROGRESS)

    def test_is_overdue(self):
        self.assertTrue(is_overdue(date(2025, 1, 1), NOW))
        self.assertFalse(is_overdue(date(2026, 1, 1), NOW))


class CollationTest(TestCase):
    def test_romanian_letters_follow_their_base_letter(self):
        names = ["Zoe", "Țurcanu", "Sorin", "Ăla", "Ștefan", "Bogdan", "Andrei", "Ana"]
        ordered = sorted_by_name(names, name=lambda n: n)
        self.assertEqual(ordered, ["Ana", "Andrei", "Ăla", "Bogdan", "Sorin", "Ștefan", "Țurcanu", "Zoe"])

    def test_case_insensitive(self):
        self.assertEqual(sorted_by_name(["beta", "Alfa"], name=lambda n: n), ["Alfa", "beta"])


class EntityRefTest(TestCase):
    def test_plain_values_become_refs(self):
        self.assertEqual(as_ref(5), ExistingRef(5))
        self.assertEqual(as_ref("  Dr Pop "), NewByName("Dr Pop"))
        self.assertEqual(as_ref(ExistingRef(3)), ExistingRef(3))

    def test_bool_is_rejected(self):
        with self.assertRaises(TypeError):
            as_ref(True)


class LocalStoreTest(TestCase):
    def setUp(self):
        self.received = []
        self.store = LabStore(
            clock=lambda: NOW,
            notify=self.received.append,
            doctors=[entities.Doctor(1, "Dr Pop"), entities.Doctor(2, "Dr Radu")],
            patients=[entities.Patient(10, "Ion", 1)],
            products=[entities.Product(100, "Coroana", Decimal('100')), entities.Product(101, "Punte", Decimal('50'))],
        )

    def add_order(self, deadline=date(2025, 3, 20)):
        return self.store.add_order(ExistingRef(1), ExistingRef(10), [(100, 2), (101, 1)], deadline=deadline, discount=20)

    def test_add_order_computes_total_and_status(self):
        creation = self.add_order()
        self.assertEqual(creation.order.total, Decimal('230.00'))
        self.assertEqual(creation.order.status, OrderStatus.IN_PROGRESS)
        self.assertFalse(creation.order.invalid)
        self.assertIsNone(creation.new_doctor)
        self.assertEqual(len(self.store.orders), 1)

    def test_add_order_past_deadline_is_delayed(self):
        creation = self.add_order(deadline=date(2025, 3, 1))
        self.assertEqual(creation.order.status, OrderStatus.DELAYED)

    def test_add_order_creates_doctor_and_patient_by_name(self):
        creation = self.store.add_order("Dr Ionescu", "Maria", [(100, 1)])
        self.assertEqual(creation.new_doctor.name, "Dr Ionescu")
        self.assertEqual(creation.new_patient.doctor_id, creation.new_doctor.id)
        self.assertEqual(creation.order.doctor_id, creation.new_doctor.id)
        self.assertEqual(creation.order.patient_id, creation.new_patient.id)
        doctor = self.store.find_doctor_by_name("dr ionescu")
        self.assertEqual([p.name for p in doctor.patients], ["Maria"])

    def test_add_order_reuses_names_case_insensitively(self):
        creation = self.store.add_order(" dr pop ", "ION", [(100, 1)])
        self.assertIsNone(creation.new_doctor)
        self.assertIsNone(creation.new_patient)
        self.assertEqual((creation.order.doctor_id, creation.order.patient_id), (1, 10))

    def test_patient_names_are_matched_within_the_doctor(self):
        creation = self.store.add_order(ExistingRef(2), NewByName("Ion"), [(100, 1)])
        self.assertIsNotNone(creation.new_patient)
        self.assertNotEqual(creation.order.patient_id, 10)
        self.assertEqual(creation.new_patient.doctor_id, 2)

    def test_local_ids_are_unique(self):
        first = self.store.add_technician("Ana")
        second = self.store.add_technician("Mihai")
        self.assertNotEqual(first.id, second.id)

    def test_add_and_delete_patient(self):
        patient = self.store.add_patient(" Elena ", 2)
        self.assertEqual(patient.name, "Elena")
        self.assertEqual([p.name for p in self.store.get_doctor(2).patients], ["Elena"])
        self.assertTrue(self.store.delete_patient(patient.id))
        self.assertFalse(self.store.delete_patient(patient.id))
        self.assertEqual(self.store.get_doctor(2).patients, [])

    def test_duplicate_insert_notification_is_idempotent(self):
        payload = {"eventType": "INSERT", "new": {"id": 5, "name": "Dr Nou"}, "old": {}}
        self.assertTrue(self.store.apply_change('doctors', payload))
        self.assertFalse(self.store.apply_change('doctors', payload))
        self.assertEqual([d.id for d in self.store.doctors if d.name == "Dr Nou"], [5])

    def test_doctor_delete_keeps_orders_until_touched(self):
        order = self.add_order().order
        self.store.delete_doctor(1)
        self.assertIsNone(self.store.find_doctor_by_name("Dr Pop"))
        self.assertEqual(self.store.patients, [])
        self.assertFalse(self.store.get_order(order.id).invalid)

        row = dict(order_to_row(order), id=order.id)
        changed = self.store.apply_change('orders', {
            "eventType": "UPDATE", "new": row, "old": {"id": order.id},
            "commit_timestamp": NOW + timedelta(minutes=1),
        })
        self.assertTrue(changed)
        self.assertTrue(self.store.get_order(order.id).invalid)

    def test_late_references_clear_invalid_flag(self):
        order = self.add_order().order
        self.store.delete_doctor(1)
        row = dict(order_to_row(order), id=order.id)
        later = NOW + timedelta(minutes=1)
        self.store.apply_change('orders', {"eventType": "UPDATE", "new": row, "commit_timestamp": later})

        self.store.apply_change('doctors', {"eventType": "INSERT", "new": {"id": 1, "name": "Dr Pop"}, "commit_timestamp": later})
        self.assertTrue(self.store.get_order(order.id).invalid)
        self.store.apply_change('patients', {
            "eventType": "INSERT", "new": {"id": 10, "name": "Ion", "doctor_id": 1}, "commit_timestamp": later,
        })
        self.assertFalse(self.store.get_order(order.id).invalid)

    def test_reopen_restores_time_based_status(self):
        late = self.add_order(deadline=date(2025, 3, 1)).order
        finalized = self.store.finalize_order(late.id, "Vasile")
        self.assertEqual(finalized.status, OrderStatus.FINALIZED)
        self.assertEqual(finalized.finalized_at, NOW)
        self.assertEqual(finalized.technician, "Vasile")

        reopened = self.store.reopen_order(late.id)
        self.assertEqual(reopened.status, OrderStatus.DELAYED)
        self.assertIsNone(reopened.finalized_at)
        self.assertIsNone(reopened.technician)

        on_time = self.add_order(deadline=date(2025, 4, 1)).order
        self.store.finalize_order(on_time.id, "Vasile")
        self.assertEqual(self.store.reopen_order(on_time.id).status, OrderStatus.IN_PROGRESS)

    def test_technician_can_be_reassigned_after_finalize(self):
        order = self.add_order().order
        self.store.finalize_order(order.id, "Vasile")
        updated = self.store.update_order_technician(order.id, "Ana")
        self.assertEqual(updated.technician, "Ana")
        self.assertEqual(updated.status, OrderStatus.FINALIZED)

    def test_stale_notification_is_discarded(self):
        order = self.add_order().order
        row = dict(order_to_row(order), id=order.id, total=Decimal('999'))
        stale = {"eventType": "UPDATE", "new": row, "commit_timestamp": NOW - timedelta(minutes=1)}
        self.assertFalse(self.store.apply_change('orders', stale))
        self.assertEqual(self.store.get_order(order.id).total, Decimal('230.00'))

        fresh = dict(stale, commit_timestamp=None)
        self.assertTrue(self.store.apply_change('orders', fresh))
        self.assertEqual(self.store.get_order(order.id).total, Decimal('999'))

    def test_order_update_keeps_status_when_payload_omits_it(self):
        order = self.store.finalize_order(self.add_order().order.id, "Vasile")
        row = dict(order_to_row(order), id=order.id)
        del row['status']
        del row['technician']
        self.store.apply_change('orders', {"eventType": "UPDATE", "new": row})
        self.assertEqual(self.store.get_order(order.id).status, OrderStatus.FINALIZED)
        self.assertEqual(self.store.get_order(order.id).technician, "Vasile")

    def test_line_notifications(self):
        order = self.add_order().order
        later = NOW + timedelta(minutes=1)
        line = {"id": 7, "order_id": order.id, "product_id": 101, "quantity": 3}
        self.assertTrue(self.store.apply_change('order_lines', {"eventType": "INSERT", "new": line, "commit_timestamp": later}))
        self.assertFalse(self.store.apply_change('order_lines', {"eventType": "INSERT", "new": line, "commit_timestamp": later}))
        self.assertEqual(len(self.store.get_order(order.id).lines), 3)

        self.store.apply_change('order_lines', {"eventType": "UPDATE", "new": dict(line, quantity=4), "commit_timestamp": later})
        self.assertEqual(self.store.get_order(order.id).lines[-1].quantity, 4)

        self.store.apply_change('order_lines', {"eventType": "DELETE", "old": {"id": 7}, "commit_timestamp": later})
        self.assertEqual(len(self.store.get_order(order.id).lines), 2)

    def test_malformed_notification_is_ignored(self):
        with self.assertLogs('laborator', level='ERROR'):
            self.assertFalse(self.store.apply_change('orders', {"eventType": "INSERT", "new": {"id": "abc"}}))

    def test_price_change_does_not_rewrite_totals_until_order_is_saved(self):
        order = self.add_order().order
        self.store.update_product(entities.Product(100, "Coroana", Decimal('120')))
        self.assertEqual(self.store.get_order(order.id).total, Decimal('230.00'))
        self.assertEqual(self.store.update_order(self.store.get_order(order.id)).total, Decimal('270.00'))

    def test_missing_order_posts_error_notice(self):
        self.assertIsNone(self.store.finalize_order(12345, "Vasile"))
        self.assertEqual(self.received[-1].level, 'error')
        self.assertFalse(self.store.delete_order(12345))

    def test_delete_order(self):
        order = self.add_order().order
        self.assertTrue(self.store.delete_order(order.id))
        self.assertEqual(self.store.orders, [])

    def test_update_for_unknown_order_is_ignored(self):
        row = {"id": 77, "doctor_id": 1, "patient_id": 10, "total": "10"}
        self.assertFalse(self.store.apply_change('orders', {"eventType": "UPDATE", "new": row, "commit_timestamp": NOW}))
        self.assertIsNone(self.store.get_order(77))

    def test_deleted_order_is_not_revived_by_update(self):
        order = self.add_order().order
        self.store.delete_order(order.id)
        row = dict(order_to_row(order), id=order.id)
        later = NOW + timedelta(minutes=1)
        self.assertFalse(self.store.apply_change('orders', {"eventType": "UPDATE", "new": row, "commit_timestamp": later}))
        self.assertEqual(self.store.orders, [])

    def test_collections_are_sorted(self):
        self.store.add_doctor("Dr Ăla")
        self.store.add_doctor("Dr Andrei")
        self.assertEqual([d.name for d in self.store.doctors], ["Dr Andrei", "Dr Ăla", "Dr Pop", "Dr Radu"])

    def test_negative_discount_is_rejected(self):
        with self.assertRaises(ValueError):
            self.store.add_order(1, 10, [(100, 1)], discount=-1)


class FailingGateway(RemoteGateway):
    def insert(self, table, values):
        raise GatewayError("connection refused")


class RemoteStoreTest(TestCase):
    def setUp(self):
        self.doctor = Doctor.objects.create(name="Dr Pop")
        self.patient = Patient.objects.create(name="Ion", doctor=self.doctor)
        self.crown = Product.objects.create(name="Coroana", price=Decimal('100'))
        self.bridge = Product.objects.create(name="Punte", price=Decimal('50'))
        self.technician = Technician.objects.create(name="Vasile")
        self.gateway = RemoteGateway()
        self.store = LabStore(gateway=self.gateway)
        self.assertTrue(self.store.load())
        self.addCleanup(self.store.stop_realtime)

    def add_order(self, lines=None):
        lines = lines if lines is not None else [(self.crown.id, 2), (self.bridge.id, 1)]
        return self.store.add_order(self.doctor.id, self.patient.id, lines, deadline=date(2099, 1, 1), discount=20)

    def test_load_reads_all_tables(self):
        order = Order.objects.create(doctor=self.doctor, patient=self.patient, total=Decimal('100'))
        OrderLine.objects.create(order=order, product=self.crown, quantity=1)
        store = LabStore(gateway=self.gateway)
        store.load()
        self.assertEqual([d.name for d in store.doctors], ["Dr Pop"])
        self.assertEqual([p.name for p in store.doctors[0].patients], ["Ion"])
        self.assertEqual([p.name for p in store.products], ["Coroana", "Punte"])
        self.assertEqual(len(store.get_order(order.id).lines), 1)

    def test_load_keeps_seed_data_for_empty_tables(self):
        Technician.objects.all().delete()
        store = LabStore(gateway=self.gateway, technicians=[entities.Technician(1, "Seed")])
        store.load()
        self.assertEqual([t.name for t in store.technicians], ["Seed"])

    def test_add_order_persists_order_and_lines(self):
        creation = self.add_order()
        saved = Order.objects.get(id=creation.order.id)
        self.assertEqual(saved.total, Decimal('230.00'))
        self.assertEqual(saved.status, OrderStatus.IN_PROGRESS)
        self.assertEqual(OrderLine.objects.filter(order=saved).count(), 2)
        self.assertTrue(all(line.id is not None for line in creation.order.lines))
        self.assertEqual(self.store.notices[-1].level, 'success')

    def test_add_order_with_new_doctor_and_patient(self):
        creation = self.store.add_order("Dr Nou", "Pacient Nou", [(self.crown.id, 1)])
        doctor = Doctor.objects.get(name="Dr Nou")
        patient = Patient.objects.get(name="Pacient Nou")
        self.assertEqual(patient.doctor_id, doctor.id)
        self.assertEqual(Order.objects.get(id=creation.order.id).patient_id, patient.id)

    def test_failed_line_rolls_back_the_whole_order(self):
        creation = self.add_order(lines=[(self.crown.id, 1), (self.bridge.id, -1)])
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderLine.objects.count(), 0)
        self.assertEqual([f.index for f in creation.failed_lines], [1])
        self.assertIsNotNone(self.store.get_order(creation.order.id))
        self.assertEqual(self.store.notices[-1].level, 'warning')

    def test_update_order_replaces_lines(self):
        order = self.add_order().order
        order.lines = [entities.OrderLine(product_id=self.bridge.id, quantity=3)]
        updated = self.store.update_order(order)
        self.assertEqual(updated.total, Decimal('130.00'))
        lines = list(OrderLine.objects.filter(order_id=order.id))
        self.assertEqual([(l.product_id, l.quantity) for l in lines], [(self.bridge.id, 3)])
        self.assertEqual(Order.objects.get(id=order.id).total, Decimal('130.00'))

    def test_finalize_and_reopen_persist(self):
        order = self.add_order().order
        self.store.finalize_order(order.id, "Vasile")
        saved = Order.objects.get(id=order.id)
        self.assertEqual(saved.status, OrderStatus.FINALIZED)
        self.assertEqual(saved.technician, "Vasile")
        self.assertIsNotNone(saved.finalized_at)
        self.store.reopen_order(order.id)
        saved.refresh_from_db()
        self.assertEqual(saved.status, OrderStatus.IN_PROGRESS)
        self.assertIsNone(saved.finalized_at)

    def test_delete_doctor_removes_patients_but_not_orders(self):
        order = self.add_order().order
        self.store.delete_doctor(self.doctor.id)
        self.assertFalse(Doctor.objects.exists())
        self.assertFalse(Patient.objects.exists())
        self.assertTrue(Order.objects.filter(id=order.id).exists())

    def test_remote_failure_keeps_entity_locally(self):
        store = LabStore(gateway=FailingGateway())
        technician = store.add_technician("Ana")
        self.assertEqual([t.name for t in store.technicians], ["Ana"])
        self.assertEqual(store.notices[-1].level, 'error')
        self.assertEqual(Technician.objects.filter(name="Ana").count(), 0)
        self.assertTrue(store.delete_technician(technician.id))

    def test_patient_of_unsaved_doctor_stays_local(self):
        store = LabStore(gateway=FailingGateway())
        creation = store.add_order("Dr Offline", "Pacient", [(self.crown.id, 1)])
        self.assertIsNotNone(creation.new_patient)
        self.assertFalse(Order.objects.exists())
        self.assertIsNotNone(store.get_order(creation.order.id))

    def test_order_moved_to_unsaved_doctor_stays_local(self):
        order = self.add_order().order
        store = LabStore(gateway=FailingGateway())
        store.load()
        offline = store.add_doctor("Dr Offline")
        edited = store.get_order(order.id)
        edited.doctor_id = offline.id
        self.assertEqual(store.update_order(edited).doctor_id, offline.id)
        self.assertEqual(Order.objects.get(id=order.id).doctor_id, self.doctor.id)
        self.assertEqual(store.notices[-1].level, 'warning')

    def test_external_insert_reaches_the_store(self):
        self.store.start_realtime()
        with self.captureOnCommitCallbacks(execute=True):
            Technician.objects.create(name="Extern")
        self.assertIn("Extern", [t.name for t in self.store.technicians])

    def test_own_writes_are_not_duplicated_by_echoes(self):
        self.store.start_realtime()
        with self.captureOnCommitCallbacks(execute=True):
            creation = self.add_order()
        self.assertEqual(len(self.store.orders), 1)
        self.assertEqual(len(self.store.get_order(creation.order.id).lines), 2)

    def test_touching_an_orphaned_order_marks_it_invalid(self):
        order = self.add_order().order
        self.store.delete_doctor(self.doctor.id)
        self.store.start_realtime()
        with self.captureOnCommitCallbacks(execute=True):
            self.gateway.update(ORDERS, {'technician': 'Ana'}, id=order.id)
        self.assertTrue(self.store.get_order(order.id).invalid)

    def test_stop_realtime(self):
        self.store.start_realtime()
        self.store.stop_realtime()
        with self.captureOnCommitCallbacks(execute=True):
            Technician.objects.create(name="Extern")
        self.assertNotIn("Extern", [t.name for t in self.store.technicians])


class RealtimeEchoTest(TransactionTestCase):
    """Notifications are delivered as each gateway write commits, before the store call returns."""

    def setUp(self):
        self.doctor = Doctor.objects.create(name="Dr Pop")
        self.patient = Patient.objects.create(name="Ion", doctor=self.doctor)
        self.crown = Product.objects.create(name="Coroana", price=Decimal('100'))
        self.bridge = Product.objects.create(name="Punte", price=Decimal('50'))
        self.store = LabStore(gateway=RemoteGateway())
        self.assertTrue(self.store.load())
        self.store.start_realtime()
        self.addCleanup(self.store.stop_realtime)

    def test_order_lifecycle(self):
        creation = self.store.add_order(
            self.doctor.id, self.patient.id, [(self.crown.id, 2), (self.bridge.id, 1)], deadline=date(2099, 1, 1), discount=20
        )
        order_id = creation.order.id
        self.assertEqual(len(self.store.orders), 1)
        self.assertEqual(len(self.store.get_order(order_id).lines), 2)

        edited = self.store.get_order(order_id)
        edited.lines = [entities.OrderLine(product_id=self.bridge.id, quantity=3)]
        self.assertEqual(self.store.update_order(edited).total, Decimal('130.00'))
        self.assertEqual(len(self.store.get_order(order_id).lines), 1)

        self.assertEqual(self.store.finalize_order(order_id, "Vasile").status, OrderStatus.FINALIZED)
        stored = self.store.get_order(order_id)
        self.assertEqual((stored.status, stored.technician), (OrderStatus.FINALIZED, "Vasile"))
        self.assertIsNotNone(stored.finalized_at)

        self.assertTrue(self.store.delete_order(order_id))
        self.assertIsNone(self.store.get_order(order_id))
        self.assertFalse(Order.objects.exists())
        self.assertFalse(OrderLine.objects.exists())

    def test_deletes_report_rows_removed_by_their_own_notification(self):
        technician = self.store.add_technician("Ana")
        self.assertTrue(self.store.delete_technician(technician.id))
        product = self.store.add_product("Fateta", '80')
        self.assertTrue(self.store.delete_product(product.id))
        self.assertTrue(self.store.delete_patient(self.patient.id))
        self.assertTrue(self.store.delete_doctor(self.doctor.id))
        self.assertEqual(self.store.doctors, [])
        self.assertEqual(self.store.technicians, [])


class GatewayTest(TestCase):
    def setUp(self):
        self.gateway = RemoteGateway()
        self.doctor = Doctor.objects.create(name="Dr Pop")
        self.patient = Patient.objects.create(name="Ion", doctor=self.doctor)
        self.crown = Product.objects.create(name="Coroana", price=Decimal('100'))

    def test_select_filters(self):
        early = Order.objects.create(doctor=self.doctor, patient=self.patient, status=OrderStatus.FINALIZED,
                                     finalized_at=timezone.now() - timedelta(days=10))
        recent = Order.objects.create(doctor=self.doctor, patient=self.patient, status=OrderStatus.FINALIZED,
                                      finalized_at=timezone.now())
        Order.objects.create(doctor=self.doctor, patient=self.patient)

        rows = self.gateway.select(ORDERS, gte={'finalized_at': timezone.now() - timedelta(days=1)})
        self.assertEqual([r['id'] for r in rows], [recent.id])
        rows = self.gateway.select(ORDERS, not_null=['finalized_at'])
        self.assertEqual([r['id'] for r in rows], [early.id, recent.id])
        rows = self.gateway.select(ORDERS, in_={'id': [early.id]})
        self.assertEqual(rows[0]['status'], OrderStatus.FINALIZED)

    def test_select_one_missing(self):
        with self.assertRaises(RecordNotFound):
            self.gateway.select_one(ORDERS, id=424242)

    def test_insert_rejects_unknown_columns(self):
        with self.assertRaises(GatewayError):
            self.gateway.insert(TECHNICIANS, {'name': 'Ana', 'nume': 'Ana'})

    def test_update_and_delete(self):
        row = self.gateway.insert(TECHNICIANS, {'name': 'Ana'})
        self.assertEqual(self.gateway.update(TECHNICIANS, {'name': 'Ana Maria'}, id=row['id']), 1)
        self.assertEqual(Technician.objects.get(id=row['id']).name, 'Ana Maria')
        self.assertEqual(self.gateway.delete(TECHNICIANS, id=row['id']), 1)

    def test_line_failures_are_aggregated(self):
        order = {'doctor_id': self.doctor.id, 'patient_id': self.patient.id, 'total': Decimal('0')}
        lines = [
            {'product_id': None, 'quantity': 1},
            {'product_id': self.crown.id, 'quantity': 1},
            {'product_id': self.crown.id, 'quantity': -1},
        ]
        with self.assertRaises(OrderWriteError) as ctx:
            self.gateway.insert_order_with_lines(order, lines)
        self.assertEqual([f.index for f in ctx.exception.failures], [0, 2])
        self.assertFalse(Order.objects.exists())

    def test_zero_quantity_line_is_rejected(self):
        order = {'doctor_id': self.doctor.id, 'patient_id': self.patient.id, 'total': Decimal('0')}
        with self.assertRaises(OrderWriteError) as ctx:
            self.gateway.insert_order_with_lines(order, [{'product_id': self.crown.id, 'quantity': 0}])
        self.assertIn('quantity', ctx.exception.failures[0].error)
        self.assertFalse(OrderLine.objects.exists())
        with self.assertRaises(ValidationError) as ctx:
            OrderLine(order_id=1, product_id=self.crown.id, quantity=0).clean_fields(exclude=['order', 'product'])
        self.assertIn('quantity', ctx.exception.message_dict)

    def test_subscription_handler_errors_are_logged(self):
        def broken(payload):
            raise ValueError("bad payload")
        subscription = self.gateway.subscribe(TECHNICIANS, broken)
        self.addCleanup(subscription.unsubscribe)
        with self.assertLogs('laborator', level='ERROR'):
            with self.captureOnCommitCallbacks(execute=True):
                Technician.objects.create(name="Ana")

    def test_subscription_payload(self):
        received = []
        subscription = self.gateway.subscribe(TECHNICIANS, received.append)
        self.addCleanup(subscription.unsubscribe)
        with self.captureOnCommitCallbacks(execute=True):
            technician = Technician.objects.create(name="Ana")
        with self.captureOnCommitCallbacks(execute=True):
            technician.delete()
        self.assertEqual([p['eventType'] for p in received], ['INSERT', 'DELETE'])
        self.assertEqual(received[0]['new']['name'], 'Ana')
        self.assertEqual(received[1]['old']['name'], 'Ana')
        self.assertIsNotNone(received[0]['commit_timestamp'])


class SpreadsheetTest(TestCase):
    def test_lab_sheet_layout(self):
        groups = [
            PatientGroup("Ion", [ProductLine("Coroana", 2, Decimal('100')), ProductLine("Punte", 1, Decimal('50'))]),
            PatientGroup("Maria", [ProductLine("Coroana", 1, Decimal('100'))]),
        ]
        ws = reopen(workbook_bytes(build_lab_sheet_workbook("Pop", groups)))["Fișa Laborator"]
        self.assertEqual(ws['A1'].value, "Fișa Laborator")
        self.assertEqual(ws['A3'].value, "Dr. Pop")
        self.assertEqual([c.value for c in ws[5]], ['PACIENT', 'PRODUS', 'BUCĂȚI', 'PREȚ'])
        self.assertEqual((ws['A6'].value, ws['B6'].value, ws['C6'].value, ws['D6'].value), ("Ion", "Coroana", 2, 200))
        self.assertEqual((ws['B7'].value, ws['D7'].value), ("Punte", 50))
        self.assertEqual((ws['A8'].value, ws['D8'].value), ("Total Client", 250))
        self.assertEqual((ws['A9'].value, ws['D9'].value), ("Maria", 100))
        self.assertEqual(ws['A10'].value, "Total Client")
        self.assertIsNone(ws['A11'].value)
        self.assertEqual(ws['A12'].value, "TOTAL")
        self.assertEqual(ws['D12'].value, '=SUMIF(A6:A10,"<>Total Client",D6:D10)')
        merged = {str(r) for r in ws.merged_cells.ranges}
        self.assertTrue({'A1:D2', 'A3:D3', 'A6:A7', 'A8:C8', 'A10:C10'} <= merged)
        self.assertEqual(ws['D6'].number_format, '#,##0.00')

    def test_lab_sheet_without_rows(self):
        ws = reopen(workbook_bytes(build_lab_sheet_workbook("Pop", [])))["Fișa Laborator"]
        self.assertEqual(ws['A7'].value, "TOTAL")
        self.assertEqual(ws['D7'].value, 0)

    def test_order_sheet(self):
        lines = [("Coroana", 2), ("Punte", 1), ("Gutieră", 1)]
        ws = reopen(workbook_bytes(build_order_workbook("Dr Pop", "Ion", lines, Decimal('230'))))["Fisa Laborator"]
        values = [row[0].value for row in ws.iter_rows(min_col=1, max_col=1)]
        self.assertEqual(values, [
            "Fisa Laborator", "Doctor: Dr Pop", "Pacient: Ion", "Produse",
            "- Coroana x 2", "- Punte x 1", "- Gutieră x 1", "Total: 230.00",
        ])
        self.assertEqual(ws.column_dimensions['A'].width, 50)

    def test_doctor_matrix_drops_empty_product_columns(self):
        products = [
            entities.Product(1, "Punte", Decimal('50')),
            entities.Product(2, "Coroana", Decimal('100')),
            entities.Product(3, "Ață", Decimal('5')),
        ]
        rows = [MatrixRow("Ion", {2: 1}, Decimal('100')), MatrixRow("Maria", {1: 2, 2: 1}, Decimal('200'))]
        ws = reopen(workbook_bytes(build_doctor_matrix_workbook("Dr Pop", products, rows))).active
        self.assertEqual(ws['A1'].value, "DR POP")
        self.assertEqual([c.value for c in ws[2]], ['PACIENT', 'COROANA', 'PUNTE', 'TOTAL'])
        self.assertEqual([c.value for c in ws[3]], ['Ion', 1, '-', 100])
        self.assertEqual([c.value for c in ws[4]], ['Maria', 1, 2, 200])
        self.assertEqual((ws['A5'].value, ws['D5'].value), ("TOTAL SUMĂ", 300))
        self.assertEqual(ws['D3'].number_format, '#,##0.00 "RON"')

    def test_archive(self):
        content = archive_workbooks([("a.xlsx", b"one"), ("b.xlsx", b"two")])
        with zipfile.ZipFile(BytesIO(content)) as archive:
            self.assertEqual(archive.namelist(), ["a.xlsx", "b.xlsx"])
            self.assertEqual(archive.read("b.xlsx"), b"two")


class ExportTestCase(TestCase):
    def setUp(self):
        self.gateway = RemoteGateway()
        self.pop = Doctor.objects.create(name="Dr Pop")
        self.radu = Doctor.objects.create(name="Dr Radu")
        self.ion = Patient.objects.create(name="Ion", doctor=self.pop)
        self.maria = Patient.objects.create(name="Maria", doctor=self.pop)
        Patient.objects.create(name="Vlad", doctor=self.radu)
        self.crown = Product.objects.create(name="Coroana", price=Decimal('100'))
        self.bridge = Product.objects.create(name="Punte", price=Decimal('50'))

        self.in_range = self.finalized(self.ion, datetime(2025, 3, 5, 10, 0), Decimal('230'),
                                       [(self.crown, 2), (self.bridge, 1)])
        self.second_visit = self.finalized(self.ion, datetime(2025, 3, 20, 9, 0), Decimal('100'), [(self.crown, 1)])
        self.last_day = self.finalized(self.maria, datetime(2025, 3, 31, 18, 0), Decimal('100'), [(self.crown, 1)])
        self.finalized(self.ion, datetime(2025, 4, 2, 9, 0), Decimal('50'), [(self.bridge, 1)])
        Order.objects.create(doctor=self.pop, patient=self.ion, total=Decimal('100'))

        self.start = parse_range_bound('2025-03-01')
        self.end = parse_range_bound('2025-03-31', end=True)

    def finalized(self, patient, when, total, lines):
        order = Order.objects.create(
            doctor=patient.doctor, patient=patient, total=total,
            status=OrderStatus.FINALIZED, finalized_at=timezone.make_aware(when),
        )
        for product, quantity in lines:
            OrderLine.objects.create(order=order, product=product, quantity=quantity)
        return order


class ExportServiceTest(ExportTestCase):
    def test_parse_range_bound(self):
        self.assertEqual(timezone.localtime(self.end).time().isoformat(), '23:59:59')
        self.assertEqual(timezone.localtime(self.start).time().isoformat(), '00:00:00')
        with self.assertRaises(ValueError):
            parse_range_bound('31/03/2025')

    def test_grouped_rows_include_only_finalized_in_range(self):
        groups = get_grouped_rows_for_doctor(self.gateway, self.pop.id, self.start, self.end)
        self.assertEqual([g.patient for g in groups], ["Ion", "Maria"])
        self.assertEqual([(p.name, p.quantity) for p in groups[0].products], [("Coroana", 2), ("Punte", 1), ("Coroana", 1)])
        self.assertEqual(groups[0].products[0].unit_price, Decimal('100'))

    def test_lines_of_deleted_products_are_skipped(self):
        self.bridge.delete()
        groups = get_grouped_rows_for_doctor(self.gateway, self.pop.id, self.start, self.end)
        self.assertEqual([p.name for p in groups[0].products], ["Coroana", "Coroana"])

    def test_lab_archive_has_one_file_per_doctor_with_rows(self):
        content = export_lab_archive(self.gateway, self.start, self.end)
        with zipfile.ZipFile(BytesIO(content)) as archive:
            self.assertEqual(archive.namelist(), ["Doctor_Dr_Pop.xlsx"])
            ws = reopen(archive.read("Doctor_Dr_Pop.xlsx"))["Fișa Laborator"]
        self.assertEqual(ws['A3'].value, "Dr. Dr Pop")
        self.assertEqual(ws['A12'].value, None)
        self.assertEqual(ws['A13'].value, "TOTAL")
        self.assertEqual(ws['D13'].value, '=SUMIF(A6:A11,"<>Total Client",D6:D11)')

    def test_lab_sheet_merges_orders_of_the_same_patient(self):
        content = export_lab_archive(self.gateway, self.start, self.end)
        with zipfile.ZipFile(BytesIO(content)) as archive:
            ws = reopen(archive.read("Doctor_Dr_Pop.xlsx"))["Fișa Laborator"]
        self.assertEqual(ws['A6'].value, "Ion")
        self.assertIn("A6:A8", [str(r) for r in ws.merged_cells.ranges])
        self.assertEqual([ws.cell(row=r, column=4).value for r in range(6, 9)], [200, 50, 100])
        self.assertEqual((ws['A9'].value, ws['D9'].value), ("Total Client", 350))
        self.assertEqual(ws['A10'].value, "Maria")
        self.assertEqual(ws['A11'].value, "Total Client")

    def test_lab_archive_missing_logo_is_skipped(self):
        with self.assertLogs('laborator', level='WARNING'):
            content = export_lab_archive(self.gateway, self.start, self.end, logo_path='/nonexistent/logo.png')
        self.assertTrue(zipfile.is_zipfile(BytesIO(content)))

    def test_order_sheet(self):
        content, filename = export_order_sheet(self.gateway, self.in_range.id)
        self.assertEqual(filename, f"Comanda_{self.in_range.id}_Ion.xlsx")
        ws = reopen(content)["Fisa Laborator"]
        values = [row[0].value for row in ws.iter_rows(min_col=1, max_col=1)]
        self.assertEqual(values[4:], ["- Coroana x 2", "- Punte x 1", "Total: 230.00"])

    def test_order_sheet_missing_order(self):
        with self.assertRaises(OrderNotFound):
            export_order_sheet(self.gateway, 987654)

    def test_order_sheet_missing_patient(self):
        self.maria.delete()
        with self.assertRaises(OrderNotFound):
            export_order_sheet(self.gateway, self.last_day.id)

    def test_doctor_matrix(self):
        content, filename = export_doctor_matrix(self.gateway, self.pop.id, self.start, self.end)
        self.assertEqual(filename, "Dr_Pop_01-03-2025_31-03-2025.xlsx")
        ws = reopen(content).active
        self.assertEqual([c.value for c in ws[2]], ['PACIENT', 'COROANA', 'PUNTE', 'TOTAL'])
        self.assertEqual([c.value for c in ws[3]], ['Ion', 2, 1, 230])
        self.assertEqual([c.value for c in ws[4]], ['Ion', 1, '-', 100])
        self.assertEqual([c.value for c in ws[5]], ['Maria', 1, '-', 100])

    def test_doctor_matrix_unknown_doctor(self):
        with self.assertRaises(DoctorNotFound):
            export_doctor_matrix(self.gateway, 987654, self.start, self.end)


@override_settings(LAB_LOGO_PATH=None)
class ExportViewTest(ExportTestCase):
    def setUp(self):
        super().setUp()
        self.client = Client()

    def post(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type='application/json')

    def test_api_root(self):
        response = self.client.get('/')
        self.assertEqual(response.status_code, 200)
        self.assertIn('message', response.json())

    def test_export_laborator(self):
        response = self.post('/api/laborator/export/laborator', {'startDate': '2025-03-01', 'endDate': '2025-03-31'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Type'], 'application/zip')
        self.assertIn('export_laborator.zip', response['Content-Disposition'])
        self.assertTrue(zipfile.is_zipfile(BytesIO(response.content)))

    def test_export_laborator_requires_both_dates(self):
        response = self.post('/api/laborator/export/laborator', {'startDate': '2025-03-01'})
        self.assertEqual(response.status_code, 400)
        self.assertIn('endDate', response.json())

    def test_export_laborator_invalid_dates(self):
        response = self.post('/api/laborator/export/laborator', {'startDate': 'invalid', 'endDate': '2025-03-31'})
        self.assertEqual(response.status_code, 400)
        response = self.post('/api/laborator/export/laborator', {'startDate': '2025-04-01', 'endDate': '2025-03-31'})
        self.assertEqual(response.status_code, 400)

    def test_export_laborator_rejects_get(self):
        self.assertEqual(self.client.get('/api/laborator/export/laborator').status_code, 405)

    def test_export_laborator_internal_error(self):
        with mock.patch('laborator.views.export_lab_archive', side_effect=RuntimeError('boom')):
            response = self.post('/api/laborator/export/laborator', {'startDate': '2025-03-01', 'endDate': '2025-03-31'})
        self.assertEqual(response.status_code, 500)
        self.assertIn('boom', response.json()['detail'])

    def test_print_order(self):
        response = self.post('/api/laborator/export/order', {'orderId': self.in_range.id})
        self.assertEqual(response.status_code, 200)
        self.assertIn('spreadsheetml.sheet', response['Content-Type'])
        self.assertIn(f'Comanda_{self.in_range.id}_Ion.xlsx', response['Content-Disposition'])

    def test_print_order_requires_id(self):
        self.assertEqual(self.post('/api/laborator/export/order', {}).status_code, 400)

    def test_print_order_not_found(self):
        response = self.post('/api/laborator/export/order', {'orderId': 987654})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['detail'], 'Order not found')

    def test_print_order_rejects_get(self):
        self.assertEqual(self.client.get('/api/laborator/export/order').status_code, 405)

    def test_export_doctor(self):
        response = self.post('/api/laborator/export/doctor',
                             {'doctorId': self.pop.id, 'startDate': '2025-03-01', 'endDate': '2025-03-31'})
        self.assertEqual(response.status_code, 200)
        self.assertIn('Dr_Pop_01-03-2025_31-03-2025.xlsx', response['Content-Disposition'])

    def test_export_doctor_not_found(self):
        response = self.post('/api/laborator/export/doctor',
                             {'doctorId': 987654, 'startDate': '2025-03-01', 'endDate': '2025-03-31'})
        self.assertEqual(response.status_code, 404)

    def test_dashboard_stats(self):
        response = self.client.get('/api/laborator/stats?year=2025&month=3&order=asc')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['totalOrders'], 5)
        self.assertEqual(response.data['statusCounts'][OrderStatus.FINALIZED], 4)

    def test_dashboard_stats_invalid_month(self):
        self.assertEqual(self.client.get('/api/laborator/stats?month=13').status_code, 400)

    def test_technician_orders(self):
        Order.objects.filter(id=self.in_range.id).update(technician='Vasile')
        response = self.client.get('/api/laborator/stats/technicians/Vasile')
        self.assertEqual(response.status_code, 200)
        self.assertEqual([o['id'] for o in response.data['orders']], [self.in_range.id])


class StatsTest(TestCase):
    def setUp(self):
        def order(status, finalized_at, total, technician=None):
            return {'status': status, 'finalized_at': finalized_at, 'total': Decimal(total), 'technician': technician}
        self.now = datetime(2025, 3, 15, 12, 0, tzinfo=dt_timezone.utc)
        self.orders = [
            order(OrderStatus.FINALIZED, datetime(2025, 3, 2, 10, 0, tzinfo=dt_timezone.utc), '100', 'Ana'),
            order(OrderStatus.FINALIZED, datetime(2025, 2, 10, 10, 0, tzinfo=dt_timezone.utc), '50', 'Ana'),
            order(OrderStatus.FINALIZED, datetime(2025, 3, 5, 10, 0, tzinfo=dt_timezone.utc), '30', 'Mihai'),
            order(OrderStatus.IN_PROGRESS, None, '20'),
            order(OrderStatus.DELAYED, None, '10'),
        ]

    def test_revenue_this_month(self):
        self.assertEqual(revenue_for_month(self.orders, self.now), Decimal('130'))

    def test_status_counts_and_breakdown(self):
        counts = status_counts(self.orders)
        self.assertEqual(counts[OrderStatus.FINALIZED], 3)
        self.assertEqual(counts[OrderStatus.IN_PROGRESS], 1)
        self.assertEqual(counts[OrderStatus.DELAYED], 1)
        breakdown = {row['status']: row['percentage'] for row in status_breakdown(self.orders)}
        self.assertEqual(breakdown[OrderStatus.FINALIZED], 60.0)
        self.assertEqual(status_breakdown([])[0]['percentage'], 0)

    def test_monthly_revenue(self):
        self.assertEqual(monthly_revenue(self.orders), [
            {"month": "2025-02", "revenue": Decimal('50')},
            {"month": "2025-03", "revenue": Decimal('130')},
        ])

    def test_technician_summary(self):
        summary = technician_summary(self.orders, ["Mihai", "Ana", "Zoe"])
        self.assertEqual([(r['name'], r['completedOrders']) for r in summary], [("Ana", 2), ("Mihai", 1), ("Zoe", 0)])
        february = technician_summary(self.orders, ["Zoe", "Mihai", "Ana"], month=2, year=2025)
        self.assertEqual([(r['name'], r['completedOrders']) for r in february], [("Ana", 1), ("Mihai", 0), ("Zoe", 0)])
        ascending = technician_summary(self.orders, ["Mihai", "Ana"], order='asc')
        self.assertEqual([r['name'] for r in ascending], ["Mihai", "Ana"])

    def test_technician_orders_newest_first(self):
        orders = technician_orders(self.orders, "Ana")
        self.assertEqual([o['total'] for o in orders], [Decimal('100'), Decimal('50')])
