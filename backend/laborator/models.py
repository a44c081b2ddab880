from django.db import models
from django.core.validators import MinValueValidator
class OrderStatus(models.TextChoices):
    IN_PROGRESS = 'În progres', 'In progress'
    FINALIZED = 'Finalizată', 'Finalized'
    DELAYED = 'Întârziată', 'Delayed'
class Doctor(models.Model):
    name = models.CharField(max_length=200)
    email = models.CharField(max_length=254, blank=True, default='')
    phone = models.CharField(max_length=50, blank=True, default='')
    updated_at = models.DateTimeField(auto_now=True)
    class Meta:
        db_table = 'doctors'
    def __str__(self):
        return self.name
class Patient(models.Model):
    name = models.CharField(max_length=200)
    doctor = models.ForeignKey(Doctor, on_delete=models.CASCADE, related_name='patients')
    updated_at = models.DateTimeField(auto_now=True)
    class Meta:
        db_table = 'patients'
        indexes = [
            models.Index(fields=['doctor'], name='patients_doctor__idx'),
        ]
    def __str__(self):
        return f"{self.name} (doctor {self.doctor_id})"
class Product(models.Model):
    name = models.CharField(max_length=200)
    price = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    updated_at = models.DateTimeField(auto_now=True)
    class Meta:
        db_table = 'products'
    def __str__(self):
        return f"{self.name} ({self.price} RON)"
class Technician(models.Model):
    name = models.CharField(max_length=200)
    updated_at = models.DateTimeField(auto_now=True)
    class Meta:
        db_table = 'technicians'
    def __str__(self):
        return self.name
class Order(models.Model):
    # Orders outlive their doctor/patient; dangling references are flagged by the store instead.
    doctor = models.ForeignKey(Doctor, on_delete=models.DO_NOTHING, db_constraint=False, related_name='orders')
    patient = models.ForeignKey(Patient, on_delete=models.DO_NOTHING, db_constraint=False, related_name='orders')
    start_date = models.DateField(blank=True, null=True)
    deadline = models.DateField(blank=True, null=True)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)])
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    finalized_at = models.DateTimeField(blank=True, null=True)
    status = models.CharField(max_length=20, choices=OrderStatus.choices, default=OrderStatus.IN_PROGRESS)
    technician = models.CharField(max_length=200, blank=True, null=True)
    updated_at = models.DateTimeField(auto_now=True)
    class Meta:
        db_table = 'orders'
        indexes = [
            models.Index(fields=['doctor', 'status', 'finalized_at'], name='orders_doctor__status_idx'),
        ]
    def __str__(self):
        return f"Order {self.id} - doctor {self.doctor_id} - {self.status}"
class OrderLine(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='lines')
    product = models.ForeignKey(Product, on_delete=models.DO_NOTHING, db_constraint=False, related_name='+')
    quantity = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    updated_at = models.DateTimeField(auto_now=True)
    class Meta:
        db_table = 'order_lines'
    def __str__(self):
        return f"{self.quantity} x product {self.product_id} (order {self.order_id})"
