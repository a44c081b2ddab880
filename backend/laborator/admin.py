from django.contrib import admin
from .models import Doctor, Order, OrderLine, Patient, Product, Technician
class OrderLineInline(admin.TabularInline):
    model = OrderLine
    extra = 0
@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ('id', 'doctor_id', 'patient_id', 'status', 'total', 'deadline', 'finalized_at', 'technician')
    list_filter = ('status',)
    inlines = [OrderLineInline]
admin.site.register(Doctor)
admin.site.register(Patient)
admin.site.register(Product)
admin.site.register(Technician)
