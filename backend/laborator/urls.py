from django.urls import path
from . import views
urlpatterns = [
    path('export/laborator', views.export_laborator, name='export_laborator'),
    path('export/order', views.print_order, name='print_order'),
    path('export/doctor', views.export_doctor_matrix, name='export_doctor_matrix'),
    path('stats/technicians/<str:name>', views.technician_orders, name='technician_orders'),
    path('stats', views.dashboard_stats, name='dashboard_stats'),
]
