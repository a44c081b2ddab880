from rest_framework.decorators import api_view
from rest_framework.response import Response
from rest_framework import status
from django.conf import settings
from django.http import HttpResponse
import logging
import traceback
from .gateway import ORDERS, RemoteGateway
from .serializers import (
    LabExportRequestSerializer,
    OrderExportRequestSerializer,
    DoctorMatrixExportRequestSerializer,
    StatsQuerySerializer
)
from .export import (
    ARCHIVE_FILENAME,
    XLSX_CONTENT_TYPE,
    DoctorNotFound,
    OrderNotFound,
    export_doctor_matrix as build_doctor_matrix,
    export_lab_archive,
    export_order_sheet,
)
from . import stats
logger = logging.getLogger('laborator')
def _attachment(content, content_type, filename):
    response = HttpResponse(content, content_type=content_type)
    response['Content-Disposition'] = f'attachment; filename="{filename}"'
    return response
def _server_error(view_name, e):
    logger.error(f"Error in {view_name}: {str(e)}")
    logger.error(f"Traceback: {traceback.format_exc()}")
    return Response(
        {"detail": f"Internal server error: {str(e)}"},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )
@api_view(['GET'])
def api_root(request):
    logger.info(f"API root accessed from {request.META.get('REMOTE_ADDR', 'unknown')}")
    return Response({"message": "Dental Laboratory API"})
@api_view(['POST'])
def export_laborator(request):
    serializer = LabExportRequestSerializer(data=request.data)
    if not serializer.is_valid():
        logger.warning(f"Lab export validation failed: {serializer.errors}")
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    start, end = serializer.validated_data['startDate'], serializer.validated_data['endDate']
    logger.info(f"Lab export request - start: {start}, end: {end}")
    try:
        content = export_lab_archive(RemoteGateway(), start, end, logo_path=settings.LAB_LOGO_PATH)
        logger.info(f"Lab export completed - {len(content)} bytes")
        return _attachment(content, 'application/zip', ARCHIVE_FILENAME)
    except Exception as e:
        return _server_error('export_laborator', e)
@api_view(['POST'])
def print_order(request):
    serializer = OrderExportRequestSerializer(data=request.data)
    if not serializer.is_valid():
        logger.warning(f"Order export validation failed: {serializer.errors}")
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    order_id = serializer.validated_data['orderId']
    try:
        content, filename = export_order_sheet(RemoteGateway(), order_id)
        logger.info(f"Order export completed - filename: {filename}")
        return _attachment(content, XLSX_CONTENT_TYPE, filename)
    except OrderNotFound:
        logger.warning(f"Order export requested for missing order {order_id}")
        return Response({"detail": "Order not found"}, status=status.HTTP_404_NOT_FOUND)
    except Exception as e:
        return _server_error('print_order', e)
@api_view(['POST'])
def export_doctor_matrix(request):
    serializer = DoctorMatrixExportRequestSerializer(data=request.data)
    if not serializer.is_valid():
        logger.warning(f"Doctor export validation failed: {serializer.errors}")
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    try:
        content, filename = build_doctor_matrix(RemoteGateway(), data['doctorId'], data['startDate'], data['endDate'])
        logger.info(f"Doctor export completed - filename: {filename}")
        return _attachment(content, XLSX_CONTENT_TYPE, filename)
    except DoctorNotFound:
        return Response({"detail": "Doctor not found"}, status=status.HTTP_404_NOT_FOUND)
    except Exception as e:
        return _server_error('export_doctor_matrix', e)
@api_view(['GET'])
def dashboard_stats(request):
    serializer = StatsQuerySerializer(data=request.query_params)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    try:
        summary = stats.dashboard_summary(
            RemoteGateway(),
            month=data.get('month'),
            year=data.get('year'),
            order=data.get('order', 'desc')
        )
        return Response(summary)
    except Exception as e:
        return _server_error('dashboard_stats', e)
@api_view(['GET'])
def technician_orders(request, name):
    serializer = StatsQuerySerializer(data=request.query_params)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    try:
        orders = stats.technician_orders(RemoteGateway().select(ORDERS), name, data.get('month'), data.get('year'))
        logger.info(f"Technician orders requested - {name}: {len(orders)} order(s)")
        return Response({"technician": name, "orders": orders})
    except Exception as e:
        return _server_error('technician_orders', e)
