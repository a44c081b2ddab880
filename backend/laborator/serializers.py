from rest_framework import serializers
from .export import parse_range_bound
class DateRangeSerializer(serializers.Serializer):
    startDate = serializers.CharField()
    endDate = serializers.CharField()
    def validate_startDate(self, value):
        try:
            return parse_range_bound(value)
        except ValueError:
            raise serializers.ValidationError('Invalid date. Use YYYY-MM-DD or an ISO 8601 datetime')
    def validate_endDate(self, value):
        try:
            return parse_range_bound(value, end=True)
        except ValueError:
            raise serializers.ValidationError('Invalid date. Use YYYY-MM-DD or an ISO 8601 datetime')
    def validate(self, attrs):
        if attrs['startDate'] > attrs['endDate']:
            raise serializers.ValidationError('startDate must not be after endDate')
        return attrs
class LabExportRequestSerializer(DateRangeSerializer):
    pass
class DoctorMatrixExportRequestSerializer(DateRangeSerializer):
    doctorId = serializers.IntegerField(min_value=1)
class OrderExportRequestSerializer(serializers.Serializer):
    orderId = serializers.IntegerField(min_value=1)
class StatsQuerySerializer(serializers.Serializer):
    month = serializers.IntegerField(min_value=1, max_value=12, required=False)
    year = serializers.IntegerField(min_value=1900, max_value=9999, required=False)
    order = serializers.ChoiceField(choices=['asc', 'desc'], required=False, default='desc')
