from rest_framework import serializers

from lis.models import LabDeviceResult


class ResultSerializer(serializers.ModelSerializer):
    class Meta:
        model = LabDeviceResult
        fields = ['id', 'device_id', 'message_log_id', 'sample_id', 'external_test_code', 'external_test_name',
                  'result_value', 'unit', 'reference_range', 'flag', 'measured_at', 'received_at',
                  'status', 'error_message', 'parse_failed', 'lis_test_id', 'lis_order_id', 'lis_order_item_id',
                  'patient_id', 'posted_at', 'updated_at']


class ResultQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[c for c, _ in LabDeviceResult.STATUS_CHOICES], required=False)
    sample_id = serializers.CharField(max_length=64, required=False, allow_blank=True)
    limit = serializers.IntegerField(required=False)


class ErrorQueueQuerySerializer(serializers.Serializer):
    device_id = serializers.IntegerField(min_value=1, required=False)
    limit = serializers.IntegerField(required=False)


class AutoMapDeviceSerializer(serializers.Serializer):
    # clamped to LIS_STAGING_LIMIT_MAX by the engine
    limit = serializers.IntegerField(required=False)
