from rest_framework import serializers

from lis.models import LabDevice, LabDeviceMessageLog


class DeviceSerializer(serializers.ModelSerializer):
    class Meta:
        model = LabDevice
        fields = ['id', 'code', 'name', 'protocol', 'connection_type', 'location', 'manufacturer', 'model',
                  'is_active', 'last_seen_at', 'last_error_at', 'last_error']


class LogQuerySerializer(serializers.Serializer):
    # out-of-range limits are clamped by the log service, not rejected
    limit = serializers.IntegerField(required=False)
    search = serializers.CharField(max_length=128, required=False, allow_blank=True)


class LogEntrySerializer(serializers.ModelSerializer):
    device_code = serializers.CharField(source='device.code', read_only=True, default=None)

    class Meta:
        model = LabDeviceMessageLog
        fields = ['id', 'device_id', 'device_code', 'direction', 'status', 'source_ip', 'source_port',
                  'sample_ids', 'row_count', 'truncated', 'error_message', 'info_message', 'created_at']


class LogEntryDetailSerializer(LogEntrySerializer):
    class Meta(LogEntrySerializer.Meta):
        fields = LogEntrySerializer.Meta.fields + ['raw_payload']
