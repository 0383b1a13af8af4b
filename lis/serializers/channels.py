from rest_framework import serializers

from lis.models import LabDeviceChannel


class ChannelSerializer(serializers.ModelSerializer):
    lis_test_id = serializers.IntegerField(read_only=True, allow_null=True)
    lis_test_code = serializers.CharField(source='lis_test.code', read_only=True, default=None)
    lis_test_name = serializers.CharField(source='lis_test.name', read_only=True, default=None)

    class Meta:
        model = LabDeviceChannel
        fields = ['id', 'device_id', 'external_test_code', 'external_test_name', 'lis_test_id',
                  'lis_test_code', 'lis_test_name', 'default_unit', 'reference_range', 'is_active',
                  'created_at', 'updated_at']


class ChannelWriteSerializer(serializers.Serializer):
    external_test_name = serializers.CharField(max_length=255, required=False, allow_blank=True, allow_null=True)
    lis_test_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    default_unit = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)
    reference_range = serializers.CharField(max_length=255, required=False, allow_blank=True, allow_null=True)
    is_active = serializers.BooleanField(required=False)


class ChannelCreateSerializer(ChannelWriteSerializer):
    external_test_code = serializers.CharField(max_length=64, allow_blank=True)


class ChannelQuerySerializer(serializers.Serializer):
    q = serializers.CharField(max_length=64, required=False, allow_blank=True)
    active = serializers.BooleanField(required=False, default=False)
