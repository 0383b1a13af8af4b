"""
Django admin registrations for the LIS models.

Staging rows and log entries are read-only here: their state only
changes through the reconciliation engine.
"""
from django.contrib import admin

from .models import (
    AuditEvent,
    LabDevice,
    LabDeviceChannel,
    LabDeviceMessageLog,
    LabDeviceResult,
    LabOrder,
    LabOrderItem,
    LabTest,
    User,
)


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'is_staff', 'is_superuser')
    list_filter = ('role',)
    search_fields = ('username', 'first_name', 'last_name')


class LabDeviceChannelInline(admin.TabularInline):
    model = LabDeviceChannel
    extra = 0
    fields = ('external_test_code', 'external_test_name', 'lis_test', 'default_unit', 'reference_range', 'is_active')


@admin.register(LabDevice)
class LabDeviceAdmin(admin.ModelAdmin):
    list_display = ('id', 'code', 'name', 'protocol', 'connection_type', 'is_active', 'last_seen_at', 'last_error_at')
    list_filter = ('protocol', 'connection_type', 'is_active')
    search_fields = ('code', 'name', 'manufacturer', 'model')
    exclude = ('api_key_hash',)
    inlines = [LabDeviceChannelInline]


@admin.register(LabDeviceChannel)
class LabDeviceChannelAdmin(admin.ModelAdmin):
    list_display = ('id', 'device', 'external_test_code', 'external_test_name', 'lis_test', 'is_active', 'updated_at')
    list_filter = ('device', 'is_active')
    search_fields = ('external_test_code', 'external_test_name')


class _ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(LabDeviceMessageLog)
class LabDeviceMessageLogAdmin(_ReadOnlyAdmin):
    list_display = ('id', 'device', 'direction', 'status', 'source_ip', 'row_count', 'created_at')
    list_filter = ('direction', 'status', 'device')
    search_fields = ('raw_payload', 'error_message')


@admin.register(LabDeviceResult)
class LabDeviceResultAdmin(_ReadOnlyAdmin):
    list_display = ('id', 'device', 'sample_id', 'external_test_code', 'result_value', 'status',
                    'lis_test_id', 'lis_order_id', 'received_at')
    list_filter = ('status', 'device')
    search_fields = ('sample_id', 'external_test_code', 'error_message')


@admin.register(LabTest)
class LabTestAdmin(admin.ModelAdmin):
    list_display = ('id', 'code', 'name', 'unit', 'is_active')
    search_fields = ('code', 'name')


class LabOrderItemInline(admin.TabularInline):
    model = LabOrderItem
    extra = 0


@admin.register(LabOrder)
class LabOrderAdmin(admin.ModelAdmin):
    list_display = ('id', 'patient_id', 'sample_id', 'status', 'ordered_at')
    list_filter = ('status',)
    search_fields = ('patient_id', 'sample_id')
    inlines = [LabOrderItemInline]


@admin.register(AuditEvent)
class AuditEventAdmin(_ReadOnlyAdmin):
    list_display = ('id', 'action', 'user', 'object_type', 'object_id', 'created_at')
    list_filter = ('action', 'object_type')
