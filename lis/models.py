"""
Database models for the lab analyzer integration backend.

The tables fall into three groups: analyzer devices with their channel
mappings, the append-only device communication log, and the staging rows
holding analyzer-reported values until they are reconciled.  A small
representation of the clinical order catalog (tests, orders, order items)
backs the default order gateway that the reconciliation engine posts into.
"""
from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Custom user whose role decides the LIS capabilities.

    ``viewer`` may browse devices, mappings, logs and staging rows,
    ``technician`` may additionally reconcile results, ``lab_admin`` may
    also edit channel mappings and ``super`` may do everything.
    """
    ROLE_CHOICES = [
        ('viewer', 'Viewer'),
        ('technician', 'Lab Technician'),
        ('lab_admin', 'Lab Administrator'),
        ('super', 'Super Administrator'),
    ]
    role = models.CharField(max_length=16, choices=ROLE_CHOICES, default='viewer')

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"


# ---------------------------------------------------------------------------
# Devices & channel mappings
# ---------------------------------------------------------------------------

class LabDevice(models.Model):
    """An external analyzer instrument pushing results to the LIS."""
    PROTOCOL_ASTM = 'astm'
    PROTOCOL_HL7 = 'hl7'
    PROTOCOL_JSON = 'json'
    PROTOCOL_CHOICES = (
        (PROTOCOL_ASTM, 'ASTM'),
        (PROTOCOL_HL7, 'HL7'),
        (PROTOCOL_JSON, 'JSON'),
    )
    CONNECTION_CHOICES = (
        ('rs232', 'RS232'),
        ('tcp_ip', 'TCP/IP'),
        ('file_drop', 'File drop'),
        ('manual', 'Manual'),
    )

    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=255)
    protocol = models.CharField(max_length=16, choices=PROTOCOL_CHOICES, default=PROTOCOL_ASTM)
    connection_type = models.CharField(max_length=16, choices=CONNECTION_CHOICES, default='tcp_ip')
    location = models.CharField(max_length=255, blank=True)
    manufacturer = models.CharField(max_length=255, blank=True)
    model = models.CharField(max_length=255, blank=True)
    # Hashed connector key, checked on every push
    api_key_hash = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)

    last_seen_at = models.DateTimeField(null=True, blank=True)
    last_error_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def set_api_key(self, raw_key: str) -> None:
        from django.contrib.auth.hashers import make_password
        self.api_key_hash = make_password(raw_key)

    def check_api_key(self, raw_key: str) -> bool:
        from django.contrib.auth.hashers import check_password
        if not raw_key or not self.api_key_hash:
            return False
        return check_password(raw_key, self.api_key_hash)

    def __str__(self) -> str:
        return f"{self.name} ({self.code})"


class LabDeviceChannel(models.Model):
    """Per-test mapping: a device's native test code -> internal test.

    Only one *active* mapping per (device, code) may exist; the code is
    compared case-insensitively.  The rule is enforced by the channel
    service rather than a database constraint so that inactive history
    rows can keep the same code.
    """
    device = models.ForeignKey(LabDevice, on_delete=models.CASCADE, related_name='channels')
    external_test_code = models.CharField(max_length=64)
    external_test_name = models.CharField(max_length=255, blank=True)
    # Null means "known to the device, not yet mapped"
    lis_test = models.ForeignKey(
        'LabTest', null=True, blank=True, on_delete=models.SET_NULL, related_name='channels'
    )
    default_unit = models.CharField(max_length=64, blank=True)
    reference_range = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['device', 'external_test_code'], name='lis_channel_dev_code_idx'),
            models.Index(fields=['device', 'is_active'], name='lis_channel_dev_active_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.device_id}:{self.external_test_code} -> {self.lis_test_id}"


# ---------------------------------------------------------------------------
# Communication log
# ---------------------------------------------------------------------------

class LabDeviceMessageLog(models.Model):
    """One raw exchange with a device.  Rows are never updated or deleted."""
    DIRECTION_IN = 'in'
    DIRECTION_OUT = 'out'
    DIRECTION_CHOICES = ((DIRECTION_IN, 'inbound'), (DIRECTION_OUT, 'outbound'))

    STATUS_RECEIVED = 'received'
    STATUS_PARSED = 'parsed'
    STATUS_PARTIAL = 'partial'
    STATUS_ERROR = 'error'
    STATUS_CHOICES = (
        (STATUS_RECEIVED, 'received'),
        (STATUS_PARSED, 'parsed'),
        (STATUS_PARTIAL, 'partial'),
        (STATUS_ERROR, 'error'),
    )

    device = models.ForeignKey(
        LabDevice, null=True, on_delete=models.SET_NULL, related_name='message_logs'
    )
    direction = models.CharField(max_length=8, choices=DIRECTION_CHOICES, default=DIRECTION_IN)
    source_ip = models.GenericIPAddressField(null=True, blank=True)
    source_port = models.PositiveIntegerField(null=True, blank=True)
    raw_payload = models.TextField()
    truncated = models.BooleanField(default=False)
    sample_ids = models.JSONField(default=list, blank=True)
    row_count = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_RECEIVED)
    error_message = models.TextField(blank=True)
    info_message = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        indexes = [models.Index(fields=['device', 'created_at'], name='lis_msglog_dev_created_idx')]

    def __str__(self) -> str:
        return f"log {self.id} dev={self.device_id} {self.direction}/{self.status}"


# ---------------------------------------------------------------------------
# Staging results
# ---------------------------------------------------------------------------

class LabDeviceResult(models.Model):
    """One analyzer-reported value awaiting reconciliation.

    The status column and the destination columns are written together by
    :mod:`lis.state` so that they always agree: ``staging`` rows carry no
    test or order, ``mapped`` rows carry a test, ``posted`` rows carry both.
    """
    STATUS_STAGING = 'staging'
    STATUS_MAPPED = 'mapped'
    STATUS_POSTED = 'posted'
    STATUS_ERROR = 'error'
    STATUS_CHOICES = (
        (STATUS_STAGING, 'staging'),
        (STATUS_MAPPED, 'mapped'),
        (STATUS_POSTED, 'posted'),
        (STATUS_ERROR, 'error'),
    )

    device = models.ForeignKey(LabDevice, null=True, on_delete=models.SET_NULL, related_name='results')
    message_log = models.ForeignKey(
        LabDeviceMessageLog, null=True, blank=True, on_delete=models.SET_NULL, related_name='results'
    )
    sample_id = models.CharField(max_length=64, db_index=True, blank=True)
    external_test_code = models.CharField(max_length=64, blank=True)
    external_test_name = models.CharField(max_length=255, blank=True)
    result_value = models.CharField(max_length=255, blank=True)
    unit = models.CharField(max_length=64, blank=True)
    reference_range = models.CharField(max_length=255, blank=True)
    flag = models.CharField(max_length=16, blank=True)
    measured_at = models.DateTimeField(null=True, blank=True)
    received_at = models.DateTimeField(auto_now_add=True)

    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_STAGING, db_index=True)
    error_message = models.TextField(blank=True)
    # set when the device record could not be parsed; such rows are never retried
    parse_failed = models.BooleanField(default=False)

    lis_test_id = models.BigIntegerField(null=True, blank=True, db_index=True)
    lis_order_id = models.BigIntegerField(null=True, blank=True, db_index=True)
    lis_order_item_id = models.BigIntegerField(null=True, blank=True)
    patient_id = models.CharField(max_length=64, null=True, blank=True)
    posted_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['device', 'status'], name='lis_result_dev_status_idx'),
            models.Index(fields=['device', 'received_at'], name='lis_result_dev_recv_idx'),
        ]

    @property
    def state(self):
        from .state import state_of
        return state_of(self)

    def __str__(self) -> str:
        return f"result {self.id} {self.sample_id}/{self.external_test_code} [{self.status}]"


# ---------------------------------------------------------------------------
# Order catalog (local side of the order subsystem)
# ---------------------------------------------------------------------------

class LabTest(models.Model):
    """Internal test catalog entry that channels map onto."""
    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    unit = models.CharField(max_length=64, blank=True)
    is_active = models.BooleanField(default=True)

    def __str__(self) -> str:
        return f"{self.code} ({self.name})"


class LabOrder(models.Model):
    STATUS_ORDERED = 'ordered'
    STATUS_COLLECTED = 'collected'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = (
        (STATUS_ORDERED, 'Ordered'),
        (STATUS_COLLECTED, 'Collected'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
    )
    OPEN_STATUSES = (STATUS_ORDERED, STATUS_COLLECTED, STATUS_IN_PROGRESS)

    patient_id = models.CharField(max_length=64, db_index=True)
    sample_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_ORDERED)
    ordered_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"order {self.id} sample={self.sample_id} [{self.status}]"


class LabOrderItem(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_RESULTED = 'resulted'
    STATUS_FINALIZED = 'finalized'
    STATUS_CHOICES = (
        (STATUS_PENDING, 'Pending'),
        (STATUS_RESULTED, 'Resulted'),
        (STATUS_FINALIZED, 'Finalized'),
    )

    order = models.ForeignKey(LabOrder, on_delete=models.CASCADE, related_name='items')
    test = models.ForeignKey(LabTest, on_delete=models.PROTECT, related_name='order_items')
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING)
    result_value = models.CharField(max_length=255, blank=True)
    unit = models.CharField(max_length=64, blank=True)
    flag = models.CharField(max_length=16, blank=True)
    reference_range = models.CharField(max_length=255, blank=True)
    resulted_at = models.DateTimeField(null=True, blank=True)
    source_result_id = models.BigIntegerField(null=True, blank=True)

    class Meta:
        indexes = [models.Index(fields=['order', 'test'], name='lis_orderitem_order_test_idx')]

    def __str__(self) -> str:
        return f"item {self.id} order={self.order_id} test={self.test_id} [{self.status}]"


class AuditEvent(models.Model):
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, blank=True, null=True)
    object_id = models.CharField(max_length=64, blank=True, null=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at'], name='lis_audit_action_created_idx'),
            models.Index(fields=['object_type', 'object_id', 'created_at'], name='lis_audit_object_idx'),
        ]

    def __str__(self):
        return f"{self.action}:{self.user_id}@{self.created_at:%F %T}"
