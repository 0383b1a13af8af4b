"""
Channel mapping store: (device, native test code) -> internal test.

Nothing here is cached.  The reconciliation engine calls
:func:`resolve_channel` once per row so that an edit or deactivation made
while a batch is running applies to the rows that batch has not reached
yet.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import bleach
from django.db import transaction
from django.db.models import Q, QuerySet
from rest_framework.exceptions import NotFound

from lis.exceptions import ValidationError
from lis.models import LabDevice, LabDeviceChannel, LabTest
from lis.permissions import MANAGE, Capabilities
from lis.services.audit import log_action

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('external_test_name', 'lis_test_id', 'default_unit', 'reference_range', 'is_active')
_TEXT_FIELDS = ('external_test_name', 'default_unit', 'reference_range')
# units and ranges may contain '<'
_SANITIZED_FIELDS = ('external_test_name',)


@dataclass(frozen=True)
class ChannelMatch:
    channel: LabDeviceChannel
    # Set when more than one active mapping matched
    warning: Optional[str] = None


def get_device(device_id) -> LabDevice:
    device = LabDevice.objects.filter(pk=device_id).first()
    if device is None:
        raise NotFound(f'Device {device_id} not found.')
    return device


def get_mapping(mapping_id) -> LabDeviceChannel:
    ch = LabDeviceChannel.objects.select_related('device', 'lis_test').filter(pk=mapping_id).first()
    if ch is None:
        raise NotFound(f'Channel mapping {mapping_id} not found.')
    return ch


def _clean_fields(fields: dict) -> dict:
    data = {k: v for k, v in (fields or {}).items() if k in EDITABLE_FIELDS}
    for key in _TEXT_FIELDS:
        if key in data:
            data[key] = (data[key] or '').strip()
    for key in _SANITIZED_FIELDS:
        if key in data:
            data[key] = bleach.clean(data[key], strip=True)
    if data.get('lis_test_id') in ('', 0):
        data['lis_test_id'] = None
    test_id = data.get('lis_test_id')
    if test_id is not None and not LabTest.objects.filter(pk=test_id).exists():
        raise ValidationError({'lis_test_id': [f'Internal test {test_id} does not exist.']})
    return data


def _active_duplicates(device_id, code: str, exclude_id=None) -> QuerySet:
    qs = LabDeviceChannel.objects.filter(
        device_id=device_id, is_active=True, external_test_code__iexact=code,
    )
    if exclude_id is not None:
        qs = qs.exclude(pk=exclude_id)
    return qs


def list_mappings(device_id, *, search: Optional[str] = None, active_only: bool = False) -> QuerySet:
    get_device(device_id)
    qs = LabDeviceChannel.objects.filter(device_id=device_id).select_related('lis_test')
    if active_only:
        qs = qs.filter(is_active=True)
    if search:
        search = search.strip()
        qs = qs.filter(Q(external_test_code__icontains=search) | Q(external_test_name__icontains=search))
    return qs.order_by('external_test_code', 'id')


def create_mapping(device_id, native_code: str, fields: dict, caps: Capabilities, *, user=None) -> LabDeviceChannel:
    caps.require(MANAGE)
    code = (native_code or '').strip()
    if not code:
        raise ValidationError({'external_test_code': ['External test code is required.']})
    data = _clean_fields(fields)
    with transaction.atomic():
        # serializes concurrent creates for the same device
        device = LabDevice.objects.select_for_update().filter(pk=device_id).first()
        if device is None:
            raise NotFound(f'Device {device_id} not found.')
        is_active = data.get('is_active', True)
        if is_active and _active_duplicates(device.pk, code).exists():
            raise ValidationError({'external_test_code': [f"'{code}' is already mapped for device {device.code}."]})
        ch = LabDeviceChannel.objects.create(device=device, external_test_code=code, **data)
    log_action(user=user, action='channel_create', object_type='channel', object_id=ch.id,
               detail={'device': device.code, 'code': code, 'lis_test_id': ch.lis_test_id})
    logger.info('Channel %s created for device %s: %s -> %s', ch.id, device.code, code, ch.lis_test_id)
    return ch


def update_mapping(mapping_id, fields: dict, caps: Capabilities, *, user=None) -> LabDeviceChannel:
    caps.require(MANAGE)
    data = _clean_fields(fields)
    with transaction.atomic():
        ch = LabDeviceChannel.objects.select_for_update().filter(pk=mapping_id).first()
        if ch is None:
            raise NotFound(f'Channel mapping {mapping_id} not found.')
        LabDevice.objects.select_for_update().filter(pk=ch.device_id).first()
        becomes_active = data.get('is_active', ch.is_active)
        if becomes_active and _active_duplicates(ch.device_id, ch.external_test_code, exclude_id=ch.pk).exists():
            raise ValidationError({'is_active': [
                f"Another active mapping already uses '{ch.external_test_code}' on this device."
            ]})
        for key, value in data.items():
            setattr(ch, key, value)
        ch.save()
    log_action(user=user, action='channel_update', object_type='channel', object_id=ch.id,
               detail={k: v for k, v in data.items()})
    if data.get('is_active') is False:
        logger.info('Channel %s (%s) deactivated', ch.id, ch.external_test_code)
    return ch


def delete_mapping(mapping_id, caps: Capabilities, *, user=None) -> None:
    caps.require(MANAGE)
    ch = get_mapping(mapping_id)
    detail = {'device_id': ch.device_id, 'code': ch.external_test_code, 'lis_test_id': ch.lis_test_id}
    ch.delete()
    log_action(user=user, action='channel_delete', object_type='channel', object_id=mapping_id, detail=detail)


def resolve_channel(device_id, native_code: str) -> Optional[ChannelMatch]:
    """Active mapping for ``native_code`` on the device, read fresh.

    More than one active match breaks the uniqueness rule; the most
    recently updated mapping wins and the tie is logged and returned.
    """
    code = (native_code or '').strip()
    if device_id is None or not code:
        return None
    matches = list(_active_duplicates(device_id, code).order_by('-updated_at', '-id'))
    if not matches:
        return None
    chosen = matches[0]
    warning = None
    if len(matches) > 1:
        warning = (
            f"{len(matches)} active mappings match '{code}' on device {device_id}; "
            f"using channel {chosen.id} (most recently updated)."
        )
        logger.warning(warning)
    return ChannelMatch(channel=chosen, warning=warning)
