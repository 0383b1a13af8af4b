"""
Device communication log: write-once trail of raw device traffic.

Entries are only ever appended; nothing here updates or deletes them.
"""
from __future__ import annotations

from typing import Iterable, Optional

from django.conf import settings
from django.db.models import Q, QuerySet
from rest_framework.exceptions import NotFound

from lis.models import LabDevice, LabDeviceMessageLog
from lis.services.channels import get_device


def clamp_limit(limit, *, default: int, ceiling: int) -> int:
    try:
        limit = int(limit) if limit not in (None, '') else default
    except (TypeError, ValueError):
        limit = default
    return max(1, min(limit, ceiling))


def append_entry(
    device: Optional[LabDevice],
    payload: str,
    *,
    direction: str = LabDeviceMessageLog.DIRECTION_IN,
    status: str = LabDeviceMessageLog.STATUS_RECEIVED,
    source_ip: Optional[str] = None,
    source_port: Optional[int] = None,
    sample_ids: Iterable[str] = (),
    row_count: int = 0,
    error_message: str = '',
    info_message: str = '',
) -> LabDeviceMessageLog:
    """Record one exchange.

    Runs inside the caller's transaction: if this insert fails the
    ingestion that triggered it fails with it.
    """
    limit = settings.LIS_RAW_PAYLOAD_MAX
    payload = payload or ''
    return LabDeviceMessageLog.objects.create(
        device=device,
        direction=direction,
        status=status,
        source_ip=source_ip or None,
        source_port=source_port,
        raw_payload=payload[:limit],
        truncated=len(payload) > limit,
        sample_ids=list(sample_ids),
        row_count=row_count,
        error_message=error_message or '',
        info_message=(info_message or '')[:255],
    )


def list_entries(device_id, *, limit=None, search: Optional[str] = None) -> QuerySet:
    """Most recent entries first, at most ``LIS_LOG_LIMIT_MAX``."""
    get_device(device_id)
    limit = clamp_limit(limit, default=settings.LIS_LOG_LIMIT_DEFAULT, ceiling=settings.LIS_LOG_LIMIT_MAX)
    qs = LabDeviceMessageLog.objects.filter(device_id=device_id)
    if search:
        s = search.strip()
        qs = qs.filter(
            Q(raw_payload__icontains=s) | Q(error_message__icontains=s)
            | Q(status__iexact=s) | Q(source_ip__startswith=s)
        )
    return qs.order_by('-created_at', '-id')[:limit]


def get_entry(entry_id) -> LabDeviceMessageLog:
    entry = LabDeviceMessageLog.objects.select_related('device').filter(pk=entry_id).first()
    if entry is None:
        raise NotFound(f'Log entry {entry_id} not found.')
    return entry
