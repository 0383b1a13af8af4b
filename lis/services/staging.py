"""
Staging store: analyzer-reported values waiting to be reconciled.

``ingest`` is the only place rows are created.  After that the row's
state columns change exclusively through :func:`set_row`, a
compare-and-set on the status the caller last observed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Max, Q, QuerySet
from django.utils import timezone
from rest_framework.exceptions import NotFound

from lis import metrics
from lis.exceptions import ConflictError, ParseError, PreconditionFailed, ValidationError
from lis.models import LabDevice, LabDeviceMessageLog, LabDeviceResult
from lis.parsers import ParsedResult, parse_message
from lis.permissions import MAP, Capabilities
from lis.realtime.events import broadcast_results_changed
from lis.services.audit import log_action
from lis.services.channels import get_device, resolve_channel
from lis.services.logs import append_entry, clamp_limit, get_entry
from lis.state import Error, Posted, RowState, Staging, can_transition, columns_for

logger = logging.getLogger(__name__)

STAGING_LIMIT_DEFAULT = 200


@dataclass
class IngestResult:
    log_entry: LabDeviceMessageLog
    rows: List[LabDeviceResult] = field(default_factory=list)
    # Filled when auto-map ran after the rows were committed
    reconciliation: Optional[object] = None

    @property
    def staged(self) -> int:
        return sum(1 for r in self.rows if r.status == LabDeviceResult.STATUS_STAGING)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.rows if r.status == LabDeviceResult.STATUS_ERROR)


def _row_from(device: LabDevice, entry: LabDeviceMessageLog, parsed: ParsedResult) -> LabDeviceResult:
    unit, ref_range = parsed.unit, parsed.reference_range
    if parsed.ok and not (unit and ref_range):
        match = resolve_channel(device.pk, parsed.code)
        if match is not None:
            unit = unit or match.channel.default_unit
            ref_range = ref_range or match.channel.reference_range
    state: RowState = Staging() if parsed.ok else Error(reason=parsed.error)
    return LabDeviceResult.objects.create(
        device=device,
        message_log=entry,
        sample_id=parsed.sample_id,
        external_test_code=parsed.code,
        external_test_name=parsed.name,
        result_value=parsed.value,
        unit=unit,
        reference_range=ref_range,
        flag=parsed.flag,
        measured_at=parsed.measured_at,
        parse_failed=not parsed.ok,
        **columns_for(state),
    )


def _info_of(parsed, reprocess_of: Optional[int]) -> str:
    info = f'{parsed.protocol}: {len(parsed.results)} results, patient {parsed.patient_identifier or "-"}'
    if reprocess_of:
        info = f'reprocess of log {reprocess_of}; ' + info
    return info


def ingest(device: LabDevice, payload: str, *, source_ip: Optional[str] = None,
           source_port: Optional[int] = None, reprocess_of: Optional[int] = None) -> IngestResult:
    """Parse one device message into staging rows.

    The communication log entry and the rows are written in one
    transaction.  A message that cannot be parsed at all still leaves its
    log entry behind before ``ParseError`` is raised.  Records that fail
    individually become ``error`` rows next to their siblings.

    ``reprocess_of`` names the log entry whose payload is being replayed;
    the new entry records it and the old one is left as it was.
    """
    now = timezone.now()
    failure: Optional[ParseError] = None
    with transaction.atomic():
        try:
            parsed = parse_message(payload, device.protocol)
        except ParseError as e:
            failure = e
            entry = append_entry(
                device, payload, status=LabDeviceMessageLog.STATUS_ERROR,
                source_ip=source_ip, source_port=source_port, error_message=str(e.detail),
                info_message=f'reprocess of log {reprocess_of}' if reprocess_of else '',
            )
            device.last_seen_at = now
            device.last_error_at = now
            device.last_error = str(e.detail)
            device.save(update_fields=['last_seen_at', 'last_error_at', 'last_error', 'updated_at'])
            result = IngestResult(log_entry=entry)
        else:
            if parsed.failed == 0:
                log_status, error_message = LabDeviceMessageLog.STATUS_PARSED, ''
            elif parsed.failed < len(parsed.results):
                log_status = LabDeviceMessageLog.STATUS_PARTIAL
                error_message = f'{parsed.failed} of {len(parsed.results)} results could not be parsed.'
            else:
                log_status = LabDeviceMessageLog.STATUS_ERROR
                error_message = 'No result in the message could be parsed.'
            entry = append_entry(
                device, payload, status=log_status,
                source_ip=source_ip, source_port=source_port,
                sample_ids=parsed.sample_ids, row_count=len(parsed.results),
                error_message=error_message,
                info_message=_info_of(parsed, reprocess_of),
            )
            rows = [_row_from(device, entry, r) for r in parsed.results]
            device.last_seen_at = now
            fields = ['last_seen_at', 'updated_at']
            if error_message:
                device.last_error_at = now
                device.last_error = error_message
                fields += ['last_error_at', 'last_error']
            device.save(update_fields=fields)
            result = IngestResult(log_entry=entry, rows=rows)

    metrics.MESSAGES_INGESTED.labels(device=device.code, status=result.log_entry.status).inc()
    if failure is not None:
        logger.warning('Device %s message %s rejected: %s', device.code, result.log_entry.id, failure.detail)
        raise failure

    logger.info('Device %s message %s: %s rows (%s failed)',
                device.code, result.log_entry.id, len(result.rows), result.failed)
    transaction.on_commit(lambda: broadcast_results_changed('ingest', [device.pk], {'rows': len(result.rows)}))

    if settings.LIS_AUTO_MAP_ON_INGEST and result.staged:
        from lis.services.engine import ReconciliationEngine

        staged_ids = [r.pk for r in result.rows if r.status == LabDeviceResult.STATUS_STAGING]
        result.reconciliation = ReconciliationEngine().reconcile_ids(
            staged_ids, Capabilities.system(), scope=f'ingest:{result.log_entry.id}',
        )
    return result


def reprocess_entry(log_id, caps: Capabilities, *, user=None) -> IngestResult:
    """Run a logged inbound message through ingestion again.

    A new log entry is appended for the replay; the stored entry is not
    touched.  Truncated payloads are refused, since replaying them would
    stage a partial message.
    """
    caps.require(MAP)
    entry = get_entry(log_id)
    if entry.direction != LabDeviceMessageLog.DIRECTION_IN:
        raise PreconditionFailed(f'Log entry {entry.pk} is not an inbound message.')
    if entry.device is None:
        raise PreconditionFailed(f'Log entry {entry.pk} has no device left to replay it for.')
    if entry.truncated:
        raise PreconditionFailed(f'Log entry {entry.pk} was truncated when stored and cannot be replayed.')
    logger.info('Reprocessing log entry %s for device %s', entry.pk, entry.device.code)
    try:
        result = ingest(entry.device, entry.raw_payload, source_ip=entry.source_ip,
                        source_port=entry.source_port, reprocess_of=entry.pk)
    finally:
        log_action(user=user, action='lis_log_reprocess', object_type='message_log', object_id=entry.pk)
    return result

def list_rows(device_id, *, status: Optional[str] = None, sample_id: Optional[str] = None,
              limit=None) -> QuerySet:
    get_device(device_id)
    qs = LabDeviceResult.objects.filter(device_id=device_id)
    if status:
        valid = {c for c, _ in LabDeviceResult.STATUS_CHOICES}
        if status not in valid:
            raise ValidationError({'status': [f"Unknown status '{status}'."]})
        qs = qs.filter(status=status)
    if sample_id:
        qs = qs.filter(sample_id__icontains=sample_id.strip())
    limit = clamp_limit(limit, default=STAGING_LIMIT_DEFAULT, ceiling=settings.LIS_STAGING_LIMIT_MAX)
    return qs.order_by('-received_at', '-id')[:limit]


def list_error_queue(*, device_id=None, limit=None) -> QuerySet:
    qs = LabDeviceResult.objects.filter(status=LabDeviceResult.STATUS_ERROR).select_related('device')
    if device_id is not None:
        get_device(device_id)
        qs = qs.filter(device_id=device_id)
    limit = clamp_limit(limit, default=STAGING_LIMIT_DEFAULT, ceiling=settings.LIS_STAGING_LIMIT_MAX)
    return qs.order_by('-updated_at', '-id')[:limit]


def get_row(row_id) -> LabDeviceResult:
    row = LabDeviceResult.objects.select_related('device').filter(pk=row_id).first()
    if row is None:
        raise NotFound(f'Result {row_id} not found.')
    return row


def set_row(row: LabDeviceResult, observed_status: str, state: RowState) -> LabDeviceResult:
    """Move ``row`` to ``state`` if it is still in ``observed_status``.

    Raises ``ConflictError`` when another request changed the row first;
    the in-memory ``row`` is only updated on success.  Re-writing a
    ``mapped`` row with a different test is allowed.
    """
    refresh = observed_status == state.status == LabDeviceResult.STATUS_MAPPED
    if not refresh and not can_transition(observed_status, state.status):
        raise PreconditionFailed(f"Result {row.pk} cannot move from '{observed_status}' to '{state.status}'.")
    now = timezone.now()
    cols = columns_for(state)
    cols['updated_at'] = now
    cols['posted_at'] = now if isinstance(state, Posted) else None
    updated = LabDeviceResult.objects.filter(pk=row.pk, status=observed_status).update(**cols)
    if not updated:
        raise ConflictError(f"Result {row.pk} is no longer '{observed_status}'.")
    for key, value in cols.items():
        setattr(row, key, value)
    return row


def device_status_summary() -> List[dict]:
    """Per-device counters for the status widget."""
    devices = LabDevice.objects.annotate(
        staging_count=Count('results', filter=Q(results__status=LabDeviceResult.STATUS_STAGING)),
        mapped_count=Count('results', filter=Q(results__status=LabDeviceResult.STATUS_MAPPED)),
        error_count=Count('results', filter=Q(results__status=LabDeviceResult.STATUS_ERROR)),
        last_received_at=Max('results__received_at'),
    ).order_by('name', 'id')
    return [
        {
            'id': d.id,
            'code': d.code,
            'name': d.name,
            'protocol': d.protocol,
            'is_active': d.is_active,
            'staging_count': d.staging_count,
            'mapped_count': d.mapped_count,
            'error_count': d.error_count,
            'last_received_at': d.last_received_at,
            'last_seen_at': d.last_seen_at,
            'last_error_at': d.last_error_at,
            'last_error': d.last_error or None,
        }
        for d in devices
    ]
