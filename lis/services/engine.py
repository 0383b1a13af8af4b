"""
Reconciliation engine: staging rows -> internal tests -> open orders.

Every row is reconciled on its own.  A failure is recorded on that row
and the batch moves on; only an error that makes the whole operation
meaningless (unknown device, missing capability) reaches the caller.

Per row::

    error   -> staging         (retry, if the row is complete)
    staging -> mapped          (active mapping with an internal test)
    mapped  -> posted          (open order item accepted the value)
    any     -> error           (resolution or transport failure)

Each step is a compare-and-set on the status read just before it, so two
operators reconciling the same rows never post a value twice: the loser
of a race gets a ``conflict`` outcome and the row is left to the winner.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from rest_framework.exceptions import NotFound

from lis import metrics
from lis.exceptions import ConflictError, NotConfiguredError, PostingDeferred, ResolutionError, TransportError
from lis.models import LabDeviceResult
from lis.permissions import MAP, Capabilities
from lis.realtime.events import broadcast_results_changed
from lis.services.audit import log_action
from lis.services.channels import get_device, resolve_channel
from lis.services.orders import OrderGateway, get_order_gateway
from lis.services.staging import get_row, set_row
from lis.state import Error, Mapped, Posted, Staging

logger = logging.getLogger(__name__)

POSTED = 'posted'
MAPPED = 'mapped'
UNCHANGED = 'unchanged'
ERROR = 'error'
CONFLICT = 'conflict'
SKIPPED = 'skipped'


@dataclass
class RowOutcome:
    row_id: int
    previous_status: str
    status: str
    outcome: str
    message: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'id': self.row_id,
            'previous_status': self.previous_status,
            'status': self.status,
            'outcome': self.outcome,
            'message': self.message,
            'warning': self.warning,
        }


@dataclass
class BatchSummary:
    scope: str
    outcomes: List[RowOutcome] = field(default_factory=list)

    @property
    def counts(self) -> dict:
        c = Counter(o.outcome for o in self.outcomes)
        return {k: c.get(k, 0) for k in (POSTED, MAPPED, UNCHANGED, ERROR, CONFLICT, SKIPPED)}

    @property
    def warnings(self) -> List[str]:
        return [o.warning for o in self.outcomes if o.warning]

    def to_dict(self) -> dict:
        return {
            'scope': self.scope,
            'processed': len(self.outcomes),
            'counts': self.counts,
            'warnings': self.warnings,
            'results': [o.to_dict() for o in self.outcomes],
        }


def _incomplete(row: LabDeviceResult) -> Optional[str]:
    if row.parse_failed:
        return row.error_message or 'Result record could not be parsed.'
    missing = [name for name, value in (
        ('sample id', row.sample_id), ('test code', row.external_test_code), ('value', row.result_value),
    ) if not value]
    if missing:
        return 'Result is missing ' + ', '.join(missing) + '.'
    return None


class ReconciliationEngine:
    """Maps and posts staging rows through an :class:`OrderGateway`."""

    def __init__(self, gateway: Optional[OrderGateway] = None, *, auto_post: Optional[bool] = None):
        self.gateway = gateway or get_order_gateway()
        self.auto_post = settings.LIS_AUTO_POST if auto_post is None else auto_post

    # -- batch entry points ------------------------------------------------

    def auto_map_device(self, device_id, caps: Capabilities, *, limit=None, user=None) -> BatchSummary:
        caps.require(MAP)
        device = get_device(device_id)
        ceiling = settings.LIS_STAGING_LIMIT_MAX
        try:
            limit = max(1, min(int(limit), ceiling)) if limit not in (None, '') else ceiling
        except (TypeError, ValueError):
            limit = ceiling
        ids = list(
            LabDeviceResult.objects.filter(
                device_id=device.pk,
                status__in=(LabDeviceResult.STATUS_STAGING, LabDeviceResult.STATUS_MAPPED),
            ).order_by('received_at', 'id').values_list('id', flat=True)[:limit]
        )
        summary = self.reconcile_ids(ids, caps, scope=f'device:{device.code}')
        log_action(user=user, action='lis_auto_map_device', object_type='device', object_id=device.pk,
                   detail=summary.counts)
        return summary

    def auto_map_sample(self, sample_id: str, caps: Capabilities, *, user=None) -> BatchSummary:
        caps.require(MAP)
        sample_id = (sample_id or '').strip()
        ids = list(
            LabDeviceResult.objects.filter(
                sample_id=sample_id,
                status__in=(LabDeviceResult.STATUS_STAGING, LabDeviceResult.STATUS_MAPPED),
            ).order_by('received_at', 'id').values_list('id', flat=True)
        ) if sample_id else []
        if not ids:
            raise NotFound(f"No staging results for sample '{sample_id}'.")
        summary = self.reconcile_ids(ids, caps, scope=f'sample:{sample_id}')
        log_action(user=user, action='lis_auto_map_sample', object_type='sample', object_id=sample_id,
                   detail=summary.counts)
        return summary

    def map_row(self, row_id, caps: Capabilities, *, user=None) -> RowOutcome:
        caps.require(MAP)
        row = get_row(row_id)
        outcome = self.reconcile(row)
        self._record([outcome], [row.device_id], reason='map_row')
        log_action(user=user, action='lis_map_row', object_type='result', object_id=row.pk,
                   detail=outcome.to_dict())
        return outcome

    def reconcile_ids(self, ids: Iterable[int], caps: Capabilities, *, scope: str) -> BatchSummary:
        """Reconcile rows one by one, re-reading each just before its turn."""
        caps.require(MAP)
        summary = BatchSummary(scope=scope)
        device_ids = set()
        for row_id in ids:
            row = LabDeviceResult.objects.filter(pk=row_id).first()
            if row is None:
                continue
            device_ids.add(row.device_id)
            summary.outcomes.append(self.reconcile(row))
        self._record(summary.outcomes, device_ids, reason=scope)
        logger.info('Reconciled %s rows for %s: %s', len(summary.outcomes), scope, summary.counts)
        return summary

    # -- single row --------------------------------------------------------

    def reconcile(self, row: LabDeviceResult) -> RowOutcome:
        """Advance one row as far as it can go; never raises for row-level failures."""
        previous = row.status
        if previous == LabDeviceResult.STATUS_POSTED:
            return RowOutcome(row.pk, previous, previous, SKIPPED, 'Result is already posted.')
        try:
            return self._advance(row, previous)
        except NotConfiguredError as e:
            return RowOutcome(row.pk, previous, row.status, UNCHANGED, str(e.detail), e.warning)
        except ConflictError as e:
            logger.info('Result %s changed concurrently: %s', row.pk, e.detail)
            current = LabDeviceResult.objects.filter(pk=row.pk).values_list('status', flat=True).first()
            return RowOutcome(row.pk, previous, current or row.status, CONFLICT, str(e.detail))
        except (ResolutionError, TransportError) as e:
            return self._fail(row, previous, str(e.detail))
        except DatabaseError as e:
            logger.error('Result %s: database error while posting: %s', row.pk, e)
            return self._fail(row, previous, f'Data integrity conflict: {e}')
        except Exception as e:
            logger.exception('Result %s: unexpected error during reconciliation', row.pk)
            return self._fail(row, previous, f'Unexpected error: {e}')

    def _advance(self, row: LabDeviceResult, previous: str) -> RowOutcome:
        if row.status == LabDeviceResult.STATUS_ERROR:
            problem = _incomplete(row)
            if problem:
                return RowOutcome(row.pk, previous, row.status, ERROR, row.error_message or problem)
            set_row(row, LabDeviceResult.STATUS_ERROR, Staging())

        match = resolve_channel(row.device_id, row.external_test_code)
        warning = match.warning if match else None
        test_id = match.channel.lis_test_id if match else None
        if test_id is None:
            if row.status == LabDeviceResult.STATUS_MAPPED:
                set_row(row, LabDeviceResult.STATUS_MAPPED, Error(
                    reason=f"Mapping for '{row.external_test_code}' is no longer active.",
                    test_id=row.lis_test_id,
                ))
                return RowOutcome(row.pk, previous, row.status, ERROR, row.error_message, warning)
            raise NotConfiguredError(
                f"No active mapping for '{row.external_test_code}'." if match is None
                else f"Mapping for '{row.external_test_code}' has no internal test.",
                warning=warning,
            )

        if row.status == LabDeviceResult.STATUS_STAGING or row.lis_test_id != test_id:
            set_row(row, row.status, Mapped(test_id=test_id))
        if not self.auto_post:
            return RowOutcome(row.pk, previous, row.status, MAPPED, None, warning)

        try:
            target = self.gateway.find_open_order_item(row.sample_id, test_id)
        except PostingDeferred as e:
            return RowOutcome(row.pk, previous, row.status, MAPPED, str(e.detail), warning)

        with transaction.atomic():
            set_row(row, LabDeviceResult.STATUS_MAPPED, Posted(
                test_id=test_id,
                order_id=target.order_id,
                order_item_id=target.order_item_id,
                patient_id=target.patient_id,
            ))
            try:
                self.gateway.post_result(target, row)
            except Exception:
                # the CAS above is rolled back with the transaction
                row.status = LabDeviceResult.STATUS_MAPPED
                raise
        return RowOutcome(row.pk, previous, row.status, POSTED, None, warning)

    def _fail(self, row: LabDeviceResult, previous: str, reason: str) -> RowOutcome:
        observed = LabDeviceResult.objects.filter(pk=row.pk).values_list('status', flat=True).first()
        if observed is None or observed in (LabDeviceResult.STATUS_POSTED, LabDeviceResult.STATUS_ERROR):
            return RowOutcome(row.pk, previous, observed or row.status, CONFLICT, reason)
        try:
            set_row(row, observed, Error(reason=reason, test_id=row.lis_test_id))
        except ConflictError as e:
            return RowOutcome(row.pk, previous, row.status, CONFLICT, str(e.detail))
        logger.warning('Result %s (%s/%s) -> error: %s', row.pk, row.sample_id, row.external_test_code, reason)
        return RowOutcome(row.pk, previous, row.status, ERROR, reason)

    def _record(self, outcomes: List[RowOutcome], device_ids, *, reason: str) -> None:
        for o in outcomes:
            metrics.RECONCILE_OUTCOMES.labels(outcome=o.outcome).inc()
        if outcomes:
            counts = dict(Counter(o.outcome for o in outcomes))
            transaction.on_commit(lambda: broadcast_results_changed(reason, device_ids, counts))


def auto_map_device(device_id, caps: Capabilities, *, limit=None, user=None) -> BatchSummary:
    return ReconciliationEngine().auto_map_device(device_id, caps, limit=limit, user=user)


def auto_map_sample(sample_id: str, caps: Capabilities, *, user=None) -> BatchSummary:
    return ReconciliationEngine().auto_map_sample(sample_id, caps, user=user)


def map_row(row_id, caps: Capabilities, *, user=None) -> RowOutcome:
    return ReconciliationEngine().map_row(row_id, caps, user=user)
