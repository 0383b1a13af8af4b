"""
Order gateways: where reconciled results are written.

The engine only needs two calls from the order subsystem: find the open
order item expecting a test for a sample, and write a result onto it.
``DatabaseOrderGateway`` serves them from the local order tables,
``HttpOrderGateway`` from a remote order service.  ``LIS_ORDER_GATEWAY``
selects one.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from lis.exceptions import PostingDeferred, ResolutionError, TransportError
from lis.models import LabOrder, LabOrderItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderTarget:
    order_id: int
    order_item_id: int
    patient_id: Optional[str]
    test_id: int


class OrderGateway:
    def find_open_order_item(self, sample_id: str, test_id: int) -> OrderTarget:
        """Open order item for ``sample_id`` expecting ``test_id``.

        Raises ``ResolutionError`` when there is none, ``PostingDeferred``
        when the order cannot take results yet and ``TransportError`` when
        the order subsystem is unreachable.
        """
        raise NotImplementedError

    def post_result(self, target: OrderTarget, row) -> None:
        raise NotImplementedError


class DatabaseOrderGateway(OrderGateway):

    def find_open_order_item(self, sample_id: str, test_id: int) -> OrderTarget:
        orders = list(
            LabOrder.objects.filter(sample_id=sample_id)
            .exclude(status=LabOrder.STATUS_CANCELLED)
            .order_by('-ordered_at', '-id')
        )
        if not orders:
            raise ResolutionError(f"No open order found for sample '{sample_id}'.")
        items = list(
            LabOrderItem.objects.filter(order__in=orders, test_id=test_id)
            .select_related('order').order_by('-order__ordered_at', 'id')
        )
        if not items:
            raise ResolutionError(f"No order for sample '{sample_id}' includes test {test_id}.")
        pending = [i for i in items if i.status == LabOrderItem.STATUS_PENDING
                   and i.order.status != LabOrder.STATUS_COMPLETED]
        if not pending:
            item = items[0]
            if item.status == LabOrderItem.STATUS_FINALIZED or item.order.status == LabOrder.STATUS_COMPLETED:
                raise ResolutionError(f"Sample '{sample_id}' is already finalized for test {test_id}.")
            raise ResolutionError(
                f"Order item {item.id} for sample '{sample_id}' already holds a result "
                f"(from result {item.source_result_id or '?'})."
            )
        item = pending[0]
        if item.order.status == LabOrder.STATUS_ORDERED:
            raise PostingDeferred(f"Sample '{sample_id}' has not been collected yet (order {item.order_id}).")
        return OrderTarget(
            order_id=item.order_id,
            order_item_id=item.id,
            patient_id=item.order.patient_id,
            test_id=test_id,
        )

    def post_result(self, target: OrderTarget, row) -> None:
        now = timezone.now()
        with transaction.atomic():
            order = LabOrder.objects.select_for_update().filter(pk=target.order_id).first()
            if order is None or order.status in (LabOrder.STATUS_CANCELLED, LabOrder.STATUS_COMPLETED):
                raise ResolutionError(f'Order {target.order_id} is no longer open.')
            updated = LabOrderItem.objects.filter(
                pk=target.order_item_id, status=LabOrderItem.STATUS_PENDING,
            ).update(
                status=LabOrderItem.STATUS_RESULTED,
                result_value=row.result_value,
                unit=row.unit,
                flag=row.flag,
                reference_range=row.reference_range,
                resulted_at=now,
                source_result_id=row.pk,
            )
            if not updated:
                raise ResolutionError(
                    f"Order item {target.order_item_id} was resulted or finalized by another request."
                )
            LabOrder.objects.filter(
                pk=target.order_id, status=LabOrder.STATUS_COLLECTED,
            ).update(status=LabOrder.STATUS_IN_PROGRESS)


class HttpOrderGateway(OrderGateway):
    """Talks to a remote order service over JSON/HTTP.

    ``GET  {base}/orders/lookup?sample_id=&test_id=`` ->
    ``{"order_id", "order_item_id", "patient_id", "ready"}``;
    ``POST {base}/orders/{order_id}/items/{item_id}/result``.
    4xx answers are resolution failures whose ``detail`` is passed through,
    connection errors and 5xx answers are transport failures.
    """

    def __init__(self, base_url: Optional[str] = None, *, token: Optional[str] = None,
                 timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url if base_url is not None else settings.LIS_ORDER_SERVICE_URL).rstrip('/')
        self.timeout = timeout or settings.LIS_ORDER_SERVICE_TIMEOUT
        self.session = session or requests.Session()
        token = token if token is not None else settings.LIS_ORDER_SERVICE_TOKEN
        if token:
            self.session.headers['Authorization'] = f'Token {token}'

    def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.base_url:
            raise TransportError('Order service URL is not configured.')
        url = f'{self.base_url}{path}'
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error('Order service %s %s failed: %s', method, url, e)
            raise TransportError(f'Order service unreachable: {e}')
        if r.status_code >= 500:
            logger.error('Order service %s %s answered %s', method, url, r.status_code)
            raise TransportError(f'Order service error {r.status_code}: {_detail_of(r)}')
        if r.status_code >= 400:
            raise ResolutionError(_detail_of(r))
        try:
            return r.json() if r.content else {}
        except ValueError:
            raise TransportError('Order service returned a non-JSON response.')

    def find_open_order_item(self, sample_id: str, test_id: int) -> OrderTarget:
        data = self._request('GET', '/orders/lookup', params={'sample_id': sample_id, 'test_id': test_id})
        if not data.get('order_id'):
            raise ResolutionError(f"No open order found for sample '{sample_id}'.")
        if not data.get('order_item_id'):
            raise ResolutionError(
                f"Order {data['order_id']} for sample '{sample_id}' has no item for test {test_id}."
            )
        if data.get('ready') is False:
            raise PostingDeferred(data.get('detail') or f"Order {data['order_id']} is not ready for results.")
        return OrderTarget(
            order_id=int(data['order_id']),
            order_item_id=int(data['order_item_id']),
            patient_id=str(data['patient_id']) if data.get('patient_id') is not None else None,
            test_id=test_id,
        )

    def post_result(self, target: OrderTarget, row) -> None:
        self._request(
            'POST',
            f'/orders/{target.order_id}/items/{target.order_item_id}/result',
            json={
                'test_id': target.test_id,
                'value': row.result_value,
                'unit': row.unit,
                'flag': row.flag,
                'reference_range': row.reference_range,
                'measured_at': row.measured_at.isoformat() if row.measured_at else None,
                'source_result_id': row.pk,
            },
        )


def _detail_of(response) -> str:
    try:
        data = response.json()
    except ValueError:
        return (response.text or '').strip()[:500] or f'HTTP {response.status_code}'
    if isinstance(data, dict):
        return str(data.get('detail') or data.get('message') or data)
    return str(data)


def get_order_gateway() -> OrderGateway:
    if settings.LIS_ORDER_GATEWAY == 'http':
        return HttpOrderGateway()
    return DatabaseOrderGateway()
