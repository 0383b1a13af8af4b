import logging
from unittest import mock

import pytest
import requests
from rest_framework.exceptions import NotFound, PermissionDenied

from lis.models import LabDeviceChannel, LabDeviceResult, LabOrder, LabOrderItem
from lis.permissions import MAP, VIEW, Capabilities
from lis.services.engine import ReconciliationEngine
from lis.services.orders import DatabaseOrderGateway, HttpOrderGateway
from lis.services.staging import ingest
from lis.tests.helpers import assert_destination_invariant, stage

pytestmark = pytest.mark.django_db

TECH = Capabilities(frozenset({VIEW, MAP}))
VIEWER = Capabilities(frozenset({VIEW}))


@pytest.fixture
def engine():
    return ReconciliationEngine(DatabaseOrderGateway(), auto_post=True)


def test_clean_auto_map_posts_every_row(engine, device, channels, make_order):
    order = make_order('S1', ['WBC', 'HGB', 'PLT'], patient_id='P42')
    rows = [stage(device, 'S1', code, value) for code, value in (('WBC', '7.2'), ('HGB', '13.5'), ('PLT', '250'))]

    summary = engine.auto_map_device(device.pk, TECH)

    assert summary.counts['posted'] == 3
    for row in rows:
        row.refresh_from_db()
        assert row.status == 'posted'
        assert row.lis_order_id == order.pk
        assert row.lis_test_id == channels[row.external_test_code].lis_test_id
        assert row.patient_id == 'P42'
    item = LabOrderItem.objects.get(order=order, test__code='HGB')
    assert (item.status, item.result_value) == ('resulted', '13.5')
    order.refresh_from_db()
    assert order.status == LabOrder.STATUS_IN_PROGRESS
    assert_destination_invariant()


def test_unmapped_code_stays_in_staging(engine, device, channels, make_order):
    make_order('S1', ['WBC'])
    row = stage(device, 'S1', 'XYZ')

    summary = engine.auto_map_device(device.pk, TECH)

    (outcome,) = summary.outcomes
    assert outcome.outcome == 'unchanged'
    assert "No active mapping for 'XYZ'" in outcome.message
    row.refresh_from_db()
    assert (row.status, row.lis_test_id, row.lis_order_id, row.error_message) == ('staging', None, None, '')


def test_mapping_without_internal_test_is_not_an_error(engine, device, channels):
    LabDeviceChannel.objects.create(device=device, external_test_code='NEW')
    row = stage(device, 'S1', 'NEW')
    outcome = engine.map_row(row.pk, TECH)
    assert outcome.outcome == 'unchanged'
    row.refresh_from_db()
    assert row.status == 'staging'


def test_map_row_on_posted_row_is_a_noop(engine, device, channels, make_order):
    make_order('S1', ['WBC'])
    row = stage(device, 'S1', 'WBC')
    assert engine.map_row(row.pk, TECH).outcome == 'posted'
    row.refresh_from_db()
    before = (row.status, row.lis_test_id, row.lis_order_id, row.posted_at, row.updated_at)

    again = engine.map_row(row.pk, TECH)

    assert (again.outcome, again.status) == ('skipped', 'posted')
    row.refresh_from_db()
    assert (row.status, row.lis_test_id, row.lis_order_id, row.posted_at, row.updated_at) == before


def test_failing_row_does_not_stop_the_batch(engine, device, channels, make_order):
    # GLU is mapped but missing from the order
    make_order('S1', ['WBC', 'HGB', 'PLT', 'CRP'])
    rows = [stage(device, 'S1', code) for code in ('WBC', 'HGB', 'GLU', 'PLT', 'CRP')]

    summary = engine.auto_map_device(device.pk, TECH)

    assert summary.counts['posted'] == 4 and summary.counts['error'] == 1
    for row in rows:
        row.refresh_from_db()
    assert [r.status for r in rows] == ['posted', 'posted', 'error', 'posted', 'posted']
    assert 'includes test' in rows[2].error_message
    assert_destination_invariant()


def test_concurrent_map_posts_once(engine, device, channels, make_order):
    make_order('S1', ['WBC'])
    row = stage(device, 'S1', 'WBC')
    first = LabDeviceResult.objects.get(pk=row.pk)
    second = LabDeviceResult.objects.get(pk=row.pk)

    a = engine.reconcile(first)
    b = engine.reconcile(second)

    assert a.outcome == 'posted'
    assert (b.outcome, b.status) == ('conflict', 'posted')
    assert LabOrderItem.objects.filter(status='resulted', source_result_id=row.pk).count() == 1
    row.refresh_from_db()
    assert row.status == 'posted'


def test_deactivation_applies_to_rows_not_yet_processed(device, channels, make_order):
    make_order('S1', ['WBC'])
    make_order('S2', ['WBC'], patient_id='P0002')
    r1 = stage(device, 'S1', 'WBC')
    r2 = stage(device, 'S2', 'WBC')

    class DeactivatingGateway(DatabaseOrderGateway):
        def post_result(self, target, row):
            super().post_result(target, row)
            LabDeviceChannel.objects.filter(pk=channels['WBC'].pk).update(is_active=False)

    summary = ReconciliationEngine(DeactivatingGateway(), auto_post=True).auto_map_device(device.pk, TECH)

    assert [o.outcome for o in summary.outcomes] == ['posted', 'unchanged']
    r1.refresh_from_db()
    r2.refresh_from_db()
    assert (r1.status, r2.status) == ('posted', 'staging')


def test_mapped_row_whose_mapping_disappears_becomes_error(device, channels, make_order):
    make_order('S1', ['WBC'])
    row = stage(device, 'S1', 'WBC')
    assert ReconciliationEngine(DatabaseOrderGateway(), auto_post=False).map_row(row.pk, TECH).outcome == 'mapped'
    LabDeviceChannel.objects.filter(pk=channels['WBC'].pk).update(is_active=False)

    outcome = ReconciliationEngine(DatabaseOrderGateway(), auto_post=True).map_row(row.pk, TECH)

    assert outcome.outcome == 'error'
    row.refresh_from_db()
    assert row.status == 'error' and 'no longer active' in row.error_message


def test_uncollected_sample_stays_mapped_until_collected(engine, device, channels, make_order):
    order = make_order('S1', ['WBC'], status=LabOrder.STATUS_ORDERED)
    row = stage(device, 'S1', 'WBC')

    outcome = engine.map_row(row.pk, TECH)
    assert (outcome.outcome, outcome.status) == ('mapped', 'mapped')
    assert 'not been collected' in outcome.message
    row.refresh_from_db()
    assert row.lis_test_id is not None and row.lis_order_id is None

    LabOrder.objects.filter(pk=order.pk).update(status=LabOrder.STATUS_COLLECTED)
    summary = engine.auto_map_sample('S1', TECH)
    assert summary.counts['posted'] == 1
    assert_destination_invariant()


def test_auto_post_disabled_stops_at_mapped(device, channels, make_order):
    make_order('S1', ['WBC'])
    stage(device, 'S1', 'WBC')
    summary = ReconciliationEngine(DatabaseOrderGateway(), auto_post=False).auto_map_device(device.pk, TECH)
    assert summary.counts['mapped'] == 1
    assert LabOrderItem.objects.get().status == 'pending'


def test_error_row_is_retried(engine, device, channels, make_order):
    row = stage(device, 'S1', 'WBC')
    assert engine.map_row(row.pk, TECH).outcome == 'error'
    row.refresh_from_db()
    assert "No open order found for sample 'S1'" in row.error_message

    make_order('S1', ['WBC'])
    outcome = engine.map_row(row.pk, TECH)

    assert (outcome.previous_status, outcome.outcome) == ('error', 'posted')
    row.refresh_from_db()
    assert row.error_message == ''


def test_incomplete_error_row_is_left_alone(engine, device, channels):
    row = stage(device, 'S1', 'WBC', value='', status='error', error_message="Result record for 'WBC' has no value.")
    outcome = engine.map_row(row.pk, TECH)
    assert outcome.outcome == 'error'
    row.refresh_from_db()
    assert row.status == 'error' and 'no value' in row.error_message


def test_finalized_item_is_a_resolution_error(engine, device, channels, make_order):
    order = make_order('S1', ['WBC'])
    LabOrderItem.objects.filter(order=order).update(status=LabOrderItem.STATUS_FINALIZED)
    row = stage(device, 'S1', 'WBC')
    assert engine.map_row(row.pk, TECH).outcome == 'error'
    row.refresh_from_db()
    assert 'already finalized' in row.error_message


def test_engine_operations_require_map(engine, device, channels, make_order):
    make_order('S1', ['WBC'])
    row = stage(device, 'S1', 'WBC')
    with pytest.raises(PermissionDenied):
        engine.auto_map_device(device.pk, VIEWER)
    with pytest.raises(PermissionDenied):
        engine.auto_map_sample('S1', VIEWER)
    with pytest.raises(PermissionDenied):
        engine.map_row(row.pk, VIEWER)
    row.refresh_from_db()
    assert row.status == 'staging'


def test_operation_level_errors_abort(engine, device):
    with pytest.raises(NotFound):
        engine.auto_map_device(987654, TECH)
    with pytest.raises(NotFound):
        engine.auto_map_sample('NOPE', TECH)
    with pytest.raises(NotFound):
        engine.map_row(987654, TECH)


def test_limit_caps_the_batch(engine, device, channels):
    for n in range(4):
        stage(device, f'S{n}', 'XYZ')
    assert len(engine.auto_map_device(device.pk, TECH, limit=2).outcomes) == 2


def test_ambiguous_mapping_warning_is_on_the_outcome(engine, device, channels, catalog, make_order):
    make_order('S1', ['WBC'])
    LabDeviceChannel.objects.create(device=device, external_test_code='WBC', lis_test=catalog['WBC'])
    stage(device, 'S1', 'WBC')
    summary = engine.auto_map_device(device.pk, TECH)
    assert summary.counts['posted'] == 1
    assert summary.warnings and 'active mappings match' in summary.warnings[0]


def test_order_service_outage_marks_row_error_and_logs(device, channels, caplog):
    session = mock.Mock()
    session.request.side_effect = requests.ConnectionError('connection refused')
    gateway = HttpOrderGateway('http://orders.test', token='', session=session)
    row = stage(device, 'S1', 'WBC')

    with caplog.at_level(logging.ERROR, logger='lis'):
        outcome = ReconciliationEngine(gateway, auto_post=True).map_row(row.pk, TECH)

    assert outcome.outcome == 'error'
    row.refresh_from_db()
    assert row.status == 'error' and 'unreachable' in row.error_message
    assert row.lis_order_id is None
    assert any(r.levelno == logging.ERROR and r.name == 'lis.services.orders' for r in caplog.records)


def _response(status_code, body):
    r = requests.Response()
    r.status_code = status_code
    r._content = body.encode()
    return r


def test_order_service_client_error_detail_is_surfaced(device, channels):
    session = mock.Mock()
    session.request.return_value = _response(404, '{"detail": "Sample S1 unknown to order service"}')
    gateway = HttpOrderGateway('http://orders.test', token='', session=session)
    row = stage(device, 'S1', 'WBC')

    ReconciliationEngine(gateway, auto_post=True).map_row(row.pk, TECH)

    row.refresh_from_db()
    assert row.status == 'error'
    assert row.error_message == 'Sample S1 unknown to order service'


def test_order_service_post_failure_rolls_back_posted_state(device, channels):
    session = mock.Mock()
    session.request.side_effect = [
        _response(200, '{"order_id": 7, "order_item_id": 70, "patient_id": "P7", "ready": true}'),
        _response(503, 'maintenance'),
    ]
    gateway = HttpOrderGateway('http://orders.test', token='', session=session)
    row = stage(device, 'S1', 'WBC')

    outcome = ReconciliationEngine(gateway, auto_post=True).map_row(row.pk, TECH)

    assert outcome.outcome == 'error'
    row.refresh_from_db()
    assert (row.status, row.lis_order_id, row.posted_at) == ('error', None, None)
    assert '503' in row.error_message
    method, url = session.request.call_args_list[1][0]
    assert (method, url) == ('POST', 'http://orders.test/orders/7/items/70/result')


def test_order_service_answer_without_item_is_not_posted(device, channels):
    session = mock.Mock()
    session.request.return_value = _response(200, '{"order_id": 7, "patient_id": "P7", "ready": true}')
    gateway = HttpOrderGateway('http://orders.test', token='', session=session)
    row = stage(device, 'S1', 'WBC')

    outcome = ReconciliationEngine(gateway, auto_post=True).map_row(row.pk, TECH)

    assert outcome.outcome == 'error'
    assert session.request.call_count == 1
    row.refresh_from_db()
    assert (row.status, row.lis_order_id) == ('error', None)
    assert 'has no item for test' in row.error_message


def test_unmapped_rows_do_not_hold_back_the_batch(engine, device, channels, make_order):
    make_order('S1', ['WBC', 'HGB', 'PLT'])
    rows = [stage(device, 'S1', code) for code in ('WBC', 'XYZ', 'HGB', 'ABC', 'PLT')]

    summary = engine.auto_map_device(device.pk, TECH)

    assert (summary.counts['posted'], summary.counts['unchanged'], summary.counts['error']) == (3, 2, 0)
    for row in rows:
        row.refresh_from_db()
    assert [r.status for r in rows] == ['posted', 'staging', 'posted', 'staging', 'posted']
    assert all(r.error_message == '' for r in rows if r.status == 'staging')
    assert_destination_invariant()


def test_unparseable_record_is_not_retried(engine, device, channels, make_order, settings):
    settings.LIS_AUTO_MAP_ON_INGEST = False
    make_order('S1', ['WBC'])
    payload = "H|\\^&\rO|1|S1||^^^CBC\rR|1|^^^WBC|7.2|||N" + '|' * 6 + "2024134099\rL|1"
    (row,) = ingest(device, payload).rows
    assert row.status == 'error' and row.parse_failed

    outcome = engine.map_row(row.pk, TECH)

    assert (outcome.previous_status, outcome.outcome) == ('error', 'error')
    assert 'invalid timestamp' in outcome.message
    row.refresh_from_db()
    assert row.status == 'error' and row.lis_order_id is None
    assert LabOrderItem.objects.get().status == 'pending'
