from lis.models import LabDeviceResult


def stage(device, sample_id, code, value='1.0', **extra):
    """Insert a staging row directly, as ingestion would."""
    return LabDeviceResult.objects.create(
        device=device, sample_id=sample_id, external_test_code=code, result_value=value, **extra
    )


def assert_destination_invariant():
    for row in LabDeviceResult.objects.all():
        if row.status == LabDeviceResult.STATUS_POSTED:
            assert row.lis_test_id is not None and row.lis_order_id is not None, row
            assert row.posted_at is not None, row
        elif row.status == LabDeviceResult.STATUS_STAGING:
            assert row.lis_test_id is None and row.lis_order_id is None, row
        elif row.status == LabDeviceResult.STATUS_MAPPED:
            assert row.lis_test_id is not None and row.lis_order_id is None, row
        else:
            assert row.error_message, row
            assert row.lis_order_id is None, row
