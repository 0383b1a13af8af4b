import pytest
from django.core.cache import cache

from lis.models import LabDevice, LabDeviceChannel, LabOrder, LabOrderItem, LabTest, User

DEVICE_KEY = 'k-analyzer-01'

CATALOG = [
    ('WBC', 'White blood cells', '10^9/L'),
    ('HGB', 'Hemoglobin', 'g/dL'),
    ('PLT', 'Platelets', '10^9/L'),
    ('CRP', 'C-reactive protein', 'mg/L'),
    ('GLU', 'Glucose', 'mg/dL'),
]


@pytest.fixture(autouse=True)
def _clear_cache():
    # throttling counters live in the cache
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def device(db):
    d = LabDevice(code='CBC-01', name='Hematology analyzer', protocol=LabDevice.PROTOCOL_ASTM)
    d.set_api_key(DEVICE_KEY)
    d.save()
    return d


@pytest.fixture
def catalog(db):
    return {code: LabTest.objects.create(code=code, name=name, unit=unit) for code, name, unit in CATALOG}


@pytest.fixture
def channels(device, catalog):
    """Every catalog test mapped under its own code, with a default range."""
    return {
        code: LabDeviceChannel.objects.create(
            device=device, external_test_code=code, external_test_name=test.name,
            lis_test=test, default_unit=test.unit, reference_range='0-100',
        )
        for code, test in catalog.items()
    }


@pytest.fixture
def make_order(catalog):
    def _make(sample_id, codes, *, status=LabOrder.STATUS_COLLECTED, patient_id='P0001'):
        order = LabOrder.objects.create(sample_id=sample_id, patient_id=patient_id, status=status)
        for code in codes:
            LabOrderItem.objects.create(order=order, test=catalog[code])
        return order
    return _make


@pytest.fixture
def make_users(db):
    def _make():
        return {
            role: User.objects.create_user(username=f'{role}1', password='P@ssw0rd1', role=role)
            for role in ('viewer', 'technician', 'lab_admin')
        }
    return _make
