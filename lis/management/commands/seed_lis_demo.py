"""
Seed a demo analyzer with channel mappings, internal tests and open orders.

Idempotent: re-running refreshes passwords, the device key and mappings
without duplicating anything.
"""
from django.core.management.base import BaseCommand
from django.db import transaction

from lis.models import LabDevice, LabDeviceChannel, LabOrder, LabOrderItem, LabTest, User

USERS = [
    ("viewer1", "viewer"),
    ("tech1", "technician"),
    ("labadmin1", "lab_admin"),
    ("super", "super"),
]

TESTS = [
    # code, name, unit, analyzer code, reference range
    ("HGB", "Hemoglobin", "g/dL", "HGB", "12.0-16.0"),
    ("WBC", "White blood cells", "10^9/L", "WBC", "4.0-11.0"),
    ("PLT", "Platelets", "10^9/L", "PLT", "150-400"),
    ("GLU", "Glucose", "mg/dL", "GLU", "70-110"),
]


class Command(BaseCommand):
    help = "Create demo users, an analyzer with mappings, tests and open orders (idempotent)."

    def add_arguments(self, parser):
        parser.add_argument("--device-code", default="CBC-01")
        parser.add_argument("--device-key", default="demo-device-key")
        parser.add_argument("--password", default="123456")
        parser.add_argument("--samples", type=int, default=3, help="open orders to create")

    @transaction.atomic
    def handle(self, *args, **opts):
        for username, role in USERS:
            u, _ = User.objects.get_or_create(username=username, defaults={"role": role})
            u.role = role
            u.is_active = True
            u.set_password(opts["password"])
            u.save()
            self.stdout.write(self.style.SUCCESS(f"ok: user {username} ({role})"))

        device, _ = LabDevice.objects.get_or_create(
            code=opts["device_code"],
            defaults={"name": "Hematology analyzer", "protocol": LabDevice.PROTOCOL_ASTM, "location": "Main lab"},
        )
        device.set_api_key(opts["device_key"])
        device.is_active = True
        device.save()

        tests = []
        for code, name, unit, ext_code, ref_range in TESTS:
            test, _ = LabTest.objects.update_or_create(code=code, defaults={"name": name, "unit": unit})
            tests.append(test)
            LabDeviceChannel.objects.update_or_create(
                device=device, external_test_code=ext_code, is_active=True,
                defaults={"external_test_name": name, "lis_test": test,
                          "default_unit": unit, "reference_range": ref_range},
            )
        self.stdout.write(self.style.SUCCESS(f"ok: device {device.code} with {len(tests)} channels"))

        for n in range(1, opts["samples"] + 1):
            sample_id = f"S{n:05d}"
            order, created = LabOrder.objects.get_or_create(
                sample_id=sample_id,
                defaults={"patient_id": f"P{n:05d}", "status": LabOrder.STATUS_COLLECTED},
            )
            if created:
                for test in tests:
                    LabOrderItem.objects.create(order=order, test=test)
            self.stdout.write(self.style.SUCCESS(f"ok: order {order.id} sample {sample_id}"))
        self.stdout.write(self.style.SUCCESS("Demo LIS data ensured."))
