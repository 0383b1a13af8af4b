from django.core.management.base import BaseCommand, CommandError
from rest_framework.exceptions import NotFound

from lis.models import LabDevice
from lis.permissions import Capabilities
from lis.services.engine import ReconciliationEngine


class Command(BaseCommand):
    help = "Reconcile pending staging results for one device, one sample, or every active device."

    def add_arguments(self, parser):
        group = parser.add_mutually_exclusive_group()
        group.add_argument("--device", help="device code")
        group.add_argument("--sample", help="sample id")
        parser.add_argument("--limit", type=int, default=None)

    def handle(self, *args, **opts):
        engine = ReconciliationEngine()
        caps = Capabilities.system()
        if opts["sample"]:
            try:
                summaries = [engine.auto_map_sample(opts["sample"], caps)]
            except NotFound as e:
                raise CommandError(str(e.detail))
        else:
            devices = LabDevice.objects.filter(is_active=True)
            if opts["device"]:
                devices = LabDevice.objects.filter(code=opts["device"])
                if not devices.exists():
                    raise CommandError(f"Unknown device '{opts['device']}'")
            summaries = [engine.auto_map_device(d.pk, caps, limit=opts["limit"]) for d in devices]
        for s in summaries:
            counts = ", ".join(f"{k}={v}" for k, v in s.counts.items() if v)
            self.stdout.write(self.style.SUCCESS(f"{s.scope}: {len(s.outcomes)} rows ({counts or 'nothing to do'})"))
            for warning in s.warnings:
                self.stdout.write(self.style.WARNING(warning))
