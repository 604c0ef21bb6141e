# hc_core/providers/management/commands/reset_weekly_utilization.py
from __future__ import annotations

from django.core.management.base import BaseCommand

from hc_core.providers.selectors import get_service_type_by_code
from hc_core.providers.services import CapacityLedger


class Command(BaseCommand):
    help = "Reset current_utilization_hours to zero for the new scheduling week."

    def add_arguments(self, parser):
        parser.add_argument("--service-type", type=str, default=None, help="Optional service type code filter.")

    def handle(self, *args, **opts):
        service_type_id = None
        if opts["service_type"]:
            service_type_id = get_service_type_by_code(code=opts["service_type"]).id

        count = CapacityLedger.reset_weekly_utilization(service_type_id=service_type_id)
        self.stdout.write(self.style.SUCCESS(f"Utilization reset. Capabilities updated: {count}"))
