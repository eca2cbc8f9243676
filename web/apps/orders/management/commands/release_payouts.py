import json
import logging
from dataclasses import asdict

from django.core.management.base import BaseCommand

from apps.orders.providers import get_engine

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Initiate seller payouts for delivered orders that have none yet."

    def add_arguments(self, parser):
        parser.add_argument("--order", help="Pay out a single delivered order instead of the whole backlog.")

    def handle(self, *args, **options):
        engine = get_engine()
        if options.get("order"):
            record = engine.payouts.initiate(options["order"])
            self.stdout.write(json.dumps({"reference": record.reference, "status": record.status.value}))
            return
        report = engine.payouts.release_due()
        logger.info("release_payouts finished", extra=asdict(report))
        self.stdout.write(json.dumps(asdict(report)))
