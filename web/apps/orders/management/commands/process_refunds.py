import json
import logging
from dataclasses import asdict

from django.core.management.base import BaseCommand

from apps.orders.providers import get_engine

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Submit pending refund obligations to the payment provider."

    def handle(self, *args, **options):
        report = get_engine().refunds.process_pending()
        logger.info("process_refunds finished", extra=asdict(report))
        self.stdout.write(json.dumps(asdict(report)))
