import json
import logging
from dataclasses import asdict

from django.core.management.base import BaseCommand

from apps.orders.providers import get_engine

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Poll couriers for tracking updates on orders in transit."

    def handle(self, *args, **options):
        report = get_engine().poller.run()
        logger.info("poll_tracking finished", extra=asdict(report))
        self.stdout.write(json.dumps(asdict(report)))
