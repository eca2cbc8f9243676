import json
import logging
from dataclasses import asdict

from django.core.management.base import BaseCommand

from apps.orders.providers import get_engine

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Expire pending orders whose commitment window has elapsed. Safe to run concurrently."

    def handle(self, *args, **options):
        report = get_engine().sweeper.run()
        logger.info("expire_orders finished", extra=asdict(report))
        self.stdout.write(json.dumps(asdict(report)))
