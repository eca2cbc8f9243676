import json
import logging
from dataclasses import asdict

from django.core.management.base import BaseCommand

from apps.orders.providers import get_engine

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Remind sellers about pending orders they have not committed to yet."

    def handle(self, *args, **options):
        report = get_engine().reminder.run()
        logger.info("send_commit_reminders finished", extra=asdict(report))
        self.stdout.write(json.dumps(asdict(report)))
