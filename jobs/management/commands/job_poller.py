import logging
import time

from django.conf import settings
from django.core.management.base import BaseCommand

from jobs.poller import JobPoller
from jobs.registry import registered_tags

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Lease pending jobs from the ledger and dispatch them to this host's worker queue"

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run a single reap + lease cycle and exit")
        parser.add_argument("--max-parallel", type=int, default=None)
        parser.add_argument("--interval", type=float, default=None)

    def handle(self, *args, **options):
        poller = JobPoller(max_parallel=options["max_parallel"])
        interval = options["interval"] or settings.JOB_POLLER_INTERVAL_SECONDS
        self.stdout.write(
            f"Job poller started on {poller.hostname} (queue={poller.queue}, max_parallel={poller.max_parallel})."
        )
        logger.info("Job kinds: %s", ", ".join(registered_tags()))
        try:
            while True:
                reaped = poller.reap_expired_leases()
                leased = poller.poll_once()
                if leased or reaped:
                    logger.info("job_poller cycle leased=%s reaped=%s", len(leased), reaped)
                if options["once"]:
                    break
                time.sleep(interval)
        except KeyboardInterrupt:
            self.stdout.write("Job poller stopped.")
