# fleet/management/commands/runreconciler.py
import logging
import signal
import time
from concurrent.futures import ThreadPoolExecutor

from django.conf import settings
from django.core.management.base import BaseCommand

from fleet.dispatcher import dispatch_once, recover, worker_name

logger = logging.getLogger(__name__)


# how long to sleep when no tasks are due
IDLE_SLEEP_SECONDS = 2.0
# how long to sleep after a batch (lets loop quickly)
BUSY_SLEEP_SECONDS = 0.1


class Command(BaseCommand):
    help = "Run the reconciliation worker (claim due ReconciliationTasks and reconcile their resources)."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Claim and run one batch then exit")
        parser.add_argument("--workers", type=int, default=None, help="Worker threads (default RECONCILER_MAX_WORKERS)")

    def handle(self, *args, **options):
        # Allow graceful shutdown via SIGTERM/SIGINT
        stop_requested = {"flag": False}

        def _signal_handler(signum, frame):
            logger.info("Reconciler received signal %s, will stop after current tasks", signum)
            stop_requested["flag"] = True

        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)

        max_workers = options["workers"] or getattr(settings, "RECONCILER_MAX_WORKERS", 6)
        worker_id = worker_name()
        self.stdout.write(f"Starting reconciler worker {worker_id} ({max_workers} threads)...")

        recovered = recover()
        if recovered:
            self.stdout.write(f"Recovered {recovered} task(s)")

        executor = ThreadPoolExecutor(max_workers=max_workers)
        try:
            while not stop_requested["flag"]:
                ran = dispatch_once(executor, worker_id, batch_size=max(max_workers, getattr(settings, "RECONCILER_BATCH_SIZE", 10)))

                if options["once"]:
                    break
                time.sleep(BUSY_SLEEP_SECONDS if ran else IDLE_SLEEP_SECONDS)
            else:
                logger.info("Stop requested, exiting main loop")
        finally:
            logger.info("Shutting down executor")
            executor.shutdown(wait=True)
            self.stdout.write(self.style.SUCCESS("Reconciler worker stopped"))
