# fleet/scheduler.py
"""
In-process scheduling for single-process deployments.

When RECONCILER_IN_APP is set, FleetConfig.ready() starts this scheduler and
the web process dispatches reconciliation tasks itself. Otherwise run
``manage.py runreconciler``; both paths go through fleet.dispatcher.
"""
import logging
from concurrent.futures import ThreadPoolExecutor as WorkerPool

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from django.conf import settings
from django.utils import timezone
from django_apscheduler.jobstores import DjangoJobStore
from django_apscheduler.models import DjangoJobExecution
from django_apscheduler.util import close_old_connections

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(
    jobstores={"default": DjangoJobStore()},
    executors={"default": ThreadPoolExecutor(max_workers=3)},
    job_defaults={"coalesce": True, "max_instances": 1},
    timezone=timezone.get_default_timezone(),
)

_workers = None
_started = False


@close_old_connections
def dispatch_due_tasks():
    from .dispatcher import dispatch_once

    global _workers
    if _workers is None:
        _workers = WorkerPool(max_workers=getattr(settings, "RECONCILER_MAX_WORKERS", 6))
    ran = dispatch_once(_workers)
    if ran:
        logger.debug("Dispatched %s reconciliation task(s)", ran)


@close_old_connections
def recover_tasks():
    from .dispatcher import recover

    recover()


@close_old_connections
def run_health_checks():
    from .health import run_health_checks as _run

    _run()


@close_old_connections
def delete_old_job_executions(max_age=604_800):
    """Job executions older than ``max_age`` seconds are pruned from the job store."""
    DjangoJobExecution.objects.delete_old_job_executions(max_age)


def start_scheduler():
    global _started
    if _started:
        logger.debug("Scheduler already started")
        return

    add_job(recover_tasks, trigger="date", run_date=timezone.now(), id="recover_tasks")
    add_job(
        dispatch_due_tasks,
        trigger="interval",
        seconds=max(1, getattr(settings, "RECONCILER_POLL_INTERVAL", 10) // 2),
        id="dispatch_due_tasks",
    )
    add_job(
        run_health_checks,
        trigger="interval",
        seconds=getattr(settings, "HEALTH_CHECK_INTERVAL", 300),
        id="run_health_checks",
    )
    add_job(delete_old_job_executions, trigger="interval", days=1, id="delete_old_job_executions")

    scheduler.start(paused=False)
    _started = True
    logger.info("Reconciler scheduler started")


def add_job(func, trigger="date", id=None, replace_existing=True, **aps_kwargs):
    job = scheduler.add_job(
        func=func,
        trigger=trigger,
        id=id,
        replace_existing=replace_existing,
        **aps_kwargs,
    )
    logger.info("Scheduled job id=%s trigger=%s", id, trigger)
    return job
