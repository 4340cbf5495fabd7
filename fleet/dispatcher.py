# fleet/dispatcher.py
"""
DB-backed dispatch of reconciliation tasks.

There is at most one ReconciliationTask per resource. Workers claim due tasks
with ``select_for_update(skip_locked=True)`` and hold a lease while the
reconciler runs; ``complete`` turns the ReconcileResult into the next schedule.
A lease that outlives its worker simply expires and the task is claimed again.
"""
import logging
import os
import random
import socket
from concurrent.futures import as_completed
from datetime import timedelta
from typing import List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from .events import record_event
from .models import RESOURCE_MODELS, ReconciliationTask
from .reconciler import ReconcileResult, reconciler
from .states import DesiredState, ErrorKind, Outcome, ResourceKind, ResourceStatus

logger = logging.getLogger(__name__)


def _setting(name, default):
    return getattr(settings, name, default)


def worker_name() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def backoff_delay(attempt: int, retry_after: Optional[float] = None, rng=random) -> float:
    """
    Seconds to wait before retry number ``attempt`` (1-based).

    Exponential with a positive jitter smaller than the doubling step, so the
    delay strictly increases until the cap. A provider Retry-After is a floor.
    """
    base = _setting("RECONCILER_BACKOFF_BASE", 5)
    cap = _setting("RECONCILER_BACKOFF_CAP", 600)
    jitter = min(_setting("RECONCILER_BACKOFF_JITTER", 0.25), 0.99)

    delay = base * (2 ** max(attempt - 1, 0)) * (1 + rng.uniform(0, jitter))
    delay = min(cap, delay)
    if retry_after:
        delay = max(delay, float(retry_after))
    return delay


def enqueue(kind, resource_id, delay: float = 0, reset: bool = False) -> ReconciliationTask:
    """
    Ask for the resource to be reconciled. Reuses the existing task if any.

    ``reset`` clears the halted flag and the attempt counter; the API uses it
    for explicit retries and deletions.
    """
    now = timezone.now()
    run_at = now + timedelta(seconds=delay)
    with transaction.atomic():
        task, created = ReconciliationTask.objects.select_for_update().get_or_create(
            resource_kind=kind,
            resource_id=resource_id,
            defaults={"next_run_at": run_at, "requested_at": now},
        )
        if created:
            logger.info("Enqueued %s:%s", kind, resource_id)
            return task

        task.requested_at = now
        fields = ["requested_at", "updated_at"]
        if run_at < task.next_run_at:
            task.next_run_at = run_at
            fields.append("next_run_at")
        if reset:
            task.halted = False
            task.attempts = 0
            task.last_error = ""
            fields += ["halted", "attempts", "last_error"]
        task.save(update_fields=fields)
    logger.info("Re-requested %s:%s (reset=%s)", kind, resource_id, reset)
    return task


def claim_due(worker_id: str, batch_size: Optional[int] = None) -> List[int]:
    """Lease up to ``batch_size`` due tasks for ``worker_id`` and return their ids."""
    now = timezone.now()
    batch_size = batch_size or _setting("RECONCILER_BATCH_SIZE", 10)
    lease = timedelta(seconds=_setting("RECONCILER_LEASE_SECONDS", 300))

    claimed = []
    with transaction.atomic():
        qs = (
            ReconciliationTask.objects.select_for_update(skip_locked=True)
            .filter(halted=False, next_run_at__lte=now)
            .filter(Q(lease_owner="") | Q(lease_expires_at__isnull=True) | Q(lease_expires_at__lte=now))
            .order_by("next_run_at", "created_at")[:batch_size]
        )
        for task in qs:
            if task.lease_owner:
                logger.warning("Lease of %s held by %s expired; reclaiming", task, task.lease_owner)
            task.lease_owner = worker_id
            task.leased_at = now
            task.lease_expires_at = now + lease
            task.save(update_fields=["lease_owner", "leased_at", "lease_expires_at", "updated_at"])
            claimed.append(task.pk)
    return claimed


def complete(task_id: int, worker_id: str, result: ReconcileResult) -> Optional[ReconciliationTask]:
    """
    Schedule the follow-up for a finished reconciliation and release the lease.

    Returns the task, or None when it was deleted or the lease had been lost.
    """
    now = timezone.now()
    with transaction.atomic():
        task = ReconciliationTask.objects.select_for_update().filter(pk=task_id).first()
        if task is None:
            return None
        if task.lease_owner != worker_id:
            logger.warning("Worker %s lost the lease on %s; discarding %s", worker_id, task, result.outcome)
            return None

        rerun = bool(task.leased_at and task.requested_at and task.requested_at > task.leased_at)
        outcome = result.outcome
        task.last_outcome = outcome

        # attempts only go back to zero through enqueue(reset=True)
        if outcome == Outcome.SUCCEEDED:
            if not rerun:
                task.delete()
                return None
            task.next_run_at = now

        elif outcome == Outcome.ADVANCED:
            task.next_run_at = now

        elif outcome == Outcome.WAITING:
            task.next_run_at = now if rerun else now + timedelta(seconds=_setting("RECONCILER_POLL_INTERVAL", 10))

        elif outcome == Outcome.FAILED_RETRYABLE:
            task.attempts += 1
            task.last_error = result.message
            max_attempts = _setting("RECONCILER_MAX_ATTEMPTS", 6)
            if task.attempts >= max_attempts:
                reconciler.escalate(
                    task.resource_kind,
                    task.resource_id,
                    f"gave up after {task.attempts} attempts: {result.message}",
                    result.error_kind or ErrorKind.TRANSIENT_NETWORK,
                )
                task.halted = True
            else:
                task.next_run_at = now + timedelta(seconds=backoff_delay(task.attempts, result.retry_after))

        elif outcome == Outcome.FAILED_TERMINAL:
            task.last_error = result.message
            if rerun:
                # a retry or delete arrived while this run was in flight
                task.next_run_at = now
            else:
                task.halted = True

        task.lease_owner = ""
        task.leased_at = None
        task.lease_expires_at = None
        task.save()
    return task


def run_task(task_id: int, worker_id: str) -> Optional[ReconcileResult]:
    """Run one claimed task in the current thread."""
    task = ReconciliationTask.objects.filter(pk=task_id).first()
    if task is None:
        logger.warning("ReconciliationTask %s disappeared before execution", task_id)
        return None

    try:
        result = reconciler.reconcile(task.resource_kind, task.resource_id)
    except Exception as exc:
        logger.exception("Reconcile of %s:%s raised", task.resource_kind, task.resource_id)
        result = ReconcileResult(Outcome.FAILED_RETRYABLE, f"unexpected error: {exc}")
        model = RESOURCE_MODELS[ResourceKind(task.resource_kind)]
        resource = model.objects.filter(pk=task.resource_id).first()
        record_event(
            result.message, category="reconcile", resource=resource, level="error",
            outcome=Outcome.FAILED_RETRYABLE,
        )

    logger.debug("%s:%s -> %s %s", task.resource_kind, task.resource_id, result.outcome, result.message)
    complete(task_id, worker_id, result)
    return result


def dispatch_once(executor, worker_id: Optional[str] = None, batch_size: Optional[int] = None) -> int:
    """Claim a batch and run it on ``executor``. Returns the number of tasks run."""
    worker_id = worker_id or worker_name()
    task_ids = claim_due(worker_id, batch_size)
    if not task_ids:
        return 0

    futures = [executor.submit(run_task, tid, worker_id) for tid in task_ids]
    for f in as_completed(futures):
        try:
            f.result()
        except Exception:
            logger.exception("Worker raised exception")
    return len(task_ids)


def _needs_work(model):
    return (
        model.objects.exclude(status=ResourceStatus.READY, desired_state=DesiredState.PRESENT)
        .exclude(status=ResourceStatus.DELETED)
        .exclude(status=ResourceStatus.FAILED, retry_generation__lte=F("failed_generation"))
    )


def recover() -> int:
    """
    Make sure every resource that is not settled has a task.

    Run at worker startup; tasks themselves survive restarts and expired
    leases are reclaimed by ``claim_due``.
    """
    created = 0
    for kind, model in RESOURCE_MODELS.items():
        for pk in _needs_work(model).values_list("pk", flat=True):
            _, was_created = ReconciliationTask.objects.get_or_create(resource_kind=kind, resource_id=pk)
            if was_created:
                created += 1
    if created:
        logger.info("Recovered %s reconciliation task(s)", created)
    return created


def resume_auth_halted(owner_id: int, provider: str) -> int:
    """Re-queue resources that failed on this provider's credential."""
    resumed = 0
    for kind, model in RESOURCE_MODELS.items():
        qs = model.objects.filter(
            owner_id=owner_id,
            status=ResourceStatus.FAILED,
            last_error_kind=ErrorKind.AUTH_INVALID,
            last_error__startswith=f"[{provider}]",
        )
        for pk in list(qs.values_list("pk", flat=True)):
            model.objects.filter(pk=pk).update(retry_generation=F("retry_generation") + 1)
            enqueue(kind, pk, reset=True)
            resumed += 1
    return resumed
