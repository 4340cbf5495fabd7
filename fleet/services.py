# fleet/services.py
"""
API-side operations on resources. These only touch desired state and the
retry counter, then hand the resource to the dispatcher.
"""
import logging
import re

from django.db import transaction
from django.db.models import F

from .dispatcher import enqueue
from .events import record_event
from .models import Server, Site
from .states import DesiredState, ResourceStatus

logger = logging.getLogger(__name__)


def sanitize_name(value: str) -> str:
    """
    Lowercase, allow only a-z0-9 and hyphen. Replace invalid chars with hyphen.
    Collapse multiple hyphens, trim leading/trailing hyphens and cap to 63 chars.
    """
    if not value:
        return ""
    s = value.strip().lower()
    s = re.sub(r"[^a-z0-9-]", "-", s)
    s = re.sub(r"-{2,}", "-", s)
    s = s.strip("-")
    return s[:63]


def create_server(owner, **fields) -> Server:
    with transaction.atomic():
        server = Server.objects.create(owner=owner, **fields)
        record_event(f"Server {server.name} requested in {server.region}", category="api", resource=server)
        transaction.on_commit(lambda: enqueue(server.KIND, server.pk))
    return server


def create_site(owner, server: Server, **fields) -> Site:
    with transaction.atomic():
        site = Site.objects.create(owner=owner, server=server, region=server.region, **fields)
        record_event(f"Site {site.name} requested on {server.name}", category="api", resource=site)
        transaction.on_commit(lambda: enqueue(site.KIND, site.pk))
    return site


def _bump_retry(resource) -> None:
    type(resource).objects.filter(pk=resource.pk).update(retry_generation=F("retry_generation") + 1)


def request_deletion(resource) -> None:
    """
    Flip desired state to deleting and bump the retry generation, so a
    failure recorded by a run already in flight cannot halt the cleanup.
    Deleting a server cascades to its sites.
    """
    with transaction.atomic():
        type(resource).objects.filter(pk=resource.pk).update(desired_state=DesiredState.DELETING)
        _bump_retry(resource)
        record_event(f"Deletion of {resource.kind} {resource.name} requested", category="api", resource=resource)
        transaction.on_commit(lambda: enqueue(resource.kind, resource.pk, reset=True))

        if isinstance(resource, Server):
            for site in resource.sites.exclude(desired_state=DesiredState.DELETING):
                request_deletion(site)
    resource.desired_state = DesiredState.DELETING


def request_retry(resource) -> bool:
    """Restart a failed resource. Returns False if it is not failed."""
    if resource.status != ResourceStatus.FAILED:
        return False
    with transaction.atomic():
        _bump_retry(resource)
        record_event(f"Retry of {resource.kind} {resource.name} requested", category="api", resource=resource)
        transaction.on_commit(lambda: enqueue(resource.kind, resource.pk, reset=True))
    return True
