# fleet/health.py
"""
Periodic health checks for ready resources.

Servers are checked through the Hetzner API, sites with a plain HTTP GET.
Results are stored as HealthCheck rows; a failing check also records an
error event. Health never changes a resource's status.
"""
import logging
import time
from typing import Optional

import requests
from django.conf import settings

from accounts.models import ProviderCredential
from accounts.services import get_credential

from .errors import ProviderError
from .events import record_event
from .models import HealthCheck, Server, Site
from .providers import build_adapter
from .states import DesiredState, ResourceStatus

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _record(resource, status: str, check_type: str, response_time_ms: Optional[int] = None, error: str = "") -> HealthCheck:
    check = HealthCheck.objects.create(
        resource_kind=resource.kind,
        resource_id=resource.pk,
        status=status,
        check_type=check_type,
        response_time_ms=response_time_ms,
        error_message=error,
    )
    if status == HealthCheck.STATUS_ERROR:
        record_event(f"Health check failed: {error}", category="health", resource=resource, level="error",
                     meta={"check_type": check_type})
    return check


def check_server(server: Server) -> HealthCheck:
    credential = get_credential(server.owner_id, ProviderCredential.PROVIDER_HETZNER)
    if credential is None:
        return _record(server, HealthCheck.STATUS_WARNING, "api", error="no hetzner credential")

    started = time.monotonic()
    try:
        observed = build_adapter(credential).describe(server.external_id)
    except ProviderError as e:
        return _record(server, HealthCheck.STATUS_ERROR, "api", _elapsed_ms(started), str(e))

    elapsed = _elapsed_ms(started)
    if observed.state == "running":
        return _record(server, HealthCheck.STATUS_HEALTHY, "api", elapsed)
    return _record(server, HealthCheck.STATUS_ERROR, "api", elapsed, f"server is {observed.state}")


def check_site(site: Site) -> HealthCheck:
    if site.domain:
        url = f"{'https' if site.ssl_enabled else 'http'}://{site.domain}/"
    else:
        url = f"http://{site.server.url_host}/"

    timeout = getattr(settings, "PROVIDER_HTTP_TIMEOUT", 30)
    started = time.monotonic()
    try:
        resp = requests.get(url, timeout=timeout, allow_redirects=True)
    except requests.RequestException as e:
        return _record(site, HealthCheck.STATUS_ERROR, "http", _elapsed_ms(started), f"{url}: {e}")

    elapsed = _elapsed_ms(started)
    if resp.status_code < 400:
        return _record(site, HealthCheck.STATUS_HEALTHY, "http", elapsed)
    if resp.status_code < 500:
        return _record(site, HealthCheck.STATUS_WARNING, "http", elapsed, f"{url} returned {resp.status_code}")
    return _record(site, HealthCheck.STATUS_ERROR, "http", elapsed, f"{url} returned {resp.status_code}")


def run_health_checks() -> int:
    """Check every ready resource once. Returns the number of checks recorded."""
    count = 0
    ready = {"status": ResourceStatus.READY, "desired_state": DesiredState.PRESENT}
    for server in Server.objects.filter(**ready):
        check_server(server)
        count += 1
    for site in Site.objects.filter(**ready).select_related("server"):
        check_site(site)
        count += 1
    logger.info("Recorded %s health check(s)", count)
    return count
