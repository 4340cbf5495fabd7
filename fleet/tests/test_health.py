from unittest.mock import MagicMock, patch

import pytest
import requests

from fleet.health import check_server, check_site, run_health_checks
from fleet.models import HealthCheck, ResourceEvent
from fleet.states import ResourceStatus

pytestmark = pytest.mark.django_db


def test_running_server_is_healthy(ready_server, hetzner_credential, fakes):
    fakes.hetzner.servers["900"] = {"token": "t", "state": "running", "polls": 0, "spec": {}}

    check = check_server(ready_server)

    assert check.status == HealthCheck.STATUS_HEALTHY
    assert check.check_type == "api"
    assert check.response_time_ms is not None


def test_missing_server_is_an_error_with_event(ready_server, hetzner_credential, fakes):
    check = check_server(ready_server)

    assert check.status == HealthCheck.STATUS_ERROR
    assert ResourceEvent.objects.filter(category="health", level="error", resource_id=ready_server.pk).exists()


def test_site_http_check(site):
    with patch("fleet.health.requests.get", return_value=MagicMock(status_code=200)) as get:
        check = check_site(site)
    assert check.status == HealthCheck.STATUS_HEALTHY
    assert get.call_args.args[0] == "http://blog.example.com/"

    with patch("fleet.health.requests.get", return_value=MagicMock(status_code=502)):
        assert check_site(site).status == HealthCheck.STATUS_ERROR

    with patch("fleet.health.requests.get", side_effect=requests.ConnectionError("refused")):
        check = check_site(site)
    assert check.status == HealthCheck.STATUS_ERROR
    assert "refused" in check.error_message


def test_only_ready_resources_are_checked(site, server, hetzner_credential, fakes):
    type(site).objects.filter(pk=site.pk).update(status=ResourceStatus.READY)
    with patch("fleet.health.requests.get", return_value=MagicMock(status_code=200)):
        assert run_health_checks() == 2  # ready_server and site, not the new server


def test_site_without_domain_on_ipv6_server(site):
    type(site.server).objects.filter(pk=site.server_id).update(ip_address="2a01:4f8:c012:1234::1")
    type(site).objects.filter(pk=site.pk).update(domain="")
    site = type(site).objects.get(pk=site.pk)

    with patch("fleet.health.requests.get", return_value=MagicMock(status_code=200)) as get:
        check_site(site)
    assert get.call_args.args[0] == "http://[2a01:4f8:c012:1234::1]/"
