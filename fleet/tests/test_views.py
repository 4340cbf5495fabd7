import pytest
from rest_framework.test import APIClient

from fleet.models import ReconciliationTask, ResourceEvent, Server, Site
from fleet.states import DesiredState, ErrorKind, ResourceStatus

pytestmark = pytest.mark.django_db


@pytest.fixture
def api(owner):
    client = APIClient()
    client.force_authenticate(user=owner)
    return client


def test_requires_authentication():
    assert APIClient().get("/api/servers/").status_code == 401


def test_create_server_queues_reconciliation(api, hetzner_credential, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True):
        resp = api.post("/api/servers/", {"name": "Web 1", "region": "fsn1"}, format="json")

    assert resp.status_code == 201, resp.data
    assert resp.data["name"] == "web-1"
    assert resp.data["status"] == ResourceStatus.CREATED
    server = Server.objects.get()
    assert ReconciliationTask.objects.filter(resource_kind="server", resource_id=server.pk).exists()


def test_create_server_without_credential_is_rejected(api):
    resp = api.post("/api/servers/", {"name": "web-1", "region": "fsn1"}, format="json")
    assert resp.status_code == 400
    assert not Server.objects.exists()


def test_create_server_validates_unchecked_credential(api, hetzner_credential, fakes):
    from fleet.errors import AuthInvalidError

    type(hetzner_credential).objects.filter(pk=hetzner_credential.pk).update(is_valid=False)
    fakes.hetzner.fail["validate"] = AuthInvalidError("hetzner", "401")

    resp = api.post("/api/servers/", {"name": "web-1", "region": "fsn1"}, format="json")
    assert resp.status_code == 400
    assert fakes.hetzner.calls == ["validate"]


def test_duplicate_server_name(api, hetzner_credential, server):
    resp = api.post("/api/servers/", {"name": server.name, "region": "fsn1"}, format="json")
    assert resp.status_code == 400


def test_servers_are_scoped_to_owner(api, other_user):
    Server.objects.create(owner=other_user, name="theirs", region="fsn1")
    assert api.get("/api/servers/").data == []


def test_site_requires_ready_server(api, server, dokploy_credential):
    resp = api.post("/api/sites/", {
        "server": server.pk, "name": "blog", "wordpress_admin_user": "admin", "wordpress_admin_password": "long-enough",
    }, format="json")
    assert resp.status_code == 400
    assert "server" in resp.data


def test_create_site(api, ready_server, dokploy_credential, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True):
        resp = api.post("/api/sites/", {
            "server": ready_server.pk, "name": "Blog", "domain": "Blog.Example.com",
            "wordpress_admin_user": "admin", "wordpress_admin_password": "long-enough",
        }, format="json")

    assert resp.status_code == 201, resp.data
    site = Site.objects.get()
    assert site.name == "blog"
    assert site.domain == "blog.example.com"
    assert site.region == ready_server.region
    assert "wordpress_admin_password" not in resp.data
    assert ReconciliationTask.objects.filter(resource_kind="site", resource_id=site.pk).exists()


def test_delete_server_cascades_to_sites(api, site, django_capture_on_commit_callbacks):
    server = site.server
    with django_capture_on_commit_callbacks(execute=True):
        resp = api.delete(f"/api/servers/{server.pk}/")

    assert resp.status_code == 202
    server.refresh_from_db()
    site.refresh_from_db()
    assert server.desired_state == DesiredState.DELETING
    assert site.desired_state == DesiredState.DELETING
    # status is never written by the API
    assert server.status == ResourceStatus.READY
    assert ReconciliationTask.objects.count() == 2


def test_delete_failed_resource_requests_retry(api, server):
    Server.objects.filter(pk=server.pk).update(status=ResourceStatus.FAILED)
    resp = api.delete(f"/api/servers/{server.pk}/")

    assert resp.status_code == 202
    server.refresh_from_db()
    assert server.retry_generation == 1


def test_retry_only_for_failed(api, server, django_capture_on_commit_callbacks):
    assert api.post(f"/api/servers/{server.pk}/retry/").status_code == 400

    Server.objects.filter(pk=server.pk).update(status=ResourceStatus.FAILED, last_error_kind=ErrorKind.TRANSIENT_NETWORK)
    with django_capture_on_commit_callbacks(execute=True):
        resp = api.post(f"/api/servers/{server.pk}/retry/")
    assert resp.status_code == 202
    task = ReconciliationTask.objects.get(resource_id=server.pk)
    assert task.halted is False


def test_events_and_dashboard(api, owner, server):
    ResourceEvent.objects.create(owner=owner, resource_kind="server", resource_id=server.pk, level="error",
                                 category="reconcile", message="boom")

    events = api.get(f"/api/servers/{server.pk}/events/")
    assert events.status_code == 200
    assert events.data[0]["message"] == "boom"

    filtered = api.get("/api/events/", {"level": "info"})
    assert filtered.data == []

    overview = api.get("/api/dashboard/overview/").data
    assert overview["servers"]["created"] == 1
    assert overview["servers"]["total"] == 1
    assert overview["failures_last_30_days"] == 1


def test_server_sites_action(api, site):
    resp = api.get(f"/api/servers/{site.server_id}/sites/")
    assert resp.status_code == 200
    assert [s["name"] for s in resp.data] == ["blog"]
