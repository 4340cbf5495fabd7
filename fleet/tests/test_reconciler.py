from datetime import timedelta

import pytest
from django.utils import timezone

from fleet.dispatcher import enqueue
from fleet.errors import (
    AuthInvalidError,
    ConfigurationInvalidError,
    DeployFailedError,
    ResourceConflictError,
    TransientNetworkError,
)
from fleet.models import ReconciliationTask, ResourceEvent, Server, Site
from fleet.reconciler import Reconciler
from fleet.services import request_deletion, request_retry
from fleet.states import DesiredState, ErrorKind, Outcome, Phase, ResourceStatus

pytestmark = pytest.mark.django_db


def reload(obj):
    return type(obj).objects.get(pk=obj.pk)


# --------------------------------------------------------------------------
# servers
# --------------------------------------------------------------------------

def test_server_provisions_to_ready_with_dokploy(server, hetzner_credential, dokploy_credential, fakes, drive):
    enqueue(server.kind, server.pk)
    drive()

    server = reload(server)
    assert server.status == ResourceStatus.READY
    assert server.phase == Phase.NONE
    assert server.external_id in fakes.hetzner.servers
    assert server.ip_address
    assert server.dokploy_installed is True
    assert fakes.dokploy.servers[server.dokploy_server_id]["installed"] is True
    assert fakes.hetzner.count("create") == 1
    assert fakes.hetzner.last_create_spec["ssh_keys"] == ["deploy-key"]
    assert not ReconciliationTask.objects.exists()


def test_server_without_dokploy_credential_is_ready_after_boot(server, hetzner_credential, fakes, drive):
    enqueue(server.kind, server.pk)
    drive()

    server = reload(server)
    assert server.status == ResourceStatus.READY
    assert server.dokploy_installed is False
    assert fakes.dokploy.calls == []


def test_ready_resource_is_a_no_op(ready_server, hetzner_credential, fakes):
    before = reload(ready_server)
    result = Reconciler().reconcile(ready_server.kind, ready_server.pk)

    assert result.outcome == Outcome.SUCCEEDED
    assert fakes.hetzner.calls == []
    assert fakes.dokploy.calls == []
    after = reload(ready_server)
    assert after.updated_at == before.updated_at
    assert not ResourceEvent.objects.exists()


def test_invalid_credential_fails_terminally_after_only_validate(server, hetzner_credential, fakes, drive):
    fakes.hetzner.fail["validate"] = AuthInvalidError("hetzner", "GET /locations -> 401: unauthorized")
    enqueue(server.kind, server.pk)
    drive()

    server = reload(server)
    hetzner_credential.refresh_from_db()
    assert server.status == ResourceStatus.FAILED
    assert server.last_error_kind == ErrorKind.AUTH_INVALID
    assert hetzner_credential.is_valid is False
    assert fakes.hetzner.calls == ["validate"]
    assert ReconciliationTask.objects.get(resource_id=server.pk).halted is True


def test_missing_credential_is_a_configuration_error(server, fakes):
    result = Reconciler().reconcile(server.kind, server.pk)

    assert result.outcome == Outcome.FAILED_TERMINAL
    assert result.error_kind == ErrorKind.CONFIG_INVALID
    assert reload(server).status == ResourceStatus.FAILED


def test_retried_create_adopts_server_instead_of_duplicating(server, hetzner_credential, fakes):
    reconciler = Reconciler()
    reconciler.reconcile(server.kind, server.pk)  # created -> provisioning

    # the create reaches Hetzner but the response is lost
    real_create = fakes.hetzner.create

    def create_then_drop(token, spec):
        real_create(token, spec)
        raise TransientNetworkError("hetzner", "connection reset")

    fakes.hetzner.create = create_then_drop
    result = reconciler.reconcile(server.kind, server.pk)
    assert result.outcome == Outcome.FAILED_RETRYABLE
    assert reload(server).create_requested is True

    fakes.hetzner.create = real_create
    result = reconciler.reconcile(server.kind, server.pk)

    server = reload(server)
    assert result.outcome == Outcome.ADVANCED
    assert len(fakes.hetzner.servers) == 1
    assert server.external_id == next(iter(fakes.hetzner.servers))
    assert server.phase == Phase.BOOT


def test_boot_timeout_exhausts_retries_and_keeps_external_id(server, hetzner_credential, fakes, drive):
    fakes.hetzner.stay_booting = True
    enqueue(server.kind, server.pk)
    reconciler = Reconciler()
    reconciler.reconcile(server.kind, server.pk)
    reconciler.reconcile(server.kind, server.pk)
    Server.objects.filter(pk=server.pk).update(phase_deadline=timezone.now() - timedelta(seconds=1))

    drive()

    server = reload(server)
    assert server.status == ResourceStatus.FAILED
    assert server.last_error_kind == ErrorKind.TIMEOUT
    assert server.external_id in fakes.hetzner.servers
    task = ReconciliationTask.objects.get(resource_id=server.pk)
    assert task.halted is True
    assert task.attempts == 4


def test_retry_after_failure_resumes_from_failed_phase(server, hetzner_credential, fakes, drive, django_capture_on_commit_callbacks):
    fakes.hetzner.stay_booting = True
    enqueue(server.kind, server.pk)
    reconciler = Reconciler()
    reconciler.reconcile(server.kind, server.pk)
    reconciler.reconcile(server.kind, server.pk)
    Server.objects.filter(pk=server.pk).update(phase_deadline=timezone.now() - timedelta(seconds=1))
    drive()
    assert reload(server).status == ResourceStatus.FAILED

    fakes.hetzner.stay_booting = False
    with django_capture_on_commit_callbacks(execute=True):
        assert request_retry(reload(server)) is True
    drive()

    server = reload(server)
    assert server.status == ResourceStatus.READY
    assert fakes.hetzner.count("create") == 1


def test_failed_resource_stays_failed_without_retry(server, hetzner_credential, fakes):
    Server.objects.filter(pk=server.pk).update(status=ResourceStatus.FAILED, last_error="boom")
    result = Reconciler().reconcile(server.kind, server.pk)

    assert result.outcome == Outcome.FAILED_TERMINAL
    assert fakes.hetzner.calls == []


def test_vanished_server_during_boot_is_created_again(server, hetzner_credential, fakes, drive):
    old_key = server.idempotency_key
    Server.objects.filter(pk=server.pk).update(
        status=ResourceStatus.PROVISIONING, phase=Phase.BOOT, external_id="555", create_requested=True,
    )
    enqueue(server.kind, server.pk)
    drive()

    server = reload(server)
    assert server.status == ResourceStatus.READY
    assert server.external_id != "555"
    assert server.idempotency_key != old_key
    assert len(fakes.hetzner.servers) == 1


def test_conflicting_external_resources_fail_terminally(server, hetzner_credential, fakes):
    reconciler = Reconciler()
    reconciler.reconcile(server.kind, server.pk)
    Server.objects.filter(pk=server.pk).update(create_requested=True)
    fakes.hetzner.fail["find"] = ResourceConflictError("hetzner", "2 servers carry idempotency key")

    result = reconciler.reconcile(server.kind, server.pk)

    assert result.outcome == Outcome.FAILED_TERMINAL
    assert reload(server).last_error_kind == ErrorKind.CONFLICT
    assert fakes.hetzner.count("create") == 0


# --------------------------------------------------------------------------
# sites
# --------------------------------------------------------------------------

def test_site_deploys_wordpress(site, dokploy_credential, fakes, drive):
    enqueue(site.kind, site.pk)
    drive()

    site = reload(site)
    assert site.status == ResourceStatus.READY
    compose = fakes.dokploy.composes[site.external_id]
    assert compose["serverId"] == "srv-900"
    assert compose["appName"].startswith(site.app_name)
    assert "SITE_URL=http://blog.example.com" in compose["env"]
    assert "WP_ADMIN_EMAIL=owner@example.com" in compose["env"]
    assert compose["domains"][0]["host"] == "blog.example.com"
    assert site.domain_id == compose["domains"][0]["domainId"]
    assert fakes.dokploy.projects[site.project_id] == f"pressfleet-{site.owner_id}"


def test_site_waits_for_server(owner, server, dokploy_credential, fakes):
    site = Site.objects.create(owner=owner, server=server, region=server.region, name="early",
                               wordpress_admin_user="admin", wordpress_admin_password="secret-pass")
    result = Reconciler().reconcile(site.kind, site.pk)

    assert result.outcome == Outcome.WAITING
    assert reload(site).status == ResourceStatus.CREATED
    assert fakes.dokploy.calls == []


def test_retried_site_rechecks_its_server(owner, server, dokploy_credential, fakes, drive,
                                         django_capture_on_commit_callbacks):
    Server.objects.filter(pk=server.pk).update(status=ResourceStatus.FAILED, last_error="boom")
    site = Site.objects.create(owner=owner, server=server, region=server.region, name="blog",
                               wordpress_admin_user="admin", wordpress_admin_password="secret-pass")
    result = Reconciler().reconcile(site.kind, site.pk)
    assert result.outcome == Outcome.FAILED_TERMINAL
    assert result.error_kind == ErrorKind.CONFIG_INVALID

    with django_capture_on_commit_callbacks(execute=True):
        assert request_retry(reload(site)) is True
    drive()

    site = reload(site)
    assert site.status == ResourceStatus.FAILED
    assert site.last_error_kind == ErrorKind.CONFIG_INVALID
    assert fakes.dokploy.count("create") == 0
    assert ResourceEvent.objects.filter(resource_id=site.pk, to_status=ResourceStatus.CREATED).exists()

    # with the server usable, the retry passes the auth check and lands on it
    Server.objects.filter(pk=server.pk).update(
        status=ResourceStatus.READY, ip_address="10.0.0.7", dokploy_server_id="srv-7", dokploy_installed=True,
    )
    with django_capture_on_commit_callbacks(execute=True):
        assert request_retry(site) is True
    drive()

    site = reload(site)
    assert site.status == ResourceStatus.READY
    assert fakes.dokploy.composes[site.external_id]["serverId"] == "srv-7"
    assert fakes.dokploy.count("validate") == 1


def test_site_create_requires_registered_server(site, dokploy_credential, fakes):
    Site.objects.filter(pk=site.pk).update(status=ResourceStatus.PROVISIONING, phase=Phase.CREATE, project_id="proj-1")
    Server.objects.filter(pk=site.server_id).update(dokploy_server_id="")

    result = Reconciler().reconcile(site.kind, site.pk)

    assert result.outcome == Outcome.FAILED_TERMINAL
    assert result.error_kind == ErrorKind.CONFIG_INVALID
    assert fakes.dokploy.count("create") == 0


def test_rollout_waits_for_queued_deployment(site, dokploy_credential, fakes):
    compose = fakes.dokploy.create(site.app_name, {"project_id": "proj-1", "server_id": "srv-900"})
    fakes.dokploy.composes[compose.external_id].update(
        composeStatus="error",
        deployments=[{"deploymentId": "dep-old", "status": "error", "createdAt": "00000001"}],
    )
    Site.objects.filter(pk=site.pk).update(
        status=ResourceStatus.PROVISIONING, phase=Phase.DEPLOY, external_id=compose.external_id, create_requested=True,
    )
    fakes.dokploy.queue_polls = 2
    reconciler = Reconciler()

    assert reconciler.reconcile(site.kind, site.pk).outcome == Outcome.ADVANCED
    assert reload(site).previous_deployment_id == "dep-old"

    # composeStatus still reports the old run until Dokploy starts the job
    queued = [reconciler.reconcile(site.kind, site.pk) for _ in range(2)]
    assert [(r.outcome, r.message) for r in queued] == [(Outcome.WAITING, "deployment queued")] * 2

    outcomes = [reconciler.reconcile(site.kind, site.pk).outcome for _ in range(3)]
    assert outcomes == [Outcome.WAITING, Outcome.WAITING, Outcome.SUCCEEDED]
    assert reload(site).status == ResourceStatus.READY


def test_failed_deployment_is_retried(site, dokploy_credential, fakes, drive):
    fakes.dokploy.rollout_result = "error"
    enqueue(site.kind, site.pk)
    results = drive()

    # first rollout ends in error, the next attempt redeploys
    kinds = [r.error_kind for r in results if r.outcome == Outcome.FAILED_RETRYABLE]
    assert kinds and set(kinds) == {ErrorKind.DEPLOY_FAILED}
    assert reload(site).status == ResourceStatus.FAILED
    assert fakes.dokploy.count("configure:deploy") == 4

    fakes.dokploy.rollout_result = "done"
    request_retry(reload(site))
    enqueue(site.kind, site.pk, reset=True)
    drive()
    assert reload(site).status == ResourceStatus.READY


def test_deletion_during_create_cancels_side_effect(site, dokploy_credential, fakes):
    reconciler = Reconciler()
    reconciler.reconcile(site.kind, site.pk)  # created -> provisioning

    fakes.dokploy.hooks["find_project"] = lambda: Site.objects.filter(pk=site.pk).update(desired_state=DesiredState.DELETING)
    result = reconciler.reconcile(site.kind, site.pk)

    assert result.outcome == Outcome.ADVANCED
    assert fakes.dokploy.count("create_project") == 0

    result = reconciler.reconcile(site.kind, site.pk)
    assert result.outcome == Outcome.SUCCEEDED
    assert not Site.objects.filter(pk=site.pk).exists()


# --------------------------------------------------------------------------
# deletion
# --------------------------------------------------------------------------

def test_delete_ready_server_removes_everything(server, hetzner_credential, dokploy_credential, fakes, drive):
    enqueue(server.kind, server.pk)
    drive()
    server = reload(server)
    assert server.status == ResourceStatus.READY

    request_deletion(server)
    enqueue(server.kind, server.pk, reset=True)
    drive()

    assert not Server.objects.filter(pk=server.pk).exists()
    assert fakes.hetzner.servers == {}
    assert fakes.dokploy.servers == {}
    assert ResourceEvent.objects.filter(to_status=ResourceStatus.DELETED).count() == 1
    assert not ReconciliationTask.objects.exists()


def test_delete_mid_provisioning_cleans_up(server, hetzner_credential, fakes, drive):
    fakes.hetzner.stay_booting = True
    reconciler = Reconciler()
    reconciler.reconcile(server.kind, server.pk)
    reconciler.reconcile(server.kind, server.pk)
    assert reload(server).phase == Phase.BOOT
    assert len(fakes.hetzner.servers) == 1

    request_deletion(reload(server))
    enqueue(server.kind, server.pk, reset=True)
    drive()

    assert not Server.objects.filter(pk=server.pk).exists()
    assert fakes.hetzner.servers == {}


def test_delete_failing_cleanup_keeps_external_id(server, hetzner_credential, fakes, drive):
    reconciler = Reconciler()
    reconciler.reconcile(server.kind, server.pk)
    reconciler.reconcile(server.kind, server.pk)
    external_id = reload(server).external_id

    fakes.hetzner.fail["destroy"] = TransientNetworkError("hetzner", "DELETE /servers -> 503")
    request_deletion(reload(server))
    enqueue(server.kind, server.pk, reset=True)
    drive()

    server = reload(server)
    assert server.status == ResourceStatus.FAILED
    assert server.external_id == external_id
    assert server.desired_state == DesiredState.DELETING


def test_delete_during_a_failing_run_still_cleans_up(server, hetzner_credential, fakes, drive,
                                                     django_capture_on_commit_callbacks):
    def delete_mid_create():
        with django_capture_on_commit_callbacks(execute=True):
            request_deletion(reload(server))

    fakes.hetzner.hooks["create"] = delete_mid_create
    fakes.hetzner.fail["create"] = ConfigurationInvalidError("hetzner", "server type cx22 unavailable in fsn1")
    enqueue(server.kind, server.pk)
    drive()

    assert not Server.objects.filter(pk=server.pk).exists()
    assert fakes.hetzner.count("find") == 1
    assert ResourceEvent.objects.filter(to_status=ResourceStatus.FAILED).exists()
    assert ResourceEvent.objects.filter(to_status=ResourceStatus.DELETED).exists()
    assert not ReconciliationTask.objects.exists()


def test_server_deletion_waits_for_sites(site, hetzner_credential, dokploy_credential, fakes, drive):
    compose = fakes.dokploy.create(site.app_name, {"project_id": "proj-1"})
    Site.objects.filter(pk=site.pk).update(status=ResourceStatus.READY, external_id=compose.external_id)
    server = site.server
    request_deletion(server)
    enqueue(server.kind, server.pk, reset=True)
    enqueue(site.kind, site.pk, reset=True)
    results = drive()

    assert any(r.outcome == Outcome.WAITING for r in results)
    assert not Site.objects.exists()
    assert not Server.objects.exists()


def test_delete_never_provisioned_resource(server, hetzner_credential, fakes):
    request_deletion(server)
    result = Reconciler().reconcile(server.kind, server.pk)

    assert result.outcome == Outcome.SUCCEEDED
    assert not Server.objects.filter(pk=server.pk).exists()
    assert fakes.hetzner.calls == []


def test_escalate_marks_failed_and_keeps_external_id(server):
    Server.objects.filter(pk=server.pk).update(status=ResourceStatus.PROVISIONING, phase=Phase.BOOT, external_id="42")
    Reconciler().escalate(server.kind, server.pk, "gave up", ErrorKind.TRANSIENT_NETWORK)

    server = reload(server)
    assert server.status == ResourceStatus.FAILED
    assert server.external_id == "42"
    assert server.failed_generation == server.retry_generation
    assert ResourceEvent.objects.filter(level="error", to_status=ResourceStatus.FAILED).exists()


def test_deploy_failed_error_is_retryable():
    assert DeployFailedError("dokploy", "x").retryable is True
