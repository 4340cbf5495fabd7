"""
Shared fixtures: a user with provider credentials and in-memory providers
registered in place of the real adapters.
"""
from datetime import timedelta
from types import SimpleNamespace

import pytest


@pytest.fixture
def owner(django_user_model):
    return django_user_model.objects.create_user(username="owner", email="owner@example.com", password="pw-123456")


@pytest.fixture
def other_user(django_user_model):
    return django_user_model.objects.create_user(username="other", email="other@example.com", password="pw-123456")


@pytest.fixture
def hetzner_credential(owner):
    from accounts.models import ProviderCredential

    return ProviderCredential.objects.create(
        owner=owner, provider=ProviderCredential.PROVIDER_HETZNER, token="hz-token", ssh_key_ref="deploy-key", is_valid=True,
    )


@pytest.fixture
def dokploy_credential(owner):
    from accounts.models import ProviderCredential

    return ProviderCredential.objects.create(
        owner=owner, provider=ProviderCredential.PROVIDER_DOKPLOY, token="dk-token",
        base_url="https://dokploy.example.com", ssh_key_ref="sshkey-1", is_valid=True,
    )


@pytest.fixture
def fakes(monkeypatch):
    from fleet import providers
    from fleet.tests.fakes import FakeDokploy, FakeHetzner

    ns = SimpleNamespace(hetzner=FakeHetzner(), dokploy=FakeDokploy())
    monkeypatch.setitem(providers.ADAPTERS, "hetzner", ns.hetzner)
    monkeypatch.setitem(providers.ADAPTERS, "dokploy", ns.dokploy)
    return ns


@pytest.fixture
def server(owner):
    from fleet.models import Server

    return Server.objects.create(owner=owner, name="web-1", region="fsn1", server_type="cx22", image="ubuntu-24.04")


@pytest.fixture
def ready_server(owner):
    from fleet.models import Server
    from fleet.states import ResourceStatus

    return Server.objects.create(
        owner=owner, name="web-ready", region="fsn1", status=ResourceStatus.READY, external_id="900",
        ip_address="10.0.0.9", dokploy_server_id="srv-900", dokploy_installed=True,
    )


@pytest.fixture
def site(owner, ready_server):
    from fleet.models import Site

    return Site.objects.create(
        owner=owner, server=ready_server, region=ready_server.region, name="blog", domain="blog.example.com",
        wordpress_admin_user="admin", wordpress_admin_password="secret-pass",
    )


@pytest.fixture
def drive():
    """
    Run the dispatcher until nothing is due, skipping the wait on every
    scheduled retry or poll. Returns the list of results in order.
    """
    from django.utils import timezone

    from fleet.dispatcher import claim_due, run_task
    from fleet.models import ReconciliationTask

    def _drive(max_rounds=60):
        results = []
        for _ in range(max_rounds):
            ReconciliationTask.objects.filter(halted=False).update(next_run_at=timezone.now() - timedelta(seconds=1))
            task_ids = claim_due("test-worker")
            if not task_ids:
                break
            for task_id in task_ids:
                results.append(run_task(task_id, "test-worker"))
        return results

    return _drive
