# fleet/reconciler.py
"""
Resource reconciler.

``Reconciler.reconcile(kind, resource_id)`` reads a Server or Site, compares it
with what the provider reports and performs at most one externally visible
action before returning a ReconcileResult. The dispatcher decides when it runs
next. Desired state is re-read right before every side effect so a delete that
lands mid-provisioning switches the resource onto the deletion path instead of
finishing a stale create.

This module is the only writer of ``status``/``phase`` on resources.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from accounts.models import ProviderCredential
from accounts.services import get_credential

from .errors import (
    AuthInvalidError,
    ConfigurationInvalidError,
    DeployFailedError,
    ProviderError,
    ProvisionTimeoutError,
    ResourceNotFoundError,
)
from .events import record_event
from .models import RESOURCE_MODELS, Server, Site
from .providers import build_adapter
from .providers.dokploy import WORDPRESS_COMPOSE, latest_deployment, render_env
from .states import (
    DesiredState,
    ErrorKind,
    Outcome,
    Phase,
    ResourceKind,
    ResourceStatus,
    check_transition,
)

logger = logging.getLogger(__name__)

HETZNER = ProviderCredential.PROVIDER_HETZNER
DOKPLOY = ProviderCredential.PROVIDER_DOKPLOY

SERVER_PROVISION_STEPS = {
    Phase.CREATE: "_server_create",
    Phase.BOOT: "_server_boot",
    Phase.REGISTER: "_server_register",
    Phase.INSTALL: "_server_install",
}
SITE_PROVISION_STEPS = {
    Phase.CREATE: "_site_create",
    Phase.CONFIGURE: "_site_configure",
    Phase.DOMAIN: "_site_domain",
    Phase.DEPLOY: "_site_deploy",
    Phase.ROLLOUT: "_site_rollout",
}
SERVER_DELETION_STEPS = {
    Phase.DRAIN: "_server_drain",
    Phase.DESTROY: "_server_destroy",
    Phase.VANISH: "_vanish",
}
SITE_DELETION_STEPS = {
    Phase.DESTROY: "_destroy_external",
    Phase.VANISH: "_vanish",
}


@dataclass
class ReconcileResult:
    outcome: str
    message: str = ""
    error_kind: str = ""
    retry_after: Optional[float] = None


class Cancelled(Exception):
    """Desired state flipped to deleting before a provisioning side effect."""


class Reconciler:

    def reconcile(self, kind, resource_id) -> ReconcileResult:
        model = RESOURCE_MODELS[ResourceKind(kind)]
        resource = model.objects.filter(pk=resource_id).first()
        if resource is None:
            return ReconcileResult(Outcome.SUCCEEDED, "resource no longer exists")

        try:
            if resource.wants_deletion:
                return self._reconcile_deletion(resource)
            return self._reconcile_presence(resource)
        except Cancelled:
            record_event(
                f"Deletion requested during {resource.phase or resource.status}; switching to cleanup",
                category="reconcile", resource=resource,
            )
            return ReconcileResult(Outcome.ADVANCED, "deletion requested")
        except ProviderError as e:
            return self._handle_error(resource, e)

    def escalate(self, kind, resource_id, message: str, error_kind: str = "") -> None:
        """Give up on a resource whose retries are exhausted. External ids are kept for cleanup."""
        resource = RESOURCE_MODELS[ResourceKind(kind)].objects.filter(pk=resource_id).first()
        if resource is None or resource.status == ResourceStatus.FAILED:
            return
        self._fail(resource, message, error_kind)

    # ------------------------------------------------------------------
    # presence
    # ------------------------------------------------------------------

    def _reconcile_presence(self, resource) -> ReconcileResult:
        status = resource.status
        if status == ResourceStatus.READY:
            return ReconcileResult(Outcome.SUCCEEDED, "already ready")
        if status == ResourceStatus.FAILED:
            if not self._retry_requested(resource):
                return ReconcileResult(Outcome.FAILED_TERMINAL, resource.last_error, resource.last_error_kind)
            return self._restart(resource)
        if status == ResourceStatus.CREATED:
            return self._start(resource)
        if status == ResourceStatus.PROVISIONING:
            steps = SERVER_PROVISION_STEPS if isinstance(resource, Server) else SITE_PROVISION_STEPS
            return getattr(self, steps[Phase(resource.phase)])(resource)
        raise ValueError(f"{resource.kind} {resource.pk} is {status} but desired state is present")

    def _start(self, resource) -> ReconcileResult:
        if isinstance(resource, Site):
            server = resource.server
            if server.wants_deletion or server.status in (ResourceStatus.FAILED, ResourceStatus.DEPROVISIONING):
                return self._fail(resource, f"server {server.name} is not available for deployments", ErrorKind.CONFIG_INVALID)
            if server.status != ResourceStatus.READY or not server.dokploy_installed:
                return ReconcileResult(Outcome.WAITING, f"waiting for server {server.name}")

        # auth check before anything that creates resources
        self._adapter(resource, self._primary(resource)).validate()
        self._transition(resource, ResourceStatus.PROVISIONING, phase=Phase.CREATE)
        return ReconcileResult(Outcome.ADVANCED, "provisioning started")

    def _restart(self, resource) -> ReconcileResult:
        steps = SERVER_PROVISION_STEPS if isinstance(resource, Server) else SITE_PROVISION_STEPS
        if resource.phase not in steps:
            # failed before provisioning began; preconditions and auth run again
            self._transition(
                resource,
                ResourceStatus.CREATED,
                phase=Phase.NONE,
                phase_deadline=None,
                last_error="",
                last_error_kind="",
            )
            return ReconcileResult(Outcome.ADVANCED, "retry requested")

        phase = Phase(resource.phase)
        self._transition(
            resource,
            ResourceStatus.PROVISIONING,
            phase=phase,
            phase_deadline=self._deadline_for(resource, phase),
            last_error="",
            last_error_kind="",
        )
        return ReconcileResult(Outcome.ADVANCED, "retry requested")

    # ---- server ----

    def _server_create(self, server: Server) -> ReconcileResult:
        credential = self._credential(server, HETZNER)
        adapter = build_adapter(credential)
        token = self._token(server)

        if server.create_requested:
            # an earlier create may have reached Hetzner; never create twice
            found = adapter.find(token)
            if found is not None:
                return self._adopt_server(server, found)

        self._guard(server)
        self._write(server, create_requested=True)
        observed = adapter.create(token, {
            "name": server.name,
            "region": server.region,
            "server_type": server.server_type,
            "image": server.image,
            "ssh_keys": credential.ssh_keys,
        })
        return self._adopt_server(server, observed)

    def _adopt_server(self, server: Server, observed) -> ReconcileResult:
        self._write(
            server,
            external_id=observed.external_id,
            ip_address=observed.address or server.ip_address,
            phase=Phase.BOOT,
            phase_deadline=self._deadline_for(server, Phase.BOOT),
        )
        record_event(f"Hetzner server {observed.external_id} attached", category="reconcile", resource=server,
                     meta={"external_id": observed.external_id})
        return ReconcileResult(Outcome.ADVANCED, "server created")

    def _server_boot(self, server: Server) -> ReconcileResult:
        observed = self._adapter(server, HETZNER).describe(server.external_id)
        if observed.state == "running" and observed.address:
            self._write(server, ip_address=observed.address, phase=Phase.REGISTER, phase_deadline=None)
            return ReconcileResult(Outcome.ADVANCED, "server running")
        self._check_deadline(server, HETZNER, f"server still {observed.state} at boot deadline")
        return ReconcileResult(Outcome.WAITING, f"server is {observed.state}")

    def _server_register(self, server: Server) -> ReconcileResult:
        credential = get_credential(server.owner_id, DOKPLOY)
        if credential is None:
            return self._finish_provisioning(server, "ready without a Dokploy control plane")
        if not credential.ssh_key_ref:
            raise ConfigurationInvalidError(DOKPLOY, "Dokploy credential has no ssh key id for server registration")

        adapter = build_adapter(credential)
        name = f"pf-{server.idempotency_key.hex[:20]}"
        found = adapter.find_server(name)
        if found is None:
            self._guard(server)
            found = adapter.register_server(name, server.ip_address, credential.ssh_key_ref)
        self._write(server, dokploy_server_id=found.external_id, phase=Phase.INSTALL)
        return ReconcileResult(Outcome.ADVANCED, "registered with Dokploy")

    def _server_install(self, server: Server) -> ReconcileResult:
        adapter = self._adapter(server, DOKPLOY)
        self._guard(server)
        adapter.setup_server(server.dokploy_server_id)
        return self._finish_provisioning(server, "Dokploy installed", dokploy_installed=True)

    # ---- site ----

    def _site_create(self, site: Site) -> ReconcileResult:
        server = site.server
        if server.status != ResourceStatus.READY or not server.dokploy_server_id:
            raise ConfigurationInvalidError(DOKPLOY, f"server {server.name} is not a ready Dokploy host")
        adapter = self._adapter(site, DOKPLOY)

        if not site.project_id:
            name = f"pressfleet-{site.owner_id}"
            project_id = adapter.find_project(name)
            if project_id is None:
                self._guard(site)
                project_id = adapter.create_project(name)
            self._write(site, project_id=project_id)
            return ReconcileResult(Outcome.ADVANCED, "project ready")

        if site.create_requested:
            found = adapter.find(site.app_name)
            if found is not None:
                return self._adopt_site(site, found)

        self._guard(site)
        self._write(site, create_requested=True)
        observed = adapter.create(site.app_name, {
            "project_id": site.project_id,
            "server_id": site.server.dokploy_server_id,
            "description": f"WordPress site {site.name}",
        })
        return self._adopt_site(site, observed)

    def _adopt_site(self, site: Site, observed) -> ReconcileResult:
        self._write(site, external_id=observed.external_id, phase=Phase.CONFIGURE)
        record_event(f"Dokploy compose {observed.external_id} attached", category="reconcile", resource=site,
                     meta={"external_id": observed.external_id})
        return ReconcileResult(Outcome.ADVANCED, "compose app created")

    def _site_configure(self, site: Site) -> ReconcileResult:
        adapter = self._adapter(site, DOKPLOY)
        self._guard(site)
        adapter.configure(site.external_id, "compose", {
            "compose_file": WORDPRESS_COMPOSE,
            "env": render_env(self._site_env(site)),
        })
        self._write(site, phase=Phase.DOMAIN)
        return ReconcileResult(Outcome.ADVANCED, "compose configured")

    def _site_domain(self, site: Site) -> ReconcileResult:
        if site.domain and not site.domain_id:
            adapter = self._adapter(site, DOKPLOY)
            observed = adapter.describe(site.external_id)
            existing = [d for d in observed.raw.get("domains") or [] if d.get("host") == site.domain]
            if existing:
                domain_id = existing[0].get("domainId", "")
            else:
                self._guard(site)
                domain_id = adapter.configure(site.external_id, "domain", {
                    "host": site.domain,
                    "https": site.ssl_enabled,
                }).get("domain_id", "")
            self._write(site, domain_id=domain_id, phase=Phase.DEPLOY)
            return ReconcileResult(Outcome.ADVANCED, "domain attached")

        self._write(site, phase=Phase.DEPLOY)
        return ReconcileResult(Outcome.ADVANCED, "no domain to attach")

    def _site_deploy(self, site: Site) -> ReconcileResult:
        adapter = self._adapter(site, DOKPLOY)
        previous = latest_deployment(adapter.describe(site.external_id).raw) or {}
        self._guard(site)
        adapter.configure(site.external_id, "deploy", {})
        self._write(
            site,
            previous_deployment_id=previous.get("deploymentId", ""),
            phase=Phase.ROLLOUT,
            phase_deadline=self._deadline_for(site, Phase.ROLLOUT),
        )
        return ReconcileResult(Outcome.ADVANCED, "deployment triggered")

    def _site_rollout(self, site: Site) -> ReconcileResult:
        observed = self._adapter(site, DOKPLOY).describe(site.external_id)
        current = latest_deployment(observed.raw)
        if current is None or current.get("deploymentId", "") == site.previous_deployment_id:
            # compose.deploy only queues a job; composeStatus still describes the last run
            self._check_deadline(site, DOKPLOY, "deployment never started before the rollout deadline")
            return ReconcileResult(Outcome.WAITING, "deployment queued")

        state = current.get("status") or observed.state
        if state == "done":
            return self._finish_provisioning(site, "WordPress running")
        if state == "error":
            # next attempt triggers a fresh deployment
            self._write(site, phase=Phase.DEPLOY, phase_deadline=None)
            raise DeployFailedError(DOKPLOY, "Dokploy reported a failed deployment",
                                    {"deployment_id": current.get("deploymentId", "")})
        self._check_deadline(site, DOKPLOY, f"deployment still {state} at rollout deadline")
        return ReconcileResult(Outcome.WAITING, f"deployment is {state}")

    def _site_env(self, site: Site) -> dict:
        if site.domain:
            url = f"{'https' if site.ssl_enabled else 'http'}://{site.domain}"
        else:
            url = f"http://{site.server.url_host}"
        return {
            "DB_PASSWORD": site.db_password,
            "SITE_URL": url,
            "SITE_TITLE": site.name,
            "WP_ADMIN_USER": site.wordpress_admin_user,
            "WP_ADMIN_PASSWORD": site.wordpress_admin_password,
            "WP_ADMIN_EMAIL": getattr(site.owner, "email", "") or f"admin@{site.domain or 'example.com'}",
        }

    def _finish_provisioning(self, resource, message: str, **fields) -> ReconcileResult:
        self._transition(
            resource,
            ResourceStatus.READY,
            phase=Phase.NONE,
            phase_deadline=None,
            last_error="",
            last_error_kind="",
            message=message,
            **fields,
        )
        return ReconcileResult(Outcome.SUCCEEDED, message)

    # ------------------------------------------------------------------
    # deletion
    # ------------------------------------------------------------------

    def _reconcile_deletion(self, resource) -> ReconcileResult:
        status = resource.status
        if status == ResourceStatus.FAILED and not self._retry_requested(resource):
            return ReconcileResult(Outcome.FAILED_TERMINAL, resource.last_error, resource.last_error_kind)

        if status != ResourceStatus.DEPROVISIONING:
            if not self._has_external(resource):
                return self._remove(resource)
            first = Phase.DRAIN if isinstance(resource, Server) else Phase.DESTROY
            self._transition(
                resource,
                ResourceStatus.DEPROVISIONING,
                phase=first,
                phase_deadline=None,
                last_error="",
                last_error_kind="",
            )
            return ReconcileResult(Outcome.ADVANCED, "deprovisioning started")

        steps = SERVER_DELETION_STEPS if isinstance(resource, Server) else SITE_DELETION_STEPS
        return getattr(self, steps[Phase(resource.phase)])(resource)

    def _server_drain(self, server: Server) -> ReconcileResult:
        remaining = server.sites.count()
        if remaining:
            return ReconcileResult(Outcome.WAITING, f"waiting for {remaining} site(s) to be removed")
        self._write(server, phase=Phase.DESTROY)
        return ReconcileResult(Outcome.ADVANCED, "no sites left")

    def _server_destroy(self, server: Server) -> ReconcileResult:
        if server.dokploy_server_id:
            credential = get_credential(server.owner_id, DOKPLOY)
            if credential is None:
                logger.warning("Server %s has Dokploy id %s but no Dokploy credential; dropping reference",
                               server.pk, server.dokploy_server_id)
            else:
                try:
                    build_adapter(credential).unregister_server(server.dokploy_server_id)
                except ResourceNotFoundError:
                    pass
            self._write(server, dokploy_server_id="", dokploy_installed=False)
            return ReconcileResult(Outcome.ADVANCED, "unregistered from Dokploy")
        return self._destroy_external(server)

    def _destroy_external(self, resource) -> ReconcileResult:
        adapter = self._adapter(resource, self._primary(resource))
        external_id = resource.external_id
        if not external_id and resource.create_requested:
            found = adapter.find(self._token(resource))
            if found is not None:
                external_id = found.external_id
                self._write(resource, external_id=external_id)
        if not external_id:
            return self._remove(resource)

        try:
            adapter.destroy(external_id)
        except ResourceNotFoundError:
            return self._remove(resource)
        self._write(resource, phase=Phase.VANISH)
        return ReconcileResult(Outcome.ADVANCED, "destroy requested")

    def _vanish(self, resource) -> ReconcileResult:
        try:
            observed = self._adapter(resource, self._primary(resource)).describe(resource.external_id)
        except ResourceNotFoundError:
            return self._remove(resource)
        return ReconcileResult(Outcome.WAITING, f"external resource still {observed.state}")

    def _remove(self, resource) -> ReconcileResult:
        prev = resource.status
        if prev != ResourceStatus.DEPROVISIONING:
            check_transition(prev, ResourceStatus.DEPROVISIONING)
        check_transition(ResourceStatus.DEPROVISIONING, ResourceStatus.DELETED)

        record_event(
            f"{resource.kind} {resource.name} deleted",
            category="reconcile",
            resource=resource,
            from_status=prev,
            to_status=ResourceStatus.DELETED,
            outcome=Outcome.SUCCEEDED,
            meta={"external_id": resource.external_id},
        )
        type(resource).objects.filter(pk=resource.pk).delete()
        return ReconcileResult(Outcome.SUCCEEDED, "deleted")

    # ------------------------------------------------------------------
    # errors
    # ------------------------------------------------------------------

    def _handle_error(self, resource, error: ProviderError) -> ReconcileResult:
        if isinstance(error, AuthInvalidError):
            credential = get_credential(resource.owner_id, error.provider)
            if credential is not None:
                credential.invalidate()
            return self._fail(resource, str(error), error.kind)

        if error.retryable:
            self._write(resource, last_error=str(error), last_error_kind=error.kind)
            record_event(
                str(error), category="reconcile", resource=resource, level="warning",
                outcome=Outcome.FAILED_RETRYABLE, error_kind=error.kind, meta=_jsonable(error.details),
            )
            return ReconcileResult(Outcome.FAILED_RETRYABLE, str(error), error.kind, getattr(error, "retry_after", None))

        if isinstance(error, ResourceNotFoundError) and self._external_vanished(resource, error):
            return self._forget_external(resource, error)

        return self._fail(resource, str(error), error.kind)

    def _external_vanished(self, resource, error) -> bool:
        if resource.wants_deletion or resource.status != ResourceStatus.PROVISIONING or not resource.external_id:
            return False
        if error.provider != self._primary(resource):
            return False
        if isinstance(resource, Server):
            return resource.phase == Phase.BOOT
        return resource.phase in (Phase.CONFIGURE, Phase.DEPLOY, Phase.ROLLOUT)

    def _forget_external(self, resource, error) -> ReconcileResult:
        record_event(
            f"External resource {resource.external_id} disappeared; provisioning again",
            category="reconcile", resource=resource, level="warning", error_kind=error.kind,
        )
        fields = {
            "external_id": "",
            "create_requested": False,
            "idempotency_key": uuid.uuid4(),
            "phase": Phase.CREATE,
            "phase_deadline": None,
        }
        if isinstance(resource, Site):
            fields["domain_id"] = ""
        self._write(resource, **fields)
        return ReconcileResult(Outcome.ADVANCED, "external resource vanished")

    def _fail(self, resource, message: str, error_kind: str = "") -> ReconcileResult:
        prev = resource.status
        fields = {
            "last_error": message,
            "last_error_kind": error_kind,
            "failed_generation": resource.retry_generation,
        }
        if prev == ResourceStatus.FAILED:
            self._write(resource, **fields)
        else:
            check_transition(prev, ResourceStatus.FAILED)
            self._write(resource, status=ResourceStatus.FAILED, **fields)
        record_event(
            message, category="reconcile", resource=resource, level="error",
            from_status=prev, to_status=ResourceStatus.FAILED,
            outcome=Outcome.FAILED_TERMINAL, error_kind=error_kind,
            meta={"external_id": resource.external_id, "phase": resource.phase},
        )
        return ReconcileResult(Outcome.FAILED_TERMINAL, message, error_kind)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _guard(self, resource) -> None:
        desired = type(resource).objects.filter(pk=resource.pk).values_list("desired_state", flat=True).first()
        if desired is None or desired == DesiredState.DELETING:
            resource.desired_state = DesiredState.DELETING
            raise Cancelled()

    def _write(self, resource, **fields) -> None:
        for name, value in fields.items():
            setattr(resource, name, value)
        # never include desired_state/retry_generation: those belong to the API
        resource.save(update_fields=list(fields) + ["updated_at"])

    def _transition(self, resource, target, message: str = "", **fields) -> None:
        prev = resource.status
        check_transition(prev, target)
        self._write(resource, status=target, **fields)
        record_event(
            message or f"{prev} -> {target}",
            category="reconcile", resource=resource, from_status=prev, to_status=target,
        )

    def _credential(self, resource, provider) -> ProviderCredential:
        credential = get_credential(resource.owner_id, provider)
        if credential is None:
            raise ConfigurationInvalidError(provider, f"no {provider} credential on file")
        return credential

    def _adapter(self, resource, provider):
        return build_adapter(self._credential(resource, provider))

    def _primary(self, resource) -> str:
        return HETZNER if isinstance(resource, Server) else DOKPLOY

    def _token(self, resource) -> str:
        return resource.idempotency_key.hex if isinstance(resource, Server) else resource.app_name

    def _has_external(self, resource) -> bool:
        if resource.external_id or resource.create_requested:
            return True
        return isinstance(resource, Server) and bool(resource.dokploy_server_id)

    def _retry_requested(self, resource) -> bool:
        return resource.retry_generation > resource.failed_generation

    def _deadline_for(self, resource, phase):
        if phase == Phase.BOOT:
            return timezone.now() + timedelta(seconds=getattr(settings, "SERVER_BOOT_TIMEOUT", 600))
        if phase == Phase.ROLLOUT:
            return timezone.now() + timedelta(seconds=getattr(settings, "SITE_ROLLOUT_TIMEOUT", 900))
        return None

    def _check_deadline(self, resource, provider, message: str) -> None:
        if resource.phase_deadline and timezone.now() > resource.phase_deadline:
            raise ProvisionTimeoutError(provider, message)


def _jsonable(details: dict) -> dict:
    out = {}
    for k, v in (details or {}).items():
        out[k] = v if isinstance(v, (str, int, float, bool, type(None), list, dict)) else str(v)
    return out


reconciler = Reconciler()


def reconcile(kind, resource_id) -> ReconcileResult:
    return reconciler.reconcile(kind, resource_id)
