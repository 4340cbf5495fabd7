# fleet/states.py
"""
Closed vocabularies for the resource lifecycle.

Observed status only moves along the edges in ``TRANSITIONS``; the reconciler
calls ``check_transition`` before every write so a bad edge fails loudly
instead of leaving a record in a state nothing knows how to leave.
"""
from django.db import models


class ResourceKind(models.TextChoices):
    SERVER = "server", "Server"
    SITE = "site", "Site"


class ResourceStatus(models.TextChoices):
    CREATED = "created", "Created"
    PROVISIONING = "provisioning", "Provisioning"
    READY = "ready", "Ready"
    FAILED = "failed", "Failed"
    DEPROVISIONING = "deprovisioning", "Deprovisioning"
    DELETED = "deleted", "Deleted"


class DesiredState(models.TextChoices):
    PRESENT = "present", "Present"
    DELETING = "deleting", "Deleting"


class Phase(models.TextChoices):
    # provisioning
    NONE = "", "None"
    CREATE = "create", "Create"
    BOOT = "boot", "Wait for boot"
    REGISTER = "register", "Register with Dokploy"
    INSTALL = "install", "Install Dokploy"
    CONFIGURE = "configure", "Configure compose"
    DOMAIN = "domain", "Attach domain"
    DEPLOY = "deploy", "Trigger deploy"
    ROLLOUT = "rollout", "Wait for rollout"
    # deprovisioning
    DRAIN = "drain", "Wait for dependents"
    DESTROY = "destroy", "Destroy"
    VANISH = "vanish", "Wait for removal"


class Outcome(models.TextChoices):
    ADVANCED = "advanced", "Advanced"
    WAITING = "waiting", "Waiting"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED_RETRYABLE = "failed-retryable", "Failed (retryable)"
    FAILED_TERMINAL = "failed-terminal", "Failed (terminal)"


class ErrorKind(models.TextChoices):
    TRANSIENT_NETWORK = "transient-network", "Transient network"
    RATE_LIMITED = "provider-rate-limited", "Provider rate limited"
    AUTH_INVALID = "provider-auth-invalid", "Provider auth invalid"
    CONFLICT = "resource-conflict", "Resource conflict"
    NOT_FOUND = "resource-not-found", "Resource not found"
    CONFIG_INVALID = "configuration-invalid", "Configuration invalid"
    TIMEOUT = "provision-timeout", "Provisioning timed out"
    DEPLOY_FAILED = "deploy-failed", "Deployment failed"


RETRYABLE_ERRORS = frozenset({
    ErrorKind.TRANSIENT_NETWORK,
    ErrorKind.RATE_LIMITED,
    ErrorKind.TIMEOUT,
    ErrorKind.DEPLOY_FAILED,
})


TRANSITIONS = {
    ResourceStatus.CREATED: {ResourceStatus.PROVISIONING, ResourceStatus.FAILED, ResourceStatus.DEPROVISIONING},
    ResourceStatus.PROVISIONING: {ResourceStatus.READY, ResourceStatus.FAILED, ResourceStatus.DEPROVISIONING},
    ResourceStatus.READY: {ResourceStatus.DEPROVISIONING},
    ResourceStatus.FAILED: {ResourceStatus.CREATED, ResourceStatus.PROVISIONING, ResourceStatus.DEPROVISIONING},
    ResourceStatus.DEPROVISIONING: {ResourceStatus.DELETED, ResourceStatus.FAILED},
    ResourceStatus.DELETED: set(),
}

class InvalidTransition(Exception):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"illegal status transition {current} -> {target}")


def check_transition(current, target) -> None:
    if target not in TRANSITIONS[ResourceStatus(current)]:
        raise InvalidTransition(current, target)


def is_settled(status, desired) -> bool:
    """True when the resource needs no task: ready and wanted, or gone."""
    if status == ResourceStatus.DELETED:
        return True
    return status == ResourceStatus.READY and desired == DesiredState.PRESENT
