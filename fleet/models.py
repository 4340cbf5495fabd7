# fleet/models.py
import secrets
import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone
from encrypted_model_fields.fields import EncryptedCharField

from .states import DesiredState, ErrorKind, Outcome, Phase, ResourceKind, ResourceStatus

User = settings.AUTH_USER_MODEL


def _db_password():
    return secrets.token_urlsafe(24)


class Resource(models.Model):
    """
    Fields shared by everything the reconciler drives.

    ``status`` and ``phase`` are observed state and are written only by
    fleet.reconciler. Views write ``desired_state`` and ``retry_generation``.
    """
    KIND = None

    owner = models.ForeignKey(User, on_delete=models.CASCADE, related_name='+')
    external_id = models.CharField(max_length=255, blank=True)
    desired_state = models.CharField(max_length=20, choices=DesiredState.choices, default=DesiredState.PRESENT)
    status = models.CharField(max_length=20, choices=ResourceStatus.choices, default=ResourceStatus.CREATED, db_index=True)
    phase = models.CharField(max_length=20, choices=Phase.choices, default=Phase.NONE, blank=True)
    phase_deadline = models.DateTimeField(null=True, blank=True)
    region = models.CharField(max_length=50)

    # sent with the create call so a retried create is found instead of duplicated
    idempotency_key = models.UUIDField(default=uuid.uuid4, editable=False, unique=True)
    create_requested = models.BooleanField(default=False)

    # bumped by an explicit retry; the failed status is left only when it is ahead
    retry_generation = models.PositiveIntegerField(default=0)
    failed_generation = models.PositiveIntegerField(default=0)

    last_error = models.TextField(blank=True)
    last_error_kind = models.CharField(max_length=30, choices=ErrorKind.choices, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True

    @property
    def kind(self):
        return self.KIND

    @property
    def wants_deletion(self) -> bool:
        return self.desired_state == DesiredState.DELETING


class Server(Resource):
    KIND = ResourceKind.SERVER

    name = models.CharField(max_length=63)
    server_type = models.CharField(max_length=30, blank=True)
    image = models.CharField(max_length=60, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    dokploy_server_id = models.CharField(max_length=255, blank=True)
    dokploy_installed = models.BooleanField(default=False)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['owner', 'name'], name='unique_server_name_per_owner')
        ]

    def __str__(self):
        return f"{self.name} ({self.status})"

    @property
    def url_host(self) -> str:
        # IPv6-only servers need brackets in URLs
        ip = self.ip_address or ""
        return f"[{ip}]" if ":" in ip else ip


class Site(Resource):
    KIND = ResourceKind.SITE

    server = models.ForeignKey(Server, on_delete=models.PROTECT, related_name='sites')
    name = models.CharField(max_length=63)
    domain = models.CharField(max_length=255, blank=True)
    domain_id = models.CharField(max_length=255, blank=True)
    project_id = models.CharField(max_length=255, blank=True)  # Dokploy project holding the compose app
    previous_deployment_id = models.CharField(max_length=255, blank=True)  # newest deployment before the last trigger
    db_password = EncryptedCharField(max_length=255, default=_db_password)
    wordpress_admin_user = models.CharField(max_length=60)
    wordpress_admin_password = EncryptedCharField(max_length=255)
    ssl_enabled = models.BooleanField(default=False)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['server', 'name'], name='unique_site_name_per_server')
        ]

    def __str__(self):
        return f"{self.name} on {self.server.name} ({self.status})"

    @property
    def app_name(self) -> str:
        # Dokploy appName doubles as the idempotency token for compose creation
        return f"wp-{self.idempotency_key.hex[:20]}"


RESOURCE_MODELS = {
    ResourceKind.SERVER: Server,
    ResourceKind.SITE: Site,
}


class ReconciliationTask(models.Model):
    """
    Durable handoff between the API and the dispatcher. One row per resource,
    enforced by the unique constraint; a worker owns it while it holds the lease.
    """
    resource_kind = models.CharField(max_length=10, choices=ResourceKind.choices)
    resource_id = models.BigIntegerField()

    attempts = models.IntegerField(default=0)
    next_run_at = models.DateTimeField(default=timezone.now, db_index=True)
    last_error = models.TextField(blank=True)
    last_outcome = models.CharField(max_length=20, choices=Outcome.choices, blank=True)
    halted = models.BooleanField(default=False)

    lease_owner = models.CharField(max_length=64, blank=True)
    leased_at = models.DateTimeField(null=True, blank=True)
    lease_expires_at = models.DateTimeField(null=True, blank=True)
    # last explicit enqueue; a request newer than the lease means "run again right away"
    requested_at = models.DateTimeField(default=timezone.now)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['resource_kind', 'resource_id'], name='one_task_per_resource')
        ]
        indexes = [
            models.Index(fields=["halted", "next_run_at"], name="fleet_task_due_idx"),
        ]
        ordering = ["next_run_at", "created_at"]

    def __str__(self):
        return f"ReconciliationTask({self.resource_kind}:{self.resource_id}, attempts={self.attempts})"

    def is_leased(self, now=None) -> bool:
        now = now or timezone.now()
        return bool(self.lease_owner) and self.lease_expires_at is not None and self.lease_expires_at > now


class HealthCheck(models.Model):
    STATUS_HEALTHY = 'healthy'
    STATUS_WARNING = 'warning'
    STATUS_ERROR = 'error'
    STATUS_CHOICES = [
        (STATUS_HEALTHY, 'Healthy'),
        (STATUS_WARNING, 'Warning'),
        (STATUS_ERROR, 'Error'),
    ]

    resource_kind = models.CharField(max_length=10, choices=ResourceKind.choices)
    resource_id = models.BigIntegerField()
    status = models.CharField(max_length=10, choices=STATUS_CHOICES)
    check_type = models.CharField(max_length=20)  # "api", "http"
    response_time_ms = models.IntegerField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    checked_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ['-checked_at']
        indexes = [
            models.Index(fields=["resource_kind", "resource_id"], name="fleet_health_resource_idx"),
        ]

    def __str__(self):
        return f"{self.resource_kind}:{self.resource_id} {self.status}"


class ResourceEvent(models.Model):
    LEVEL_CHOICES = [
        ('debug', 'Debug'),
        ('info', 'Info'),
        ('warning', 'Warning'),
        ('error', 'Error'),
    ]

    owner = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    resource_kind = models.CharField(max_length=10, choices=ResourceKind.choices, blank=True)
    resource_id = models.BigIntegerField(null=True, blank=True)
    level = models.CharField(max_length=10, choices=LEVEL_CHOICES, default='info', db_index=True)
    category = models.CharField(max_length=30, db_index=True)  # "reconcile", "credential", "health", ...
    message = models.TextField()
    from_status = models.CharField(max_length=20, blank=True)
    to_status = models.CharField(max_length=20, blank=True)
    outcome = models.CharField(max_length=20, choices=Outcome.choices, blank=True)
    error_kind = models.CharField(max_length=30, choices=ErrorKind.choices, blank=True)
    meta = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=["resource_kind", "resource_id"], name="fleet_event_resource_idx"),
        ]

    def __str__(self):
        return f"{self.level} {self.category}: {self.message[:60]}"
