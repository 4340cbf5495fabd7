# accounts/models.py
from django.conf import settings
from django.db import models
from django.utils import timezone
from encrypted_model_fields.fields import EncryptedCharField

User = settings.AUTH_USER_MODEL


class ProviderCredential(models.Model):
    PROVIDER_HETZNER = 'hetzner'
    PROVIDER_DOKPLOY = 'dokploy'
    PROVIDER_CHOICES = [
        (PROVIDER_HETZNER, 'Hetzner Cloud'),
        (PROVIDER_DOKPLOY, 'Dokploy'),
    ]

    owner = models.ForeignKey(User, on_delete=models.CASCADE, related_name='provider_credentials')
    provider = models.CharField(max_length=20, choices=PROVIDER_CHOICES)
    token = EncryptedCharField(max_length=512)
    # Dokploy control plane URL; unused for Hetzner
    base_url = models.URLField(blank=True)
    # Hetzner: comma separated ssh key names injected into new servers
    # Dokploy: ssh key id used when registering a remote server
    ssh_key_ref = models.CharField(max_length=255, blank=True)
    is_valid = models.BooleanField(default=False)
    last_checked = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['owner', 'provider'], name='one_credential_per_provider')
        ]

    def __str__(self):
        return f"{self.owner} - {self.provider}"

    def mark_checked(self, valid: bool):
        self.is_valid = valid
        self.last_checked = timezone.now()
        self.save(update_fields=["is_valid", "last_checked", "updated_at"])

    def invalidate(self):
        self.mark_checked(False)

    @property
    def ssh_keys(self) -> list:
        return [k.strip() for k in (self.ssh_key_ref or "").split(",") if k.strip()]
