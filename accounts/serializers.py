# accounts/serializers.py
from rest_framework import serializers

from .models import ProviderCredential


class ProviderCredentialSerializer(serializers.ModelSerializer):
    """Tokens are write-only; reads only say whether one is stored."""
    token = serializers.CharField(write_only=True, required=False, allow_blank=True, max_length=512)
    has_token = serializers.SerializerMethodField()

    class Meta:
        model = ProviderCredential
        fields = ('provider', 'token', 'has_token', 'base_url', 'ssh_key_ref', 'is_valid', 'last_checked', 'updated_at')
        read_only_fields = ('provider', 'is_valid', 'last_checked', 'updated_at')

    def get_has_token(self, obj):
        return bool(obj.token)


class CredentialUpsertSerializer(serializers.Serializer):
    token = serializers.CharField(required=False, allow_blank=True, max_length=512, default="")
    base_url = serializers.URLField(required=False, allow_blank=True, default="")
    ssh_key_ref = serializers.CharField(required=False, allow_blank=True, max_length=255)

    def validate(self, attrs):
        provider = self.context['provider']
        existing = self.context.get('existing')
        if existing is None and not attrs.get('token'):
            raise serializers.ValidationError({"token": "A token is required for a new credential."})
        if provider == ProviderCredential.PROVIDER_DOKPLOY and not (attrs.get('base_url') or (existing and existing.base_url)):
            raise serializers.ValidationError({"base_url": "Dokploy needs the control plane URL."})
        return attrs
