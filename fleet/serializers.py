# fleet/serializers.py
from rest_framework import serializers

from .models import HealthCheck, ResourceEvent, Server, Site
from .services import sanitize_name
from .states import DesiredState, ResourceStatus

RESOURCE_READ_ONLY = [
    'id', 'external_id', 'desired_state', 'status', 'phase', 'last_error', 'last_error_kind',
    'created_at', 'updated_at',
]


class ServerSerializer(serializers.ModelSerializer):
    site_count = serializers.SerializerMethodField()

    class Meta:
        model = Server
        fields = [
            'id', 'name', 'region', 'server_type', 'image', 'ip_address', 'external_id',
            'desired_state', 'status', 'phase', 'dokploy_installed', 'site_count',
            'last_error', 'last_error_kind', 'created_at', 'updated_at',
        ]
        read_only_fields = RESOURCE_READ_ONLY + ['ip_address', 'dokploy_installed']

    def get_site_count(self, obj):
        return obj.sites.count()


class ServerCreateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Server
        fields = ['name', 'region', 'server_type', 'image']

    def validate_name(self, value):
        name = sanitize_name(value)
        if len(name) < 2:
            raise serializers.ValidationError("Invalid name (letters, numbers and hyphen allowed; 2-63 chars).")
        owner = self.context['request'].user
        if Server.objects.filter(owner=owner, name=name).exists():
            raise serializers.ValidationError("A server with this name already exists.")
        return name


class SiteSerializer(serializers.ModelSerializer):
    server_name = serializers.CharField(source='server.name', read_only=True)
    url = serializers.SerializerMethodField()

    class Meta:
        model = Site
        fields = [
            'id', 'server', 'server_name', 'name', 'domain', 'url', 'ssl_enabled', 'wordpress_admin_user',
            'external_id', 'desired_state', 'status', 'phase',
            'last_error', 'last_error_kind', 'created_at', 'updated_at',
        ]
        read_only_fields = RESOURCE_READ_ONLY + ['server', 'domain', 'ssl_enabled', 'wordpress_admin_user']

    def get_url(self, obj):
        if obj.domain:
            return f"{'https' if obj.ssl_enabled else 'http'}://{obj.domain}"
        if obj.server.ip_address:
            return f"http://{obj.server.ip_address}"
        return None


class SiteCreateSerializer(serializers.ModelSerializer):
    server = serializers.PrimaryKeyRelatedField(queryset=Server.objects.all())
    wordpress_admin_password = serializers.CharField(write_only=True, min_length=8)

    class Meta:
        model = Site
        fields = ['server', 'name', 'domain', 'ssl_enabled', 'wordpress_admin_user', 'wordpress_admin_password']

    def validate_server(self, server):
        if server.owner_id != self.context['request'].user.id:
            raise serializers.ValidationError("Unknown server.")
        if server.desired_state != DesiredState.PRESENT or server.status != ResourceStatus.READY:
            raise serializers.ValidationError("Server is not ready.")
        if not server.dokploy_installed:
            raise serializers.ValidationError("Dokploy is not installed on this server.")
        return server

    def validate_domain(self, value):
        return value.strip().lower().rstrip(".")

    def validate(self, attrs):
        name = sanitize_name(attrs.get('name', ''))
        if len(name) < 2:
            raise serializers.ValidationError({"name": "Invalid name (letters, numbers and hyphen allowed; 2-63 chars)."})
        if Site.objects.filter(server=attrs['server'], name=name).exists():
            raise serializers.ValidationError({"name": "A site with this name already exists on this server."})
        attrs['name'] = name
        return attrs


class HealthCheckSerializer(serializers.ModelSerializer):
    class Meta:
        model = HealthCheck
        fields = ['id', 'status', 'check_type', 'response_time_ms', 'error_message', 'checked_at']


class ResourceEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = ResourceEvent
        fields = [
            'id', 'resource_kind', 'resource_id', 'level', 'category', 'message',
            'from_status', 'to_status', 'outcome', 'error_kind', 'meta', 'created_at',
        ]
