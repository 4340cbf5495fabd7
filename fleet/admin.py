from django.contrib import admin

from .models import HealthCheck, ReconciliationTask, ResourceEvent, Server, Site


@admin.register(Server)
class ServerAdmin(admin.ModelAdmin):
    list_display = ('name', 'owner', 'region', 'status', 'phase', 'desired_state', 'ip_address', 'created_at')
    list_filter = ('status', 'desired_state', 'region')
    search_fields = ('name', 'external_id', 'ip_address')
    # observed state belongs to the reconciler
    readonly_fields = ('status', 'phase', 'phase_deadline', 'external_id', 'idempotency_key', 'create_requested',
                       'failed_generation', 'last_error', 'last_error_kind')


@admin.register(Site)
class SiteAdmin(admin.ModelAdmin):
    list_display = ('name', 'server', 'domain', 'status', 'phase', 'desired_state', 'created_at')
    list_filter = ('status', 'desired_state')
    search_fields = ('name', 'domain', 'external_id')
    readonly_fields = ('status', 'phase', 'phase_deadline', 'external_id', 'idempotency_key', 'create_requested',
                       'failed_generation', 'last_error', 'last_error_kind', 'project_id', 'domain_id',
                       'previous_deployment_id')
    exclude = ('db_password', 'wordpress_admin_password')


@admin.register(ReconciliationTask)
class ReconciliationTaskAdmin(admin.ModelAdmin):
    list_display = ('resource_kind', 'resource_id', 'attempts', 'next_run_at', 'halted', 'last_outcome', 'lease_owner')
    list_filter = ('resource_kind', 'halted', 'last_outcome')


@admin.register(HealthCheck)
class HealthCheckAdmin(admin.ModelAdmin):
    list_display = ('resource_kind', 'resource_id', 'status', 'check_type', 'response_time_ms', 'checked_at')
    list_filter = ('status', 'check_type')


@admin.register(ResourceEvent)
class ResourceEventAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'level', 'category', 'resource_kind', 'resource_id', 'message')
    list_filter = ('level', 'category', 'resource_kind')
    search_fields = ('message',)
