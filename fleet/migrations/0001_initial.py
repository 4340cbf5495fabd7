import uuid

import django.db.models.deletion
import django.utils.timezone
import encrypted_model_fields.fields
from django.conf import settings
from django.db import migrations, models

import fleet.models

STATUS_CHOICES = [
    ('created', 'Created'), ('provisioning', 'Provisioning'), ('ready', 'Ready'),
    ('failed', 'Failed'), ('deprovisioning', 'Deprovisioning'), ('deleted', 'Deleted'),
]
DESIRED_CHOICES = [('present', 'Present'), ('deleting', 'Deleting')]
PHASE_CHOICES = [
    ('', 'None'), ('create', 'Create'), ('boot', 'Wait for boot'), ('register', 'Register with Dokploy'),
    ('install', 'Install Dokploy'), ('configure', 'Configure compose'), ('domain', 'Attach domain'),
    ('deploy', 'Trigger deploy'), ('rollout', 'Wait for rollout'), ('drain', 'Wait for dependents'),
    ('destroy', 'Destroy'), ('vanish', 'Wait for removal'),
]
ERROR_CHOICES = [
    ('transient-network', 'Transient network'), ('provider-rate-limited', 'Provider rate limited'),
    ('provider-auth-invalid', 'Provider auth invalid'), ('resource-conflict', 'Resource conflict'),
    ('resource-not-found', 'Resource not found'), ('configuration-invalid', 'Configuration invalid'),
    ('provision-timeout', 'Provisioning timed out'), ('deploy-failed', 'Deployment failed'),
]
OUTCOME_CHOICES = [
    ('advanced', 'Advanced'), ('waiting', 'Waiting'), ('succeeded', 'Succeeded'),
    ('failed-retryable', 'Failed (retryable)'), ('failed-terminal', 'Failed (terminal)'),
]
KIND_CHOICES = [('server', 'Server'), ('site', 'Site')]


def resource_fields():
    return [
        ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
        ('external_id', models.CharField(blank=True, max_length=255)),
        ('desired_state', models.CharField(choices=DESIRED_CHOICES, default='present', max_length=20)),
        ('status', models.CharField(choices=STATUS_CHOICES, db_index=True, default='created', max_length=20)),
        ('phase', models.CharField(blank=True, choices=PHASE_CHOICES, default='', max_length=20)),
        ('phase_deadline', models.DateTimeField(blank=True, null=True)),
        ('region', models.CharField(max_length=50)),
        ('idempotency_key', models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
        ('create_requested', models.BooleanField(default=False)),
        ('retry_generation', models.PositiveIntegerField(default=0)),
        ('failed_generation', models.PositiveIntegerField(default=0)),
        ('last_error', models.TextField(blank=True)),
        ('last_error_kind', models.CharField(blank=True, choices=ERROR_CHOICES, max_length=30)),
        ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
        ('updated_at', models.DateTimeField(auto_now=True)),
        ('owner', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='+', to=settings.AUTH_USER_MODEL)),
    ]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Server',
            fields=resource_fields() + [
                ('name', models.CharField(max_length=63)),
                ('server_type', models.CharField(blank=True, max_length=30)),
                ('image', models.CharField(blank=True, max_length=60)),
                ('ip_address', models.GenericIPAddressField(blank=True, null=True)),
                ('dokploy_server_id', models.CharField(blank=True, max_length=255)),
                ('dokploy_installed', models.BooleanField(default=False)),
            ],
            options={
                'ordering': ['-created_at'],
                'constraints': [models.UniqueConstraint(fields=('owner', 'name'), name='unique_server_name_per_owner')],
            },
        ),
        migrations.CreateModel(
            name='Site',
            fields=resource_fields() + [
                ('name', models.CharField(max_length=63)),
                ('domain', models.CharField(blank=True, max_length=255)),
                ('domain_id', models.CharField(blank=True, max_length=255)),
                ('project_id', models.CharField(blank=True, max_length=255)),
                ('db_password', encrypted_model_fields.fields.EncryptedCharField(default=fleet.models._db_password)),
                ('wordpress_admin_user', models.CharField(max_length=60)),
                ('wordpress_admin_password', encrypted_model_fields.fields.EncryptedCharField()),
                ('ssl_enabled', models.BooleanField(default=False)),
                ('server', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='sites', to='fleet.server')),
            ],
            options={
                'ordering': ['-created_at'],
                'constraints': [models.UniqueConstraint(fields=('server', 'name'), name='unique_site_name_per_server')],
            },
        ),
        migrations.CreateModel(
            name='ReconciliationTask',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('resource_kind', models.CharField(choices=KIND_CHOICES, max_length=10)),
                ('resource_id', models.BigIntegerField()),
                ('attempts', models.IntegerField(default=0)),
                ('next_run_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('last_error', models.TextField(blank=True)),
                ('last_outcome', models.CharField(blank=True, choices=OUTCOME_CHOICES, max_length=20)),
                ('halted', models.BooleanField(default=False)),
                ('lease_owner', models.CharField(blank=True, max_length=64)),
                ('leased_at', models.DateTimeField(blank=True, null=True)),
                ('lease_expires_at', models.DateTimeField(blank=True, null=True)),
                ('requested_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['next_run_at', 'created_at'],
                'indexes': [models.Index(fields=['halted', 'next_run_at'], name='fleet_task_due_idx')],
                'constraints': [models.UniqueConstraint(fields=('resource_kind', 'resource_id'), name='one_task_per_resource')],
            },
        ),
        migrations.CreateModel(
            name='HealthCheck',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('resource_kind', models.CharField(choices=KIND_CHOICES, max_length=10)),
                ('resource_id', models.BigIntegerField()),
                ('status', models.CharField(choices=[('healthy', 'Healthy'), ('warning', 'Warning'), ('error', 'Error')], max_length=10)),
                ('check_type', models.CharField(max_length=20)),
                ('response_time_ms', models.IntegerField(blank=True, null=True)),
                ('error_message', models.TextField(blank=True)),
                ('checked_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
            ],
            options={
                'ordering': ['-checked_at'],
                'indexes': [models.Index(fields=['resource_kind', 'resource_id'], name='fleet_health_resource_idx')],
            },
        ),
        migrations.CreateModel(
            name='ResourceEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('resource_kind', models.CharField(blank=True, choices=KIND_CHOICES, max_length=10)),
                ('resource_id', models.BigIntegerField(blank=True, null=True)),
                ('level', models.CharField(choices=[('debug', 'Debug'), ('info', 'Info'), ('warning', 'Warning'), ('error', 'Error')], db_index=True, default='info', max_length=10)),
                ('category', models.CharField(db_index=True, max_length=30)),
                ('message', models.TextField()),
                ('from_status', models.CharField(blank=True, max_length=20)),
                ('to_status', models.CharField(blank=True, max_length=20)),
                ('outcome', models.CharField(blank=True, choices=OUTCOME_CHOICES, max_length=20)),
                ('error_kind', models.CharField(blank=True, choices=ERROR_CHOICES, max_length=30)),
                ('meta', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('owner', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at', '-id'],
                'indexes': [models.Index(fields=['resource_kind', 'resource_id'], name='fleet_event_resource_idx')],
            },
        ),
    ]
