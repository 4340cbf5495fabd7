# accounts/admin.py
from django.contrib import admin

from .models import ProviderCredential


@admin.register(ProviderCredential)
class ProviderCredentialAdmin(admin.ModelAdmin):
    list_display = ('owner', 'provider', 'base_url', 'is_valid', 'last_checked', 'updated_at')
    list_filter = ('provider', 'is_valid')
    search_fields = ('owner__username', 'owner__email')
    exclude = ('token',)
    readonly_fields = ('is_valid', 'last_checked')
