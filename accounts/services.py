# accounts/services.py
import logging
from typing import Optional

from django.db import transaction

from .models import ProviderCredential

logger = logging.getLogger(__name__)


def get_credential(owner_id: int, provider: str) -> Optional[ProviderCredential]:
    return ProviderCredential.objects.filter(owner_id=owner_id, provider=provider).first()


def validate_credential(credential: ProviderCredential) -> bool:
    """
    Call the provider's cheap read-only endpoint and record the verdict.

    Returns True/False for valid/invalid credentials. Transient and
    rate-limit errors propagate and leave the stored validity untouched.
    """
    from fleet.errors import AuthInvalidError, ConfigurationInvalidError
    from fleet.events import record_event
    from fleet.providers import build_adapter

    try:
        build_adapter(credential).validate()
    except (AuthInvalidError, ConfigurationInvalidError) as e:
        credential.mark_checked(False)
        record_event(
            f"{credential.provider} credential rejected: {e.message}",
            category="credential",
            owner_id=credential.owner_id,
            level="warning",
            error_kind=e.kind,
        )
        return False

    credential.mark_checked(True)
    logger.info("Credential %s for owner=%s validated", credential.provider, credential.owner_id)
    return True


def store_credential(owner_id: int, provider: str, token: str = "", base_url: str = "", ssh_key_ref: Optional[str] = None) -> ProviderCredential:
    """
    Create or update the owner's credential for ``provider``.

    Blank values keep what is stored. Any change resets validity, and
    resources halted on an auth failure for this provider are queued again.
    """
    from fleet.dispatcher import resume_auth_halted

    with transaction.atomic():
        credential, created = ProviderCredential.objects.select_for_update().get_or_create(
            owner_id=owner_id, provider=provider, defaults={"token": token, "base_url": base_url, "ssh_key_ref": ssh_key_ref or ""}
        )
        if not created:
            if token:
                credential.token = token
            if base_url:
                credential.base_url = base_url
            if ssh_key_ref is not None:
                credential.ssh_key_ref = ssh_key_ref
        credential.is_valid = False
        credential.last_checked = None
        credential.save()

    resumed = resume_auth_halted(owner_id, provider)
    if resumed:
        logger.info("Re-queued %s resource(s) for owner=%s after %s credential update", resumed, owner_id, provider)
    return credential
