"""Provider adapters, looked up by the credential's provider name."""
from .base import ObservedResource, ProviderAdapter
from .dokploy import DokployAdapter
from .hetzner import HetznerAdapter

ADAPTERS = {
    "hetzner": HetznerAdapter,
    "dokploy": DokployAdapter,
}


def build_adapter(credential) -> ProviderAdapter:
    """Construct a fresh adapter for a stored ProviderCredential."""
    cls = ADAPTERS[credential.provider]
    if credential.provider == "dokploy":
        return cls(token=credential.token, base_url=credential.base_url)
    return cls(token=credential.token)


__all__ = ["ADAPTERS", "build_adapter", "ObservedResource", "ProviderAdapter", "DokployAdapter", "HetznerAdapter"]
