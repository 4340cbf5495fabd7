# fleet/providers/hetzner.py
"""
Hetzner Cloud adapter on the official hcloud SDK.

New servers carry the idempotency key as a label, so a create whose response
was lost is found again with a label selector.
"""
import ipaddress
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from hcloud import APIException, Client
from hcloud.images import Image
from hcloud.locations import Location
from hcloud.server_types import ServerType
from hcloud.servers import Server
from hcloud.ssh_keys import SSHKey

from ..errors import (
    AuthInvalidError,
    ConfigurationInvalidError,
    ProviderError,
    RateLimitedError,
    ResourceConflictError,
    ResourceNotFoundError,
    TransientNetworkError,
)
from .base import ObservedResource, ProviderAdapter

logger = logging.getLogger(__name__)

IDEMPOTENCY_LABEL = "pressfleet-key"
MANAGED_LABEL = "managed-by"

# https://docs.hetzner.cloud/#errors; codes not listed here (locked, server_error,
# service_error, timeout, unavailable, resource_unavailable, ...) are transient
ERROR_CODES = {
    "unauthorized": AuthInvalidError,
    "forbidden": AuthInvalidError,
    "token_readonly": AuthInvalidError,
    "not_found": ResourceNotFoundError,
    "uniqueness_error": ResourceConflictError,
    "conflict": ResourceConflictError,
    "invalid_input": ConfigurationInvalidError,
    "json_error": ConfigurationInvalidError,
    "protected": ConfigurationInvalidError,
    "resource_limit_exceeded": ConfigurationInvalidError,
    "unsupported_error": ConfigurationInvalidError,
}


class HetznerAdapter(ProviderAdapter):
    """Hetzner Cloud API v1 (https://docs.hetzner.cloud)."""

    name = "hetzner"

    def __init__(self, token: str, timeout: Optional[int] = None, client: Optional[Client] = None):
        super().__init__(token, timeout)
        self.client = client or Client(
            token=token,
            api_endpoint=getattr(settings, "HETZNER_API_URL", "https://api.hetzner.cloud/v1"),
            application_name="pressfleet",
            timeout=self.timeout,
        )

    @contextmanager
    def _calling(self, action: str):
        try:
            yield
        except APIException as e:
            raise self._error_for(e, action) from e
        except requests.RequestException as e:
            raise TransientNetworkError(self.name, f"{action}: {e}") from e

    def _error_for(self, e: APIException, action: str) -> ProviderError:
        msg = f"{action} -> {e.code}: {e.message}"
        details = {"code": e.code, "details": e.details}
        if e.code == "rate_limit_exceeded":
            return RateLimitedError(self.name, msg, details=details)
        return ERROR_CODES.get(e.code, TransientNetworkError)(self.name, msg, details)

    def _server_id(self, external_id: str) -> int:
        try:
            return int(external_id)
        except (TypeError, ValueError):
            raise ConfigurationInvalidError(self.name, f"not a Hetzner server id: {external_id!r}")

    def validate(self) -> None:
        with self._calling("list locations"):
            self.client.locations.get_list(per_page=1)

    def find(self, idempotency_token: str) -> Optional[ObservedResource]:
        with self._calling("find server"):
            servers = self.client.servers.get_all(label_selector=f"{IDEMPOTENCY_LABEL}={idempotency_token}")
        if len(servers) > 1:
            ids = [s.id for s in servers]
            raise ResourceConflictError(self.name, f"{len(servers)} servers carry idempotency key {idempotency_token}", {"ids": ids})
        if not servers:
            return None
        return _observed(servers[0])

    def create(self, idempotency_token: str, spec: Dict[str, Any]) -> ObservedResource:
        server_type = spec.get("server_type") or getattr(settings, "HETZNER_DEFAULT_SERVER_TYPE", "cx22")
        image = spec.get("image") or getattr(settings, "HETZNER_DEFAULT_IMAGE", "ubuntu-24.04")
        ssh_keys = [SSHKey(name=key) for key in spec.get("ssh_keys") or []]

        logger.info("Creating Hetzner server name=%s location=%s", spec["name"], spec["region"])
        with self._calling("create server"):
            response = self.client.servers.create(
                name=spec["name"],
                server_type=ServerType(name=server_type),
                image=Image(name=image),
                location=Location(name=spec["region"]),
                ssh_keys=ssh_keys or None,
                user_data=spec.get("user_data"),
                labels={IDEMPOTENCY_LABEL: idempotency_token, MANAGED_LABEL: "pressfleet"},
                start_after_create=True,
            )
        server = response.server
        if server is None or not server.id:
            # the create may or may not have happened; caller re-queries by label
            raise TransientNetworkError(self.name, "create server returned no server id")
        return _observed(server)

    def describe(self, external_id: str) -> ObservedResource:
        server_id = self._server_id(external_id)
        with self._calling(f"get server {external_id}"):
            return _observed(self.client.servers.get_by_id(server_id))

    def destroy(self, external_id: str) -> None:
        server_id = self._server_id(external_id)
        logger.info("Deleting Hetzner server id=%s", external_id)
        with self._calling(f"delete server {external_id}"):
            self.client.servers.delete(Server(id=server_id))


def _observed(server) -> ObservedResource:
    return ObservedResource(
        external_id=str(server.id),
        state=server.status or "unknown",
        address=_public_address(server.public_net),
        raw={"id": server.id, "name": server.name, "status": server.status, "labels": server.labels or {}},
    )


def _public_address(public_net) -> Optional[str]:
    """IPv4 when the server has one, otherwise the first host of its IPv6 /64."""
    if public_net is None:
        return None
    if public_net.ipv4 is not None and public_net.ipv4.ip:
        return public_net.ipv4.ip
    if public_net.ipv6 is not None and public_net.ipv6.ip:
        network = ipaddress.ip_network(public_net.ipv6.ip, strict=False)
        return str(network.network_address + 1)
    return None
