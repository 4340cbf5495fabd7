# fleet/providers/base.py
"""
Provider adapter interface.

Every adapter exposes the same capability set (validate, find, create,
describe, configure, destroy) over plain dataclasses, and raises only
fleet.errors.ProviderError subclasses. Adapters hold no state besides the
credential they were built with, so the reconciler can build one per call.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from django.conf import settings

from ..errors import (
    AuthInvalidError,
    ConfigurationInvalidError,
    ProviderError,
    RateLimitedError,
    ResourceConflictError,
    ResourceNotFoundError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


@dataclass
class ObservedResource:
    """What the provider currently reports about an external resource."""
    external_id: str
    state: str
    address: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    name = ""

    def __init__(self, token: str, timeout: Optional[int] = None):
        if not token:
            raise ConfigurationInvalidError(self.name, "missing API token")
        self.token = token
        self.timeout = timeout or getattr(settings, "PROVIDER_HTTP_TIMEOUT", 30)

    # ---- capabilities ----

    @abstractmethod
    def validate(self) -> None:
        """Cheap read-only call; raises AuthInvalidError on bad credentials."""

    @abstractmethod
    def find(self, idempotency_token: str) -> Optional[ObservedResource]:
        """Look up a resource previously created with ``idempotency_token``."""

    @abstractmethod
    def create(self, idempotency_token: str, spec: Dict[str, Any]) -> ObservedResource:
        ...

    @abstractmethod
    def describe(self, external_id: str) -> ObservedResource:
        """Raises ResourceNotFoundError when the resource is gone."""

    @abstractmethod
    def destroy(self, external_id: str) -> None:
        ...

    def configure(self, external_id: str, step: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        raise ConfigurationInvalidError(self.name, f"configure step {step!r} not supported")


class RestAdapter(ProviderAdapter):
    """Adapter for a JSON API reached with ``requests`` under ``base_url``."""

    def __init__(self, token: str, base_url: str, timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        super().__init__(token, timeout)
        if not base_url:
            raise ConfigurationInvalidError(self.name, "missing base URL")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransientNetworkError(self.name, f"{method} {path}: {e}") from e

        if 200 <= resp.status_code < 300:
            if not resp.content:
                return None
            try:
                return resp.json()
            except ValueError:
                return resp.text

        raise self._error_for(resp, method, path)

    def _error_for(self, resp, method: str, path: str) -> ProviderError:
        code = resp.status_code
        body = _safe_body(resp)
        msg = f"{method} {path} -> {code}: {_error_message(body)}"
        details = {"status_code": code, "body": body}
        logger.debug("%s error response %s", self.name, msg)

        if code == 429:
            retry_after = resp.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after else None
            except ValueError:
                retry_after = None
            return RateLimitedError(self.name, msg, retry_after=retry_after, details=details)
        if code in (401, 403):
            return AuthInvalidError(self.name, msg, details)
        if code == 404:
            return ResourceNotFoundError(self.name, msg, details)
        if code == 409:
            return ResourceConflictError(self.name, msg, details)
        if code in (400, 422):
            return ConfigurationInvalidError(self.name, msg, details)
        # 408, 5xx and anything unexpected: re-query before concluding anything
        return TransientNetworkError(self.name, msg, details)


def _safe_body(resp):
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "")[:500]


def _error_message(body) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return err.get("message") or err.get("code") or str(err)
        return body.get("message") or str(err or body)[:300]
    return str(body)[:300]
