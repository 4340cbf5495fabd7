# fleet/errors.py
from typing import Any, Dict, Optional

from .states import ErrorKind, RETRYABLE_ERRORS


class ProviderError(Exception):
    """Base error raised by provider adapters. ``kind`` is one of ErrorKind."""

    kind = ErrorKind.TRANSIENT_NETWORK

    def __init__(self, provider: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.provider = provider
        self.message = message
        self.details = details or {}
        super().__init__(f"[{provider}] {message}")

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_ERRORS


class TransientNetworkError(ProviderError):
    kind = ErrorKind.TRANSIENT_NETWORK


class RateLimitedError(ProviderError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, provider: str, message: str, retry_after: Optional[float] = None, details=None):
        super().__init__(provider, message, details)
        self.retry_after = retry_after


class AuthInvalidError(ProviderError):
    kind = ErrorKind.AUTH_INVALID


class ResourceConflictError(ProviderError):
    kind = ErrorKind.CONFLICT


class ResourceNotFoundError(ProviderError):
    kind = ErrorKind.NOT_FOUND


class ConfigurationInvalidError(ProviderError):
    kind = ErrorKind.CONFIG_INVALID


class ProvisionTimeoutError(ProviderError):
    kind = ErrorKind.TIMEOUT


class DeployFailedError(ProviderError):
    kind = ErrorKind.DEPLOY_FAILED
