"""
Custom Exception Classes for the Discovery Client

Provides a hierarchy of exceptions so callers can tell "the registry says
no" apart from "the registry is down" and "we are backing off on purpose".

Usage:
    from discovery_client.exceptions import (
        DiscoveryException,
        ServiceNotFoundError,
        RegistryUnavailableError,
        CircuitOpenError,
        ValidationError,
    )

Credentials never appear in an error's message or details. Anything built
from foreign text (exception strings from the HTTP stack) goes through
redact() first.
"""
from typing import Any, Dict, Iterable, Optional


REDACTED = "***"


def redact(text: str, secrets: Iterable[Optional[str]]) -> str:
    """Replace every occurrence of each non-empty secret in text."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


class DiscoveryException(Exception):
    """Base exception for all discovery client errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code or "DISCOVERY_ERROR"
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================================
# Resolution Exceptions
# ============================================================================

class ServiceNotFoundError(DiscoveryException):
    """Registry authoritatively has no matching record. Never retried."""

    def __init__(self, service: str, tags: Optional[Iterable[str]] = None):
        tag_list = sorted(tags) if tags else []
        message = f"Service '{service}' not found"
        if tag_list:
            message = f"Service '{service}' has no instance tagged {', '.join(tag_list)}"
        super().__init__(message, "SERVICE_NOT_FOUND", {"service": service, "tags": tag_list})
        self.service = service
        self.tags = tag_list


class RegistryUnavailableError(DiscoveryException):
    """Registry unreachable after retries were exhausted"""

    def __init__(self, message: str, service: Optional[str] = None, attempts: int = 0):
        super().__init__(
            message,
            "REGISTRY_UNAVAILABLE",
            {"service": service, "attempts": attempts}
        )
        self.service = service
        self.attempts = attempts


class CircuitOpenError(DiscoveryException):
    """Circuit breaker is open for this service name; call rejected locally"""

    def __init__(self, service: str, retry_after: float = 0.0):
        super().__init__(
            f"Circuit for '{service}' is OPEN. Retry after {retry_after:.1f}s",
            "CIRCUIT_OPEN",
            {"service": service, "retry_after": round(retry_after, 3)}
        )
        self.service = service
        self.retry_after = retry_after


# ============================================================================
# Transport Exceptions
# ============================================================================

class RegistryTransportError(DiscoveryException):
    """Transient transport failure (connection, timeout, 5xx). Retried."""

    def __init__(self, message: str, status_code: Optional[int] = None, path: Optional[str] = None):
        super().__init__(
            message,
            "TRANSPORT_ERROR",
            {"status_code": status_code, "path": path}
        )
        self.status_code = status_code
        self.path = path


class RegistryRequestError(DiscoveryException):
    """Registry rejected the request (4xx other than 404). Not retried."""

    def __init__(self, message: str, status_code: int, path: Optional[str] = None):
        super().__init__(
            message,
            "REQUEST_REJECTED",
            {"status_code": status_code, "path": path}
        )
        self.status_code = status_code
        self.path = path


# ============================================================================
# Validation / Configuration Exceptions
# ============================================================================

class ValidationError(DiscoveryException):
    """Malformed registration payload. Never sent over the wire."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, "VALIDATION_ERROR", {"field": field})
        self.field = field


class ConfigurationException(DiscoveryException):
    """Configuration error"""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message, "CONFIG_ERROR", {"key": config_key})


__all__ = [
    "DiscoveryException",
    "ServiceNotFoundError",
    "RegistryUnavailableError",
    "CircuitOpenError",
    "RegistryTransportError",
    "RegistryRequestError",
    "ValidationError",
    "ConfigurationException",
    "redact",
]
